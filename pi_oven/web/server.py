"""HTTP API for the fridge, the oven, disks, bakeforms and boot files.

Handlers are thin: they parse the request, run the blocking core call in an
executor and serialize the result. Errors raised by the core are mapped to
status codes in one middleware.
"""

from __future__ import annotations

import asyncio
import functools
import json
from pathlib import Path
from typing import Any, Callable, Iterator

from aiohttp import web

from pi_oven.logging import LoggerFactory
from pi_oven.services.nodes import NodeLifecycleManager
from pi_oven.storage.disks import DiskRegistry
from pi_oven.storage.exceptions import (
    InvalidStateError,
    NotFoundError,
    ProtectedResourceError,
    ProvisioningError,
    ValidationError,
)
from pi_oven.storage.templates import TemplateInventory
from pi_oven.web.boot_files import BootFileServer
from pi_oven.web.system_health import get_system_health, get_usage_status


DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
API_PREFIX = "/api/v1"
UPLOAD_CHUNK_SIZE = 4 * 1024 * 1024

MANAGER_KEY: web.AppKey[NodeLifecycleManager] = web.AppKey("manager", NodeLifecycleManager)
DISKS_KEY: web.AppKey[DiskRegistry] = web.AppKey("disks", DiskRegistry)
TEMPLATES_KEY: web.AppKey[TemplateInventory] = web.AppKey("bakeforms", TemplateInventory)
BOOT_FILES_KEY: web.AppKey[BootFileServer] = web.AppKey("boot_files", BootFileServer)

# Checked in order; the first matching class wins.
STATUS_BY_ERROR: tuple[tuple[type[ProvisioningError], int], ...] = (
    (NotFoundError, 404),
    (InvalidStateError, 403),
    (ProtectedResourceError, 403),
    (ValidationError, 400),
)


def status_for(exc: ProvisioningError) -> int:
    for error_type, status in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def _error_response(exc: ProvisioningError, status: int) -> web.Response:
    return web.json_response({"error": str(exc), "kind": type(exc).__name__}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except ProvisioningError as exc:
        status = status_for(exc)
        log = LoggerFactory.for_web()
        if status >= 500:
            log.error(f"{request.method} {request.path} failed: {exc}")
        else:
            log.info(f"{request.method} {request.path} -> {status}: {exc}")
        return _error_response(exc, status)


async def _call(func: Callable[..., Any], *args: Any) -> Any:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args))


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError(f"Request body is not valid JSON: {exc}") from exc
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _required_string(body: dict[str, Any], key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"Field {key!r} is required")
    return value


def _body_chunks(request: web.Request, loop: asyncio.AbstractEventLoop) -> Iterator[bytes]:
    """Pull the request body from a worker thread, one chunk at a time."""
    while True:
        future = asyncio.run_coroutine_threadsafe(
            request.content.read(UPLOAD_CHUNK_SIZE), loop
        )
        chunk = future.result()
        if not chunk:
            return
        yield chunk


# ------------------------------------------------------------------
# nodes
# ------------------------------------------------------------------


async def handle_fridge(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    nodes = await _call(manager.list_available)
    return web.json_response([manager.describe(node) for node in nodes])


async def handle_oven(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    nodes = await _call(manager.list_active)
    return web.json_response([manager.describe(node) for node in nodes])


async def handle_oven_node(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    node = await _call(manager.get_node, request.match_info["piId"])
    return web.json_response(manager.describe(node))


async def handle_bake(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    body = await _json_body(request)
    bakeform = _required_string(body, "bakeformName")
    ticket = await _call(manager.bake_any, bakeform)
    payload = manager.describe(ticket.node)
    payload["bakeId"] = ticket.attempt_id
    return web.json_response(payload, status=202)


async def handle_unbake(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    node_id = request.match_info["piId"]
    node = await _call(manager.get_node, node_id)
    await _call(manager.submit_unbake, node_id)
    return web.json_response(manager.describe(node))


async def handle_reboot(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    node_id = request.match_info["piId"]
    await _call(manager.power_cycle, node_id)
    return web.json_response({"id": node_id, "action": "reboot"})


async def handle_attach_disk(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    body = await _json_body(request)
    disk_id = _required_string(body, "diskId")
    node = await _call(manager.attach_disk, request.match_info["piId"], disk_id)
    return web.json_response(manager.describe(node))


async def handle_detach_disk(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    node = await _call(
        manager.detach_disk, request.match_info["piId"], request.match_info["diskId"]
    )
    return web.json_response(manager.describe(node))


async def handle_put_node_file(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    filename = request.match_info["filename"]
    content = await request.read()
    await _call(manager.put_node_file, request.match_info["piId"], filename, content)
    return web.json_response({"filename": filename, "size": len(content)}, status=201)


async def handle_get_node_file(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    content = await _call(
        manager.get_node_file, request.match_info["piId"], request.match_info["filename"]
    )
    return web.Response(body=content, content_type="application/octet-stream")


# ------------------------------------------------------------------
# disks
# ------------------------------------------------------------------


async def handle_list_disks(request: web.Request) -> web.Response:
    disks = request.app[DISKS_KEY]
    return web.json_response([disk.to_dict() for disk in disks.list()])


async def handle_create_disk(request: web.Request) -> web.Response:
    disks = request.app[DISKS_KEY]
    body = await _json_body(request)
    disk = await _call(disks.create_empty, body.get("size"))
    return web.json_response(disk.to_dict(), status=201)


async def handle_get_disk(request: web.Request) -> web.Response:
    disks = request.app[DISKS_KEY]
    disk = disks.get(request.match_info["diskId"])
    return web.json_response(disk.to_dict())


async def handle_delete_disk(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    disk_id = request.match_info["diskId"]
    await _call(manager.destroy_disk, disk_id)
    return web.json_response({"id": disk_id, "deleted": True})


# ------------------------------------------------------------------
# bakeforms
# ------------------------------------------------------------------


async def handle_list_bakeforms(request: web.Request) -> web.Response:
    templates = request.app[TEMPLATES_KEY]
    return web.json_response([t.to_dict() for t in templates.list().values()])


async def handle_upload_bakeform(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    loop = asyncio.get_running_loop()
    template = await _call(
        manager.upload_template, request.match_info["name"], _body_chunks(request, loop)
    )
    return web.json_response(template.to_dict(), status=201)


async def handle_delete_bakeform(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    name = request.match_info["name"]
    await _call(manager.delete_template, name)
    return web.json_response({"name": name, "deleted": True})


# ------------------------------------------------------------------
# boot files and health
# ------------------------------------------------------------------


async def handle_boot_file(request: web.Request) -> web.Response:
    boot_files = request.app[BOOT_FILES_KEY]
    content = await _call(
        boot_files.fetch, request.match_info["piId"], request.match_info["filename"]
    )
    return web.Response(body=content, content_type="application/octet-stream")


async def handle_health(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    disks = request.app[DISKS_KEY]
    templates = request.app[TEMPLATES_KEY]
    health = await _call(
        get_system_health,
        {"disks": disks.storage_root, "bakeforms": templates.image_folder},
    )
    available = await _call(manager.list_available)
    active = await _call(manager.list_active)
    storage: dict[str, object] = {}
    for label, usage in health.storage.items():
        if usage is None:
            storage[label] = None
            continue
        storage[label] = {
            "path": usage.path,
            "percent": round(usage.percent, 1),
            "free_gb": round(usage.free_gb, 1),
            "total_gb": round(usage.total_gb, 1),
            "status": get_usage_status(usage.percent),
        }
    return web.json_response(
        {
            "status": "ok",
            "cpu": {"percent": round(health.cpu_percent, 1)},
            "memory": {
                "percent": round(health.memory_percent, 1),
                "used_mb": health.memory_used_mb,
                "total_mb": health.memory_total_mb,
            },
            "storage": storage,
            "inventory": {
                "fridge": len(available),
                "oven": len(active),
                "disks": len(disks.list()),
                "bakeforms": len(templates.list()),
            },
        }
    )


def add_routes(app: web.Application, prefix: str = API_PREFIX) -> None:
    app.router.add_get(f"{prefix}/fridge", handle_fridge)
    app.router.add_get(f"{prefix}/oven", handle_oven)
    app.router.add_post(f"{prefix}/oven", handle_bake)
    app.router.add_get(f"{prefix}/oven/{{piId}}", handle_oven_node)
    app.router.add_delete(f"{prefix}/oven/{{piId}}", handle_unbake)
    app.router.add_post(f"{prefix}/oven/{{piId}}/reboot", handle_reboot)
    app.router.add_post(f"{prefix}/oven/{{piId}}/disks", handle_attach_disk)
    app.router.add_delete(f"{prefix}/oven/{{piId}}/disks/{{diskId}}", handle_detach_disk)
    app.router.add_put(f"{prefix}/oven/{{piId}}/files/{{filename}}", handle_put_node_file)
    app.router.add_get(f"{prefix}/oven/{{piId}}/files/{{filename}}", handle_get_node_file)
    app.router.add_get(f"{prefix}/disks", handle_list_disks)
    app.router.add_post(f"{prefix}/disks", handle_create_disk)
    app.router.add_get(f"{prefix}/disks/{{diskId}}", handle_get_disk)
    app.router.add_delete(f"{prefix}/disks/{{diskId}}", handle_delete_disk)
    app.router.add_get(f"{prefix}/bakeforms", handle_list_bakeforms)
    app.router.add_post(f"{prefix}/bakeforms/{{name}}", handle_upload_bakeform)
    app.router.add_delete(f"{prefix}/bakeforms/{{name}}", handle_delete_bakeform)
    app.router.add_get(f"{prefix}/files/{{piId}}/{{filename:.+}}", handle_boot_file)
    app.router.add_get("/health", handle_health)


def create_app(
    manager: NodeLifecycleManager,
    disks: DiskRegistry,
    templates: TemplateInventory,
    boot_files: BootFileServer,
) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[MANAGER_KEY] = manager
    app[DISKS_KEY] = disks
    app[TEMPLATES_KEY] = templates
    app[BOOT_FILES_KEY] = boot_files
    add_routes(app)
    return app


def run_server(app: web.Application, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
    """Serve ``app`` until interrupted."""
    log = LoggerFactory.for_web()
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    async def start_site() -> web.AppRunner:
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        await site.start()
        return runner

    runner = loop.run_until_complete(start_site())
    log.info(f"Web server started at http://{host}:{port}{API_PREFIX}")
    try:
        loop.run_forever()
    except KeyboardInterrupt:
        log.info("Interrupted, shutting down")
    finally:
        log.debug("Web server shutting down...", tags=["web", "shutdown"])
        loop.run_until_complete(runner.cleanup())
        loop.close()
        log.info("Web server stopped", tags=["web", "shutdown"])


__all__ = [
    "API_PREFIX",
    "create_app",
    "error_middleware",
    "run_server",
    "status_for",
]
