import argparse
import sys

from pi_oven.config import settings
from pi_oven.logging import LoggerFactory, setup_logging
from pi_oven.persistence import NodeStore
from pi_oven.services.nodes import NodeLifecycleManager
from pi_oven.services.power import PowerController
from pi_oven.storage.copy import BulkCopier
from pi_oven.storage.disks import DiskRegistry
from pi_oven.storage.exceptions import ExportError, ProvisioningError
from pi_oven.storage.exports import ExportCoordinator
from pi_oven.storage.mount import TemplateMountPipeline
from pi_oven.storage.templates import TemplateInventory
from pi_oven.web.boot_files import BootFileServer
from pi_oven.web.server import create_app, run_server


def build_components():
    """Wire the core from the current settings.

    Returns (manager, disks, templates, boot_files).
    """
    command_timeout = settings.get_float("command_timeout_seconds", settings.DEFAULT_COMMAND_TIMEOUT)
    copier = BulkCopier(
        timeout=settings.get_float("copy_timeout_seconds", settings.DEFAULT_COPY_TIMEOUT)
    )
    pipeline = TemplateMountPipeline(
        copier,
        settle_timeout=settings.get_float("settle_timeout_seconds", settings.DEFAULT_SETTLE_TIMEOUT),
        poll_interval=settings.get_float(
            "settle_poll_interval_seconds", settings.DEFAULT_SETTLE_POLL_INTERVAL
        ),
        command_timeout=command_timeout,
    )
    exports = ExportCoordinator(
        settings.get_path("exports_file"),
        reload_command=settings.get_setting("exports_reload_command"),
    )
    disks = DiskRegistry(settings.get_path("nfs_root"), pipeline, exports)
    templates = TemplateInventory(
        settings.get_path("image_folder"),
        settings.get_path("boot_root"),
        settings.get_path("image_mount_root"),
        pipeline,
    )
    templates.load()
    power = PowerController(
        settings.get_setting("ppi_command"),
        cycle_delay=settings.get_float("power_cycle_delay_seconds", settings.DEFAULT_POWER_CYCLE_DELAY),
        timeout=command_timeout,
    )
    store = NodeStore.from_path(settings.get_path("inventory_db"))
    manager = NodeLifecycleManager(
        store,
        disks,
        templates,
        exports,
        power,
        max_workers=int(settings.get_setting("bake_workers", 4)),
    )
    try:
        exports.regenerate()
    except ExportError as error:
        LoggerFactory.for_system().warning(f"Initial NFS export regeneration failed: {error}")
    boot_files = BootFileServer(manager, disks, templates, settings.get_setting("nfs_server"))
    return manager, disks, templates, boot_files


def main(argv=None):
    parser = argparse.ArgumentParser(description="Pi Oven: bare-metal Raspberry Pi provisioning")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log every boot request and device poll")
    parser.add_argument("--host", help="Address to listen on")
    parser.add_argument("--port", type=int, help="Port to listen on")
    args = parser.parse_args(argv)

    setup_logging(debug=args.debug, trace=args.trace)
    log = LoggerFactory.for_system()

    try:
        settings.validate_settings()
        settings.init_folders()
        manager, disks, templates, boot_files = build_components()
    except (settings.ConfigurationError, ProvisioningError) as error:
        log.error(f"Startup failed: {error}")
        return 1

    app = create_app(manager, disks, templates, boot_files)
    host = args.host or settings.get_setting("http_host")
    port = args.port or int(settings.get_setting("http_port"))
    try:
        run_server(app, host=host, port=port)
    finally:
        log.info("Waiting for running bakes to finish")
        manager.shutdown(wait=True)
        templates.unmount_all()
    return 0


if __name__ == "__main__":
    sys.exit(main())
