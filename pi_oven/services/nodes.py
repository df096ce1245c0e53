"""Node lifecycle: fridge (available) -> oven (provisioning/ready) -> fridge.

Every state-changing operation on a Pi runs under that Pi's lock, and every
transition is written to the inventory before the next step starts. A node is
READY exactly when it has a bakeform and at least one disk; ``_save`` refuses to
persist anything else.

Usage:
    manager = NodeLifecycleManager(store, disks, templates, exports, power)
    ticket = manager.submit_bake("pi-01", "raspbian")
    ticket.future.result()
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from pi_oven.domain import OCCUPIED_STATUSES, Node, NodeStatus, Template
from pi_oven.logging import EventLogger, LoggerFactory, new_job_id, operation_context
from pi_oven.persistence import NodeStore
from pi_oven.services.locks import LockTable
from pi_oven.services.power import PowerController
from pi_oven.storage.disks import DiskRegistry
from pi_oven.storage.exceptions import (
    ExportError,
    InvalidPathError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    PowerActionError,
    ProtectedResourceError,
)
from pi_oven.storage.exports import ExportCoordinator
from pi_oven.storage.templates import TemplateInventory


log = LoggerFactory.for_nodes()

NODE_CONFIG_FOLDER = "piConfig"


@dataclass
class BakeTicket:
    """Handle for a bake running in the background.

    ``node`` is the node as it was before provisioning started.
    """

    node: Node
    attempt_id: str
    future: Future


def _config_path(filename: str) -> str:
    if not filename or "/" in filename or "\x00" in filename or filename in (".", ".."):
        raise InvalidPathError(filename, "not a plain file name")
    return f"{NODE_CONFIG_FOLDER}/{filename}"


class NodeLifecycleManager:
    """Owns node state and drives bake/unbake against storage and power."""

    def __init__(
        self,
        store: NodeStore,
        disks: DiskRegistry,
        templates: TemplateInventory,
        exports: ExportCoordinator,
        power: PowerController,
        max_workers: int = 4,
    ):
        self._store = store
        self._disks = disks
        self._templates = templates
        self._exports = exports
        self._power = power
        self._node_locks = LockTable("pi")
        self._template_locks = LockTable("bakeform")
        # Serializes disk ownership checks across nodes.
        self._ownership_lock = threading.RLock()
        self._claims_lock = threading.Lock()
        self._claimed: set[str] = set()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="pi-oven"
        )
        exports.set_resource_source(self.exported_locations)
        self._recover_interrupted_bakes()

    # ------------------------------------------------------------------
    # persistence helpers
    # ------------------------------------------------------------------

    def _save(self, node: Node, previous: NodeStatus | None = None, logger=None) -> None:
        if not node.is_consistent():
            raise InvalidStateError(
                f"Refusing to store pi {node.id} as {node.status.label} "
                f"with bakeform={node.template} disks={node.disk_ids}"
            )
        self._store.upsert(node)
        if previous is not None and previous != node.status:
            EventLogger.log_node_transition(
                logger or log, node.id, previous.label, node.status.label
            )

    def _rollback(self, node: Node, logger) -> None:
        previous = node.status
        node.reset()
        try:
            self._save(node, previous, logger)
        except PersistenceError as exc:
            logger.error(
                f"Could not return pi {node.id} to available, it stays "
                f"{previous.label} until the next restart: {exc}"
            )

    def _recover_interrupted_bakes(self) -> None:
        stuck = self._store.list([NodeStatus.PROVISIONING])
        if not stuck:
            return
        log.info(f"Recovering {len(stuck)} pi(s) left in provisioning")
        for node in stuck:
            node.reset()
            self._save(node, NodeStatus.PROVISIONING)
            log.warning(
                f"Pi {node.id} was interrupted while provisioning and is available again; "
                "any partially cloned disk has to be removed by hand"
            )

    def _publish_exports(self, logger) -> ExportError | None:
        try:
            self._exports.regenerate()
        except ExportError as exc:
            logger.error(f"NFS exports are out of date: {exc}")
            return exc
        return None

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def get_node(self, node_id: str) -> Node:
        node = self._store.get(node_id)
        if node is None:
            raise NotFoundError("Pi", node_id)
        return node

    def find_node(self, node_id: str) -> Node | None:
        return self._store.get(node_id)

    def list_available(self) -> list[Node]:
        return self._store.list([NodeStatus.AVAILABLE])

    def list_active(self) -> list[Node]:
        return self._store.list(OCCUPIED_STATUSES)

    def describe(self, node: Node) -> dict:
        """API representation of ``node`` with its disks resolved."""
        return node.to_dict(self._disks.index())

    def register_node(self, node_id: str) -> Node:
        """Add ``node_id`` to the fridge unless it is already known."""
        with self._node_locks.hold(node_id):
            existing = self._store.get(node_id)
            if existing is not None:
                return existing
            node = Node(id=node_id)
            self._save(node)
            log.info(f"Registered new pi {node_id}")
            return node

    def exported_locations(self) -> list[Path]:
        """Folders of every disk referenced by a provisioning or ready node."""
        index = self._disks.index()
        locations: list[Path] = []
        for node in self.list_active():
            for disk_id in node.disk_ids:
                disk = index.get(disk_id)
                if disk is None:
                    log.warning(f"Pi {node.id} references unknown disk {disk_id}")
                    continue
                locations.append(disk.location)
        return locations

    def _owner_of(self, disk_id: str) -> Node | None:
        for node in self._store.list():
            if disk_id in node.disk_ids:
                return node
        return None

    # ------------------------------------------------------------------
    # bake
    # ------------------------------------------------------------------

    def bake(self, node_id: str, template_name: str, attempt_id: str | None = None) -> Node:
        """Provision ``node_id`` from ``template_name`` and power-cycle it.

        Raises:
            InvalidStateError: the node is not available
            NotFoundError: unknown bakeform
            TemplateError: the clone failed; the node is available again
            PowerActionError: the power cycle failed; the node stays ready
            ExportError: exports could not be refreshed; the node stays ready
        """
        attempt_id = attempt_id or new_job_id("bake")
        with self._node_locks.hold(node_id):
            node = self._store.get(node_id) or Node(id=node_id)
            if node.status != NodeStatus.AVAILABLE:
                raise InvalidStateError(
                    f"Pi {node_id} is {node.status.label}, only available pis can be baked"
                )

            # The bakeform stays locked until the node records it, so
            # delete_template either runs first or sees the node as a user.
            with self._template_locks.hold(template_name):
                template = self._templates.get(template_name)

                with operation_context(
                    "bake", job_id=attempt_id, node_id=node_id, bakeform=template.name
                ) as bake_log:
                    node.status = NodeStatus.PROVISIONING
                    self._save(node, NodeStatus.AVAILABLE, bake_log)

                    try:
                        disk_id = self._clone(template, bake_log)
                    except Exception:
                        self._rollback(node, bake_log)
                        raise

                    node.template = template.name
                    node.disk_ids = [disk_id]
                    node.status = NodeStatus.READY
                    try:
                        self._save(node, NodeStatus.PROVISIONING, bake_log)
                    except PersistenceError:
                        bake_log.error(
                            f"Could not record pi {node_id} as ready, dropping disk {disk_id}"
                        )
                        self._destroy_quietly(disk_id, bake_log)
                        self._rollback(node, bake_log)
                        raise

                    export_error = self._publish_exports(bake_log)

            power_log = LoggerFactory.for_bake(attempt_id, node_id=node_id)
            power_log.info(f"Power cycling pi {node_id}")
            self._power.power_cycle(node_id)
            if export_error is not None:
                raise export_error
            return node.snapshot()

    def _clone(self, template: Template, bake_log) -> str:
        """Clone under the bakeform lock, which the caller holds."""
        bake_log.debug(f"Cloning root partition of {template.name}")
        disk = self._disks.clone_from_template(template, publish=False)
        return disk.id

    def _destroy_quietly(self, disk_id: str, logger) -> None:
        try:
            self._disks.destroy(disk_id)
        except ExportError as exc:
            # The folder is already gone at this point.
            logger.warning(f"Destroyed disk {disk_id}, NFS exports are out of date: {exc}")
        except Exception as exc:
            logger.error(f"Could not destroy disk {disk_id}: {exc}")

    def _claim(self, node_id: str) -> None:
        with self._claims_lock:
            if node_id in self._claimed:
                raise InvalidStateError(f"Pi {node_id} already has a bake queued")
            self._claimed.add(node_id)

    def _release_claim(self, node_id: str) -> None:
        with self._claims_lock:
            self._claimed.discard(node_id)

    def _run_bake(self, node_id: str, template_name: str, attempt_id: str) -> Node:
        try:
            return self.bake(node_id, template_name, attempt_id)
        except Exception as exc:
            LoggerFactory.for_bake(attempt_id, node_id=node_id).warning(
                f"Background bake of pi {node_id} with {template_name} failed: {exc}"
            )
            raise
        finally:
            self._release_claim(node_id)

    def _submit_claimed(self, node: Node, template_name: str) -> BakeTicket:
        attempt_id = new_job_id("bake")
        try:
            future = self._executor.submit(self._run_bake, node.id, template_name, attempt_id)
        except Exception:
            self._release_claim(node.id)
            raise
        log.info(f"Queued bake {attempt_id}: pi {node.id} with {template_name}")
        return BakeTicket(node=node.snapshot(), attempt_id=attempt_id, future=future)

    def submit_bake(self, node_id: str, template_name: str) -> BakeTicket:
        """Validate and queue a bake of ``node_id``; the work runs in the background."""
        node = self.get_node(node_id)
        if node.status != NodeStatus.AVAILABLE:
            raise InvalidStateError(
                f"Pi {node_id} is {node.status.label}, only available pis can be baked"
            )
        self._templates.get(template_name)
        self._claim(node_id)
        return self._submit_claimed(node, template_name)

    def bake_any(self, template_name: str) -> BakeTicket:
        """Pick the first available pi not already queued and bake it in the background."""
        self._templates.get(template_name)
        with self._claims_lock:
            candidates = [n for n in self.list_available() if n.id not in self._claimed]
            if not candidates:
                raise NotFoundError("Pi", "*", "No available pi found")
            node = candidates[0]
            self._claimed.add(node.id)
        return self._submit_claimed(node, template_name)

    # ------------------------------------------------------------------
    # unbake
    # ------------------------------------------------------------------

    def unbake(self, node_id: str) -> Node:
        """Power off ``node_id``, return it to the fridge and destroy its disks.

        Power and disk cleanup failures are logged; the node ends available either way.
        """
        with self._node_locks.hold(node_id):
            node = self.get_node(node_id)
            if node.status != NodeStatus.READY:
                raise InvalidStateError(
                    f"Pi {node_id} is {node.status.label}, only ready pis can be unbaked"
                )
            with operation_context("unbake", node_id=node_id) as unbake_log:
                try:
                    self._power.power_off(node_id)
                except PowerActionError as exc:
                    unbake_log.warning(f"Power off failed, continuing: {exc}")

                disk_ids = list(node.disk_ids)
                node.reset()
                self._save(node, NodeStatus.READY, unbake_log)

                for disk_id in disk_ids:
                    unbake_log.info(f"Destroying disk {disk_id}")
                    self._destroy_quietly(disk_id, unbake_log)
                self._publish_exports(unbake_log)
            return node.snapshot()

    def _run_unbake(self, node_id: str) -> Node:
        try:
            return self.unbake(node_id)
        except Exception as exc:
            log.warning(f"Background unbake of pi {node_id} failed: {exc}")
            raise

    def submit_unbake(self, node_id: str) -> Future:
        node = self.get_node(node_id)
        if node.status != NodeStatus.READY:
            raise InvalidStateError(
                f"Pi {node_id} is {node.status.label}, only ready pis can be unbaked"
            )
        return self._executor.submit(self._run_unbake, node_id)

    # ------------------------------------------------------------------
    # disks and files of a baked node
    # ------------------------------------------------------------------

    def attach_disk(self, node_id: str, disk_id: str) -> Node:
        """Attach an existing disk to a ready node. Attaching twice is a no-op."""
        with self._node_locks.hold(node_id), self._ownership_lock:
            node = self.get_node(node_id)
            if node.status != NodeStatus.READY:
                raise InvalidStateError(
                    f"Pi {node_id} is {node.status.label}, disks can only be attached to ready pis"
                )
            self._disks.get(disk_id)
            if disk_id in node.disk_ids:
                log.info(f"Disk {disk_id} already attached to pi {node_id}")
                return node
            owner = self._owner_of(disk_id)
            if owner is not None:
                raise InvalidStateError(f"Disk {disk_id} is attached to pi {owner.id}")

            node.disk_ids.append(disk_id)
            self._save(node)
            log.info(f"Attached disk {disk_id} to pi {node_id}")
            export_error = self._publish_exports(log)
            if export_error is not None:
                raise export_error
            return node.snapshot()

    def detach_disk(self, node_id: str, disk_id: str) -> Node:
        """Detach a non-boot disk. The disk itself is kept."""
        with self._node_locks.hold(node_id), self._ownership_lock:
            node = self.get_node(node_id)
            if node.root_disk_id == disk_id:
                raise ProtectedResourceError(node_id, disk_id)
            if disk_id not in node.disk_ids:
                raise NotFoundError(
                    "Disk", disk_id, f"Disk {disk_id} is not attached to pi {node_id}"
                )
            node.disk_ids.remove(disk_id)
            self._save(node)
            log.info(f"Detached disk {disk_id} from pi {node_id}")
            export_error = self._publish_exports(log)
            if export_error is not None:
                raise export_error
            return node.snapshot()

    def _ready_root_disk(self, node_id: str) -> str:
        node = self.get_node(node_id)
        if node.status != NodeStatus.READY or node.root_disk_id is None:
            raise InvalidStateError(f"Pi {node_id} is not in ready state")
        return node.root_disk_id

    def put_node_file(self, node_id: str, filename: str, content: bytes) -> Path:
        """Write ``filename`` into the config folder of the node's boot disk."""
        path = _config_path(filename)
        with self._node_locks.hold(node_id):
            disk_id = self._ready_root_disk(node_id)
            return self._disks.put_file(disk_id, path, content)

    def get_node_file(self, node_id: str, filename: str) -> bytes:
        path = _config_path(filename)
        with self._node_locks.hold(node_id):
            disk_id = self._ready_root_disk(node_id)
            return self._disks.get_file(disk_id, path)

    def power_cycle(self, node_id: str) -> None:
        self.get_node(node_id)
        self._power.power_cycle(node_id)

    # ------------------------------------------------------------------
    # guarded deletes
    # ------------------------------------------------------------------

    def upload_template(self, name: str, chunks: Iterable[bytes]) -> Template:
        with self._template_locks.hold(name):
            return self._templates.upload(name, chunks)

    def delete_template(self, name: str) -> None:
        """Delete a bakeform unless an occupied node was baked from it."""
        with self._template_locks.hold(name):
            users = [node.id for node in self.list_active() if node.template == name]
            if users:
                raise InvalidStateError(f"Bakeform {name} is in use by {', '.join(users)}")
            self._templates.delete(name)

    def destroy_disk(self, disk_id: str) -> None:
        """Destroy a disk unless a node references it. Unknown ids are ignored."""
        with self._ownership_lock:
            owner = self._owner_of(disk_id)
            if owner is not None:
                raise InvalidStateError(f"Disk {disk_id} is attached to pi {owner.id}")
            self._disks.destroy(disk_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
