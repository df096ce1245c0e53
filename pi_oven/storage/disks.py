"""Disk registry: one folder per disk under the NFS root.

The in-memory index is a cache of the storage root. It is rebuilt by scanning
the root at construction, and every scan and mutation happens under the same
lock.
"""

from __future__ import annotations

import shutil
import threading
import uuid
from pathlib import Path

from pi_oven.domain import DISK_IMAGE_FILENAME, Disk, Template
from pi_oven.logging import EventLogger, LoggerFactory
from pi_oven.storage.exceptions import (
    InvalidPathError,
    InvalidSizeError,
    NotFoundError,
)
from pi_oven.storage.exports import ExportCoordinator
from pi_oven.storage.mount import TemplateMountPipeline


log = LoggerFactory.for_disks()

MIB = 1024 * 1024


def _disk_image_size_mib(location: Path) -> int | None:
    image = location / DISK_IMAGE_FILENAME
    try:
        return image.stat().st_size // MIB
    except OSError:
        return None


def resolve_inside(root: Path, relative_path: str) -> Path:
    """Join ``relative_path`` onto ``root`` and refuse anything that escapes it."""
    if not relative_path or "\x00" in relative_path:
        raise InvalidPathError(relative_path, "empty or contains NUL")
    base = root.resolve()
    candidate = (base / relative_path.lstrip("/")).resolve()
    if candidate == base or base not in candidate.parents:
        raise InvalidPathError(relative_path)
    return candidate


class DiskRegistry:
    """Creates, clones, enumerates and destroys disks."""

    def __init__(
        self,
        storage_root: Path,
        pipeline: TemplateMountPipeline,
        exports: ExportCoordinator,
    ):
        self._root = Path(storage_root)
        self._pipeline = pipeline
        self._exports = exports
        self._lock = threading.RLock()
        self._disks: dict[str, Disk] = {}
        self.rescan()

    @property
    def storage_root(self) -> Path:
        return self._root

    def rescan(self) -> dict[str, Disk]:
        """Rebuild the index from the folders under the storage root."""
        with self._lock:
            found: dict[str, Disk] = {}
            if self._root.is_dir():
                for folder in sorted(self._root.iterdir()):
                    if not folder.is_dir() or folder.name.startswith("."):
                        continue
                    found[folder.name] = Disk(
                        id=folder.name,
                        location=folder,
                        size_mib=_disk_image_size_mib(folder),
                    )
            self._disks = found
            log.info(f"Disk index rebuilt: {len(found)} disk(s) under {self._root}")
            return dict(found)

    def _register(self, disk_id: str) -> Disk:
        location = self._root / disk_id
        disk = Disk(id=disk_id, location=location, size_mib=_disk_image_size_mib(location))
        with self._lock:
            self._disks[disk_id] = disk
        return disk

    def _new_id(self) -> str:
        return str(uuid.uuid4())

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def list(self) -> list[Disk]:
        with self._lock:
            return list(self._disks.values())

    def index(self) -> dict[str, Disk]:
        with self._lock:
            return dict(self._disks)

    def find(self, disk_id: str) -> Disk | None:
        with self._lock:
            return self._disks.get(disk_id)

    def get(self, disk_id: str) -> Disk:
        disk = self.find(disk_id)
        if disk is None:
            raise NotFoundError("Disk", disk_id)
        return disk

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def create_empty(self, size_mib: int) -> Disk:
        """Create a disk holding a ``size_mib`` MiB placeholder image.

        The image is sized by seeking to the last byte and writing a single zero,
        so the file is sparse where the filesystem supports it.

        Raises:
            InvalidSizeError: ``size_mib`` is not a positive integer
        """
        if isinstance(size_mib, bool) or not isinstance(size_mib, int) or size_mib <= 0:
            raise InvalidSizeError(size_mib)

        disk_id = self._new_id()
        location = self._root / disk_id
        location.mkdir(parents=True)
        size_bytes = size_mib * MIB
        try:
            with open(location / DISK_IMAGE_FILENAME, "wb") as handle:
                handle.seek(size_bytes - 1)
                handle.write(b"\0")
        except OSError:
            shutil.rmtree(location, ignore_errors=True)
            raise

        disk = self._register(disk_id)
        EventLogger.log_disk_lifecycle(log, "created", disk_id, size_mib=size_mib)
        return disk

    def clone_from_template(self, template: Template, publish: bool = True) -> Disk:
        """Create a disk holding a copy of the root partition of ``template``.

        Nothing is registered unless the copy succeeds; a partially copied
        folder is removed before the error propagates. With ``publish`` the
        export list is regenerated afterwards; callers that attach the disk and
        regenerate themselves pass False.
        """
        disk_id = self._new_id()
        location = self._root / disk_id
        log.info(f"Cloning bakeform {template.name} into disk {disk_id}")
        try:
            self._pipeline.clone_root(template, location)
        except Exception:
            shutil.rmtree(location, ignore_errors=True)
            raise

        disk = self._register(disk_id)
        EventLogger.log_disk_lifecycle(log, "cloned", disk_id, bakeform=template.name)
        if publish:
            self._exports.regenerate()
        return disk

    def destroy(self, disk_id: str) -> None:
        """Forget ``disk_id`` and delete its folder. Unknown ids and missing folders are fine."""
        location = resolve_inside(self._root, disk_id)
        if location.parent != self._root.resolve():
            raise InvalidPathError(disk_id, "not a disk id")
        with self._lock:
            self._disks.pop(disk_id, None)
        try:
            shutil.rmtree(location)
        except FileNotFoundError:
            log.debug(f"Disk folder {location} already gone")
        EventLogger.log_disk_lifecycle(log, "destroyed", disk_id)
        self._exports.regenerate()

    # ------------------------------------------------------------------
    # files
    # ------------------------------------------------------------------

    def put_file(self, disk_id: str, relative_path: str, content: bytes) -> Path:
        disk = self.get(disk_id)
        target = resolve_inside(disk.location, relative_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        log.debug(f"Wrote {len(content)} bytes to {target}")
        return target

    def get_file(self, disk_id: str, relative_path: str) -> bytes:
        disk = self.get(disk_id)
        target = resolve_inside(disk.location, relative_path)
        if not target.is_file():
            raise NotFoundError("File", relative_path)
        return target.read_bytes()
