"""Bakeform image mounting with secure subprocess handling.

A bakeform is a raw image holding two partitions (boot + root). To read them the
image is mapped to loop partition devices with kpartx, each device is mounted
under the image mount root, and the content is copied out with rsync.

Pipeline:
    - mount(): map partitions, wait for device nodes, mount boot then root
    - unmount(): unmount recorded mount points in order, then unmap
    - extract_boot_artifacts(): copy the boot partition into the boot cache once
    - clone_root(): copy the root partition into a new disk folder

Mount points are tracked on the Template in partition order (0 = boot,
1 = root); consumers index into that list positionally.

The pipeline holds no per-bakeform lock. Callers serialize access to one
bakeform (NodeLifecycleManager does this with a template lock table).

Example:
    >>> pipeline = TemplateMountPipeline(BulkCopier())
    >>> pipeline.clone_root(template, Path("/srv/nfs/4f1c..."))
"""

from __future__ import annotations

import re
import shutil
import time
from pathlib import Path
from typing import Callable

from pi_oven.config.settings import (
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_SETTLE_POLL_INTERVAL,
    DEFAULT_SETTLE_TIMEOUT,
)
from pi_oven.domain import Template
from pi_oven.logging import LoggerFactory, operation_context
from pi_oven.storage.command_runners import run_checked_command
from pi_oven.storage.copy import BulkCopier, flatten_folder
from pi_oven.storage.exceptions import (
    CommandError,
    MapError,
    MountError,
    UnmountError,
)


# Module logger
log = LoggerFactory.for_templates()

LOOP_PARTITION_PATTERN = re.compile(r"loop\d+p\d+")
FILESYSTEM_TYPES = ("vfat", "ext4")
BUSY_MARKERS = ("busy", "already mounted")
NOT_MOUNTED_MARKERS = ("not mounted",)
FIRMWARE_FOLDER = "firmware"
PARTITION_COUNT = 2


def _command_output(exc: CommandError) -> str:
    return f"{exc.stderr}\n{exc.stdout}".lower()


class TemplateMountPipeline:
    """Maps, mounts, copies from and releases bakeform images."""

    def __init__(
        self,
        copier: BulkCopier,
        runner: Callable[..., str] = run_checked_command,
        device_dir: Path = Path("/dev/mapper"),
        settle_timeout: float = DEFAULT_SETTLE_TIMEOUT,
        poll_interval: float = DEFAULT_SETTLE_POLL_INTERVAL,
        command_timeout: float | None = DEFAULT_COMMAND_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._copier = copier
        self._runner = runner
        self._device_dir = Path(device_dir)
        self._settle_timeout = settle_timeout
        self._poll_interval = poll_interval
        self._command_timeout = command_timeout
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # mapping
    # ------------------------------------------------------------------

    def _map_partitions(self, template: Template) -> list[str]:
        image = str(template.image_path)
        try:
            output = self._runner(
                ["kpartx", "-av", image], timeout=self._command_timeout
            )
        except CommandError as exc:
            raise MapError(image, str(exc)) from exc

        partitions = LOOP_PARTITION_PATTERN.findall(output or "")[:PARTITION_COUNT]
        if len(partitions) < PARTITION_COUNT:
            self._unmap_quietly(template)
            raise MapError(
                image,
                f"expected {PARTITION_COUNT} partitions, found {len(partitions)}",
            )
        return partitions

    def _wait_for_devices(self, template: Template, partitions: list[str]) -> None:
        """Poll until every mapped device node exists, bounded by the settle timeout."""
        deadline = self._clock() + self._settle_timeout
        poll_log = log.bind(tags=["bakeform", "poll"])
        while True:
            missing = [
                name for name in partitions if not (self._device_dir / name).exists()
            ]
            if not missing:
                return
            if self._clock() >= deadline:
                self._unmap_quietly(template)
                raise MapError(
                    str(template.image_path),
                    f"device nodes {', '.join(missing)} did not appear within "
                    f"{self._settle_timeout}s",
                )
            poll_log.trace(f"Waiting for {', '.join(missing)}")
            self._sleep(self._poll_interval)

    def _unmap(self, template: Template) -> None:
        self._runner(
            ["kpartx", "-d", str(template.image_path)], timeout=self._command_timeout
        )
        template.partitions = []

    def _unmap_quietly(self, template: Template) -> None:
        try:
            self._unmap(template)
        except CommandError as exc:
            log.warning(f"Could not unmap {template.image_path}: {exc}")

    # ------------------------------------------------------------------
    # mounting
    # ------------------------------------------------------------------

    def _mount_partition(self, device: Path, target: Path) -> None:
        """Mount ``device`` on ``target``, trying each filesystem type in order.

        "busy"/"already mounted" means someone else mounted it already; that is
        treated as success.
        """
        failures = []
        for fstype in FILESYSTEM_TYPES:
            try:
                self._runner(
                    ["mount", "-t", fstype, str(device), str(target)],
                    timeout=self._command_timeout,
                )
                return
            except CommandError as exc:
                if any(marker in _command_output(exc) for marker in BUSY_MARKERS):
                    log.debug(f"{device} already mounted on {target}")
                    return
                failures.append(f"{fstype}: {(exc.stderr or str(exc)).strip()}")
        raise MountError(str(device), str(target), "; ".join(failures))

    def mount(self, template: Template) -> list[Path]:
        """Map and mount both partitions of ``template``.

        Idempotent: returns the current mount points when both are active.
        Mount points left over from a partial unmount are released first, so
        index 0 is always the boot partition and index 1 the root partition.

        Raises:
            MapError: kpartx failed, found fewer than two partitions, or the
                device nodes never appeared
            MountError: a partition could not be mounted as vfat or ext4
            UnmountError: leftover mount points could not be released
        """
        if template.is_mounted:
            return list(template.mount_targets)

        if template.mount_targets:
            log.info(f"Releasing leftover mounts of {template.name} before mounting")
            self.unmount(template)

        partitions = self._map_partitions(template)
        self._wait_for_devices(template, partitions)
        template.partitions = partitions

        try:
            for index, name in enumerate(partitions):
                device = self._device_dir / name
                target = template.mount_target(index)
                try:
                    target.mkdir(parents=True, exist_ok=True)
                except OSError as exc:
                    raise MountError(str(device), str(target), str(exc)) from exc

                log.info(f"Mounting {device} on {target}")
                self._mount_partition(device, target)
                template.mount_targets.append(target)
        except MountError:
            self._release_quietly(template)
            raise

        return list(template.mount_targets)

    def unmount(self, template: Template) -> None:
        """Unmount every recorded mount point, then unmap the loop devices.

        The first failing unmount aborts the rest; the remaining mount points stay
        tracked so a later call can retry.

        Raises:
            UnmountError: a mount point or the loop mapping could not be released
        """
        for target in list(template.mount_targets):
            log.info(f"Unmounting {target}")
            try:
                self._runner(["umount", str(target)], timeout=self._command_timeout)
            except CommandError as exc:
                if not any(
                    marker in _command_output(exc) for marker in NOT_MOUNTED_MARKERS
                ):
                    raise UnmountError(
                        template.name,
                        [str(path) for path in template.mount_targets],
                        str(exc),
                    ) from exc
            template.mount_targets.remove(target)

        try:
            self._unmap(template)
        except CommandError as exc:
            raise UnmountError(template.name, [], f"unmap failed: {exc}") from exc

    def _release_quietly(self, template: Template) -> None:
        try:
            self.unmount(template)
        except UnmountError as exc:
            log.warning(f"Could not release {template.name}: {exc}")

    # ------------------------------------------------------------------
    # copying
    # ------------------------------------------------------------------

    def extract_boot_artifacts(self, template: Template) -> Path:
        """Populate the boot artifact cache of ``template`` if it is missing.

        Some images keep their firmware files one folder deeper (``/firmware``);
        those are moved up to the cache root.
        """
        cache = template.boot_artifacts_path
        if cache.exists():
            return cache

        with operation_context("extract", bakeform=template.name) as op_log:
            self.mount(template)
            cache.parent.mkdir(parents=True, exist_ok=True)
            try:
                self._copier.copy_tree(template.boot_mount, cache)
            except Exception:
                shutil.rmtree(cache, ignore_errors=True)
                self._release_quietly(template)
                raise
            self.unmount(template)

            if flatten_folder(cache, FIRMWARE_FOLDER):
                op_log.info(f"Moved firmware files of {template.name} to {cache}")
        return cache

    def clone_root(self, template: Template, destination: Path) -> Path:
        """Copy the root partition of ``template`` into ``destination``.

        The template is released again whether or not the copy succeeds.
        """
        self.mount(template)
        try:
            self._copier.copy_tree(template.root_mount, destination)
        except Exception:
            self._release_quietly(template)
            raise
        self.unmount(template)
        return destination


__all__ = [
    "TemplateMountPipeline",
    "LOOP_PARTITION_PATTERN",
    "FILESYSTEM_TYPES",
]
