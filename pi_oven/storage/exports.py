"""NFS export list regeneration.

The export file is derived state: every regeneration reads the current set of
exposed folders and rewrites the whole file. One lock per coordinator keeps
concurrent bakes, unbakes and disk changes from interleaving their writes.
"""

from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, Iterable, Sequence

from pi_oven.logging import LoggerFactory
from pi_oven.storage.command_runners import run_checked_command
from pi_oven.storage.exceptions import CommandError, ExportError


log = LoggerFactory.for_exports()

EXPORT_OPTIONS = "*(rw,sync,no_subtree_check,no_root_squash)"

ResourceSource = Callable[[], Iterable[Path]]


def format_exports(locations: Iterable[Path]) -> str:
    """One ``<absolute-path> <options>`` line per location, in the given order."""
    return "".join(
        f"{Path(location).absolute()} {EXPORT_OPTIONS}\n" for location in locations
    )


class ExportCoordinator:
    """Keeps the NFS export file in sync with the currently exposed folders."""

    def __init__(
        self,
        exports_path: Path,
        resources: ResourceSource | None = None,
        reload_command: Sequence[str] | None = ("exportfs", "-ra"),
        runner: Callable[..., str] = run_checked_command,
    ):
        self._exports_path = Path(exports_path)
        self._resources = resources
        self._reload_command = list(reload_command) if reload_command else None
        self._runner = runner
        self._lock = threading.Lock()
        self.generation = 0

    @property
    def exports_path(self) -> Path:
        return self._exports_path

    def set_resource_source(self, resources: ResourceSource) -> None:
        self._resources = resources

    def _write(self, content: str) -> None:
        # Written to a sibling temp file and renamed so readers never see half a file.
        directory = self._exports_path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=directory, prefix=".exports.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(temp_name, 0o644)
            os.replace(temp_name, self._exports_path)
        except OSError:
            if os.path.exists(temp_name):
                os.unlink(temp_name)
            raise

    def regenerate(self) -> str:
        """Rewrite the export file from the current resource set.

        Returns the generated content.

        Raises:
            ExportError: the resource set could not be read, the file could not
                be written, or the reload command failed
        """
        with self._lock:
            try:
                locations = sorted(
                    {Path(path) for path in (self._resources() if self._resources else [])}
                )
            except Exception as exc:
                raise ExportError(f"Could not collect export resources: {exc}") from exc

            content = format_exports(locations)
            try:
                self._write(content)
            except OSError as exc:
                raise ExportError(f"Could not write {self._exports_path}: {exc}") from exc

            self.generation += 1
            log.info(
                f"Generated new exports file with {len(locations)} entr"
                f"{'y' if len(locations) == 1 else 'ies'}"
            )
            log.debug(content)

            if self._reload_command:
                try:
                    self._runner(self._reload_command, timeout=60)
                except CommandError as exc:
                    raise ExportError(f"Export reload failed: {exc}") from exc
            return content
