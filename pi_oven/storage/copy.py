"""Bulk directory copies for boot artifacts and root filesystems."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Callable, Sequence

from pi_oven.logging import LoggerFactory
from pi_oven.storage.command_runners import run_checked_command
from pi_oven.storage.exceptions import CommandError, CopyError


log = LoggerFactory.for_templates()

CommandRunner = Callable[..., str]


class BulkCopier:
    """Recursive, archive-preserving copy using rsync."""

    def __init__(
        self,
        runner: CommandRunner = run_checked_command,
        timeout: float | None = None,
        rsync_args: Sequence[str] = ("rsync", "-xa"),
    ):
        self._runner = runner
        self._timeout = timeout
        self._rsync_args = list(rsync_args)

    def copy_tree(self, source: Path, destination: Path) -> Path:
        """Copy the contents of ``source`` into ``destination``.

        The trailing slash on the source makes rsync copy the directory content
        rather than the directory itself.
        """
        command = [*self._rsync_args, f"{str(source).rstrip('/')}/", str(destination)]
        log.debug(f"Copying {source} -> {destination}")
        try:
            self._runner(command, timeout=self._timeout)
        except CommandError as exc:
            raise CopyError(str(source), str(destination), str(exc)) from exc
        return destination


def flatten_folder(parent: Path, child_name: str) -> bool:
    """Move every entry of ``parent/child_name`` up into ``parent``.

    Returns False when the child folder does not exist. Existing entries in the
    parent with the same name are replaced.
    """
    child = parent / child_name
    if not child.is_dir():
        return False
    # Renamed first so an entry called ``child_name`` can take the folder's place.
    staging = parent / f".{child_name}.flatten"
    child.rename(staging)
    child = staging
    for entry in sorted(child.iterdir()):
        target = parent / entry.name
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        elif target.exists() or target.is_symlink():
            target.unlink()
        shutil.move(str(entry), str(target))
    child.rmdir()
    log.debug(f"Flattened {parent / child_name} into {parent}")
    return True
