"""External command execution."""

from __future__ import annotations

import subprocess
from typing import Sequence

from pi_oven.logging import LoggerFactory
from pi_oven.storage.exceptions import CommandError


log = LoggerFactory.for_system()


def run_checked_command(
    command: Sequence[str],
    input_text: str | None = None,
    timeout: float | None = None,
) -> str:
    """Run a command and raise CommandError if it fails or times out.

    Returns the command's stdout.
    """
    command = [str(part) for part in command]
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            input=input_text,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise CommandError(command, f"timed out after {timeout}s") from exc
    except OSError as exc:
        raise CommandError(command, str(exc)) from exc
    if result.returncode != 0:
        stderr = result.stderr.strip()
        stdout = result.stdout.strip()
        message = stderr or stdout or "Command failed"
        raise CommandError(
            command,
            message,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )
    return result.stdout


__all__ = ["run_checked_command"]
