"""Power control through the external ``ppi`` executable.

The executable receives ``{"piId": ..., "action": "poweron"|"poweroff"}`` on
stdin and must answer exactly ``ok`` on stdout with nothing on stderr.
"""

from __future__ import annotations

import json
import subprocess
import time
from typing import Callable, Sequence

from pi_oven.config.settings import DEFAULT_COMMAND_TIMEOUT, DEFAULT_POWER_CYCLE_DELAY
from pi_oven.logging import LoggerFactory
from pi_oven.storage.exceptions import PowerActionError


log = LoggerFactory.for_power()

POWER_ON = "poweron"
POWER_OFF = "poweroff"
SUPPORTED_ACTIONS = (POWER_ON, POWER_OFF)


class PowerController:
    def __init__(
        self,
        command: Sequence[str] = ("./ppi",),
        cycle_delay: float = DEFAULT_POWER_CYCLE_DELAY,
        timeout: float | None = DEFAULT_COMMAND_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._command = list(command)
        self._cycle_delay = cycle_delay
        self._timeout = timeout
        self._sleep = sleep

    def _do_action(self, node_id: str, action: str) -> None:
        if action not in SUPPORTED_ACTIONS:
            raise PowerActionError(node_id, action, "action not supported")

        payload = json.dumps({"piId": node_id, "action": action})
        log.debug(f"Running {' '.join(self._command)} for {node_id}: {action}")
        try:
            result = subprocess.run(
                self._command,
                input=payload,
                text=True,
                capture_output=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise PowerActionError(node_id, action, f"timed out after {self._timeout}s") from exc
        except OSError as exc:
            raise PowerActionError(node_id, action, str(exc)) from exc

        if result.returncode != 0 or result.stderr or result.stdout != "ok":
            reason = f"exit {result.returncode}: {result.stderr} {result.stdout}".strip()
            raise PowerActionError(node_id, action, reason)
        log.info(f"Pi {node_id}: {action} ok")

    def power_on(self, node_id: str) -> None:
        self._do_action(node_id, POWER_ON)

    def power_off(self, node_id: str) -> None:
        self._do_action(node_id, POWER_OFF)

    def power_cycle(self, node_id: str) -> None:
        """Power off, wait, power on. The first failure aborts the cycle."""
        self.power_off(node_id)
        self._sleep(self._cycle_delay)
        self.power_on(node_id)
