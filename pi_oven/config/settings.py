"""Settings storage for controller configuration.

Values come from three layers, later layers winning:

1. ``DEFAULT_SETTINGS``
2. the JSON settings file (``PI_OVEN_SETTINGS_PATH``)
3. environment variables listed in ``ENV_OVERRIDES``
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "PI_OVEN_SETTINGS_PATH",
        Path.home() / ".config" / "pi-oven" / "settings.json",
    )
)

DEFAULT_HTTP_PORT = 8080
DEFAULT_SETTLE_TIMEOUT = 5.0
DEFAULT_SETTLE_POLL_INTERVAL = 0.1
DEFAULT_POWER_CYCLE_DELAY = 1.0
DEFAULT_COMMAND_TIMEOUT = 60.0
DEFAULT_COPY_TIMEOUT = 1800.0

DEFAULT_SETTINGS: dict[str, Any] = {
    "nfs_server": None,
    "nfs_root": None,
    "boot_root": "/srv/pi-oven/boot",
    "image_folder": "/srv/pi-oven/bakeforms",
    "image_mount_root": "/srv/pi-oven/mnt",
    "inventory_db": "/srv/pi-oven/piInventory.db",
    "exports_file": "/etc/exports",
    "exports_reload_command": ["exportfs", "-ra"],
    "ppi_command": ["./ppi"],
    "http_host": "0.0.0.0",
    "http_port": DEFAULT_HTTP_PORT,
    "settle_timeout_seconds": DEFAULT_SETTLE_TIMEOUT,
    "settle_poll_interval_seconds": DEFAULT_SETTLE_POLL_INTERVAL,
    "power_cycle_delay_seconds": DEFAULT_POWER_CYCLE_DELAY,
    "command_timeout_seconds": DEFAULT_COMMAND_TIMEOUT,
    "copy_timeout_seconds": DEFAULT_COPY_TIMEOUT,
    "bake_workers": 4,
}

# environment variable -> (setting key, converter)
ENV_OVERRIDES: dict[str, tuple[str, Any]] = {
    "NFS_SERVER": ("nfs_server", str),
    "NFS_ROOT": ("nfs_root", str),
    "BOOT_ROOT": ("boot_root", str),
    "IMAGE_FOLDER": ("image_folder", str),
    "IMAGE_MOUNT_ROOT": ("image_mount_root", str),
    "INVENTORY_DB": ("inventory_db", str),
    "EXPORTS_FILE": ("exports_file", str),
    "PPI_COMMAND": ("ppi_command", lambda value: value.split()),
    "HTTP_PORT": ("http_port", int),
}

REQUIRED_SETTINGS = ("nfs_server", "nfs_root")


class ConfigurationError(Exception):
    """Raised when a required setting is missing."""


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def _apply_env_overrides(environ=None) -> None:
    environ = os.environ if environ is None else environ
    for variable, (key, convert) in ENV_OVERRIDES.items():
        raw = environ.get(variable)
        if raw:
            settings_store.values[key] = convert(raw)


def load_settings(environ=None) -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if SETTINGS_PATH.exists():
        try:
            data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            data = None
        if isinstance(data, dict):
            settings_store.values.update(data)
    _apply_env_overrides(environ)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_path(key: str) -> Path:
    value = get_setting(key)
    if value is None:
        raise ConfigurationError(f"Setting {key} is not configured")
    return Path(value)


def get_float(key: str, default: float = 0.0) -> float:
    value = get_setting(key, default)
    return default if value is None else float(value)


def validate_settings() -> None:
    missing = [key for key in REQUIRED_SETTINGS if not get_setting(key)]
    if missing:
        names = ", ".join(key.upper() for key in missing)
        raise ConfigurationError(f"Please set {names} (env vars or settings file)")


def init_folders(*keys: str) -> list[Path]:
    """Create the folders named by the given setting keys."""
    keys = keys or ("nfs_root", "boot_root", "image_folder", "image_mount_root")
    created = []
    for key in keys:
        folder = get_path(key)
        folder.mkdir(parents=True, exist_ok=True)
        created.append(folder)
    return created


load_settings()
