"""Host health metrics for the provisioning server.

Reports CPU and memory load plus free space on the folders that fill up:
the NFS root (disks) and the image folder (bakeforms).
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import psutil


@dataclass
class StorageUsage:
    """Usage of the filesystem holding one folder."""

    path: str
    percent: float
    used_gb: float
    free_gb: float
    total_gb: float


@dataclass
class SystemHealth:
    cpu_percent: float
    memory_percent: float
    memory_used_mb: int
    memory_total_mb: int
    storage: Dict[str, Optional[StorageUsage]]


def get_storage_usage(path: Path) -> Optional[StorageUsage]:
    """Usage of the filesystem holding ``path``, or None if it cannot be read."""
    try:
        usage = psutil.disk_usage(str(path))
    except OSError:
        return None
    return StorageUsage(
        path=str(path),
        percent=usage.percent,
        used_gb=usage.used / (1024**3),
        free_gb=usage.free / (1024**3),
        total_gb=usage.total / (1024**3),
    )


def get_system_health(folders: Dict[str, Path]) -> SystemHealth:
    """Collect current metrics; ``folders`` maps a label to a folder to check."""
    memory = psutil.virtual_memory()
    return SystemHealth(
        cpu_percent=psutil.cpu_percent(interval=None),
        memory_percent=memory.percent,
        memory_used_mb=memory.used // (1024 * 1024),
        memory_total_mb=memory.total // (1024 * 1024),
        storage={label: get_storage_usage(path) for label, path in folders.items()},
    )


def get_usage_status(percent: float) -> str:
    """Get status for usage percentage: 'ok', 'warning' or 'critical'."""
    if percent < 70:
        return "ok"
    elif percent < 85:
        return "warning"
    else:
        return "critical"
