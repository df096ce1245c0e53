"""Domain models for Pi provisioning."""

from __future__ import annotations

from .models import (
    DISK_IMAGE_FILENAME,
    OCCUPIED_STATUSES,
    Disk,
    Node,
    NodeStatus,
    Template,
)


__all__ = [
    "DISK_IMAGE_FILENAME",
    "OCCUPIED_STATUSES",
    "Disk",
    "Node",
    "NodeStatus",
    "Template",
]
