"""Domain model for Pi provisioning.

Bakeforms and disks are derived from the filesystem at startup; nodes are the
only records kept in the inventory database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any


# ==============================================================================
# Bakeform Domain
# ==============================================================================


IMAGE_SUFFIX = ".img"


@dataclass
class Template:
    """A bakeform: a two-partition (boot + root) raw image file.

    ``mount_targets`` is transient state owned by the mount pipeline; index 0 is
    always the boot partition, index 1 the root partition.
    """

    name: str
    image_path: Path
    boot_artifacts_path: Path
    mount_root: Path
    mount_targets: list[Path] = field(default_factory=list)
    partitions: list[str] = field(default_factory=list)

    @classmethod
    def from_image(cls, image_path: Path, boot_root: Path, mount_root: Path) -> Template:
        """Build a Template from an image file; the name is the filename without .img."""
        name = image_path.name
        if name.endswith(IMAGE_SUFFIX):
            name = name[: -len(IMAGE_SUFFIX)]
        return cls(
            name=name,
            image_path=image_path,
            boot_artifacts_path=boot_root / name,
            mount_root=mount_root,
        )

    @property
    def is_mounted(self) -> bool:
        return len(self.mount_targets) >= 2

    @property
    def has_boot_artifacts(self) -> bool:
        return self.boot_artifacts_path.exists()

    @property
    def boot_mount(self) -> Path:
        return self.mount_targets[0]

    @property
    def root_mount(self) -> Path:
        return self.mount_targets[1]

    def mount_target(self, index: int) -> Path:
        """Mount point for partition ``index`` (e.g. /srv/mnt/raspbian-0)."""
        return self.mount_root / f"{self.name}-{index}"

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "location": str(self.image_path)}


# ==============================================================================
# Disk Domain
# ==============================================================================


DISK_IMAGE_FILENAME = "disk.img"


@dataclass(frozen=True)
class Disk:
    """A provisioned volume: one folder under the NFS root, named by its id."""

    id: str
    location: Path
    size_mib: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "location": str(self.location),
            "size": self.size_mib or 0,
        }


# ==============================================================================
# Node Domain
# ==============================================================================


class NodeStatus(IntEnum):
    """Provisioning state of a Pi. Values are the persisted representation."""

    AVAILABLE = 1
    READY = 2
    PROVISIONING = 3

    @property
    def label(self) -> str:
        return self.name.lower()


OCCUPIED_STATUSES = (NodeStatus.PROVISIONING, NodeStatus.READY)


@dataclass
class Node:
    """A network-booting Pi known to the inventory.

    ``disk_ids[0]`` is the boot/root disk once the node is baked.
    """

    id: str
    status: NodeStatus = NodeStatus.AVAILABLE
    template: str | None = None
    disk_ids: list[str] = field(default_factory=list)

    @property
    def root_disk_id(self) -> str | None:
        return self.disk_ids[0] if self.disk_ids else None

    @property
    def is_occupied(self) -> bool:
        return self.status in OCCUPIED_STATUSES

    def is_consistent(self) -> bool:
        """READY exactly when a template is set and at least one disk is attached."""
        baked = bool(self.disk_ids) and self.template is not None
        return (self.status == NodeStatus.READY) == baked

    def reset(self) -> None:
        """Return the node to the fridge."""
        self.status = NodeStatus.AVAILABLE
        self.template = None
        self.disk_ids = []

    def snapshot(self) -> Node:
        return Node(
            id=self.id,
            status=self.status,
            template=self.template,
            disk_ids=list(self.disk_ids),
        )

    def to_dict(self, disks: dict[str, Disk] | None = None) -> dict[str, Any]:
        """Serialize for the API, resolving disk ids when a disk index is given."""
        data: dict[str, Any] = {
            "id": self.id,
            "status": int(self.status),
            "state": self.status.label,
        }
        if self.disk_ids:
            if disks is None:
                data["disks"] = [{"id": disk_id} for disk_id in self.disk_ids]
            else:
                data["disks"] = [
                    disks[disk_id].to_dict() if disk_id in disks else {"id": disk_id}
                    for disk_id in self.disk_ids
                ]
        if self.template is not None:
            data["sourceBakeform"] = self.template
        return data
