"""Custom exceptions for provisioning operations.

Every failure the core can report is a ``ProvisioningError``. The HTTP layer keys
status codes off the subclass, so callers can tell "retry later" apart from
"wrong request".

Exception Hierarchy:
    ProvisioningError (base)
        ├── TemplateError
        │   ├── MapError
        │   ├── MountError
        │   ├── UnmountError
        │   └── CopyError
        ├── ValidationError
        │   ├── InvalidSizeError
        │   └── InvalidPathError
        ├── NotFoundError
        ├── InvalidStateError
        ├── ProtectedResourceError
        ├── PowerActionError
        ├── ExportError
        ├── PersistenceError
        └── CommandError

Usage:
    from pi_oven.storage.exceptions import InvalidSizeError

    if size_mib <= 0:
        raise InvalidSizeError(size_mib)
"""

from __future__ import annotations

from typing import Sequence


class ProvisioningError(Exception):
    """Base exception for all provisioning operations."""


class CommandError(ProvisioningError):
    """An external command exited non-zero or timed out."""

    def __init__(
        self,
        command: Sequence[str],
        message: str,
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ):
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"Command failed ({' '.join(self.command)}): {message}")


class TemplateError(ProvisioningError):
    """Base exception for bakeform image handling."""


class MapError(TemplateError):
    """Partition mapping failed or produced fewer than two partitions."""

    def __init__(self, image_path: str, reason: str):
        self.image_path = image_path
        self.reason = reason
        super().__init__(f"Image {image_path} could not be mapped: {reason}")


class MountError(TemplateError):
    """A partition could not be mounted with any supported filesystem type."""

    def __init__(self, device: str, mountpoint: str, reason: str = ""):
        self.device = device
        self.mountpoint = mountpoint
        self.reason = reason
        msg = f"Failed to mount {device} on {mountpoint}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class UnmountError(TemplateError):
    """A recorded mount point (or the loop mapping) could not be released."""

    def __init__(self, target: str, mountpoints: list[str], reason: str = ""):
        self.target = target
        self.mountpoints = list(mountpoints)
        self.reason = reason
        mounts_str = ", ".join(self.mountpoints) or "none"
        msg = f"Failed to unmount {target}. Active mountpoints: {mounts_str}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class CopyError(TemplateError):
    """Bulk copy between two directory trees failed."""

    def __init__(self, source: str, destination: str, reason: str):
        self.source = source
        self.destination = destination
        self.reason = reason
        super().__init__(f"Copy {source} -> {destination} failed: {reason}")


class ValidationError(ProvisioningError):
    """Base exception for rejected input."""


class InvalidSizeError(ValidationError):
    """Requested disk size is not a positive number of MiB."""

    def __init__(self, size_mib):
        self.size_mib = size_mib
        super().__init__(f"Disk size should be larger than 0, got {size_mib}")


class InvalidPathError(ValidationError):
    """A relative path escapes the folder it must stay in."""

    def __init__(self, path: str, reason: str = "path escapes its root folder"):
        self.path = path
        super().__init__(f"Invalid path {path!r}: {reason}")


class NotFoundError(ProvisioningError):
    """Unknown node, disk, bakeform or file."""

    def __init__(self, kind: str, identifier: str, message: str | None = None):
        self.kind = kind
        self.identifier = identifier
        super().__init__(message or f"{kind} {identifier} not found")


class InvalidStateError(ProvisioningError):
    """Operation attempted against a resource in the wrong state."""


class ProtectedResourceError(ProvisioningError):
    """Attempt to detach the boot disk of a node."""

    def __init__(self, node_id: str, disk_id: str):
        self.node_id = node_id
        self.disk_id = disk_id
        super().__init__(f"Cannot detach boot disk {disk_id} from pi {node_id}")


class PowerActionError(ProvisioningError):
    """The power executable failed or returned unexpected output."""

    def __init__(self, node_id: str, action: str, reason: str):
        self.node_id = node_id
        self.action = action
        self.reason = reason
        super().__init__(f"Power action {action} failed for pi {node_id}: {reason}")


class ExportError(ProvisioningError):
    """The NFS export list could not be rewritten or reloaded."""


class PersistenceError(ProvisioningError):
    """Node inventory read or write failed."""
