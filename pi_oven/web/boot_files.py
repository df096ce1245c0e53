"""Boot file server for network-booting Pis.

A Pi asks for its boot files by id. Unknown Pis are put in the fridge and get
nothing; baked Pis get the boot artifacts of their bakeform, with
``cmdline.txt`` rendered so the kernel mounts the Pi's own root disk over NFS.
"""

from __future__ import annotations

import re
from pathlib import Path

from jinja2 import Environment, PackageLoader, StrictUndefined
from jinja2 import TemplateError as JinjaTemplateError

from pi_oven.domain import NodeStatus
from pi_oven.logging import LoggerFactory
from pi_oven.services.nodes import NodeLifecycleManager
from pi_oven.storage.disks import DiskRegistry, resolve_inside
from pi_oven.storage.exceptions import NotFoundError, ProvisioningError
from pi_oven.storage.templates import TemplateInventory


log = LoggerFactory.for_boot()

CMDLINE_FILENAME = "cmdline.txt"
DEFAULT_CMDLINE_TEMPLATE = "cmdline.txt.j2"

# Bakeforms prepared for the Go tooling use {{.NfsServer}} placeholders.
_DOTTED_PLACEHOLDER = re.compile(r"\{\{\s*\.(\w+)\s*\}\}")

_environment = Environment(
    loader=PackageLoader("pi_oven.web", "templates"),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    autoescape=False,
)


def render_cmdline(source: str | None, **variables: str) -> str:
    """Render a cmdline.txt template; ``None`` renders the packaged default."""
    try:
        if source is None:
            template = _environment.get_template(DEFAULT_CMDLINE_TEMPLATE)
        else:
            template = _environment.from_string(_DOTTED_PLACEHOLDER.sub(r"{{ \1 }}", source))
        return template.render(**variables)
    except JinjaTemplateError as exc:
        raise ProvisioningError(f"{CMDLINE_FILENAME} could not be rendered: {exc}") from exc


class BootFileServer:
    def __init__(
        self,
        manager: NodeLifecycleManager,
        disks: DiskRegistry,
        templates: TemplateInventory,
        nfs_server: str,
    ):
        self._manager = manager
        self._disks = disks
        self._templates = templates
        self._nfs_server = nfs_server

    def fetch(self, node_id: str, filename: str) -> bytes:
        """Return the content of boot file ``filename`` for ``node_id``.

        Raises:
            NotFoundError: the Pi is not baked, or the file does not exist
            InvalidPathError: ``filename`` escapes the boot artifacts folder
        """
        node = self._manager.find_node(node_id)
        if node is None:
            log.info(f"Boot request from unknown pi {node_id}, putting it in the fridge")
            self._manager.register_node(node_id)
            raise NotFoundError("Pi", node_id, f"Pi {node_id} is not baked")
        if node.status == NodeStatus.AVAILABLE or node.template is None:
            raise NotFoundError("Pi", node_id, f"Pi {node_id} is not baked")

        template = self._templates.get(node.template)
        boot_folder = template.boot_artifacts_path
        path = resolve_inside(boot_folder, filename)
        log.debug(f"{filename} requested by {node_id}")

        if path.name == CMDLINE_FILENAME and path.parent == boot_folder.resolve():
            return self._cmdline(node_id, node.root_disk_id, path).encode("utf-8")
        if not path.is_file():
            raise NotFoundError("File", filename)
        return path.read_bytes()

    def _cmdline(self, node_id: str, root_disk_id: str | None, path: Path) -> str:
        if root_disk_id is None:
            raise NotFoundError("Pi", node_id, f"Pi {node_id} has no root disk")
        root = self._disks.get(root_disk_id)
        source = path.read_text(encoding="utf-8") if path.is_file() else None
        log.info(f"{CMDLINE_FILENAME} requested for {node_id}")
        return render_cmdline(
            source,
            PiId=node_id,
            NfsServer=self._nfs_server,
            NfsRoot=str(root.location),
        )
