"""Bakeform inventory: the ``*.img`` files of the image folder."""

from __future__ import annotations

import os
import re
import shutil
import threading
from pathlib import Path
from typing import BinaryIO, Iterable

from pi_oven.domain import Template
from pi_oven.domain.models import IMAGE_SUFFIX
from pi_oven.logging import LoggerFactory
from pi_oven.storage.exceptions import (
    InvalidPathError,
    InvalidStateError,
    NotFoundError,
)
from pi_oven.storage.mount import TemplateMountPipeline


log = LoggerFactory.for_templates()

TEMPLATE_NAME_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")


def validate_template_name(name: str) -> str:
    if not TEMPLATE_NAME_PATTERN.fullmatch(name or "") or ".." in name:
        raise InvalidPathError(name, "bakeform names may only contain letters, digits, '.', '_' and '-'")
    return name


class TemplateInventory:
    """Scans the image folder and keeps one Template per image file.

    Loading an image whose boot artifacts are not cached yet extracts them, so
    the boot file server can serve them without mounting anything.
    """

    def __init__(
        self,
        image_folder: Path,
        boot_root: Path,
        mount_root: Path,
        pipeline: TemplateMountPipeline,
    ):
        self._image_folder = Path(image_folder)
        self._boot_root = Path(boot_root)
        self._mount_root = Path(mount_root)
        self._pipeline = pipeline
        self._lock = threading.RLock()
        self._templates: dict[str, Template] = {}

    @property
    def image_folder(self) -> Path:
        return self._image_folder

    def load(self) -> dict[str, Template]:
        """(Re)scan the image folder.

        Template objects that are already known are kept, so their transient mount
        state survives a reload.
        """
        with self._lock:
            found: dict[str, Template] = {}
            for image in sorted(self._image_folder.glob(f"*{IMAGE_SUFFIX}")):
                template = Template.from_image(image, self._boot_root, self._mount_root)
                template = self._templates.get(template.name, template)
                log.info(f"Loading image {template.name}")
                if not template.has_boot_artifacts:
                    self._pipeline.extract_boot_artifacts(template)
                found[template.name] = template
            self._templates = found
            return dict(found)

    def list(self) -> dict[str, Template]:
        with self._lock:
            return dict(self._templates)

    def find(self, name: str) -> Template | None:
        with self._lock:
            return self._templates.get(name)

    def get(self, name: str) -> Template:
        template = self.find(name)
        if template is None:
            raise NotFoundError("Bakeform", name)
        return template

    def upload(self, name: str, chunks: Iterable[bytes]) -> Template:
        """Store a new image named ``name`` and load it.

        Raises:
            InvalidStateError: an image with that name already exists
        """
        validate_template_name(name)
        image = self._image_folder / f"{name}{IMAGE_SUFFIX}"
        log.info(f"Receiving upload: {image}")
        try:
            handle: BinaryIO = open(image, "xb")
        except FileExistsError as exc:
            raise InvalidStateError(f"Bakeform {name} already exists") from exc
        try:
            with handle:
                for chunk in chunks:
                    handle.write(chunk)
        except Exception:
            image.unlink()
            raise

        try:
            self.load()
        except Exception:
            # An image that cannot be mapped is useless; keep the folder loadable.
            image.unlink()
            raise
        return self.get(name)

    def delete(self, name: str) -> None:
        """Unmount, drop the boot artifact cache and remove the image file."""
        with self._lock:
            template = self.get(name)
            self._pipeline.unmount(template)
            if template.boot_artifacts_path.exists():
                try:
                    shutil.rmtree(template.boot_artifacts_path)
                except OSError as exc:
                    log.warning(
                        f"Unable to remove boot artifacts of {name}, deleting image anyway: {exc}"
                    )
            os.remove(template.image_path)
            self._templates.pop(name, None)
            log.info(f"Deleted bakeform {name}")

    def unmount_all(self) -> None:
        for template in self.list().values():
            if template.mount_targets:
                self._pipeline.unmount(template)
