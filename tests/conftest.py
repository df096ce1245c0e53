"""
Pytest configuration and shared fixtures for pi-oven tests.

External commands (kpartx, mount, umount, rsync, exportfs, ppi) are never run:
components get a FakeCommandRunner, a FakeCopier and a FakePowerController
instead, so the whole provisioning flow runs inside tmp_path without root.
"""

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import pytest

from pi_oven.persistence import NodeStore
from pi_oven.services.nodes import NodeLifecycleManager
from pi_oven.storage.disks import DiskRegistry
from pi_oven.storage.exceptions import PowerActionError
from pi_oven.storage.exports import ExportCoordinator
from pi_oven.storage.mount import TemplateMountPipeline
from pi_oven.storage.templates import TemplateInventory


CMDLINE_TEMPLATE = (
    "console=serial0,115200 root=/dev/nfs "
    "nfsroot={{ NfsServer }}:{{ NfsRoot }},vers=3 rw ip=dhcp hostname={{ PiId }}\n"
)


# ==============================================================================
# Fakes for external collaborators
# ==============================================================================


Failure = Union[BaseException, Callable[[List[str]], str]]


class FakeCommandRunner:
    """Stands in for run_checked_command.

    ``kpartx -av`` reports ``partitions`` loop devices and creates their device
    nodes; ``mount`` copies the matching entry of ``partition_sources`` into the
    mount point, so copies out of a mounted bakeform see real files.

    ``failures`` maps a command key ("kpartx -av", "kpartx -d", "mount",
    "umount", "exportfs", ...) to an exception to raise or a callable that gets
    the command and returns its output.
    """

    def __init__(self, device_dir: Path, partition_sources: Optional[List[Path]] = None):
        self.device_dir = device_dir
        self.partition_sources = partition_sources or []
        self.partitions = 2
        self.create_device_nodes = True
        self.calls: List[List[str]] = []
        self.failures: Dict[str, Failure] = {}

    @staticmethod
    def _key(command: List[str]) -> str:
        if command[0] == "kpartx":
            return " ".join(command[:2])
        return command[0]

    def __call__(self, command, input_text=None, timeout=None) -> str:
        command = [str(part) for part in command]
        self.calls.append(command)

        failure = self.failures.get(self._key(command))
        if isinstance(failure, BaseException):
            raise failure
        if failure is not None:
            return failure(command)

        if command[:2] == ["kpartx", "-av"]:
            names = [f"loop7p{index + 1}" for index in range(self.partitions)]
            if self.create_device_nodes:
                self.device_dir.mkdir(parents=True, exist_ok=True)
                for name in names:
                    (self.device_dir / name).touch()
            return "".join(
                f"add map {name} (253:{index}): 0 524288 linear 7:7 8192\n"
                for index, name in enumerate(names)
            )
        if command[0] == "mount":
            device, target = Path(command[3]), Path(command[4])
            index = int(device.name.rsplit("p", 1)[1]) - 1
            if index < len(self.partition_sources):
                shutil.copytree(self.partition_sources[index], target, dirs_exist_ok=True)
        return ""

    def commands(self, program: str) -> List[List[str]]:
        return [call for call in self.calls if call[0] == program]


class FakeCopier:
    """BulkCopier replacement backed by shutil.copytree."""

    def __init__(self):
        self.copies: List[tuple] = []
        self.error: Optional[BaseException] = None

    def copy_tree(self, source: Path, destination: Path) -> Path:
        self.copies.append((Path(source), Path(destination)))
        if self.error is not None:
            # Leave a partial copy behind, like an interrupted rsync would.
            Path(destination).mkdir(parents=True, exist_ok=True)
            (Path(destination) / "partial").write_text("half")
            raise self.error
        shutil.copytree(source, destination, dirs_exist_ok=True)
        return Path(destination)


class FakePowerController:
    """Records power actions; actions listed in ``fail_on`` raise PowerActionError."""

    def __init__(self):
        self.actions: List[tuple] = []
        self.fail_on: set = set()

    def _do_action(self, node_id: str, action: str) -> None:
        self.actions.append((node_id, action))
        if action in self.fail_on:
            raise PowerActionError(node_id, action, "exit 1: no answer")

    def power_on(self, node_id: str) -> None:
        self._do_action(node_id, "poweron")

    def power_off(self, node_id: str) -> None:
        self._do_action(node_id, "poweroff")

    def power_cycle(self, node_id: str) -> None:
        self.power_off(node_id)
        self.power_on(node_id)


# ==============================================================================
# Folder layout
# ==============================================================================


@dataclass
class OvenDirs:
    root: Path
    nfs_root: Path
    boot_root: Path
    image_folder: Path
    mount_root: Path
    device_dir: Path
    exports_file: Path
    inventory_db: Path
    boot_partition: Path
    root_partition: Path


@pytest.fixture
def oven_dirs(tmp_path) -> OvenDirs:
    """
    Fixture providing the controller folders plus the content of a bakeform.

    ``boot_partition`` and ``root_partition`` are what the fake mount puts in
    the two mount points.
    """
    dirs = OvenDirs(
        root=tmp_path,
        nfs_root=tmp_path / "nfs",
        boot_root=tmp_path / "boot",
        image_folder=tmp_path / "bakeforms",
        mount_root=tmp_path / "mnt",
        device_dir=tmp_path / "dev" / "mapper",
        exports_file=tmp_path / "etc" / "exports",
        inventory_db=tmp_path / "piInventory.db",
        boot_partition=tmp_path / "partitions" / "boot",
        root_partition=tmp_path / "partitions" / "root",
    )
    for folder in (dirs.nfs_root, dirs.boot_root, dirs.image_folder, dirs.mount_root):
        folder.mkdir(parents=True)

    dirs.boot_partition.mkdir(parents=True)
    (dirs.boot_partition / "bootcode.bin").write_bytes(b"\x7fBOOT")
    (dirs.boot_partition / "cmdline.txt").write_text(CMDLINE_TEMPLATE)
    (dirs.boot_partition / "overlays").mkdir()
    (dirs.boot_partition / "overlays" / "README").write_text("overlays")

    dirs.root_partition.mkdir(parents=True)
    (dirs.root_partition / "etc").mkdir()
    (dirs.root_partition / "etc" / "hostname").write_text("raspberrypi\n")
    (dirs.root_partition / "home").mkdir()
    return dirs


@pytest.fixture
def raspbian_image(oven_dirs) -> Path:
    """Fixture providing a bakeform image file named raspbian."""
    image = oven_dirs.image_folder / "raspbian.img"
    image.write_bytes(b"\0" * 1024)
    return image


# ==============================================================================
# Component Fixtures
# ==============================================================================


@pytest.fixture
def fake_runner(oven_dirs) -> FakeCommandRunner:
    return FakeCommandRunner(
        oven_dirs.device_dir,
        partition_sources=[oven_dirs.boot_partition, oven_dirs.root_partition],
    )


@pytest.fixture
def fake_copier() -> FakeCopier:
    return FakeCopier()


@pytest.fixture
def fake_power() -> FakePowerController:
    return FakePowerController()


@pytest.fixture
def pipeline(oven_dirs, fake_runner, fake_copier) -> TemplateMountPipeline:
    return TemplateMountPipeline(
        fake_copier,
        runner=fake_runner,
        device_dir=oven_dirs.device_dir,
        settle_timeout=0.2,
        poll_interval=0.01,
        command_timeout=5,
    )


@pytest.fixture
def exports(oven_dirs, fake_runner) -> ExportCoordinator:
    return ExportCoordinator(oven_dirs.exports_file, runner=fake_runner)


@pytest.fixture
def disks(oven_dirs, pipeline, exports) -> DiskRegistry:
    return DiskRegistry(oven_dirs.nfs_root, pipeline, exports)


@pytest.fixture
def templates(oven_dirs, pipeline, raspbian_image) -> TemplateInventory:
    inventory = TemplateInventory(
        oven_dirs.image_folder, oven_dirs.boot_root, oven_dirs.mount_root, pipeline
    )
    inventory.load()
    return inventory


@pytest.fixture
def store(oven_dirs):
    node_store = NodeStore.from_path(oven_dirs.inventory_db)
    yield node_store
    node_store.close()


@pytest.fixture
def manager(store, disks, templates, exports, fake_power):
    node_manager = NodeLifecycleManager(
        store, disks, templates, exports, fake_power, max_workers=2
    )
    yield node_manager
    node_manager.shutdown(wait=True)


# ==============================================================================
# Subprocess Mock Fixtures
# ==============================================================================


@pytest.fixture
def mock_subprocess_run(mocker):
    """
    Fixture providing a mock for subprocess.run.

    Returns:
        Mock object for subprocess.run
    """
    return mocker.patch("subprocess.run")
