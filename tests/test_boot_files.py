"""Tests for the boot file server."""

import pytest

from pi_oven.domain import NodeStatus
from pi_oven.storage.exceptions import InvalidPathError, NotFoundError, ProvisioningError
from pi_oven.web.boot_files import BootFileServer, render_cmdline


@pytest.fixture
def boot_files(manager, disks, templates) -> BootFileServer:
    return BootFileServer(manager, disks, templates, "10.0.0.1")


class TestRenderCmdline:
    def test_jinja_placeholders(self):
        rendered = render_cmdline(
            "root=/dev/nfs nfsroot={{ NfsServer }}:{{ NfsRoot }} id={{ PiId }}\n",
            PiId="pi-01",
            NfsServer="10.0.0.1",
            NfsRoot="/srv/nfs/abc",
        )

        assert rendered == "root=/dev/nfs nfsroot=10.0.0.1:/srv/nfs/abc id=pi-01\n"

    def test_dotted_placeholders(self):
        rendered = render_cmdline(
            "nfsroot={{.NfsServer}}:{{ .NfsRoot }}", NfsServer="nfs", NfsRoot="/r", PiId="p"
        )

        assert rendered == "nfsroot=nfs:/r"

    def test_default_template(self):
        rendered = render_cmdline(None, PiId="pi-01", NfsServer="10.0.0.1", NfsRoot="/srv/nfs/abc")

        assert "nfsroot=10.0.0.1:/srv/nfs/abc" in rendered
        assert rendered.endswith("\n")

    def test_unknown_variable(self):
        with pytest.raises(ProvisioningError, match="could not be rendered"):
            render_cmdline("{{ Missing }}", PiId="p", NfsServer="n", NfsRoot="r")


class TestBootFileServer:
    def test_unknown_pi_is_registered(self, boot_files, manager):
        with pytest.raises(NotFoundError):
            boot_files.fetch("pi-05", "bootcode.bin")

        assert manager.get_node("pi-05").status == NodeStatus.AVAILABLE

    def test_available_pi_gets_nothing(self, boot_files, manager):
        manager.register_node("pi-01")

        with pytest.raises(NotFoundError):
            boot_files.fetch("pi-01", "bootcode.bin")

    def test_serves_boot_artifacts(self, boot_files, manager):
        manager.bake("pi-01", "raspbian")

        assert boot_files.fetch("pi-01", "bootcode.bin") == b"\x7fBOOT"
        assert boot_files.fetch("pi-01", "overlays/README") == b"overlays"

    def test_renders_cmdline(self, boot_files, manager, disks):
        node = manager.bake("pi-01", "raspbian")
        root = disks.get(node.root_disk_id)

        content = boot_files.fetch("pi-01", "cmdline.txt").decode()

        assert f"nfsroot=10.0.0.1:{root.location}," in content
        assert "hostname=pi-01" in content

    def test_default_cmdline_when_bakeform_has_none(self, boot_files, manager, oven_dirs):
        manager.bake("pi-01", "raspbian")
        (oven_dirs.boot_root / "raspbian" / "cmdline.txt").unlink()

        content = boot_files.fetch("pi-01", "cmdline.txt").decode()

        assert "root=/dev/nfs nfsroot=10.0.0.1:" in content

    def test_missing_file(self, boot_files, manager):
        manager.bake("pi-01", "raspbian")

        with pytest.raises(NotFoundError, match="File"):
            boot_files.fetch("pi-01", "kernel9.img")

    def test_escaping_path(self, boot_files, manager):
        manager.bake("pi-01", "raspbian")

        with pytest.raises(InvalidPathError):
            boot_files.fetch("pi-01", "../raspbian.img")
