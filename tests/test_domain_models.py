"""Tests for domain models."""

from pathlib import Path

import pytest

from pi_oven.domain import Disk, Node, NodeStatus, Template


class TestTemplate:
    def test_from_image(self):
        template = Template.from_image(
            Path("/srv/bakeforms/raspbian.img"), Path("/srv/boot"), Path("/srv/mnt")
        )

        assert template.name == "raspbian"
        assert template.boot_artifacts_path == Path("/srv/boot/raspbian")
        assert template.mount_target(1) == Path("/srv/mnt/raspbian-1")
        assert not template.is_mounted

    def test_mount_properties(self):
        template = Template.from_image(Path("/i/x.img"), Path("/b"), Path("/m"))
        template.mount_targets = [Path("/m/x-0"), Path("/m/x-1")]

        assert template.is_mounted
        assert template.boot_mount == Path("/m/x-0")
        assert template.root_mount == Path("/m/x-1")

    def test_to_dict(self):
        template = Template.from_image(Path("/i/x.img"), Path("/b"), Path("/m"))
        assert template.to_dict() == {"name": "x", "location": "/i/x.img"}


class TestDisk:
    def test_to_dict(self):
        disk = Disk(id="abc", location=Path("/nfs/abc"), size_mib=64)
        assert disk.to_dict() == {"id": "abc", "location": "/nfs/abc", "size": 64}

    def test_to_dict_unknown_size(self):
        assert Disk(id="abc", location=Path("/nfs/abc")).to_dict()["size"] == 0


class TestNode:
    def test_defaults(self):
        node = Node(id="pi-01")

        assert node.status == NodeStatus.AVAILABLE
        assert node.root_disk_id is None
        assert not node.is_occupied
        assert node.is_consistent()

    @pytest.mark.parametrize(
        "status, template, disk_ids, consistent",
        [
            (NodeStatus.READY, "raspbian", ["d"], True),
            (NodeStatus.READY, None, ["d"], False),
            (NodeStatus.READY, "raspbian", [], False),
            (NodeStatus.AVAILABLE, "raspbian", ["d"], False),
            (NodeStatus.PROVISIONING, None, [], True),
            (NodeStatus.PROVISIONING, "raspbian", ["d"], False),
        ],
    )
    def test_ready_iff_baked(self, status, template, disk_ids, consistent):
        node = Node(id="pi-01", status=status, template=template, disk_ids=disk_ids)
        assert node.is_consistent() is consistent

    def test_reset(self):
        node = Node(id="pi-01", status=NodeStatus.READY, template="raspbian", disk_ids=["a", "b"])

        node.reset()

        assert node == Node(id="pi-01")

    def test_snapshot_is_independent(self):
        node = Node(id="pi-01", status=NodeStatus.READY, template="raspbian", disk_ids=["a"])
        snapshot = node.snapshot()

        node.disk_ids.append("b")

        assert snapshot.disk_ids == ["a"]

    def test_status_values(self):
        assert [int(s) for s in (NodeStatus.AVAILABLE, NodeStatus.READY, NodeStatus.PROVISIONING)] == [1, 2, 3]
        assert NodeStatus.PROVISIONING.label == "provisioning"

    def test_to_dict_resolves_disks(self):
        node = Node(id="pi-01", status=NodeStatus.READY, template="raspbian", disk_ids=["a", "gone"])
        index = {"a": Disk(id="a", location=Path("/nfs/a"), size_mib=8)}

        data = node.to_dict(index)

        assert data == {
            "id": "pi-01",
            "status": 2,
            "state": "ready",
            "disks": [{"id": "a", "location": "/nfs/a", "size": 8}, {"id": "gone"}],
            "sourceBakeform": "raspbian",
        }

    def test_to_dict_available(self):
        assert Node(id="pi-01").to_dict() == {"id": "pi-01", "status": 1, "state": "available"}
