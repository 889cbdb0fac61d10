import json

import pytest

from luksmedia import safety
from luksmedia.errors import DeviceBusyError, DeviceMountedError, LiveDiskError, NotBlockDeviceError, NotRootError


def _tree(children):
    return json.dumps({"blockdevices": [{"name": "sdb", "path": "/dev/sdb", "type": "disk", "children": children}]})


@pytest.fixture
def block_device(monkeypatch):
    monkeypatch.setattr(safety.devices, "is_block_device", lambda path: True)


def test_guard_not_live_disk_detects_overlap(recorder):
    recorder.on("findmnt", "-no", "SOURCE", "/", out="/dev/nvme0n1p2\n")
    recorder.on("lsblk", "-no", "PKNAME", "/dev/nvme0n1p2", out="nvme0n1\n")

    ok, reason = safety.guard_not_live_disk("/dev/nvme0n1")
    assert not ok
    assert "live disk" in reason

    ok, reason = safety.guard_not_live_disk("/dev/sdb")
    assert ok and reason == ""


def test_live_medium_is_recognised(recorder):
    recorder.on("findmnt", "-no", "SOURCE", "/cdrom", out="/dev/sdb1\n")
    recorder.on("lsblk", "-no", "PKNAME", "/dev/sdb1", out="sdb\n")
    ok, _ = safety.guard_not_live_disk("/dev/sdb")
    assert not ok


def test_preconditions_pass_for_free_disk(recorder, block_device):
    recorder.on("lsblk", "-J", out=_tree([{"name": "sdb1", "path": "/dev/sdb1", "type": "part"}]))
    snapshot = safety.check_preconditions("/dev/sdb")
    assert snapshot == {"device": "/dev/sdb", "mounted": [], "mappings": []}


def test_mounted_partition_is_rejected(recorder, block_device):
    recorder.on("lsblk", "-J", out=_tree([
        {"name": "sdb1", "path": "/dev/sdb1", "type": "part", "mountpoint": "/media/DATA"},
    ]))
    with pytest.raises(DeviceMountedError) as excinfo:
        safety.check_preconditions("/dev/sdb")
    assert excinfo.value.mountpoints == ["/dev/sdb1 on /media/DATA"]
    assert excinfo.value.result == "FAIL_DEVICE_MOUNTED"


def test_open_container_means_busy(recorder, block_device):
    recorder.on("lsblk", "-J", out=_tree([
        {"name": "sdb2", "path": "/dev/sdb2", "type": "part",
         "children": [{"name": "LUKS_BOOT", "path": "/dev/mapper/LUKS_BOOT", "type": "crypt"}]},
    ]))
    with pytest.raises(DeviceBusyError):
        safety.check_preconditions("/dev/sdb")


def test_not_a_block_device(recorder, tmp_path):
    with pytest.raises(NotBlockDeviceError):
        safety.check_preconditions(str(tmp_path))
    assert recorder.calls == []


def test_live_disk_is_refused_before_probing(recorder, block_device):
    recorder.on("findmnt", "-no", "SOURCE", "/", out="/dev/sdb2\n")
    recorder.on("lsblk", "-no", "PKNAME", "/dev/sdb2", out="sdb\n")
    with pytest.raises(LiveDiskError):
        safety.check_preconditions("/dev/sdb")
    assert not any(c[:2] == ["lsblk", "-J"] for c in recorder.calls)


def test_require_root(monkeypatch):
    monkeypatch.setattr(safety.os, "geteuid", lambda: 1000)
    with pytest.raises(NotRootError):
        safety.require_root()
    monkeypatch.setattr(safety.os, "geteuid", lambda: 0)
    safety.require_root()
