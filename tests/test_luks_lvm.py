import pytest

from luksmedia import luks_lvm
from luksmedia.errors import (
    AlreadyFormattedError,
    AlreadyOpenError,
    AuthenticationError,
    ContainerNotOpenError,
    ExternalToolFailure,
    LuksMediaError,
    VolumeCapacityError,
)
from luksmedia.ledger import ResourceLedger
from luksmedia.model import ContainerState

GIB = 1024 ** 3


@pytest.fixture
def no_holders(monkeypatch):
    monkeypatch.setattr(luks_lvm.devices, "holders", lambda dev: [])


def _formatted(container):
    container.formatted = True
    return container


def test_containers_use_expected_luks_versions():
    boot = luks_lvm.boot_container("/dev/sdb2")
    root = luks_lvm.root_container("/dev/nvme0n1p3")
    assert boot.luks_type == "luks1"
    assert root.luks_type == "luks2"
    assert boot.mapper_path == "/dev/mapper/LUKS_BOOT"
    assert root.mapped_name == "nvme0n1p3_crypt"


def test_format_feeds_passphrase_on_stdin(recorder):
    recorder.on("cryptsetup", "isLuks", rc=1)
    container = luks_lvm.root_container("/dev/sdb3")

    luks_lvm.format_container(container, "correct horse")

    fmt = recorder.index("cryptsetup", "--batch-mode", "luksFormat")
    argv = recorder.calls[fmt]
    assert argv[argv.index("--type") + 1] == "luks2"
    assert argv[-2:] == ["-", "/dev/sdb3"]
    assert "correct horse" not in " ".join(argv)
    assert recorder.inputs[fmt] == "correct horse"
    assert container.formatted and container.state is ContainerState.LOCKED


def test_format_refuses_existing_header_without_overwrite(recorder):
    recorder.on("cryptsetup", "isLuks", rc=0)
    container = luks_lvm.boot_container("/dev/sdb2")

    with pytest.raises(AlreadyFormattedError):
        luks_lvm.format_container(container, "pw")
    assert not any("luksFormat" in call for call in recorder.calls)

    luks_lvm.format_container(container, "pw", overwrite=True)
    assert any("luksFormat" in call for call in recorder.calls)


def test_open_records_close_in_ledger(recorder, no_holders):
    container = _formatted(luks_lvm.boot_container("/dev/sdb2"))
    ledger = ResourceLedger()

    path = luks_lvm.open_container(container, passphrase="pw", ledger=ledger)

    assert path == "/dev/mapper/LUKS_BOOT"
    assert container.state is ContainerState.OPEN_PASSPHRASE
    assert recorder.calls[-1] == [
        "cryptsetup", "open", "--allow-discards", "--key-file", "-", "/dev/sdb2", "LUKS_BOOT",
    ]
    assert [(e.kind, e.name) for e in ledger.entries] == [("container", "LUKS_BOOT")]

    ledger.unwind()
    assert recorder.calls[-1] == ["cryptsetup", "close", "LUKS_BOOT"]
    assert container.state is ContainerState.LOCKED


def test_open_wrong_passphrase_raises_authentication_error(recorder, no_holders):
    recorder.on("cryptsetup", "open", rc=2, err="No key available with this passphrase.")
    container = _formatted(luks_lvm.boot_container("/dev/sdb2"))
    ledger = ResourceLedger()

    with pytest.raises(AuthenticationError):
        luks_lvm.open_container(container, passphrase="nope", ledger=ledger)
    assert container.state is ContainerState.LOCKED
    assert len(ledger) == 0


def test_open_other_failure_is_tool_failure(recorder, no_holders):
    recorder.on("cryptsetup", "open", rc=5, err="Device busy")
    container = _formatted(luks_lvm.boot_container("/dev/sdb2"))
    with pytest.raises(ExternalToolFailure) as excinfo:
        luks_lvm.open_container(container, passphrase="pw")
    assert excinfo.value.result == "FAIL_LUKS"


def test_open_when_already_mapped(recorder, monkeypatch):
    monkeypatch.setattr(luks_lvm.devices, "holders", lambda dev: ["dm-0"])
    container = _formatted(luks_lvm.root_container("/dev/sdb3"))

    monkeypatch.setattr(luks_lvm.devices, "mapper_name", lambda holder: "sdb3_crypt")
    assert luks_lvm.open_container(container, passphrase="pw") == "/dev/mapper/sdb3_crypt"
    assert recorder.calls == []

    monkeypatch.setattr(luks_lvm.devices, "mapper_name", lambda holder: "someone_else")
    with pytest.raises(AlreadyOpenError):
        luks_lvm.open_container(container, passphrase="pw")


def test_open_requires_format_and_one_credential(recorder, no_holders):
    container = luks_lvm.boot_container("/dev/sdb2")
    with pytest.raises(LuksMediaError):
        luks_lvm.open_container(container, passphrase="pw")
    container.formatted = True
    with pytest.raises(ValueError):
        luks_lvm.open_container(container, passphrase="pw", keyfile="/k")
    luks_lvm.open_container(container, keyfile="/target/etc/luks/boot_os.keyfile")
    assert container.state is ContainerState.OPEN_KEYFILE
    assert recorder.inputs[-1] is None


def test_add_key_reports_slot_and_never_kills_slots(recorder):
    recorder.on("cryptsetup", "luksAddKey", out="Key slot 1 created.\n")
    container = _formatted(luks_lvm.root_container("/dev/sdb3"))

    slot = luks_lvm.add_key(container, "pw", "/target/etc/luks/boot_os.keyfile")

    assert slot == 1
    assert recorder.calls[-1] == [
        "cryptsetup", "luksAddKey", "--key-file", "-", "/dev/sdb3", "/target/etc/luks/boot_os.keyfile",
    ]
    assert recorder.inputs[-1] == "pw"
    assert not any(a in ("luksKillSlot", "luksRemoveKey", "erase") for call in recorder.calls for a in call)


def test_add_key_wrong_passphrase(recorder):
    recorder.on("cryptsetup", "luksAddKey", rc=2)
    with pytest.raises(AuthenticationError):
        luks_lvm.add_key(_formatted(luks_lvm.boot_container("/dev/sdb2")), "bad", "/k")


def test_verify_unlock_uses_test_passphrase(recorder):
    recorder.on("cryptsetup", "open", "--test-passphrase", "--key-file", "/k", rc=2)
    container = _formatted(luks_lvm.boot_container("/dev/sdb2"))
    assert luks_lvm.verify_unlock(container, passphrase="pw") is True
    assert luks_lvm.verify_unlock(container, keyfile="/k") is False


def test_compose_creates_swap_before_root(recorder):
    recorder.on("vgs", out=f"  {100 * GIB} {100 * GIB}\n")
    container = luks_lvm.root_container("/dev/sdb3")
    container.state = ContainerState.OPEN_PASSPHRASE
    ledger = ResourceLedger()

    vg = luks_lvm.compose_volumes(container, "luksvg", 16, ledger=ledger)

    assert recorder.index("pvcreate") < recorder.index("vgcreate") < recorder.index("lvcreate")
    lvs = recorder.commands("lvcreate")
    assert lvs[0] == ["lvcreate", "--yes", "-L", "16G", "-n", "swap", "luksvg"]
    assert lvs[1] == ["lvcreate", "--yes", "-l", "100%FREE", "-n", "root", "luksvg"]
    assert vg.created == ["swap", "root"]
    assert vg.physical_volume == "/dev/mapper/sdb3_crypt"
    assert [(e.kind, e.name) for e in ledger.entries] == [("volume_group", "luksvg")]


def test_compose_requires_open_container(recorder):
    with pytest.raises(ContainerNotOpenError):
        luks_lvm.compose_volumes(luks_lvm.root_container("/dev/sdb3"), "luksvg", 8)
    assert recorder.calls == []


def test_compose_rejects_swap_larger_than_group(recorder):
    recorder.on("vgs", out=f"  {8 * GIB} {8 * GIB}\n")
    container = luks_lvm.root_container("/dev/sdb3")
    container.state = ContainerState.OPEN_PASSPHRASE
    with pytest.raises(VolumeCapacityError):
        luks_lvm.compose_volumes(container, "luksvg", 16)
    assert recorder.commands("lvcreate") == []


def test_compose_tool_failure_propagates(recorder):
    recorder.on("vgcreate", rc=5, err="Cannot use device")
    container = luks_lvm.root_container("/dev/sdb3")
    container.state = ContainerState.OPEN_PASSPHRASE
    with pytest.raises(ExternalToolFailure) as excinfo:
        luks_lvm.compose_volumes(container, "luksvg", 8)
    assert excinfo.value.result == "FAIL_LVM"


def test_deactivate(recorder):
    luks_lvm.deactivate_vg("luksvg")
    assert recorder.calls == [["vgchange", "-an", "luksvg"]]
