"""LUKS container lifecycle and the LVM stack on top of the root container."""

from __future__ import annotations

import re
from typing import Iterable, Optional

from . import commands, devices
from .commands import execute
from .errors import (
    AlreadyFormattedError,
    AlreadyOpenError,
    AuthenticationError,
    ContainerNotOpenError,
    ExternalToolFailure,
    LuksMediaError,
    VolumeCapacityError,
)
from .executil import trace, udev_settle
from .ledger import ResourceLedger
from .model import ContainerState, EncryptedContainer, VolumeGroup

GIB = 1024 ** 3

# cryptsetup exit status for "no key available with this passphrase"
CRYPTSETUP_EPERM = 2

BOOT_LUKS_TYPE = "luks1"  # GRUB reads LUKS1 headers before the kernel runs
ROOT_LUKS_TYPE = "luks2"
BOOT_MAPPED_NAME = "LUKS_BOOT"


def boot_container(source: str) -> EncryptedContainer:
    return EncryptedContainer(source=source, luks_type=BOOT_LUKS_TYPE, mapped_name=BOOT_MAPPED_NAME)


def root_container(source: str) -> EncryptedContainer:
    name = source.rstrip("/").rsplit("/", 1)[-1]
    return EncryptedContainer(
        source=source,
        luks_type=ROOT_LUKS_TYPE,
        mapped_name=f"{name}_crypt",
        label="luksmedia-system",
    )


def is_luks(source: str, dry_run: bool = False) -> bool:
    if dry_run:
        return False
    return execute(commands.cryptsetup_is_luks(source)).rc == 0


def format_container(
        container: EncryptedContainer,
        passphrase: str,
        overwrite: bool = False,
        dry_run: bool = False,
) -> None:
    if not passphrase:
        raise LuksMediaError("refusing to format with an empty passphrase", result="FAIL_LUKS")
    if is_luks(container.source, dry_run=dry_run) and not overwrite:
        raise AlreadyFormattedError(
            f"{container.source} already carries a LUKS header; pass --overwrite to replace it"
        )
    execute(
        commands.cryptsetup_format(container.source, container.luks_type, passphrase, container.label),
        dry_run=dry_run,
    )
    container.formatted = True
    container.state = ContainerState.LOCKED
    trace("luks.formatted", source=container.source, type=container.luks_type)
    udev_settle()


def _current_mapping(source: str) -> Optional[str]:
    for holder in devices.holders(source):
        if holder.startswith("dm-"):
            return devices.mapper_name(holder)
    return None


def open_container(
        container: EncryptedContainer,
        passphrase: Optional[str] = None,
        keyfile: Optional[str] = None,
        ledger: Optional[ResourceLedger] = None,
        dry_run: bool = False,
) -> str:
    """Unlock ``container`` and return its mapper path."""

    if not container.formatted:
        raise LuksMediaError(f"{container.source} must be formatted before it is opened", result="FAIL_LUKS")
    if (passphrase is None) == (keyfile is None):
        raise ValueError("open_container needs exactly one of passphrase or keyfile")
    via = ContainerState.OPEN_KEYFILE if keyfile else ContainerState.OPEN_PASSPHRASE

    current = None if dry_run else _current_mapping(container.source)
    if current == container.mapped_name:
        container.state = via
        return container.mapper_path
    if current:
        raise AlreadyOpenError(f"{container.source} is already open as {current!r}")

    cmd = commands.cryptsetup_open(container.source, container.mapped_name, passphrase=passphrase, keyfile=keyfile)
    res = execute(cmd, dry_run=dry_run)
    if res.rc == CRYPTSETUP_EPERM:
        raise AuthenticationError(f"wrong credential for {container.source}")
    if res.rc != 0:
        raise ExternalToolFailure(cmd.argv, res.rc, res.out, res.err, result="FAIL_LUKS")
    container.state = via
    if ledger is not None:
        ledger.record(
            "container",
            container.mapped_name,
            lambda: close_container(container, dry_run=dry_run),
        )
    trace("luks.opened", source=container.source, name=container.mapped_name, via=via.value)
    udev_settle()
    return container.mapper_path


def close_container(container: EncryptedContainer, dry_run: bool = False) -> None:
    execute(commands.cryptsetup_close(container.mapped_name), dry_run=dry_run)
    container.state = ContainerState.LOCKED


_KEY_SLOT_CREATED_RE = re.compile(r"key slot\s+(\d+)\s+created", re.IGNORECASE)


def _parse_slot_from_output(streams: Iterable[str]) -> int | None:
    for text in streams:
        if not text:
            continue
        match = _KEY_SLOT_CREATED_RE.search(text)
        if match:
            return int(match.group(1))
    return None


def add_key(
        container: EncryptedContainer,
        passphrase: str,
        new_keyfile: str,
        dry_run: bool = False,
) -> int | None:
    """Enrol ``new_keyfile`` in a free slot; existing slots are left alone."""

    cmd = commands.cryptsetup_add_key(container.source, passphrase, new_keyfile)
    res = execute(cmd, dry_run=dry_run)
    if res.rc == CRYPTSETUP_EPERM:
        raise AuthenticationError(f"passphrase rejected by {container.source}")
    if res.rc != 0:
        raise ExternalToolFailure(cmd.argv, res.rc, res.out, res.err, result="FAIL_KEY_BINDING")
    slot = _parse_slot_from_output((res.out or "", res.err or ""))
    trace("luks.key_added", source=container.source, slot=slot)
    return slot


def verify_unlock(
        container: EncryptedContainer,
        passphrase: Optional[str] = None,
        keyfile: Optional[str] = None,
        dry_run: bool = False,
) -> bool:
    res = execute(commands.cryptsetup_test(container.source, passphrase=passphrase, keyfile=keyfile), dry_run=dry_run)
    return res.rc == 0


def vg_capacity_bytes(vg: str, dry_run: bool = False) -> tuple[int, int]:
    """Return ``(size, free)`` of ``vg`` in bytes."""

    res = execute(commands.vgs_size(vg), dry_run=dry_run)
    if dry_run:
        return 0, 0
    fields = (res.out or "").split()
    if len(fields) < 2:
        raise ExternalToolFailure(["vgs", vg], 0, res.out, "unexpected vgs output", result="FAIL_LVM")
    return int(fields[0]), int(fields[1])


def compose_volumes(
        container: EncryptedContainer,
        vg_name: str,
        swap_gib: int,
        ledger: Optional[ResourceLedger] = None,
        dry_run: bool = False,
) -> VolumeGroup:
    """PV on the open root container, one VG, then swap and root LVs.

    Swap goes first so ``100%FREE`` for root is computed after the swap
    extents are taken.
    """

    if not container.is_open:
        raise ContainerNotOpenError(f"{container.source} must be open before LVM is created on it")
    vg = VolumeGroup(name=vg_name, physical_volume=container.mapper_path, swap_gib=swap_gib)

    execute(commands.pvcreate(vg.physical_volume), dry_run=dry_run)
    execute(commands.vgcreate(vg.name, vg.physical_volume), dry_run=dry_run)
    if ledger is not None:
        ledger.record("volume_group", vg.name, lambda: deactivate_vg(vg.name, dry_run=dry_run))

    if not dry_run:
        _, free = vg_capacity_bytes(vg.name)
        if swap_gib * GIB > free:
            raise VolumeCapacityError(
                f"swap of {swap_gib} GiB does not fit in volume group {vg.name} ({free // GIB} GiB free)"
            )

    execute(commands.lvcreate_fixed(vg.name, vg.swap_lv, swap_gib), dry_run=dry_run)
    vg.created.append(vg.swap_lv)
    execute(commands.lvcreate_remaining(vg.name, vg.root_lv), dry_run=dry_run)
    vg.created.append(vg.root_lv)
    udev_settle()
    trace("lvm.composed", vg=vg.name, lvs=vg.created, swap_gib=swap_gib)
    return vg


def deactivate_vg(vg: str, dry_run: bool = False):
    execute(commands.vgchange_off(vg), dry_run=dry_run)
