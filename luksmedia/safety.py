"""Guards and destructive-op refusals."""

from __future__ import annotations

import os

from . import devices
from .commands import Command, execute
from .errors import (
    DeviceBusyError,
    DeviceMountedError,
    LiveDiskError,
    NotBlockDeviceError,
    NotRootError,
)
from .executil import trace


def _capture(argv: tuple) -> str:
    return (execute(Command(argv, check=False)).out or "").strip()


def _parent_disk(source: str) -> str:
    if not source:
        return ""
    pk = _capture(("lsblk", "-no", "PKNAME", source)).splitlines()
    return pk[0].strip() if pk else ""


def guard_not_live_disk(device: str) -> tuple[bool, str]:
    """
    Refuse when target device appears to be the live ROOT/BOOT parent disk.
    Returns (ok, reason).
    """

    devname = os.path.basename(device.rstrip("/"))
    for mountpoint in ("/", "/boot", "/cdrom", "/run/live/medium"):
        source = _capture(("findmnt", "-no", "SOURCE", mountpoint))
        live = _parent_disk(source) or os.path.basename(source)
        if live and live == devname:
            return False, f"Target {device} looks like the live disk ({source} on {mountpoint})."
    return True, ""


def require_root() -> None:
    if os.geteuid() != 0:
        raise NotRootError("luksmedia must run as root to partition and encrypt devices")


def check_preconditions(device: str) -> dict:
    """Reject a device that is not a free, unmounted block device.

    Mounted partitions and open device-mapper stacks both mean another
    process (or a previous run) still owns the disk.
    """

    if not devices.is_block_device(device):
        raise NotBlockDeviceError(f"{device} is not a block device")
    ok, reason = guard_not_live_disk(device)
    if not ok:
        raise LiveDiskError(reason)
    tree = devices.probe(device)
    mounted = devices.mounted_partitions(tree)
    if mounted:
        raise DeviceMountedError(device, mounted)
    mappings = devices.open_mappings(tree)
    if mappings:
        raise DeviceBusyError(
            f"{device} still has open encrypted containers or volumes: {', '.join(mappings)}"
        )
    snapshot = {"device": device, "mounted": mounted, "mappings": mappings}
    trace("safety.preconditions_ok", **snapshot)
    return snapshot
