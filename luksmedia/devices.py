"""Device probing: capacity, mounts, device-mapper holders, UUIDs."""
from __future__ import annotations

import json
import os
import stat

from . import commands
from .commands import execute
from .errors import NotBlockDeviceError
from .executil import trace, udev_settle


def is_block_device(path: str) -> bool:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return False
    except OSError as exc:
        trace("devices.stat_error", path=path, error=str(exc))
        return False
    return stat.S_ISBLK(st.st_mode)


def capacity_bytes(device: str) -> int:
    # read-only probe, executed even during dry runs
    res = execute(commands.blockdev_size(device))
    try:
        return int((res.out or "").strip())
    except ValueError as exc:
        raise NotBlockDeviceError(f"could not read the size of {device}: {res.out!r}") from exc


def probe(device: str) -> dict:
    """Return the ``lsblk`` tree rooted at ``device``."""

    udev_settle()
    result = execute(commands.Command(
        ("lsblk", "-J", "-o", "NAME,PATH,TYPE,MOUNTPOINT", device),
        result="FAIL_NOT_BLOCK_DEVICE",
    ))
    try:
        payload = json.loads(result.out or "{}")
    except json.JSONDecodeError as exc:
        raise NotBlockDeviceError(f"failed to parse lsblk output for {device}: {exc}") from exc

    name = device.rstrip("/").rsplit("/", 1)[-1]
    for entry in payload.get("blockdevices") or []:
        if entry.get("path") == device or entry.get("name") == name:
            return entry
    raise NotBlockDeviceError(f"lsblk did not report device {device}")


def _walk(node: dict):
    stack = list(node.get("children") or [])
    while stack:
        child = stack.pop(0)
        yield child
        stack.extend(child.get("children") or [])


def _node_path(node: dict) -> str:
    path = node.get("path") or node.get("name") or ""
    if path and not path.startswith("/"):
        path = f"/dev/{path}"
    return path


def mounted_partitions(tree: dict) -> list[str]:
    """List ``path on mountpoint`` for every mounted node below the disk."""

    mounted = []
    nodes = [tree] + list(_walk(tree))
    for node in nodes:
        mountpoint = node.get("mountpoint")
        if not mountpoint:
            points = [p for p in (node.get("mountpoints") or []) if p]
            mountpoint = points[0] if points else None
        if mountpoint:
            mounted.append(f"{_node_path(node)} on {mountpoint}")
    return mounted


def open_mappings(tree: dict) -> list[str]:
    """Device-mapper nodes (dm-crypt or LVM) stacked on the disk."""

    return [_node_path(n) for n in _walk(tree) if n.get("type") in ("crypt", "lvm", "dm")]


def holders(dev: str) -> list[str]:
    name = os.path.basename(os.path.realpath(dev))
    holders_dir = os.path.join("/sys/class/block", name, "holders")
    try:
        return sorted(os.listdir(holders_dir))
    except FileNotFoundError:
        return []
    except OSError as exc:
        trace("devices.holders_error", device=dev, path=holders_dir, error=str(exc))
        return []


def mapper_name(holder: str) -> str:
    """Device-mapper name for a ``dm-N`` holder entry."""

    path = os.path.join("/sys/class/block", holder, "dm", "name")
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return fh.read().strip()
    except OSError:
        return holder


def uuid_of(path: str, dry_run: bool = False) -> str:
    r = execute(commands.blkid_uuid(path), dry_run=dry_run)
    if dry_run:
        return f"DRY-RUN-UUID-{os.path.basename(path)}"
    return (r.out or "").strip()
