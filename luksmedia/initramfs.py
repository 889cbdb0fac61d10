"""Rebuild and inspect the initramfs of the installed system."""

from __future__ import annotations

import glob
import os
from pathlib import PurePosixPath
from typing import Any, Dict, List

from . import commands
from .commands import execute
from .executil import trace


def rebuild(mnt: str, dry_run: bool = False) -> Dict[str, Any]:
    res = execute(
        commands.chroot(mnt, "update-initramfs", "-u", "-k", "all", timeout=commands.INITRAMFS_TIMEOUT),
        dry_run=dry_run,
    )
    telemetry = {"rc": res.rc, "duration_sec": res.duration}
    trace("initramfs.rebuilt", **telemetry)
    return telemetry


def images(mnt: str) -> List[str]:
    return sorted(glob.glob(os.path.join(mnt, "boot", "initrd.img-*")))


def keyfile_entry(mapped_name: str) -> str:
    # cryptsetup-initramfs copies matching key files under a per-target name
    return PurePosixPath("cryptroot", "keyfiles", f"{mapped_name}.key").as_posix()


def verify_keyfile_in_image(mnt: str, mapped_name: str) -> Dict[str, Any]:
    """Check that the key for ``mapped_name`` made it into every initramfs image."""

    entry = keyfile_entry(mapped_name)
    found = images(mnt)
    result: Dict[str, Any] = {
        "target": entry,
        "images": {},
        "included": bool(found),
    }
    for image in found:
        res = execute(commands.lsinitramfs(image))
        lines = [line.strip() for line in (res.out or "").splitlines() if line.strip()]
        ok = res.rc == 0 and any(line == entry or line.endswith("/" + entry) for line in lines)
        result["images"][os.path.basename(image)] = ok
        if not ok:
            result["included"] = False
    trace("initramfs.keyfile_check", **result)
    return result
