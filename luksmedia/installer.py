"""Synchronisation with the external OS installer.

The installer has no programmatic completion signal.  Checkpoint A watches
for the GRUB drop-in directory it creates inside the target, Checkpoint B
waits for the operator to say the installer is done.
"""

from __future__ import annotations

import os
import threading
from typing import Callable, Optional

from .errors import InstallerTimeoutError, WaitTimeoutError
from .executil import info, trace
from .model import ProvisionContext
from .paths import target_path
from .prompts import wait_key
from .waiters import wait_for

GRUB_DROPIN_DIR = "/etc/default/grub.d"
GRUB_OVERRIDE = "/etc/default/grub.d/local.cfg"
CRYPTODISK_LINE = "GRUB_ENABLE_CRYPTODISK=y"


def installer_instructions(ctx: ProvisionContext) -> str:
    vg = ctx.volume_group
    lines = [
        "Start the installer now and choose manual partitioning ('Something else'):",
        f"  {ctx.boot.mapper_path if ctx.boot else '?'} -> ext4, mount point /boot",
        f"  {vg.root_path if vg else '?'} -> ext4, mount point /",
        f"  {vg.swap_path if vg else '?'} -> swap",
        f"  {ctx.plan.path_for('esp') if ctx.plan else '?'} -> EFI System Partition",
        f"  boot loader device: {ctx.device.path}",
        "Leave this window open; it continues once the installer has written its configuration.",
    ]
    return "\n".join(lines)


def write_cryptodisk_override(target_root: str) -> str:
    path = target_path(target_root, GRUB_OVERRIDE)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    existing = ""
    if os.path.isfile(path):
        with open(path, "r", encoding="utf-8") as fh:
            existing = fh.read()
    if CRYPTODISK_LINE not in existing.splitlines():
        with open(path, "a", encoding="utf-8") as fh:
            if existing and not existing.endswith("\n"):
                fh.write("\n")
            fh.write(CRYPTODISK_LINE + "\n")
    trace("installer.cryptodisk_override", path=path)
    return path


def await_install_configured(
        ctx: ProvisionContext,
        cancel: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], object]] = None,
) -> str:
    """Checkpoint A: wait for the installer's GRUB drop-in directory."""

    opts = ctx.options
    watched = target_path(opts.target_root, GRUB_DROPIN_DIR)
    info(installer_instructions(ctx))
    timeout = opts.installer_timeout if opts.installer_timeout and opts.installer_timeout > 0 else None
    try:
        wait_for(
            lambda: os.path.isdir(watched),
            timeout=timeout,
            interval=opts.poll_interval,
            cancel=cancel,
            description=f"installer to create {watched}",
            sleep=sleep,
        )
    except WaitTimeoutError as exc:
        raise InstallerTimeoutError(
            f"{exc}; was the installer started with the encrypted volumes selected?"
        ) from exc
    return write_cryptodisk_override(opts.target_root)


def await_install_finished(ctx: ProvisionContext, stream=None) -> None:
    """Checkpoint B: block until the operator confirms the installer finished."""

    wait_key(
        "When the installer reports completion choose 'Continue Testing', then press any key here.",
        stream=stream,
    )
    trace("installer.finished_acknowledged", device=ctx.device.path)
