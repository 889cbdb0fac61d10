"""Filesystem creation and the installation-target mounts."""
import os
import time

from . import commands
from .commands import execute
from .devices import is_block_device
from .errors import LuksMediaError, WaitTimeoutError
from .executil import trace, udev_settle
from .ledger import ResourceLedger
from .model import InstallationTarget, ProvisionContext

BIND_PATHS = ("proc", "sys", "dev")
RESOLV_CONF = "etc/resolv.conf"
BLOCK_DEVICE_TIMEOUT = 15.0


def _await_block_device(path: str, timeout: float = 10.0) -> None:
    """Wait until ``path`` resolves to a block device.

    Device-mapper nodes can take a short while to appear after cryptsetup
    and LVM commands return.
    """

    deadline = time.monotonic() + timeout
    while not is_block_device(path):
        if time.monotonic() >= deadline:
            raise WaitTimeoutError(f"block device {path!r} did not appear within {timeout:.1f}s")
        trace("mounts.await_block.retry", path=path)
        udev_settle()
        time.sleep(0.1)


def format_filesystems(ctx: ProvisionContext) -> dict:
    """ESP as FAT32, the unlocked boot container as ext4, data as exFAT."""

    plan = ctx.plan
    jobs = [
        ("vfat", plan.path_for("esp"), "EFI"),
        ("ext4", ctx.boot.mapper_path, "boot"),
        ("exfat", plan.path_for("data"), plan.by_role("data").label),
    ]
    done = {}
    for fstype, dev, label in jobs:
        if not ctx.dry_run:
            try:
                _await_block_device(dev, timeout=BLOCK_DEVICE_TIMEOUT)
            except WaitTimeoutError as exc:
                raise LuksMediaError(f"{exc}; cannot create the {fstype} filesystem", result="FAIL_MKFS") from exc
        execute(commands.mkfs(fstype, dev, label), dry_run=ctx.dry_run)
        done[dev] = fstype
    trace("mounts.formatted", filesystems=done)
    return done


def _mount(ledger: ResourceLedger, cmd: commands.Command, target: str, dry_run: bool) -> None:
    if not dry_run and not os.path.exists(target):
        os.makedirs(target)
    execute(cmd, dry_run=dry_run)
    ledger.record("mount", target, lambda: execute(commands.umount(target), dry_run=dry_run))


def mount_target(ctx: ProvisionContext) -> InstallationTarget:
    """Mount the installed system and bind host paths for chrooted steps.

    Paths the installer left mounted are reused and left for the installer's
    own cleanup.
    """

    root = ctx.options.target_root
    target = InstallationTarget(
        root=root,
        boot=os.path.join(root, "boot"),
        esp=os.path.join(root, "boot", "efi"),
    )
    dry = ctx.dry_run
    mounts = [
        (ctx.volume_group.root_path, target.root, None),
        (ctx.boot.mapper_path, target.boot, None),
        (ctx.plan.path_for("esp"), target.esp, ["umask=0077"]),
    ]
    for dev, where, opts in mounts:
        if not dry and os.path.ismount(where):
            trace("mounts.already_mounted", path=where)
            continue
        _mount(ctx.ledger, commands.mount(dev, where, opts=opts), where, dry)

    for name in BIND_PATHS:
        dst = os.path.join(root, name)
        _mount(ctx.ledger, commands.mount_bind(f"/{name}", dst), dst, dry)
        target.binds.append(dst)

    resolv = os.path.join(root, RESOLV_CONF)
    if os.path.islink(resolv):
        # systemd-resolved stub link; DNS is not needed by the chrooted steps
        trace("mounts.resolv_conf_symlink", path=resolv)
    else:
        if not dry and not os.path.exists(resolv):
            os.makedirs(os.path.dirname(resolv), exist_ok=True)
            open(resolv, "a", encoding="utf-8").close()
        _mount(ctx.ledger, commands.mount_bind("/" + RESOLV_CONF, resolv), resolv, dry)
        target.binds.append(resolv)

    trace("mounts.target_ready", root=root, binds=target.binds)
    return target
