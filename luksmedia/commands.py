"""Typed wrappers for every external tool the workflow delegates to.

Each builder returns a :class:`Command`: the argv, stdin payload and the
result kind reported when the tool fails.  :func:`execute` is the single
place commands reach ``executil.run`` so tests can swap it for a recorder.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from .executil import Result, run

LUKS_TIMEOUT = 360.0
LVM_TIMEOUT = 60.0
MKFS_TIMEOUT = 360.0
INITRAMFS_TIMEOUT = 600.0


@dataclass(frozen=True)
class Command:
    argv: Tuple[str, ...]
    timeout: float = 60.0
    input: Optional[str] = None
    secret: bool = False
    check: bool = True
    result: Optional[str] = None

    def __str__(self) -> str:
        return " ".join(self.argv)


def execute(command: Command, dry_run: bool = False) -> Result:
    return run(
        command.argv,
        check=command.check,
        dry_run=dry_run,
        timeout=command.timeout,
        input=command.input,
        secret=command.secret,
        result=command.result,
    )


# --- partition table -------------------------------------------------------

def sgdisk_zap(device: str) -> Command:
    return Command(("sgdisk", "--zap-all", device), result="FAIL_PARTITIONING")


def sgdisk_new(device: str, index: int, size_mib: Optional[int], type_guid: str, label: str) -> Command:
    end = f"+{size_mib}M" if size_mib is not None else "0"
    return Command(
        (
            "sgdisk",
            f"--new={index}:0:{end}",
            f"--typecode={index}:{type_guid}",
            f"--change-name={index}:{label}",
            device,
        ),
        result="FAIL_PARTITIONING",
    )


def sgdisk_print(device: str) -> Command:
    return Command(("sgdisk", "--print", device), result="FAIL_PARTITIONING")


def partprobe(device: str) -> Command:
    return Command(("partprobe", device), check=False)


def blockdev_size(device: str) -> Command:
    return Command(("blockdev", "--getsize64", device), result="FAIL_NOT_BLOCK_DEVICE")


def blkid_uuid(path: str) -> Command:
    return Command(("blkid", "-s", "UUID", "-o", "value", path), check=False)


# --- cryptsetup ------------------------------------------------------------

def cryptsetup_is_luks(source: str) -> Command:
    return Command(("cryptsetup", "isLuks", source), check=False)


def cryptsetup_format(source: str, luks_type: str, passphrase: str, label: Optional[str] = None) -> Command:
    argv = ["cryptsetup", "--batch-mode", "luksFormat", "--type", luks_type]
    if label and luks_type == "luks2":
        argv += ["--label", label]
    argv += ["--key-file", "-", source]
    return Command(tuple(argv), timeout=LUKS_TIMEOUT, input=passphrase, secret=True, result="FAIL_LUKS")


def cryptsetup_open(
        source: str,
        name: str,
        passphrase: Optional[str] = None,
        keyfile: Optional[str] = None,
) -> Command:
    argv = ("cryptsetup", "open", "--allow-discards", "--key-file", keyfile or "-", source, name)
    return Command(
        argv,
        timeout=LUKS_TIMEOUT,
        input=None if keyfile else passphrase,
        secret=keyfile is None,
        check=False,
        result="FAIL_LUKS",
    )


def cryptsetup_close(name: str) -> Command:
    return Command(("cryptsetup", "close", name), timeout=LUKS_TIMEOUT, result="FAIL_LUKS")


def cryptsetup_add_key(source: str, passphrase: str, new_keyfile: str) -> Command:
    return Command(
        ("cryptsetup", "luksAddKey", "--key-file", "-", source, new_keyfile),
        timeout=LUKS_TIMEOUT,
        input=passphrase,
        secret=True,
        check=False,
        result="FAIL_KEY_BINDING",
    )


def cryptsetup_test(source: str, passphrase: Optional[str] = None, keyfile: Optional[str] = None) -> Command:
    return Command(
        ("cryptsetup", "open", "--test-passphrase", "--key-file", keyfile or "-", source),
        timeout=LUKS_TIMEOUT,
        input=None if keyfile else passphrase,
        secret=keyfile is None,
        check=False,
    )


# --- LVM -------------------------------------------------------------------

def pvcreate(pv: str) -> Command:
    return Command(("pvcreate", "--yes", pv), timeout=LVM_TIMEOUT, result="FAIL_LVM")


def vgcreate(vg: str, pv: str) -> Command:
    return Command(("vgcreate", vg, pv), timeout=LVM_TIMEOUT, result="FAIL_LVM")


def vgs_size(vg: str) -> Command:
    return Command(
        ("vgs", "--noheadings", "--units", "b", "--nosuffix", "-o", "vg_size,vg_free", vg),
        timeout=LVM_TIMEOUT,
        result="FAIL_LVM",
    )


def lvcreate_fixed(vg: str, name: str, size_gib: int) -> Command:
    return Command(("lvcreate", "--yes", "-L", f"{size_gib}G", "-n", name, vg), timeout=LVM_TIMEOUT, result="FAIL_LVM")


def lvcreate_remaining(vg: str, name: str) -> Command:
    return Command(("lvcreate", "--yes", "-l", "100%FREE", "-n", name, vg), timeout=LVM_TIMEOUT, result="FAIL_LVM")


def vgchange_off(vg: str) -> Command:
    return Command(("vgchange", "-an", vg), timeout=LVM_TIMEOUT, result="FAIL_LVM")


# --- filesystems and mounts ------------------------------------------------

def mkfs(fstype: str, device: str, label: Optional[str] = None) -> Command:
    argv = [f"mkfs.{fstype}"]
    if fstype == "vfat":
        argv += ["-F", "32"]
        if label:
            argv += ["-n", label]
    elif fstype == "ext4":
        argv += ["-F"]
        if label:
            argv += ["-L", label]
    elif label:
        argv += ["-L", label]
    argv.append(device)
    return Command(tuple(argv), timeout=MKFS_TIMEOUT, result="FAIL_MKFS")


def mount(device: str, target: str, fstype: Optional[str] = None, opts: Optional[list] = None) -> Command:
    argv = ["mount"]
    if fstype:
        argv += ["-t", fstype]
    if opts:
        argv += ["-o", ",".join(opts)]
    argv += [device, target]
    return Command(tuple(argv), result="FAIL_KEY_BINDING")


def mount_bind(src: str, dst: str) -> Command:
    return Command(("mount", "--bind", src, dst), result="FAIL_KEY_BINDING")


def umount(path: str) -> Command:
    return Command(("umount", path))


def chroot(root: str, *argv: str, timeout: float = 60.0) -> Command:
    return Command(("chroot", root) + tuple(argv), timeout=timeout, result="FAIL_KEY_BINDING")


def lsinitramfs(image: str) -> Command:
    return Command(("lsinitramfs", image), timeout=INITRAMFS_TIMEOUT, check=False)
