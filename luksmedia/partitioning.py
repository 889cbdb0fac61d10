"""GPT layout planning, application and verification."""

from __future__ import annotations

import re
from typing import List, Tuple

from . import commands
from .commands import execute
from .errors import DeviceTooSmallError, ExternalToolFailure, UsageError
from .executil import trace, udev_settle
from .model import Device, PartitionPlan, PartitionSpec

MIB = 1024 * 1024
GIB = 1024 * MIB

ESP_MIB = 512
BOOT_MIB = 1700
ALIGN_MIB = 1  # first usable sector sits on the 1 MiB boundary
GPT_BACKUP_MIB = 1
MIN_DATA_MIB = 1

# role -> (sgdisk short code, GPT type GUID)
TYPE_CODES = {
    "esp": ("ef00", "C12A7328-F81F-11D2-BA4B-00A0C93EC93B"),
    "boot": ("ea00", "BC13C2FF-59E6-4262-A352-B275FD6F7172"),
    "system": ("8309", "CA7D7CCB-63ED-4C53-861C-1742536059CC"),
    "data": ("0700", "EBD0A0A2-B9E5-4433-87C0-68B6B72699C7"),
}

EXFAT_LABEL_MAX = 11  # UTF-16 code units
LABEL_FORBIDDEN = set('"*/:<>?\\|')


def _spec(index: int, label: str, role: str, size_mib: int | None, filesystem: str) -> PartitionSpec:
    code, guid = TYPE_CODES[role]
    return PartitionSpec(index, label, role, size_mib, code, guid, filesystem)


def valid_data_label(label: str) -> bool:
    """Usable both as the GPT partition name and the exFAT volume label."""

    if not label or label != label.strip() or not label.isprintable():
        return False
    if LABEL_FORBIDDEN.intersection(label):
        return False
    return len(label.encode("utf-16-le")) // 2 <= EXFAT_LABEL_MAX


def fixed_overhead_mib() -> int:
    return ALIGN_MIB + ESP_MIB + BOOT_MIB + GPT_BACKUP_MIB + MIN_DATA_MIB


def validate_sizes(capacity_bytes: int, root_gib: int, swap_gib: int, data_label: str) -> None:
    for name, value in (("root size", root_gib), ("swap size", swap_gib)):
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise UsageError(f"{name} must be a positive number of GiB, got {value!r}")
    if not valid_data_label(data_label):
        raise UsageError(
            f"data partition name {data_label!r} must be 1-11 printable characters "
            f"without leading or trailing spaces or any of {''.join(sorted(LABEL_FORBIDDEN))}"
        )
    capacity_mib = capacity_bytes // MIB
    needed = fixed_overhead_mib() + (root_gib + swap_gib) * 1024
    if needed > capacity_mib:
        raise DeviceTooSmallError(
            f"device holds {capacity_mib} MiB but the layout needs {needed} MiB "
            f"({root_gib + swap_gib} GiB container plus {fixed_overhead_mib()} MiB fixed overhead)"
        )


def plan_layout(
        device: Device,
        capacity_bytes: int,
        root_gib: int,
        swap_gib: int,
        data_label: str,
) -> PartitionPlan:
    """Compute the partition table; pure, touches nothing."""

    validate_sizes(capacity_bytes, root_gib, swap_gib, data_label)
    specs = [
        _spec(1, "EFI", "esp", ESP_MIB, "vfat"),
        _spec(2, "boot", "boot", BOOT_MIB, "ext4"),
        _spec(3, "system", "system", (root_gib + swap_gib) * 1024, "lvm"),
        _spec(4, data_label, "data", None, "exfat"),
    ]
    plan = PartitionPlan(device=device, capacity_bytes=capacity_bytes, specs=specs)
    check_plan(plan)
    return plan


def check_plan(plan: PartitionPlan) -> None:
    indices = [s.index for s in plan.specs]
    if indices != list(range(1, len(indices) + 1)):
        raise UsageError(f"partition indices must be contiguous from 1, got {indices}")
    remaining = [s for s in plan.specs if s.remaining]
    if len(remaining) > 1 or (remaining and plan.specs[-1] is not remaining[0]):
        raise UsageError("only the last partition may take the remaining space")


def extents(plan: PartitionPlan) -> List[Tuple[int, int]]:
    """Return ``(start_mib, end_mib)`` for every spec, end exclusive."""

    out: List[Tuple[int, int]] = []
    cursor = ALIGN_MIB
    last_usable = plan.capacity_bytes // MIB - GPT_BACKUP_MIB
    for spec in plan.specs:
        end = last_usable if spec.remaining else cursor + spec.size_mib
        out.append((cursor, end))
        cursor = end
    return out


def describe_plan(plan: PartitionPlan) -> List[dict]:
    rows = []
    for spec, (start, end) in zip(plan.specs, extents(plan)):
        rows.append({
            "index": spec.index,
            "path": plan.device.partition(spec.index),
            "label": spec.label,
            "role": spec.role,
            "size_mib": end - start,
            "remaining": spec.remaining,
            "type": spec.type_code,
            "filesystem": spec.filesystem,
        })
    return rows


def reread(device: str, dry_run: bool = False):
    execute(commands.partprobe(device), dry_run=dry_run)
    udev_settle()


def _count_partitions(listing: str) -> int:
    return len(re.findall(r"^\s*\d+\s+\d+\s+\d+", listing or "", re.M))


def apply_layout(plan: PartitionPlan, dry_run: bool = False) -> None:
    """Destroy the existing table on the device and write ``plan``."""

    device = plan.device.path
    trace("partitioning.apply", device=device, plan=describe_plan(plan))
    execute(commands.sgdisk_zap(device), dry_run=dry_run)
    for spec in plan.specs:
        execute(
            commands.sgdisk_new(device, spec.index, spec.size_mib, spec.type_guid, spec.label),
            dry_run=dry_run,
        )
    reread(device, dry_run=dry_run)
    if dry_run:
        return
    listing = execute(commands.sgdisk_print(device)).out
    found = _count_partitions(listing)
    if found != len(plan.specs):
        raise ExternalToolFailure(
            ["sgdisk", "--print", device],
            1,
            listing,
            f"expected {len(plan.specs)} partitions, found {found}",
            result="FAIL_PARTITIONING",
        )
