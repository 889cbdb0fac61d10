"""crypttab entries and initramfs build settings inside the installed system."""
import os
import re
from dataclasses import dataclass
from typing import Iterable, List

from .paths import target_path

CRYPTTAB = "/etc/crypttab"
CONF_HOOK = "/etc/cryptsetup-initramfs/conf-hook"
INITRAMFS_CONF = "/etc/initramfs-tools/initramfs.conf"


@dataclass(frozen=True)
class CrypttabEntry:
    name: str
    uuid: str
    keyfile: str
    options: tuple = ("luks", "discard")

    def render(self) -> str:
        return f"{self.name} UUID={self.uuid} {self.keyfile} {','.join(self.options)}"


def _write(path: str, text: str) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())


def _read_lines(path: str) -> List[str]:
    if not os.path.isfile(path):
        return []
    with open(path, "r", encoding="utf-8") as fh:
        return fh.read().splitlines()


def _merge_options(initial: Iterable[str], required: Iterable[str]) -> tuple:
    merged: List[str] = []
    for opt in list(initial) + list(required):
        candidate = opt.strip()
        if candidate and candidate not in merged:
            merged.append(candidate)
    return tuple(merged)


def append_crypttab(mnt: str, entries: Iterable[CrypttabEntry]) -> str:
    """Add one line per container, replacing stale lines with the same name.

    Options the installer already put on a line (``initramfs``, ...) are
    kept alongside ours.  Comments and unrelated entries are preserved.
    """

    ct = target_path(mnt, CRYPTTAB)
    wanted = {e.name: e for e in entries}
    kept: List[str] = []
    for line in _read_lines(ct):
        stripped = line.strip()
        parts = stripped.split()
        if parts and not stripped.startswith("#") and parts[0] in wanted:
            if len(parts) > 3:
                entry = wanted[parts[0]]
                wanted[parts[0]] = CrypttabEntry(
                    entry.name, entry.uuid, entry.keyfile, _merge_options(entry.options, parts[3].split(","))
                )
            continue
        kept.append(line)
    kept.extend(e.render() for e in wanted.values())
    _write(ct, "\n".join(kept) + "\n")
    return ct


def set_assignment(path: str, key: str, value: str) -> bool:
    """Make ``key=value`` the single active assignment in a shell-style file."""

    pattern = re.compile(rf"^\s*#?\s*{re.escape(key)}\s*=")
    desired = f"{key}={value}"
    lines = _read_lines(path)
    out: List[str] = []
    placed = False
    for line in lines:
        if pattern.match(line):
            if not placed:
                out.append(desired)
                placed = True
            continue
        out.append(line)
    if not placed:
        out.append(desired)
    if out == lines:
        return False
    _write(path, "\n".join(out) + "\n")
    return True


def write_initramfs_hooks(mnt: str, keyfile_pattern: str) -> dict:
    """Ship matching key files in the initramfs and keep the image 0600."""

    hook = target_path(mnt, CONF_HOOK)
    conf = target_path(mnt, INITRAMFS_CONF)
    return {
        hook: set_assignment(hook, "KEYFILE_PATTERN", keyfile_pattern),
        conf: set_assignment(conf, "UMASK", "0077"),
    }
