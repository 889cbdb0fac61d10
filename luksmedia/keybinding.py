"""Key file generation and binding for unattended unlock.

Order matters: secret directory, key file, ``luksAddKey`` on both
containers, crypttab, initramfs settings and rebuild.  Nothing here touches
an existing key slot, so the passphrases keep working whatever happens after
the key file exists.
"""

from __future__ import annotations

import contextlib
import os
import secrets
import stat
from typing import Callable, Dict, Optional

from . import devices, initramfs
from .boot_plumbing import CrypttabEntry, append_crypttab, write_initramfs_hooks
from .errors import AuthenticationError, ExternalToolFailure, KeyBindingError, KeyMaterialError
from .executil import info, trace, warn
from .luks_lvm import add_key, verify_unlock
from .model import EncryptedContainer, KeyFile, ProvisionContext
from .paths import target_path
from .prompts import reprompt_passphrase

SECRET_DIR_MODE = 0o500
KEYFILE_MODE = 0o400
MAX_AUTH_ATTEMPTS = 3


@contextlib.contextmanager
def _umask(mask: int):
    old = os.umask(mask)
    try:
        yield
    finally:
        os.umask(old)


def _mode(path: str) -> int:
    return stat.S_IMODE(os.lstat(path).st_mode)


def _require_owner_only(path: str, expected: int) -> None:
    mode = _mode(path)
    if mode & 0o077 or mode != expected:
        raise KeyMaterialError(f"{path} has mode 0{mode:o}, expected 0{expected:o}")


def ensure_secret_dir(path: str) -> None:
    """Create ``path`` owner read/execute only before any secret lands in it.

    The key is written by root, which does not need the write bit.
    """

    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with _umask(0o077):
            if os.path.lexists(path):
                if os.path.islink(path) or not os.path.isdir(path):
                    raise KeyMaterialError(f"{path} exists and is not a directory")
                os.chmod(path, SECRET_DIR_MODE)
            else:
                os.mkdir(path, SECRET_DIR_MODE)
    except OSError as exc:
        raise KeyMaterialError(f"cannot prepare key directory {path}: {exc}") from exc
    _require_owner_only(path, SECRET_DIR_MODE)


def generate_keyfile(path: str, length: int, mode: int = KEYFILE_MODE) -> bool:
    """Write ``length`` random bytes to ``path`` with ``mode`` from creation.

    An existing key of the right size and mode is kept so a re-run binds the
    same key instead of enrolling another one.  Returns ``True`` when a new
    key was written.
    """

    if os.path.lexists(path):
        st = os.lstat(path)
        if stat.S_ISREG(st.st_mode) and st.st_size == length:
            _require_owner_only(path, mode)
            trace("keyfile.reused", path=path)
            return False
        raise KeyMaterialError(f"{path} exists but is not a {length}-byte key file")
    try:
        with _umask(0o077):
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL | os.O_NOFOLLOW, mode)
        with os.fdopen(fd, "wb") as fh:
            fh.write(secrets.token_bytes(length))
            fh.flush()
            os.fsync(fh.fileno())
    except OSError as exc:
        raise KeyMaterialError(f"cannot write key file {path}: {exc}") from exc
    _require_owner_only(path, mode)
    size = os.stat(path).st_size
    if size != length:
        raise KeyMaterialError(f"{path} holds {size} bytes, expected {length}")
    trace("keyfile.created", path=path, length=length)
    return True


def create_keyfile(ctx: ProvisionContext) -> KeyFile:
    opts = ctx.options
    host_path = target_path(opts.target_root, opts.keyfile_path)
    key = KeyFile(path=opts.keyfile_path, host_path=host_path, length=opts.keyfile_bytes, mode=KEYFILE_MODE)
    if ctx.dry_run:
        trace("keyfile.dry_run", path=host_path)
        return key
    ensure_secret_dir(os.path.dirname(host_path))
    generate_keyfile(host_path, key.length, key.mode)
    return key


def _bind_one(
        ctx: ProvisionContext,
        container: EncryptedContainer,
        key: KeyFile,
        reprompt: Callable[[str], str],
) -> Optional[int]:
    dry = ctx.dry_run
    if not dry and verify_unlock(container, keyfile=key.host_path):
        trace("keyfile.already_bound", name=container.mapped_name)
        return None
    passphrase = ctx.passphrases.get(container.mapped_name)
    for attempt in range(1, MAX_AUTH_ATTEMPTS + 1):
        try:
            if passphrase is None:
                raise AuthenticationError(f"no passphrase held for {container.source}")
            return add_key(container, passphrase, key.host_path, dry_run=dry)
        except AuthenticationError as exc:
            if attempt == MAX_AUTH_ATTEMPTS:
                raise
            warn(f"{exc}; enter the existing passphrase again ({attempt}/{MAX_AUTH_ATTEMPTS})")
            passphrase = reprompt(container.mapped_name)
            ctx.passphrases[container.mapped_name] = passphrase
    return None


def bind_keyfile(ctx: ProvisionContext, reprompt: Optional[Callable[[str], str]] = None) -> Dict[str, Optional[int]]:
    """Add the key file as an extra unlock factor on both containers."""

    reprompt = reprompt or reprompt_passphrase
    key = ctx.keyfile
    slots: Dict[str, Optional[int]] = {}
    for container in ctx.containers():
        slots[container.mapped_name] = _bind_one(ctx, container, key, reprompt)
        if not ctx.dry_run:
            by_key = verify_unlock(container, keyfile=key.host_path)
            by_pass = verify_unlock(container, passphrase=ctx.passphrases[container.mapped_name])
            if not (by_key and by_pass):
                raise KeyBindingError(
                    f"{container.source}: key file unlock={by_key}, passphrase unlock={by_pass}"
                )
        key.bound.append(container.mapped_name)
    return slots


def register_unlock(ctx: ProvisionContext) -> Dict[str, object]:
    """Persist crypttab entries and rebuild the initramfs with the key."""

    mnt = ctx.options.target_root
    key = ctx.keyfile
    entries = [
        CrypttabEntry(c.mapped_name, devices.uuid_of(c.source, dry_run=ctx.dry_run), key.path)
        for c in ctx.containers()
        if c.mapped_name in key.bound
    ]
    report: Dict[str, object] = {}
    if ctx.dry_run:
        report["crypttab"] = [e.render() for e in entries]
    else:
        for entry in entries:
            if not entry.uuid:
                raise KeyBindingError(f"no UUID reported for {entry.name}")
        report["crypttab"] = append_crypttab(mnt, entries)
        pattern = os.path.join(os.path.dirname(key.path), "*" + os.path.splitext(key.path)[1])
        report["hooks"] = write_initramfs_hooks(mnt, pattern)
    report["rebuild"] = initramfs.rebuild(mnt, dry_run=ctx.dry_run)
    if not ctx.dry_run:
        check = initramfs.verify_keyfile_in_image(mnt, ctx.root.mapped_name)
        report["image"] = check
        if not check["included"]:
            raise KeyBindingError(f"initramfs does not carry {check['target']}")
    return report


def run_binder(ctx: ProvisionContext, reprompt: Optional[Callable[[str], str]] = None) -> Dict[str, object]:
    ctx.keyfile = create_keyfile(ctx)
    info(f"key file ready at {ctx.keyfile.path}")
    try:
        slots = bind_keyfile(ctx, reprompt=reprompt)
        report = register_unlock(ctx)
    except (ExternalToolFailure, OSError) as exc:
        raise KeyBindingError(
            f"{exc}; unattended unlock is not active, the passphrases still unlock both containers"
        ) from exc
    report["slots"] = slots
    return report
