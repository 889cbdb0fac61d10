from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_BASE = "/var/lib/luksmedia"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def base_path() -> str:
    """Return the base directory for luksmedia logs and artifacts.

    The location can be overridden via the ``LUKSMEDIA_BASE_PATH`` environment
    variable.  When unset we fall back to ``/var/lib/luksmedia``.
    """

    override = os.environ.get("LUKSMEDIA_BASE_PATH")
    if override:
        return _expand(override)
    return _expand(_DEFAULT_BASE)


def logs_dir() -> str:
    return str(Path(base_path()) / "logs")


def target_path(target_root: str, path: str) -> str:
    """Map an absolute path inside the installed system onto the host mount."""

    rel = path.lstrip("/")
    return os.path.normpath(os.path.join(target_root, rel))
