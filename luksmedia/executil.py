from __future__ import annotations

"""Subprocess wrapper, dry-run hook and JSONL trace log."""

import datetime as _dt
import json
import os
import shlex
import subprocess
import sys
import time
from typing import Sequence

from .errors import ExternalToolFailure
from .paths import logs_dir

LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "luksmedia.jsonl"

VERBOSE = False


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        logs_dir(),
        "/var/log/luksmedia",
        "/tmp/luksmedia-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, mode=0o700, exist_ok=True)
            LOG_PATH = os.path.join(d_expanded, LOG_NAME)
            return LOG_PATH
        except OSError:
            continue
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


def _now() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat().replace("+00:00", "Z")


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("LUKSMEDIA_LOG_LEVEL", "TRACE").upper()


def _write_jsonl(obj: dict):
    path = _ensure_logger()
    if not path:
        return
    try:
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, default=str) + "\n")
    except OSError:
        pass


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    rec = {"ts": _now(), "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def info(message: str, **fields):
    """Progress line for the operator, mirrored into the trace log."""

    print(f"[INFO] {message}", file=sys.stderr)
    log("INFO", "progress", message=message, **fields)


def warn(message: str, **fields):
    print(f"[WARN] {message}", file=sys.stderr)
    log("WARN", "warning", message=message, **fields)


def _spawn(cmd: Sequence[str], input: str | None, timeout: float, env: dict | None):
    env2 = (env or os.environ).copy()
    env2.setdefault("LUKSMEDIA_LOG_LEVEL", LOG_LEVEL)
    return subprocess.run(
        list(cmd),
        input=input,
        capture_output=True,
        text=True,
        timeout=timeout,
        env=env2,
    )


def run(
        cmd: Sequence[str],
        check: bool = True,
        dry_run: bool = False,
        timeout: float = 60.0,
        env: dict | None = None,
        input: str | None = None,
        secret: bool = False,
        result: str | None = None,
) -> Result:
    """Run ``cmd`` synchronously and return its :class:`Result`.

    ``input`` is fed on stdin.  When ``secret`` is set the input is never
    written to the trace log.  With ``check`` a non-zero exit raises
    :class:`ExternalToolFailure` tagged with ``result``.
    """

    argv = list(cmd)
    trace("exec.start", cmd=argv, stdin=("<redacted>" if secret else input) if input is not None else None)
    if VERBOSE:
        print("+ " + " ".join(shlex.quote(c) for c in argv), file=sys.stderr)
    started = time.monotonic()
    if dry_run:
        text = "DRY-RUN: " + " ".join(shlex.quote(c) for c in argv)
        return Result(0, text, "", 0.0)
    try:
        proc = _spawn(argv, input, timeout, env)
    except subprocess.TimeoutExpired:
        # device nodes may still be settling; retry once
        udev_settle()
        proc = _spawn(argv, input, timeout, env)
    dur = time.monotonic() - started
    trace(
        "exec.done",
        cmd=argv,
        rc=proc.returncode,
        dur=dur,
        out=proc.stdout,
        err=proc.stderr,
    )
    if check and proc.returncode != 0:
        raise ExternalToolFailure(argv, proc.returncode, proc.stdout, proc.stderr, result=result)
    return Result(proc.returncode, proc.stdout, proc.stderr, dur)


def udev_settle():
    try:
        subprocess.run(["udevadm", "settle"], check=False)
    except OSError:
        pass


def append_jsonl(path: str, obj: dict):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
    except OSError:
        pass
