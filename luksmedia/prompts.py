"""Interactive operator input: passphrases, confirmations, key presses."""

from __future__ import annotations

import getpass
import sys
from typing import Callable, Optional

from .errors import InputMismatchError, NotConfirmedError
from .executil import trace

Reader = Callable[[str], str]


def _read_confirmed(label: str, read: Reader) -> str:
    first = read(f"Passphrase for {label}: ")
    if not first:
        raise InputMismatchError("empty passphrase")
    second = read(f"Confirm passphrase for {label}: ")
    if first.encode("utf-8") != second.encode("utf-8"):
        raise InputMismatchError("passphrases do not match")
    return first


def acquire_passphrase(label: str, read: Optional[Reader] = None) -> str:
    """Prompt for a new passphrase until entry and confirmation agree."""

    read = read or getpass.getpass
    attempt = 0
    while True:
        attempt += 1
        try:
            value = _read_confirmed(label, read)
        except InputMismatchError as exc:
            trace("prompts.passphrase_mismatch", label=label, attempt=attempt)
            print(f"[WARN] {exc}; try again.", file=sys.stderr)
            continue
        trace("prompts.passphrase_confirmed", label=label, attempts=attempt)
        return value


def reprompt_passphrase(label: str, read: Optional[Reader] = None) -> str:
    """Ask once for an existing passphrase (no confirmation)."""

    read = read or getpass.getpass
    return read(f"Existing passphrase for {label}: ")


def confirm_destruction(device: str, summary: str, read: Optional[Reader] = None) -> None:
    read = read or input
    print(summary, file=sys.stderr)
    print(f"ALL DATA ON {device} WILL BE DESTROYED.", file=sys.stderr)
    answer = read("Type YES to continue: ")
    if answer.strip() != "YES":
        raise NotConfirmedError(f"operator declined to erase {device}")
    trace("prompts.destruction_confirmed", device=device)


def wait_key(message: str, stream=None) -> str:
    """Block until a single key press (or a line when stdin is not a tty)."""

    stream = stream or sys.stdin
    print(message, file=sys.stderr, flush=True)
    fd = None
    try:
        fd = stream.fileno()
    except (AttributeError, OSError, ValueError):
        fd = None
    if fd is not None and stream.isatty():
        import termios
        import tty

        saved = termios.tcgetattr(fd)
        try:
            tty.setcbreak(fd)
            return stream.read(1)
        finally:
            termios.tcsetattr(fd, termios.TCSADRAIN, saved)
    return stream.readline()
