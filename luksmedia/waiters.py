"""Bounded wait-for-condition primitive."""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from .errors import WaitCancelledError, WaitTimeoutError
from .executil import trace


def wait_for(
        condition: Callable[[], bool],
        *,
        timeout: Optional[float],
        interval: float = 1.0,
        cancel: Optional[threading.Event] = None,
        description: str = "condition",
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], object]] = None,
) -> float:
    """Poll ``condition`` every ``interval`` seconds until it holds.

    The condition is checked immediately and then once per interval, so a
    change is noticed at most one interval after it happens.  ``timeout`` of
    ``None`` waits forever.  Setting ``cancel`` aborts the wait.  Returns the
    seconds spent waiting.
    """

    if interval <= 0:
        raise ValueError("interval must be positive")
    if sleep is None:
        # Event.wait doubles as an interruptible sleep
        if cancel is not None:
            sleep = cancel.wait
        else:
            sleep = time.sleep
    started = clock()
    deadline = None if timeout is None else started + timeout
    trace("wait.start", what=description, timeout=timeout, interval=interval)
    polls = 0
    while True:
        if cancel is not None and cancel.is_set():
            trace("wait.cancelled", what=description, polls=polls)
            raise WaitCancelledError(f"wait for {description} was cancelled")
        polls += 1
        if condition():
            waited = clock() - started
            trace("wait.done", what=description, polls=polls, waited=waited)
            return waited
        now = clock()
        if deadline is not None and now >= deadline:
            trace("wait.timeout", what=description, polls=polls)
            raise WaitTimeoutError(f"{description} did not happen within {timeout:.0f}s")
        pause = interval if deadline is None else min(interval, max(0.0, deadline - now))
        sleep(pause)
