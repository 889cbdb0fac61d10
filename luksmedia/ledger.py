"""Resource-acquisition ledger with reverse-order teardown."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List

from .executil import trace


@dataclass
class Acquired:
    kind: str
    name: str
    release: Callable[[], object]


class ResourceLedger:
    """Records every container, volume group and mount the workflow brings up.

    ``unwind`` releases them newest first.  A release that raises is traced
    and skipped so the remaining entries still get their turn.
    """

    def __init__(self) -> None:
        self.entries: List[Acquired] = []

    def record(self, kind: str, name: str, release: Callable[[], object]) -> None:
        trace("ledger.record", kind=kind, name=name)
        self.entries.append(Acquired(kind, name, release))

    def unwind(self) -> List[str]:
        failures: List[str] = []
        while self.entries:
            entry = self.entries.pop()
            try:
                entry.release()
                trace("ledger.released", kind=entry.kind, name=entry.name)
            except Exception as exc:  # noqa: BLE001 - keep unwinding the rest
                trace("ledger.release_failed", kind=entry.kind, name=entry.name, error=str(exc))
                failures.append(f"{entry.kind}:{entry.name}: {exc}")
        return failures

    def __len__(self) -> int:
        return len(self.entries)
