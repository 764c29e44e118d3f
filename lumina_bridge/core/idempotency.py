"""Remember which commands already reached a terminal status.

The pull path re-reads every ``pending`` document on each cycle. When a
status write-back is lost the document stays ``pending`` remotely, and without
this record the bridge would send the same request to the device again.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True, slots=True)
class TerminalOutcome:
    status: str
    error: Optional[str]
    finished_at: float


class CommandIdempotencyGuard:
    """Bounded, expiring record of terminal outcomes keyed by command id.

    Outcomes older than ``ttl_seconds`` are forgotten. Once ``max_entries``
    is exceeded the oldest outcome is evicted first.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 24 * 3600.0,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._outcomes: OrderedDict[str, TerminalOutcome] = OrderedDict()
        self._ttl = ttl_seconds
        self._max_entries = max(1, max_entries)
        self._clock = clock

    def __len__(self) -> int:
        return len(self._outcomes)

    def previous_outcome(self, command_id: str) -> Optional[TerminalOutcome]:
        """Outcome recorded for ``command_id``, or ``None`` if it may run."""

        self._expire()
        return self._outcomes.get(command_id)

    def mark_processed(
        self, command_id: str, *, status: str, error_message: Optional[str] = None
    ) -> None:
        # re-insert so iteration order stays oldest first
        self._outcomes.pop(command_id, None)
        self._outcomes[command_id] = TerminalOutcome(
            status=status, error=error_message, finished_at=self._clock()
        )
        while len(self._outcomes) > self._max_entries:
            self._outcomes.popitem(last=False)

    def _expire(self) -> None:
        cutoff = self._clock() - self._ttl
        while self._outcomes:
            oldest = next(iter(self._outcomes.values()))
            if oldest.finished_at >= cutoff:
                break
            self._outcomes.popitem(last=False)
