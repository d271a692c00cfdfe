from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from facility.config.const import RATE_LIMIT_LOCKOUT_SECONDS, RATE_LIMIT_MAX_FAILURES


@dataclass(slots=True)
class RateLimitDecision:
    allowed: bool
    remaining_seconds: Optional[int] = None


@dataclass(slots=True)
class _Entry:
    failures: int = 0
    locked_until: float = 0.0


class RateLimiter:
    """
    Per-source failure counter with a timed lockout.

    * ``max_failures`` consecutive failures arm a lockout of ``lockout_seconds``
      and restart the counter;
    * an expired lockout is dropped on the next :meth:`check`;
    * :meth:`clear` forgets the source after a success.

    State is in-memory only; it is a soft deterrent, not a control of record.
    """

    def __init__(
        self,
        max_failures: int = RATE_LIMIT_MAX_FAILURES,
        lockout_seconds: float = RATE_LIMIT_LOCKOUT_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_failures = max_failures
        self.lockout_seconds = float(lockout_seconds)
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def check(self, source: str) -> RateLimitDecision:
        with self._lock:
            entry = self._entries.get(source)
            if entry is None:
                return RateLimitDecision(allowed=True)
            now = self._clock()
            if entry.locked_until > now:
                remaining = max(1, math.ceil(entry.locked_until - now))
                return RateLimitDecision(allowed=False, remaining_seconds=remaining)
            if entry.locked_until > 0:
                # lockout elapsed
                del self._entries[source]
            return RateLimitDecision(allowed=True)

    def record_failure(self, source: str) -> None:
        with self._lock:
            now = self._clock()
            entry = self._entries.get(source)
            if entry is None:
                entry = self._entries[source] = _Entry()
            elif entry.locked_until > now:
                return
            elif entry.locked_until > 0:
                entry.locked_until = 0.0
            entry.failures += 1
            if entry.failures >= self.max_failures:
                entry.locked_until = now + self.lockout_seconds
                entry.failures = 0

    def clear(self, source: str) -> None:
        with self._lock:
            self._entries.pop(source, None)

    def failures(self, source: str) -> int:
        with self._lock:
            entry = self._entries.get(source)
            return entry.failures if entry else 0
