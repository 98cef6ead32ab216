from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Generic, List, Optional, Tuple, TypeVar


T = TypeVar("T")


@dataclass
class _Pending(Generic[T]):
    payload: T
    due_at: float


class KeyedDebouncer(Generic[T]):
    """
    Coalesces bursts of writes per key.

    - `schedule(key, payload)` replaces any pending payload for `key` (the
      superseded one is dropped, not queued) and restarts its quiet period.
    - `due()` pops every entry whose quiet period has elapsed.
    - `flush()` pops entries regardless of timing; `cancel()` discards them.

    Time comes from an injectable monotonic clock; nothing sleeps. The host
    loop is expected to call `due()` periodically.
    """

    def __init__(self, delay_seconds: float, *, clock=time.monotonic):
        if delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")
        self._delay = delay_seconds
        self._pending: "OrderedDict[str, _Pending[T]]" = OrderedDict()
        self._lock = threading.Lock()
        self._clock = clock
        self.superseded = 0

    @property
    def delay_seconds(self) -> float:
        return self._delay

    def schedule(self, key: str, payload: T) -> None:
        with self._lock:
            if self._pending.pop(key, None) is not None:
                self.superseded += 1
            self._pending[key] = _Pending(payload=payload, due_at=self._clock() + self._delay)

    def pending(self) -> List[str]:
        with self._lock:
            return list(self._pending)

    def peek(self, key: str) -> Optional[T]:
        with self._lock:
            entry = self._pending.get(key)
            return entry.payload if entry is not None else None

    def next_due_in(self) -> Optional[float]:
        """Seconds until the earliest pending entry is due (>= 0), or None."""
        with self._lock:
            if not self._pending:
                return None
            earliest = min(p.due_at for p in self._pending.values())
            return max(0.0, earliest - self._clock())

    def due(self) -> List[Tuple[str, T]]:
        with self._lock:
            now = self._clock()
            ready = [k for k, p in self._pending.items() if p.due_at <= now]
            return [(k, self._pending.pop(k).payload) for k in ready]

    def flush(self, key: Optional[str] = None) -> List[Tuple[str, T]]:
        with self._lock:
            if key is not None:
                entry = self._pending.pop(key, None)
                return [(key, entry.payload)] if entry is not None else []
            drained = [(k, p.payload) for k, p in self._pending.items()]
            self._pending.clear()
            return drained

    def cancel(self, key: Optional[str] = None) -> int:
        with self._lock:
            if key is not None:
                return 1 if self._pending.pop(key, None) is not None else 0
            count = len(self._pending)
            self._pending.clear()
            return count
