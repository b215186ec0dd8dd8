from __future__ import annotations

from datetime import datetime, timedelta, timezone
from threading import Lock


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class SlidingWindowRateLimiter:
    """Per-key sliding window counter kept in process memory."""

    def __init__(self, *, max_events: int, window_seconds: int) -> None:
        self._lock = Lock()
        self._max_events = max_events
        self._window = timedelta(seconds=window_seconds)
        self._events: dict[str, list[datetime]] = {}
        self._next_sweep: datetime | None = None

    def reset(self) -> None:
        with self._lock:
            self._events.clear()
            self._next_sweep = None

    def check_and_record(self, key: str, *, now: datetime | None = None) -> bool:
        """Record one event for ``key``; return False when the window is already full."""
        if self._max_events <= 0:
            return True
        with self._lock:
            current = now or _now_utc()
            cutoff = current - self._window
            self._evict_idle(current, cutoff)
            recent = [ts for ts in self._events.get(key, []) if ts > cutoff]
            if len(recent) >= self._max_events:
                self._events[key] = recent
                return False
            recent.append(current)
            self._events[key] = recent
            return True

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._events)

    def _evict_idle(self, current: datetime, cutoff: datetime) -> None:
        # Callers hold the lock. Sweeps run at most once per window.
        if self._next_sweep is not None and current < self._next_sweep:
            return
        for key in [key for key, stamps in self._events.items() if not stamps or stamps[-1] <= cutoff]:
            del self._events[key]
        self._next_sweep = current + self._window
