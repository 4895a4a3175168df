"""Per-key notification cooldown.

A rule (or, for direct failure alerts, an endpoint) that notified less than
an hour ago is suppressed. The last-notified timestamps live behind
``ThrottleStore`` so a single process can keep them in memory while several
processes share them through the SQLite database.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Protocol

from endpoint_monitoring.config import AlertsConfig
from endpoint_monitoring.storage import MonitoringStore


THROTTLE_WINDOW_SECONDS = 3600.0


class ThrottleStore(Protocol):
    def last_notified(self, key: str, *, now: float) -> float | None: ...

    def mark_notified(self, key: str, *, at: float) -> None: ...

    def purge(self, *, now: float) -> int: ...


class InMemoryThrottleStore:
    """Process-local store; a restart clears all cooldowns."""

    def __init__(self, *, window_seconds: float = THROTTLE_WINDOW_SECONDS) -> None:
        self.window_seconds = float(window_seconds)
        self._lock = threading.Lock()
        self._last: dict[str, float] = {}

    def last_notified(self, key: str, *, now: float) -> float | None:
        with self._lock:
            return self._last.get(key)

    def mark_notified(self, key: str, *, at: float) -> None:
        with self._lock:
            self._last[key] = float(at)

    def purge(self, *, now: float) -> int:
        with self._lock:
            expired = [k for k, at in self._last.items() if now - at >= self.window_seconds]
            for k in expired:
                del self._last[k]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._last.clear()


class SqliteThrottleStore:
    """Keyed expiring rows in the shared database."""

    def __init__(self, store: MonitoringStore, *, window_seconds: float = THROTTLE_WINDOW_SECONDS) -> None:
        self.store = store
        self.window_seconds = float(window_seconds)

    @staticmethod
    def _key(key: str) -> str:
        return f"alert:{key}"

    def last_notified(self, key: str, *, now: float) -> float | None:
        return self.store.throttle_get(self._key(key), now_ts=now)

    def mark_notified(self, key: str, *, at: float) -> None:
        self.store.throttle_set(self._key(key), notified_at_ts=at, expires_at_ts=at + self.window_seconds)

    def purge(self, *, now: float) -> int:
        return self.store.throttle_purge(now_ts=now)


def build_throttle_store(store: MonitoringStore, config: AlertsConfig | None = None) -> ThrottleStore:
    """Pick the store named by ``alerts.throttle_store``."""
    config = config or AlertsConfig()
    if config.throttle_store == "sqlite":
        return SqliteThrottleStore(store)
    return InMemoryThrottleStore()


class AlertThrottle:
    def __init__(
        self,
        store: ThrottleStore | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store: ThrottleStore = store if store is not None else InMemoryThrottleStore()
        self.clock = clock

    def should_notify(self, key: str) -> bool:
        now = self.clock()
        last = self.store.last_notified(key, now=now)
        if last is None:
            return True
        return (now - last) >= THROTTLE_WINDOW_SECONDS

    def mark_notified(self, key: str) -> None:
        self.store.mark_notified(key, at=self.clock())

    def purge(self) -> int:
        return self.store.purge(now=self.clock())
