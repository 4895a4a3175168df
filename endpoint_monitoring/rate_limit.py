from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from endpoint_monitoring.errors import RateLimitError
from endpoint_monitoring.models import PlanType
from endpoint_monitoring.plans import get_plan_limits, is_unlimited


MINUTE_SECONDS = 60.0
HOUR_SECONDS = 3600.0
PRUNE_INTERVAL_SECONDS = 300.0


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Per-user fixed minute/hour request windows sized by plan tier.

    Users whose windows have both expired are dropped every
    ``prune_interval_seconds``, piggybacked on ``check``.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        prune_interval_seconds: float = PRUNE_INTERVAL_SECONDS,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, dict[str, _Window]] = {}
        self._prune_interval = float(prune_interval_seconds)
        self._next_prune_at = clock() + self._prune_interval

    @property
    def tracked_users(self) -> int:
        with self._lock:
            return len(self._windows)

    def check(self, user_id: str, plan: PlanType | str | None) -> None:
        limits = get_plan_limits(plan).rate_limit
        now = self._clock()
        with self._lock:
            if now >= self._next_prune_at:
                self._prune_locked(now)
            entry = self._windows.get(user_id)
            if entry is None:
                entry = {
                    "minute": _Window(0, now + MINUTE_SECONDS),
                    "hour": _Window(0, now + HOUR_SECONDS),
                }
                self._windows[user_id] = entry

            if entry["minute"].reset_at < now:
                entry["minute"] = _Window(0, now + MINUTE_SECONDS)
            if entry["hour"].reset_at < now:
                entry["hour"] = _Window(0, now + HOUR_SECONDS)

            minute, hour = entry["minute"], entry["hour"]
            if not is_unlimited(limits.requests_per_minute) and minute.count >= limits.requests_per_minute:
                reset_in = math.ceil(minute.reset_at - now)
                raise RateLimitError(
                    f"Rate limit exceeded. Try again in {reset_in} seconds.",
                    retry_after_seconds=reset_in,
                )
            if not is_unlimited(limits.requests_per_hour) and hour.count >= limits.requests_per_hour:
                reset_in = math.ceil(hour.reset_at - now)
                raise RateLimitError(
                    f"Hourly rate limit exceeded. Try again in {math.ceil(reset_in / 60)} minutes.",
                    retry_after_seconds=reset_in,
                )

            minute.count += 1
            hour.count += 1

    def get_rate_limit_info(self, user_id: str, plan: PlanType | str | None) -> dict[str, Any]:
        limits = get_plan_limits(plan).rate_limit
        now = self._clock()
        with self._lock:
            entry = self._windows.get(user_id)
            if entry is None:
                return {
                    "minute": {
                        "limit": limits.requests_per_minute,
                        "remaining": limits.requests_per_minute,
                        "resetAt": now + MINUTE_SECONDS,
                    },
                    "hour": {
                        "limit": limits.requests_per_hour,
                        "remaining": limits.requests_per_hour,
                        "resetAt": now + HOUR_SECONDS,
                    },
                }
            return {
                "minute": {
                    "limit": limits.requests_per_minute,
                    "remaining": max(0, limits.requests_per_minute - entry["minute"].count),
                    "resetAt": entry["minute"].reset_at,
                },
                "hour": {
                    "limit": limits.requests_per_hour,
                    "remaining": max(0, limits.requests_per_hour - entry["hour"].count),
                    "resetAt": entry["hour"].reset_at,
                },
            }

    def prune(self) -> int:
        """Drop users whose minute and hour windows have both expired."""
        with self._lock:
            return self._prune_locked(self._clock())

    def _prune_locked(self, now: float) -> int:
        expired = [
            user_id
            for user_id, entry in self._windows.items()
            if entry["minute"].reset_at < now and entry["hour"].reset_at < now
        ]
        for user_id in expired:
            del self._windows[user_id]
        self._next_prune_at = now + self._prune_interval
        return len(expired)
