"""In-memory KPI tracking for relation sync and permission checks."""

from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Any

ERROR_WINDOW_SEC = 60.0

DEFAULT_COUNTERS = (
    "relations_sync_ok_total",
    "relations_sync_failed_total",
    "relations_refresh_detached_total",
    "permission_checks_total",
    "interactions_allowed_total",
    "interactions_disallowed_total",
    "detached_task_failures_total",
)


class KPIStore:
    """Thread-safe store for lightweight KPIs."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, int] = {}
        self._errors: deque[float] = deque()
        self._initialize_default_counters()

    def _initialize_default_counters(self) -> None:
        for key in DEFAULT_COUNTERS:
            self._counters.setdefault(key, 0)

    def _prune(self, container: deque[float], now: float, window: float) -> None:
        while container and now - container[0] > window:
            container.popleft()

    def record_error(self, now: float | None = None) -> None:
        now_ts = now or time.time()
        with self._lock:
            self._errors.append(now_ts)
            self._prune(self._errors, now_ts, ERROR_WINDOW_SEC)

    def snapshot(self) -> dict[str, Any]:
        now_ts = time.time()
        with self._lock:
            self._prune(self._errors, now_ts, ERROR_WINDOW_SEC)
            return {
                "errors_1m": len(self._errors),
                "counters": dict(self._counters),
            }

    def reset(self) -> None:
        """Reset stored data (test helper)."""

        with self._lock:
            self._errors.clear()
            self._counters.clear()
            self._initialize_default_counters()

    def increment_counter(self, key: str, amount: int = 1) -> None:
        """Increment a named counter used for diagnostics."""

        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + amount

    def get_counter(self, key: str) -> int:
        """Return a counter value (defaults to zero)."""

        with self._lock:
            return self._counters.get(key, 0)


METRICS = KPIStore()


def snapshot_kpis() -> dict[str, Any]:
    """Return a snapshot of current KPI values."""

    return METRICS.snapshot()
