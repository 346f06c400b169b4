"""
Permission check metrics

In-memory counters for the compatibility router's operational dashboard:
- dynamic_checks / legacy_checks: evaluations per path
- fallback_usage: dynamic denials or errors answered by the static matrix
- errors: checks that ended in error_fallback
- average_response_time: running mean in milliseconds

Counters are approximate observability data, but every update happens under
a lock so concurrent workers cannot corrupt the running average.
"""
import logging
import math
from datetime import datetime, timezone
from threading import Lock
from typing import Dict

logger = logging.getLogger(__name__)


class RBACMetrics:
    """Thread-safe counters for permission checks."""

    def __init__(self):
        self._lock = Lock()
        self._reset_unlocked()

    def _reset_unlocked(self) -> None:
        self.dynamic_checks = 0
        self.legacy_checks = 0
        self.fallback_usage = 0
        self.errors = 0
        self.average_response_time = 0.0
        self._timed_checks = 0
        self._since = datetime.now(timezone.utc)

    def increment(self, name: str, value: int = 1) -> None:
        """Increment one of the named counters."""
        if name not in ("dynamic_checks", "legacy_checks", "fallback_usage", "errors"):
            raise ValueError(f"Unknown RBAC metric: {name}")
        with self._lock:
            setattr(self, name, getattr(self, name) + value)

    def observe_response_time(self, response_time_ms: float) -> None:
        """Fold one response time into the running average."""
        if response_time_ms is None or not math.isfinite(response_time_ms) or response_time_ms < 0:
            logger.debug(f"Ignoring invalid response time sample: {response_time_ms!r}")
            return
        with self._lock:
            self._timed_checks += 1
            self.average_response_time += (
                (response_time_ms - self.average_response_time) / self._timed_checks
            )

    def reset(self) -> None:
        with self._lock:
            self._reset_unlocked()

    def snapshot(self) -> Dict:
        """Consistent copy of all counters."""
        with self._lock:
            return {
                "dynamic_checks": self.dynamic_checks,
                "legacy_checks": self.legacy_checks,
                "fallback_usage": self.fallback_usage,
                "errors": self.errors,
                "average_response_time": self.average_response_time,
                "collected_since": self._since.isoformat(),
            }
