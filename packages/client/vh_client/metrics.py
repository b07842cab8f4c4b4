"""
In-process counters and gauges for cache and channel activity.

Reported through the periodic ``client.status`` log line; there is no
exposition endpoint.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any

PREFIX = "vh_client_"


def _full(name: str) -> str:
    return f"{PREFIX}{name}"


class MetricsCollector:
    """
    Named counters and gauges shared by the query cache and change feeds.

    Counters only grow (fetches, invalidations, notifications). Gauges track
    current levels such as cached entries and open channels.
    """

    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._gauges: dict[str, float] = {}
        self._started = time.monotonic()

    def inc(self, name: str, value: int = 1) -> None:
        self._counters[_full(name)] += value

    def set_gauge(self, name: str, value: float) -> None:
        self._gauges[_full(name)] = value

    def add_gauge(self, name: str, delta: float) -> None:
        """Move a gauge up or down, starting from zero."""
        key = _full(name)
        self._gauges[key] = self._gauges.get(key, 0) + delta

    def get(self, name: str) -> int | float:
        """Current value by short name; unknown names read as 0."""
        key = _full(name)
        if key in self._gauges:
            return self._gauges[key]
        return self._counters.get(key, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "uptime_seconds": round(time.monotonic() - self._started, 1),
        }
