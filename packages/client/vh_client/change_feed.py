"""
Change-feed subscriptions that turn row-change notifications into cache
invalidations.

A subscription owns at most one open channel. Re-binding to a different
filter closes the old channel before the new one is opened; notifications
are treated as edge-triggered signals and their payloads are never applied.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Sequence

import structlog

from .filters import ColumnFilter
from .metrics import MetricsCollector
from .models import ChangeEvent, ChangeType
from .query_cache import QueryKey
from .realtime import ALL_EVENTS, Channel, RealtimeClient

log = structlog.get_logger()


@dataclass(frozen=True)
class ChannelFilter:
    """Table plus column predicate identifying one channel."""

    table: str
    predicate: ColumnFilter

    @classmethod
    def eq(cls, table: str, column: str, value: Any) -> "ChannelFilter":
        return cls(table, ColumnFilter.eq(column, value))

    @classmethod
    def in_(cls, table: str, column: str, values: Iterable[Any]) -> "ChannelFilter":
        return cls(table, ColumnFilter.in_(column, values))

    def to_param(self) -> str:
        return self.predicate.to_param()

    def matches(self, row: dict[str, Any]) -> bool:
        return self.predicate.matches(row)

    def __str__(self) -> str:
        return f"{self.table}:{self.to_param()}"


class ChangeFeedSubscription:
    """One named channel whose notifications invalidate a set of query keys."""

    def __init__(
        self,
        realtime: RealtimeClient,
        name: str,
        invalidate: Callable[[QueryKey], None],
        events: Sequence[ChangeType] = ALL_EVENTS,
        metrics: MetricsCollector | None = None,
    ):
        self._realtime = realtime
        self.name = name
        self._invalidate = invalidate
        self._events = tuple(events)
        self._metrics = metrics
        self._filter: ChannelFilter | None = None
        self._keys: tuple[QueryKey, ...] = ()
        self._channel: Channel | None = None

    @property
    def filter(self) -> ChannelFilter | None:
        return self._filter

    @property
    def channel(self) -> Channel | None:
        return self._channel

    @property
    def keys(self) -> tuple[QueryKey, ...]:
        return self._keys

    def bind(self, channel_filter: ChannelFilter | None, keys: Sequence[QueryKey] = ()) -> None:
        """Open the channel for ``channel_filter``, replacing any previous one."""
        keys = tuple(keys)
        if channel_filter == self._filter and self._channel is not None and not self._channel.closed:
            self._keys = keys
            return

        self.close()
        if channel_filter is None:
            return

        self._filter = channel_filter
        self._keys = keys
        self._channel = self._realtime.subscribe(
            channel_filter.table,
            self._events,
            channel_filter.predicate,
            self._on_change,
        )
        if self._metrics:
            self._metrics.add_gauge("channels_open", 1)
        log.info("change_feed.bound", name=self.name, filter=str(channel_filter))

    def close(self) -> None:
        """Close the current channel, if any. No notification is handled afterwards."""
        channel, self._channel = self._channel, None
        self._filter = None
        self._keys = ()
        if channel is None:
            return
        self._realtime.unsubscribe(channel)
        if self._metrics:
            self._metrics.add_gauge("channels_open", -1)
        log.info("change_feed.closed", name=self.name, filter=channel.filter.to_param())

    def _on_change(self, change: ChangeEvent) -> None:
        if self._channel is None:
            return
        if self._metrics:
            self._metrics.inc("change_notifications_total")
        row = change.record or change.old_record
        log.info(
            "change_feed.invalidate",
            name=self.name,
            table=change.table,
            type=change.type.value,
            row_id=row.get("id"),
            keys=[list(k) for k in self._keys],
        )
        for key in self._keys:
            self._invalidate(key)
