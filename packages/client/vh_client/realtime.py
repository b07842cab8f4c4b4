"""
Realtime channels over the backend's row-change SSE stream.

Each channel holds one persistent SSE connection filtered by table and column
predicate, with:
- Automatic reconnection with exponential backoff
- Join acknowledgement tracking
- Permanent failure on client errors (4xx), reported as SubscriptionError
- Synchronous close: no callback runs after ``unsubscribe`` returns
"""

from __future__ import annotations

import asyncio
import json
from typing import Callable, Protocol, Sequence

import httpx
import structlog
from pydantic import ValidationError

from .backend import BackendClient
from .errors import SubscriptionError
from .filters import ColumnFilter
from .models import ChangeEvent, ChangeType

log = structlog.get_logger()

# Reconnection parameters
RECONNECT_BASE_SECONDS = 1.0
RECONNECT_MAX_SECONDS = 60.0
RECONNECT_MULTIPLIER = 2.0

ChangeCallback = Callable[[ChangeEvent], None]

ALL_EVENTS: tuple[ChangeType, ...] = (ChangeType.INSERT, ChangeType.UPDATE, ChangeType.DELETE)


class Channel:
    """A single filtered subscription. Created and closed by a RealtimeClient."""

    def __init__(
        self,
        table: str,
        events: Sequence[ChangeType],
        channel_filter: ColumnFilter,
        callback: ChangeCallback,
    ):
        self.table = table
        self.events = tuple(events)
        self.filter = channel_filter
        self._callback = callback
        self.state = "joining"
        self.error: SubscriptionError | None = None
        self.reconnect_count = 0
        self._task: asyncio.Task | None = None

    @property
    def closed(self) -> bool:
        return self.state in ("closed", "failed")

    def deliver(self, change: ChangeEvent) -> None:
        if self.closed:
            return
        if change.table != self.table or change.type not in self.events:
            return
        self._callback(change)

    def close(self) -> None:
        if self.state != "failed":
            self.state = "closed"
        if self._task and not self._task.done():
            self._task.cancel()

    def fail(self, error: SubscriptionError) -> None:
        self.state = "failed"
        self.error = error
        log.warning(
            "realtime.channel_failed",
            table=self.table,
            filter=self.filter.to_param(),
            error=error.message,
        )

    def __repr__(self) -> str:
        return f"Channel({self.table}, {self.filter.to_param()}, {self.state})"


class RealtimeClient(Protocol):
    def subscribe(
        self,
        table: str,
        events: Sequence[ChangeType],
        channel_filter: ColumnFilter,
        callback: ChangeCallback,
    ) -> Channel: ...

    def unsubscribe(self, channel: Channel) -> None: ...


class HttpRealtimeClient:
    """Opens one SSE stream per channel against ``/realtime/v1/stream``."""

    def __init__(
        self,
        client: BackendClient,
        verify_tls: bool = True,
        reconnect_base: float = RECONNECT_BASE_SECONDS,
        reconnect_max: float = RECONNECT_MAX_SECONDS,
    ):
        self._client = client
        self._verify_tls = verify_tls
        self._reconnect_base = reconnect_base
        self._reconnect_max = reconnect_max
        self._channels: set[Channel] = set()

    @property
    def channels(self) -> list[Channel]:
        return [c for c in self._channels if not c.closed]

    def subscribe(
        self,
        table: str,
        events: Sequence[ChangeType],
        channel_filter: ColumnFilter,
        callback: ChangeCallback,
    ) -> Channel:
        channel = Channel(table, events, channel_filter, callback)
        channel._task = asyncio.get_running_loop().create_task(self._listen_loop(channel))
        self._channels.add(channel)
        log.info("realtime.subscribe", table=table, filter=channel_filter.to_param())
        return channel

    def unsubscribe(self, channel: Channel) -> None:
        channel.close()
        self._channels.discard(channel)
        log.info("realtime.unsubscribe", table=channel.table, filter=channel.filter.to_param())

    async def close(self) -> None:
        channels = list(self._channels)
        for channel in channels:
            self.unsubscribe(channel)
        tasks = [c._task for c in channels if c._task]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _listen_loop(self, channel: Channel) -> None:
        backoff = self._reconnect_base

        while not channel.closed:
            try:
                await self._connect_and_stream(channel)
                backoff = self._reconnect_base  # Reset on clean disconnect
            except asyncio.CancelledError:
                raise
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if 400 <= status < 500:
                    channel.fail(SubscriptionError(
                        f"Channel rejected with HTTP {status}",
                        table=channel.table,
                        status=status,
                    ))
                    return
                log.warning("realtime.connection_lost", table=channel.table,
                            status=status, backoff=backoff)
            except httpx.HTTPError as exc:
                log.warning(
                    "realtime.connection_lost",
                    table=channel.table,
                    error=str(exc),
                    backoff=backoff,
                )

            if channel.closed:
                break

            channel.state = "joining"
            channel.reconnect_count += 1
            await asyncio.sleep(backoff)
            backoff = min(backoff * RECONNECT_MULTIPLIER, self._reconnect_max)

    async def _connect_and_stream(self, channel: Channel) -> None:
        headers = {**self._client.headers(), "Accept": "text/event-stream"}
        params = {
            "table": channel.table,
            "filter": channel.filter.to_param(),
            "events": ",".join(e.value for e in channel.events),
        }
        url = f"{self._client.url}/realtime/v1/stream"

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(None),
            verify=self._verify_tls,
        ) as client:
            async with client.stream("GET", url, headers=headers, params=params) as response:
                response.raise_for_status()

                event_type: str | None = None
                data_lines: list[str] = []

                async for line in response.aiter_lines():
                    if channel.closed:
                        break

                    line = line.rstrip("\n")
                    if line.startswith("event:"):
                        event_type = line[6:].strip()
                    elif line.startswith("data:"):
                        data_lines.append(line[5:].strip())
                    elif line.startswith(":") or line.startswith("id:"):
                        pass
                    elif line == "":
                        if data_lines:
                            self._dispatch(channel, event_type, data_lines)
                        event_type = None
                        data_lines = []

    def _dispatch(self, channel: Channel, event_type: str | None, data_lines: list[str]) -> None:
        data_str = "\n".join(data_lines)
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            log.warning("realtime.parse_error", data=data_str[:200])
            return

        if event_type == "system":
            if data.get("status") == "ok" and not channel.closed:
                channel.state = "joined"
                log.info("realtime.joined", table=channel.table, filter=channel.filter.to_param())
            return

        try:
            change = ChangeEvent.model_validate(data)
        except ValidationError:
            log.warning("realtime.invalid_change", data=data_str[:200])
            return

        try:
            channel.deliver(change)
        except Exception:
            log.exception("realtime.callback_error", table=channel.table)
