"""
Keyed stale-while-revalidate cache for backend query results.

- Keys are tuples built by ``query_key`` from a query kind and scope values
- Concurrent reads of a key share one in-flight fetch (request collapsing)
- ``invalidate`` marks an entry stale; active keys re-fetch immediately,
  inactive keys on the next read
- Failures are stored as results, never retried automatically
- Entries with no observers are dropped after ``gc_seconds``
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

import structlog

from .metrics import MetricsCollector

log = structlog.get_logger()

QueryKey = tuple[str, ...]
FetchFn = Callable[[], Awaitable[Any]]


def query_key(kind: str, *scope: Any) -> QueryKey:
    """Deterministic cache key; scope values are normalised to strings."""
    return (kind, *(str(s) for s in scope))


class QueryStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class QueryResult:
    status: QueryStatus
    value: Any = None
    error: Exception | None = None
    is_fetching: bool = False
    is_stale: bool = False

    @property
    def is_pending(self) -> bool:
        return self.status == QueryStatus.PENDING

    @property
    def is_success(self) -> bool:
        return self.status == QueryStatus.SUCCESS

    @property
    def is_error(self) -> bool:
        return self.status == QueryStatus.ERROR


PENDING = QueryResult(QueryStatus.PENDING)

QueryListener = Callable[[QueryResult], None]


@dataclass(eq=False)
class _Entry:
    key: QueryKey
    value: Any = None
    has_value: bool = False
    error: Exception | None = None
    stale: bool = True
    generation: int = 0
    fetch_fn: FetchFn | None = None
    task: asyncio.Task | None = None
    observers: list["QueryObserver"] = field(default_factory=list)
    gc_handle: asyncio.TimerHandle | None = None

    @property
    def fetching(self) -> bool:
        return self.task is not None and not self.task.done()

    @property
    def needs_fetch(self) -> bool:
        return not self.has_value or self.stale or self.error is not None


class QueryObserver:
    """An active consumer of one cache key."""

    def __init__(
        self,
        cache: "QueryCache",
        key: QueryKey,
        fetch_fn: FetchFn,
        listener: QueryListener,
        enabled: bool,
    ):
        self._cache = cache
        self.key = key
        self.fetch_fn = fetch_fn
        self._listener = listener
        self.enabled = enabled
        self.closed = False

    @property
    def result(self) -> QueryResult:
        if not self.enabled or self.closed:
            return PENDING
        return self._cache.peek(self.key)

    def set_enabled(self, enabled: bool) -> None:
        if self.closed or enabled == self.enabled:
            return
        self.enabled = enabled
        if enabled:
            self._cache._activate(self)

    def set_fetch_fn(self, fetch_fn: FetchFn) -> None:
        self.fetch_fn = fetch_fn
        if self.enabled and not self.closed:
            self._cache._activate(self)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._cache._release(self)

    def _emit(self, result: QueryResult) -> None:
        if self.closed or not self.enabled:
            return
        try:
            self._listener(result)
        except Exception:
            log.exception("query_cache.listener_error", key=self.key)


class QueryCache:
    """Process-wide cache; the only writer of query results."""

    def __init__(self, metrics: MetricsCollector | None = None, gc_seconds: float = 300.0):
        self._entries: dict[QueryKey, _Entry] = {}
        self._metrics = metrics
        self._gc_seconds = gc_seconds

    def __contains__(self, key: QueryKey) -> bool:
        return key in self._entries

    def keys(self) -> list[QueryKey]:
        return list(self._entries)

    def peek(self, key: QueryKey) -> QueryResult:
        """Current result for ``key`` without fetching."""
        entry = self._entries.get(key)
        if entry is None:
            return PENDING
        return self._result(entry)

    async def get(self, key: QueryKey, fetch_fn: FetchFn, enabled: bool = True) -> QueryResult:
        """Return the cached result, fetching when missing, stale or failed."""
        if not enabled:
            return PENDING

        entry = self._entry(key)
        try:
            if not entry.needs_fetch:
                if self._metrics:
                    self._metrics.inc("query_cache_hits_total")
                return self._result(entry)

            task = self._ensure_fetch(entry, fetch_fn)
            await asyncio.shield(task)
            return self._result(entry)
        finally:
            if not entry.observers:
                self._schedule_collect(entry)

    def observe(
        self,
        key: QueryKey,
        fetch_fn: FetchFn,
        listener: QueryListener,
        enabled: bool = True,
    ) -> QueryObserver:
        """Register an active consumer. Fetches right away if the entry needs it.

        An entry nobody was observing has had no change feed behind it, so a
        cached value is served stale and re-fetched.
        """
        observer = QueryObserver(self, key, fetch_fn, listener, enabled)
        entry = self._entry(key)
        if not entry.observers and entry.has_value and not entry.fetching:
            entry.stale = True
        entry.observers.append(observer)
        if entry.gc_handle:
            entry.gc_handle.cancel()
            entry.gc_handle = None
        if enabled:
            self._activate(observer)
        return observer

    def invalidate(self, key: QueryKey) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.stale = True
        entry.generation += 1
        if self._metrics:
            self._metrics.inc("query_invalidations_total")

        active = self._active_observers(entry)
        log.debug("query_cache.invalidated", key=key, active=len(active))
        # An in-flight fetch sees the new generation and re-fetches on completion
        if active and not entry.fetching:
            self._ensure_fetch(entry, active[-1].fetch_fn)

    def remove(self, key: QueryKey) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._drop(entry)
        self._update_gauge()

    def clear(self) -> None:
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            self._drop(entry)
        self._update_gauge()

    def is_active(self, key: QueryKey) -> bool:
        entry = self._entries.get(key)
        return bool(entry and self._active_observers(entry))

    # --- Internals ---

    def _entry(self, key: QueryKey) -> _Entry:
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry(key)
            self._entries[key] = entry
            self._update_gauge()
        return entry

    def _result(self, entry: _Entry) -> QueryResult:
        if entry.error is not None:
            status = QueryStatus.ERROR
        elif entry.has_value:
            status = QueryStatus.SUCCESS
        else:
            status = QueryStatus.PENDING
        return QueryResult(
            status=status,
            value=entry.value,
            error=entry.error,
            is_fetching=entry.fetching,
            is_stale=entry.stale,
        )

    def _active_observers(self, entry: _Entry) -> list[QueryObserver]:
        return [o for o in entry.observers if o.enabled and not o.closed]

    def _ensure_fetch(self, entry: _Entry, fetch_fn: FetchFn) -> asyncio.Task:
        if entry.task is not None and not entry.task.done():
            return entry.task
        entry.fetch_fn = fetch_fn
        entry.task = asyncio.get_running_loop().create_task(
            self._run_fetch(entry, fetch_fn, entry.generation)
        )
        return entry.task

    async def _run_fetch(self, entry: _Entry, fetch_fn: FetchFn, generation: int) -> None:
        if self._metrics:
            self._metrics.inc("query_fetches_total")
        log.debug("query_cache.fetch", key=entry.key)

        error: Exception | None = None
        value: Any = None
        try:
            value = await fetch_fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = exc

        if self._entries.get(entry.key) is not entry:
            log.debug("query_cache.result_discarded", key=entry.key)
            return

        entry.task = None
        if error is None:
            entry.value = value
            entry.has_value = True
            entry.error = None
        else:
            entry.error = error
            if self._metrics:
                self._metrics.inc("query_fetch_errors_total")
            log.warning("query_cache.fetch_failed", key=entry.key, error=str(error))
        entry.stale = entry.generation != generation

        result = self._result(entry)
        for observer in self._active_observers(entry):
            observer._emit(result)

        active = self._active_observers(entry)
        if entry.stale and active and not entry.fetching:
            self._ensure_fetch(entry, active[-1].fetch_fn)

    def _activate(self, observer: QueryObserver) -> None:
        entry = self._entries.get(observer.key)
        if entry is None:
            return
        entry.fetch_fn = observer.fetch_fn
        if entry.needs_fetch and not entry.fetching:
            self._ensure_fetch(entry, observer.fetch_fn)

    def _release(self, observer: QueryObserver) -> None:
        entry = self._entries.get(observer.key)
        if entry is None:
            return
        if observer in entry.observers:
            entry.observers.remove(observer)
        if entry.observers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is None or self._gc_seconds <= 0:
            self.remove(entry.key)
            return
        self._schedule_collect(entry)

    def _schedule_collect(self, entry: _Entry) -> None:
        if self._entries.get(entry.key) is not entry:
            return
        if entry.gc_handle:
            entry.gc_handle.cancel()
        entry.gc_handle = asyncio.get_running_loop().call_later(
            max(self._gc_seconds, 0), self._collect, entry
        )

    def _collect(self, entry: _Entry) -> None:
        if self._entries.get(entry.key) is entry and not entry.observers:
            self.remove(entry.key)
            log.debug("query_cache.collected", key=entry.key)

    def _drop(self, entry: _Entry) -> None:
        if entry.gc_handle:
            entry.gc_handle.cancel()
            entry.gc_handle = None
        for observer in entry.observers:
            observer.closed = True
        entry.observers.clear()

    def _update_gauge(self) -> None:
        if self._metrics:
            self._metrics.set_gauge("query_entries", len(self._entries))
