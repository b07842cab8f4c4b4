"""
Organization dashboard view.

Wires the session identity into per-organization queries and change feeds:
- Events owned by the organization, ordered by date
- Registrations for those events, joined with volunteer profiles and a
  best-effort batched email lookup
- An events channel filtered by organization and a registrations channel
  filtered by the current event id set, re-bound whenever that set changes
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import partial
from typing import Callable

import structlog
from pydantic import ValidationError

from .aggregation import (
    DashboardStats,
    attach_emails,
    event_registrations,
    fill_rate,
    registration_counts,
    summarize,
    visible_registrations,
)
from .backend import ProfileDirectory, RelationalStore
from .change_feed import ChangeFeedSubscription, ChannelFilter
from .errors import FetchError, FetchErrorKind
from .filters import ColumnFilter
from .metrics import MetricsCollector
from .models import Event, Identity, Registration
from .query_cache import PENDING, QueryCache, QueryObserver, QueryResult, query_key
from .realtime import RealtimeClient
from .session import Session, SessionStore

log = structlog.get_logger()

EVENTS_QUERY = "organization-events"
REGISTRATIONS_QUERY = "organization-registrations"

REGISTRATION_COLUMNS = (
    "id,event_id,user_id,registration_time,emergency_contact,"
    "dietary_restrictions,notes,profiles:user_id(full_name,phone,profile_image_url)"
)


@dataclass(frozen=True)
class DashboardSnapshot:
    events: QueryResult = PENDING
    registrations: QueryResult = PENDING
    visible_registrations: list[Registration] = field(default_factory=list)
    stats: DashboardStats = field(default_factory=DashboardStats)

    @property
    def loading(self) -> bool:
        return self.events.is_pending

    def registrations_for(self, event_id: str) -> list[Registration]:
        return event_registrations(self.visible_registrations, event_id)

    def registration_counts(self) -> dict[str, int]:
        return registration_counts(self.events.value, self.visible_registrations)

    def fill_rates(self) -> dict[str, float]:
        return {e.id: fill_rate(e) for e in self.events.value or ()}


DashboardListener = Callable[[DashboardSnapshot], None]


class OrganizationDashboard:
    """Mounted view over one organization's events and registrations."""

    def __init__(
        self,
        session_store: SessionStore,
        cache: QueryCache,
        store: RelationalStore,
        profiles: ProfileDirectory,
        realtime: RealtimeClient,
        metrics: MetricsCollector | None = None,
    ):
        self._session_store = session_store
        self._cache = cache
        self._store = store
        self._profiles = profiles
        self._events_feed = ChangeFeedSubscription(
            realtime, "organization-events-changes", cache.invalidate, metrics=metrics
        )
        self._registrations_feed = ChangeFeedSubscription(
            realtime, "registrations-changes", cache.invalidate, metrics=metrics
        )
        self._listeners: list[DashboardListener] = []
        self._unsubscribe_session: Callable[[], None] | None = None
        self._mounted = False
        self._org_id: str | None = None
        self._event_ids: tuple[str, ...] | None = None
        self._events_observer: QueryObserver | None = None
        self._registrations_observer: QueryObserver | None = None

    @property
    def mounted(self) -> bool:
        return self._mounted

    @property
    def organization_id(self) -> str | None:
        return self._org_id

    @property
    def events_feed(self) -> ChangeFeedSubscription:
        return self._events_feed

    @property
    def registrations_feed(self) -> ChangeFeedSubscription:
        return self._registrations_feed

    def on_change(self, listener: DashboardListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def mount(self) -> None:
        if self._mounted:
            return
        self._mounted = True
        self._unsubscribe_session = self._session_store.subscribe(self._on_session)
        self._bind(self._session_store.session.identity)
        log.info("dashboard.mounted", organization_id=self._org_id)

    def unmount(self) -> None:
        """Close observers and channels. Later cache updates are ignored."""
        if not self._mounted:
            return
        self._mounted = False
        if self._unsubscribe_session:
            self._unsubscribe_session()
            self._unsubscribe_session = None
        self._teardown()
        self._org_id = None
        log.info("dashboard.unmounted")

    def snapshot(self) -> DashboardSnapshot:
        events_result = self._events_observer.result if self._events_observer else PENDING
        regs_result = (
            self._registrations_observer.result if self._registrations_observer else PENDING
        )
        events: list[Event] = events_result.value or []
        registrations = visible_registrations(regs_result.value, events)
        return DashboardSnapshot(
            events=events_result,
            registrations=regs_result,
            visible_registrations=registrations,
            stats=summarize(events),
        )

    # --- Binding ---

    def _on_session(self, session: Session) -> None:
        if self._mounted:
            self._bind(session.identity)

    def _bind(self, identity: Identity | None) -> None:
        org_id = identity.id if identity else None
        if org_id == self._org_id and self._events_observer is not None:
            return

        self._teardown()
        self._org_id = org_id
        if org_id is None:
            self._emit()
            return

        events_key = query_key(EVENTS_QUERY, org_id)
        registrations_key = query_key(REGISTRATIONS_QUERY, org_id)

        self._registrations_observer = self._cache.observe(
            registrations_key,
            partial(self._fetch_registrations, org_id),
            self._on_registrations,
            enabled=False,
        )
        self._events_observer = self._cache.observe(
            events_key,
            partial(self._fetch_events, org_id),
            self._on_events,
        )
        self._events_feed.bind(
            ChannelFilter.eq("events", "organization_id", org_id), [events_key]
        )
        self._sync_registrations()
        self._emit()

    def _teardown(self) -> None:
        self._events_feed.close()
        self._registrations_feed.close()
        for observer in (self._events_observer, self._registrations_observer):
            if observer is not None:
                observer.close()
        self._events_observer = None
        self._registrations_observer = None
        self._event_ids = None

    def _current_events(self) -> list[Event]:
        if self._events_observer is None:
            return []
        return self._events_observer.result.value or []

    def _sync_registrations(self) -> None:
        """Follow the event id set with the registrations query and channel."""
        if self._org_id is None or self._registrations_observer is None:
            return
        if not self._events_observer or self._events_observer.result.is_pending:
            return
        event_ids = tuple(sorted(e.id for e in self._current_events()))
        if event_ids == self._event_ids:
            return

        previous, self._event_ids = self._event_ids, event_ids
        events_key = query_key(EVENTS_QUERY, self._org_id)
        registrations_key = query_key(REGISTRATIONS_QUERY, self._org_id)

        if not event_ids:
            self._registrations_feed.bind(None)
            self._registrations_observer.set_enabled(False)
            return

        self._registrations_feed.bind(
            ChannelFilter.in_("registrations", "event_id", event_ids),
            [registrations_key, events_key],
        )
        if previous is not None:
            # Cached registrations were fetched for the old id set
            self._cache.invalidate(registrations_key)
        self._registrations_observer.set_enabled(True)

    def _on_events(self, result: QueryResult) -> None:
        if not self._mounted:
            return
        self._sync_registrations()
        self._emit()

    def _on_registrations(self, result: QueryResult) -> None:
        if not self._mounted:
            return
        self._emit()

    def _emit(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                log.exception("dashboard.listener_error")

    # --- Fetchers ---

    async def _fetch_events(self, org_id: str) -> list[Event]:
        rows = await self._store.select(
            "events",
            "*",
            [ColumnFilter.eq("organization_id", org_id)],
            order="date.asc",
        )
        try:
            return [Event.model_validate(row) for row in rows]
        except ValidationError as exc:
            raise FetchError(FetchErrorKind.UNKNOWN, f"Malformed event row: {exc}") from exc

    async def _fetch_registrations(self, org_id: str) -> list[Registration]:
        events = self._cache.peek(query_key(EVENTS_QUERY, org_id)).value or []
        event_ids = [e.id for e in events]
        if not event_ids:
            return []

        rows = await self._store.select(
            "registrations",
            REGISTRATION_COLUMNS,
            [ColumnFilter.in_("event_id", event_ids)],
        )
        try:
            registrations = [Registration.model_validate(row) for row in rows]
        except ValidationError as exc:
            raise FetchError(FetchErrorKind.UNKNOWN, f"Malformed registration row: {exc}") from exc

        user_ids = sorted({r.user_id for r in registrations if r.user_id})
        if not user_ids:
            return registrations

        try:
            emails = await self._profiles.get_emails(user_ids)
        except FetchError as exc:
            log.warning("dashboard.email_lookup_failed", error=exc.message, users=len(user_ids))
            return registrations
        return attach_emails(registrations, emails)
