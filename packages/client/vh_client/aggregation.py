"""
Derived statistics and groupings over cached events and registrations.

Pure functions: recomputed from the latest cache values on every change,
with ``now`` read at evaluation time unless given.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Mapping, Sequence

from .models import Event, Registration


@dataclass(frozen=True)
class DashboardStats:
    total_events: int = 0
    active_events: int = 0
    completed_events: int = 0
    total_volunteers: int = 0


def _now(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def is_past(event: Event, now: datetime | None = None) -> bool:
    """True once the event has started; active means ``now < start``."""
    return not _now(now) < event.starts_at()


def summarize(events: Sequence[Event] | None, now: datetime | None = None) -> DashboardStats:
    if not events:
        return DashboardStats()
    now = _now(now)
    completed = sum(1 for e in events if is_past(e, now))
    return DashboardStats(
        total_events=len(events),
        active_events=len(events) - completed,
        completed_events=completed,
        total_volunteers=sum(e.current_volunteers or 0 for e in events),
    )


def event_registrations(
    registrations: Iterable[Registration] | None, event_id: str
) -> list[Registration]:
    """Registrations for one event, oldest first."""
    matching = [r for r in registrations or () if r.event_id == str(event_id)]
    return sorted(matching, key=lambda r: r.registration_time)


def visible_registrations(
    registrations: Iterable[Registration] | None, events: Iterable[Event] | None
) -> list[Registration]:
    """Drop registrations whose event is not among the cached events."""
    event_ids = {e.id for e in events or ()}
    return [r for r in registrations or () if r.event_id in event_ids]


def attach_emails(
    registrations: Iterable[Registration], emails: Mapping[str, str | None]
) -> list[Registration]:
    return [
        r.model_copy(update={"email": emails.get(r.user_id) if r.user_id else None})
        for r in registrations
    ]


def registration_counts(
    events: Iterable[Event] | None, registrations: Iterable[Registration] | None
) -> dict[str, int]:
    counts = {e.id: 0 for e in events or ()}
    for r in registrations or ():
        if r.event_id in counts:
            counts[r.event_id] += 1
    return counts


def fill_rate(event: Event) -> float:
    if event.volunteers_needed <= 0:
        return 0.0
    return max(0.0, min(1.0, event.current_volunteers / event.volunteers_needed))
