"""Tests for dashboard statistics and registration grouping."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from vh_client.aggregation import (
    DashboardStats,
    attach_emails,
    event_registrations,
    fill_rate,
    is_past,
    registration_counts,
    summarize,
    visible_registrations,
)
from vh_client.models import Event, Registration

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_event(event_id, date, time=None, current=0, needed=10):
    return Event(
        id=event_id,
        organization_id="org-1",
        title=f"Event {event_id}",
        date=date,
        time=time,
        volunteers_needed=needed,
        current_volunteers=current,
    )


def make_registration(reg_id, event_id, minutes=0, user_id=None):
    return Registration(
        id=reg_id,
        event_id=event_id,
        user_id=user_id,
        registration_time=NOW + timedelta(minutes=minutes),
    )


class TestIsPast:
    def test_future_event_is_active(self):
        assert not is_past(make_event("1", "2024-06-02"), NOW)

    def test_started_event_is_past(self):
        assert is_past(make_event("1", "2024-06-01", "11:59"), NOW)

    def test_event_starting_now_is_past(self):
        assert is_past(make_event("1", "2024-06-01T12:00:00+00:00"), NOW)

    def test_naive_now_is_treated_as_utc(self):
        assert not is_past(make_event("1", "2024-06-01", "13:00"), NOW.replace(tzinfo=None))

    def test_date_only_starts_at_midnight(self):
        assert make_event("1", "2024-06-03").starts_at() == datetime(2024, 6, 3, tzinfo=timezone.utc)


class TestSummarize:
    def test_empty(self):
        assert summarize([], NOW) == DashboardStats()
        assert summarize(None, NOW) == DashboardStats()

    def test_counts_and_volunteers(self):
        events = [
            make_event("1", "2024-05-31", current=3),
            make_event("2", "2024-06-10", current=4),
            make_event("3", "2024-07-01"),
        ]
        stats = summarize(events, NOW)
        assert stats == DashboardStats(
            total_events=3, active_events=2, completed_events=1, total_volunteers=7
        )
        assert stats.active_events + stats.completed_events == stats.total_events


def test_event_registrations_sorted_oldest_first():
    regs = [
        make_registration("b", "1", minutes=5),
        make_registration("a", "1", minutes=1),
        make_registration("c", "2"),
    ]
    assert [r.id for r in event_registrations(regs, "1")] == ["a", "b"]
    assert event_registrations(None, "1") == []


def test_visible_registrations_drops_unknown_events():
    events = [make_event("1", "2024-06-10")]
    regs = [make_registration("a", "1"), make_registration("b", "99")]
    assert [r.id for r in visible_registrations(regs, events)] == ["a"]


def test_attach_emails_leaves_missing_as_none():
    regs = [make_registration("a", "1", user_id="u1"), make_registration("b", "1", user_id="u2")]
    with_emails = attach_emails(regs, {"u1": "one@example.com"})
    assert [r.email for r in with_emails] == ["one@example.com", None]
    assert regs[0].email is None


def test_registration_counts_include_empty_events():
    events = [make_event("1", "2024-06-10"), make_event("2", "2024-06-11")]
    regs = [make_registration("a", "1"), make_registration("b", "1"), make_registration("c", "3")]
    assert registration_counts(events, regs) == {"1": 2, "2": 0}


@pytest.mark.parametrize(
    "current,needed,expected",
    [(5, 10, 0.5), (12, 10, 1.0), (3, 0, 0.0)],
)
def test_fill_rate(current, needed, expected):
    assert fill_rate(make_event("1", "2024-06-10", current=current, needed=needed)) == expected


@pytest.mark.parametrize(
    "date,time",
    [("next tuesday", None), ("2024-06-10", "noon"), ("2024-13-01", None)],
)
def test_unparseable_start_is_rejected(date, time):
    with pytest.raises(ValidationError):
        Event.model_validate({"id": 1, "organization_id": "o", "date": date, "time": time})
