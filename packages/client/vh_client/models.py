"""
Typed records for identities, events, registrations and change notifications.

Rows coming back from the backend are validated here so the rest of the
client never handles open-ended dicts.
"""

from __future__ import annotations

import itertools
from datetime import date as _date, datetime, time as _time, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

_sequence = itertools.count(1)


def next_sequence() -> int:
    """Process-wide, strictly increasing sequence for ordering session updates."""
    return next(_sequence)


class Role(str, Enum):
    ORGANIZATION = "organization"
    VOLUNTEER = "volunteer"


class Identity(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    id: str
    email: str
    role: Optional[Role] = None


class SessionTokens(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str = ""
    user_id: str


class Event(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str
    organization_id: str
    title: str = ""
    date: str
    time: Optional[str] = None
    location: Optional[str] = None
    volunteers_needed: int = 0
    current_volunteers: int = 0
    image_url: Optional[str] = None

    @model_validator(mode="after")
    def _check_start(self) -> "Event":
        # date/time stay strings but must parse
        self.starts_at()
        return self

    def starts_at(self) -> datetime:
        """Event start as an aware datetime. Naive values are taken as UTC."""
        raw = self.date.replace("Z", "+00:00")
        if "T" in raw or " " in raw.strip():
            start = datetime.fromisoformat(raw)
        else:
            start = datetime.combine(_date.fromisoformat(raw), _parse_time(self.time))
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        return start


def _parse_time(value: str | None) -> _time:
    if not value:
        return _time(0, 0)
    return _time.fromisoformat(value)


class RegistrationProfile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    full_name: Optional[str] = None
    phone: Optional[str] = None
    profile_image_url: Optional[str] = None


class Registration(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)

    id: str
    event_id: str
    user_id: Optional[str] = None
    registration_time: datetime
    emergency_contact: Optional[str] = None
    dietary_restrictions: Optional[str] = None
    notes: Optional[str] = None
    profile: Optional[RegistrationProfile] = Field(default=None, alias="profiles")
    email: Optional[str] = None


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """A row-level change notification. Only used as an invalidation signal."""

    model_config = ConfigDict(extra="ignore")

    table: str
    type: ChangeType
    record: dict[str, Any] = Field(default_factory=dict)
    old_record: dict[str, Any] = Field(default_factory=dict)
    commit_timestamp: Optional[str] = None


class AuthChangeKind(str, Enum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


class AuthStateChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: AuthChangeKind
    identity: Optional[Identity] = None
    tokens: Optional[SessionTokens] = None
    sequence: int = Field(default_factory=next_sequence)
