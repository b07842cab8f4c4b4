"""
Error types for the Volunteer Hub client.

- VolunteerHubError: Base exception
- AuthError: identity provider failures (caught at the session boundary)
- FetchError: table query failures (surfaced through query results)
- SubscriptionError: realtime channel failures (logged, non-fatal)
- ProfileLookupError: role resolution failures during post-auth routing
"""

from __future__ import annotations

from enum import Enum
from typing import Any

import httpx


class AuthErrorKind(str, Enum):
    DUPLICATE_EMAIL = "DuplicateEmail"
    WEAK_PASSWORD = "WeakPassword"
    INVALID_CREDENTIALS = "InvalidCredentials"
    NETWORK = "Network"
    UNKNOWN = "Unknown"


class FetchErrorKind(str, Enum):
    NETWORK = "Network"
    UNAUTHORIZED = "Unauthorized"
    UNKNOWN = "Unknown"


class SubscriptionErrorKind(str, Enum):
    CHANNEL_FAILED = "ChannelFailed"


class VolunteerHubError(Exception):
    """Base exception for all client errors.

    Attributes:
        message: Error message
        kind: Error kind for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        kind: Enum | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.details = details or {}


class AuthError(VolunteerHubError):
    kind: AuthErrorKind

    def __init__(self, kind: AuthErrorKind, message: str = "", **details: Any) -> None:
        super().__init__(message or kind.value, kind, details)


class FetchError(VolunteerHubError):
    kind: FetchErrorKind

    def __init__(self, kind: FetchErrorKind, message: str = "", **details: Any) -> None:
        super().__init__(message or kind.value, kind, details)


class SubscriptionError(VolunteerHubError):
    kind: SubscriptionErrorKind

    def __init__(
        self,
        message: str,
        kind: SubscriptionErrorKind = SubscriptionErrorKind.CHANNEL_FAILED,
        **details: Any,
    ) -> None:
        super().__init__(message, kind, details)


class ProfileLookupError(VolunteerHubError):
    """Role could not be resolved for an identity."""

    def __init__(self, user_id: str, message: str = "") -> None:
        super().__init__(message or f"No profile for user {user_id}", None, {"user_id": user_id})
        self.user_id = user_id


# Messages shown to the user, keyed by kind
AUTH_ERROR_MESSAGES: dict[AuthErrorKind, str] = {
    AuthErrorKind.DUPLICATE_EMAIL: "An account with this email already exists.",
    AuthErrorKind.WEAK_PASSWORD: "Password is too weak. Use at least 6 characters.",
    AuthErrorKind.INVALID_CREDENTIALS: "Invalid email or password.",
    AuthErrorKind.NETWORK: "Network error. Check your connection and try again.",
    AuthErrorKind.UNKNOWN: "Authentication failed. Please try again.",
}


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.lower()
    if isinstance(body, dict):
        parts = [str(body.get(k, "")) for k in ("error", "error_code", "msg", "message", "error_description")]
        return " ".join(parts).lower()
    return str(body).lower()


def auth_error_from_response(response: httpx.Response, *, signing_in: bool = False) -> AuthError:
    """Map an identity provider error response to a typed AuthError."""
    status = response.status_code
    text = _error_text(response)

    if status == 409 or "already registered" in text or "already exists" in text:
        kind = AuthErrorKind.DUPLICATE_EMAIL
    elif status in (400, 422) and "password" in text and ("weak" in text or "at least" in text):
        kind = AuthErrorKind.WEAK_PASSWORD
    elif signing_in and status in (400, 401):
        kind = AuthErrorKind.INVALID_CREDENTIALS
    else:
        kind = AuthErrorKind.UNKNOWN
    return AuthError(kind, text or f"HTTP {status}", status=status)


def fetch_error_from_response(response: httpx.Response) -> FetchError:
    """Map a relational store error response to a typed FetchError."""
    status = response.status_code
    if status in (401, 403):
        kind = FetchErrorKind.UNAUTHORIZED
    else:
        kind = FetchErrorKind.UNKNOWN
    return FetchError(kind, _error_text(response) or f"HTTP {status}", status=status)
