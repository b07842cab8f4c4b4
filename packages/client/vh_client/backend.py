"""
HTTP adapters for the identity provider, relational store and profile lookup.

Handles:
- Auth: sign-up, password sign-in, sign-out, session lookup, token refresh
- Table reads: ``select`` with column filters and ordering
- Profiles: role resolution and batched email lookup

Errors are raised as typed AuthError / FetchError so callers never inspect
raw HTTP responses.
"""

from __future__ import annotations

from typing import Any, Callable, Protocol, Sequence

import httpx
import structlog

from .errors import (
    AuthError,
    AuthErrorKind,
    FetchError,
    FetchErrorKind,
    ProfileLookupError,
    auth_error_from_response,
    fetch_error_from_response,
)
from .filters import ColumnFilter
from .models import AuthChangeKind, AuthStateChange, Identity, Role, SessionTokens

log = structlog.get_logger()

AuthStateHandler = Callable[[AuthStateChange], None]


class IdentityProvider(Protocol):
    async def sign_up(self, email: str, password: str, role: Role) -> Identity: ...

    async def sign_in_with_password(
        self, email: str, password: str
    ) -> tuple[Identity, SessionTokens]: ...

    async def sign_out(self, tokens: SessionTokens | None) -> None: ...

    async def get_session(self, tokens: SessionTokens) -> Identity | None: ...

    async def refresh_session(
        self, tokens: SessionTokens
    ) -> tuple[Identity, SessionTokens] | None: ...

    def on_auth_state_change(self, handler: AuthStateHandler) -> Callable[[], None]: ...


class RelationalStore(Protocol):
    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Sequence[ColumnFilter] = (),
        order: str | None = None,
    ) -> list[dict[str, Any]]: ...


class ProfileDirectory(Protocol):
    async def get_role(self, user_id: str) -> Role: ...

    async def get_emails(self, user_ids: Sequence[str]) -> dict[str, str | None]: ...


class BackendClient:
    """Shared HTTP client carrying the anon key and the current access token."""

    def __init__(
        self,
        url: str,
        anon_key: str = "",
        verify_tls: bool = True,
        request_timeout: int = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url.rstrip("/")
        self._transport = transport
        self._anon_key = anon_key
        self._verify_tls = verify_tls
        self._request_timeout = request_timeout
        self._access_token: str | None = None
        self._client: httpx.AsyncClient | None = None

    @property
    def url(self) -> str:
        return self._url

    async def open(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._url,
            timeout=httpx.Timeout(self._request_timeout),
            verify=self._verify_tls,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def set_access_token(self, token: str | None) -> None:
        self._access_token = token

    def headers(self, token: str | None = None) -> dict[str, str]:
        headers = {"apikey": self._anon_key}
        bearer = token or self._access_token or self._anon_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        token: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        assert self._client
        return await self._client.request(method, path, headers=self.headers(token), **kwargs)


def _auth_body(resp: httpx.Response) -> dict[str, Any]:
    try:
        body = resp.json()
    except ValueError as exc:
        raise AuthError(AuthErrorKind.UNKNOWN, "Malformed auth response") from exc
    if not isinstance(body, dict):
        raise AuthError(AuthErrorKind.UNKNOWN, "Malformed auth response")
    return body


def _identity_from_user(user: dict[str, Any]) -> Identity:
    try:
        metadata = user.get("user_metadata") or {}
        role = metadata.get("role") or user.get("role")
        return Identity(
            id=user["id"],
            email=user.get("email") or "",
            role=role if role in (r.value for r in Role) else None,
        )
    except (AttributeError, KeyError, ValueError) as exc:
        raise AuthError(AuthErrorKind.UNKNOWN, f"Malformed user data: {exc}") from exc


def _session_from_body(body: dict[str, Any]) -> tuple[Identity, SessionTokens]:
    identity = _identity_from_user(body.get("user"))
    try:
        tokens = SessionTokens(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or "",
            user_id=identity.id,
        )
    except (KeyError, ValueError) as exc:
        raise AuthError(AuthErrorKind.UNKNOWN, f"Malformed session data: {exc}") from exc
    return identity, tokens


class HttpIdentityProvider:
    """
    Identity provider backed by the ``/auth/v1`` endpoints.

    Emits an AuthStateChange to registered handlers after each successful
    sign-in, refresh and sign-out.
    """

    def __init__(self, client: BackendClient):
        self._client = client
        self._handlers: list[AuthStateHandler] = []

    def on_auth_state_change(self, handler: AuthStateHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def _emit(
        self,
        kind: AuthChangeKind,
        identity: Identity | None = None,
        tokens: SessionTokens | None = None,
    ) -> None:
        change = AuthStateChange(kind=kind, identity=identity, tokens=tokens)
        for handler in list(self._handlers):
            handler(change)

    async def _post(self, path: str, json: dict[str, Any], *, signing_in: bool = False,
                    token: str | None = None) -> httpx.Response:
        try:
            resp = await self._client.request("POST", path, json=json, token=token)
        except httpx.TransportError as exc:
            log.warning("identity.network_error", path=path, error=str(exc))
            raise AuthError(AuthErrorKind.NETWORK, str(exc)) from exc
        if resp.is_error:
            raise auth_error_from_response(resp, signing_in=signing_in)
        return resp

    async def sign_up(self, email: str, password: str, role: Role) -> Identity:
        resp = await self._post(
            "/auth/v1/signup",
            {"email": email, "password": password, "data": {"role": role.value}},
        )
        body = _auth_body(resp)
        user = body.get("user") or body
        if not isinstance(user, dict) or not user.get("id"):
            raise AuthError(AuthErrorKind.UNKNOWN, "No user data returned")
        identity = _identity_from_user(user)
        log.info("identity.signed_up", user_id=identity.id, role=role.value)
        return identity

    async def sign_in_with_password(
        self, email: str, password: str
    ) -> tuple[Identity, SessionTokens]:
        resp = await self._post(
            "/auth/v1/token?grant_type=password",
            {"email": email, "password": password},
            signing_in=True,
        )
        body = _auth_body(resp)
        if not body.get("user"):
            raise AuthError(AuthErrorKind.UNKNOWN, "No user data returned")
        identity, tokens = _session_from_body(body)
        self._client.set_access_token(tokens.access_token)
        self._emit(AuthChangeKind.SIGNED_IN, identity, tokens)
        return identity, tokens

    async def sign_out(self, tokens: SessionTokens | None) -> None:
        token = tokens.access_token if tokens else None
        self._client.set_access_token(None)
        if token:
            await self._post("/auth/v1/logout", {}, token=token)
        self._emit(AuthChangeKind.SIGNED_OUT)

    async def get_session(self, tokens: SessionTokens) -> Identity | None:
        try:
            resp = await self._client.request("GET", "/auth/v1/user", token=tokens.access_token)
        except httpx.TransportError as exc:
            raise AuthError(AuthErrorKind.NETWORK, str(exc)) from exc
        if resp.status_code in (401, 403):
            return None
        if resp.is_error:
            raise auth_error_from_response(resp)
        identity = _identity_from_user(_auth_body(resp))
        self._client.set_access_token(tokens.access_token)
        return identity

    async def refresh_session(
        self, tokens: SessionTokens
    ) -> tuple[Identity, SessionTokens] | None:
        if not tokens.refresh_token:
            return None
        try:
            resp = await self._post(
                "/auth/v1/token?grant_type=refresh_token",
                {"refresh_token": tokens.refresh_token},
                signing_in=True,
            )
        except AuthError as exc:
            if exc.kind == AuthErrorKind.INVALID_CREDENTIALS:
                return None
            raise
        identity, refreshed = _session_from_body(_auth_body(resp))
        self._client.set_access_token(refreshed.access_token)
        self._emit(AuthChangeKind.TOKEN_REFRESHED, identity, refreshed)
        return identity, refreshed


class HttpRelationalStore:
    """Table reads against the ``/rest/v1`` endpoints."""

    def __init__(self, client: BackendClient):
        self._client = client

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Sequence[ColumnFilter] = (),
        order: str | None = None,
    ) -> list[dict[str, Any]]:
        params: list[tuple[str, str]] = [("select", " ".join(columns.split()))]
        for f in filters:
            params.append((f.column, f.op_value()))
        if order:
            params.append(("order", order))

        try:
            resp = await self._client.request("GET", f"/rest/v1/{table}", params=params)
        except httpx.TransportError as exc:
            log.warning("store.network_error", table=table, error=str(exc))
            raise FetchError(FetchErrorKind.NETWORK, str(exc), table=table) from exc
        if resp.is_error:
            raise fetch_error_from_response(resp)
        try:
            rows = resp.json()
        except ValueError as exc:
            raise FetchError(FetchErrorKind.UNKNOWN, "Malformed response body", table=table) from exc
        if not isinstance(rows, list):
            raise FetchError(FetchErrorKind.UNKNOWN, "Expected a list of rows", table=table)
        return rows


class HttpProfileDirectory:
    """Profile lookups through the relational store."""

    def __init__(self, store: RelationalStore):
        self._store = store

    async def get_role(self, user_id: str) -> Role:
        rows = await self._store.select(
            "profiles", "id,role", [ColumnFilter.eq("id", user_id)]
        )
        role = rows[0].get("role") if rows else None
        if role not in (r.value for r in Role):
            raise ProfileLookupError(user_id)
        return Role(role)

    async def get_emails(self, user_ids: Sequence[str]) -> dict[str, str | None]:
        if not user_ids:
            return {}
        rows = await self._store.select(
            "user_emails", "id,email", [ColumnFilter.in_("id", user_ids)]
        )
        return {str(row["id"]): row.get("email") for row in rows}
