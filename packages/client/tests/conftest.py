"""
Shared fakes and fixtures for client tests.
"""

import asyncio
import itertools
import random
from datetime import datetime, timedelta, timezone

import pytest
import uvicorn

from vh_client.config import AuthConfig, RoutesConfig
from vh_client.errors import AuthError, AuthErrorKind, FetchError, FetchErrorKind, ProfileLookupError
from vh_client.filters import ColumnFilter
from vh_client.models import AuthChangeKind, AuthStateChange, ChangeEvent, ChangeType, Identity, Role, SessionTokens
from vh_client.query_cache import QueryCache
from vh_client.realtime import Channel
from vh_client.session import SessionStore
from vh_client.session_tokens import TokenStore

from .mock_backend import ANON_KEY, create_backend_app

ORG_ROUTE = "/organization/dashboard"
VOLUNTEER_ROUTE = "/volunteer/dashboard"


async def settle(rounds: int = 30) -> None:
    """Let scheduled tasks run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def iso_day(offset_days: int) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=offset_days)).isoformat()


class FakeIdentityProvider:
    def __init__(self, profiles: "FakeProfiles"):
        self._profiles = profiles
        self._ids = itertools.count(1)
        self.users: dict[str, tuple[str, Identity]] = {}
        self.valid_tokens: dict[str, Identity] = {}
        self.handlers = []
        self.sign_out_error: AuthError | None = None
        self.network_down = False
        self.create_profiles = True

    def on_auth_state_change(self, handler):
        self.handlers.append(handler)
        return lambda: self.handlers.remove(handler)

    def emit(self, kind: AuthChangeKind, identity: Identity | None = None, tokens=None) -> AuthStateChange:
        change = AuthStateChange(kind=kind, identity=identity, tokens=tokens)
        self.deliver(change)
        return change

    def deliver(self, change: AuthStateChange) -> None:
        for handler in list(self.handlers):
            handler(change)

    def add_user(self, email: str, password: str, role: Role) -> Identity:
        identity = Identity(id=f"user-{next(self._ids)}", email=email, role=role)
        self.users[email] = (password, identity)
        if self.create_profiles:
            self._profiles.roles[identity.id] = role
        self._profiles.emails[identity.id] = email
        return identity

    async def sign_up(self, email, password, role):
        if self.network_down:
            raise AuthError(AuthErrorKind.NETWORK)
        if email in self.users:
            raise AuthError(AuthErrorKind.DUPLICATE_EMAIL)
        if len(password) < 6:
            raise AuthError(AuthErrorKind.WEAK_PASSWORD)
        return self.add_user(email, password, role)

    async def sign_in_with_password(self, email, password):
        if self.network_down:
            raise AuthError(AuthErrorKind.NETWORK)
        stored = self.users.get(email)
        if stored is None or stored[0] != password:
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS)
        identity = stored[1]
        tokens = SessionTokens(
            access_token=f"access-{identity.id}-{len(self.valid_tokens)}",
            refresh_token=f"refresh-{identity.id}",
            user_id=identity.id,
        )
        self.valid_tokens[tokens.access_token] = identity
        self.emit(AuthChangeKind.SIGNED_IN, identity, tokens)
        return identity, tokens

    async def sign_out(self, tokens):
        if self.sign_out_error:
            raise self.sign_out_error
        if tokens:
            self.valid_tokens.pop(tokens.access_token, None)
        self.emit(AuthChangeKind.SIGNED_OUT)

    async def get_session(self, tokens):
        return self.valid_tokens.get(tokens.access_token)

    async def refresh_session(self, tokens):
        return None


class FakeProfiles:
    def __init__(self):
        self.roles: dict[str, Role] = {}
        self.emails: dict[str, str] = {}
        self.fail_emails = False
        self.email_calls: list[list[str]] = []

    async def get_role(self, user_id):
        role = self.roles.get(user_id)
        if role is None:
            raise ProfileLookupError(user_id)
        return role

    async def get_emails(self, user_ids):
        self.email_calls.append(list(user_ids))
        if self.fail_emails:
            raise FetchError(FetchErrorKind.NETWORK, "emails unavailable")
        return {uid: self.emails.get(uid) for uid in user_ids}


class FakeStore:
    def __init__(self):
        self.tables: dict[str, list[dict]] = {"events": [], "registrations": []}
        self.calls: list[tuple[str, tuple[ColumnFilter, ...]]] = []
        self.failing: set[str] = set()

    def count(self, table: str) -> int:
        return sum(1 for t, _ in self.calls if t == table)

    async def select(self, table, columns="*", filters=(), order=None):
        self.calls.append((table, tuple(filters)))
        if table in self.failing:
            raise FetchError(FetchErrorKind.NETWORK, f"{table} unavailable")
        rows = [dict(r) for r in self.tables.get(table, []) if all(f.matches(r) for f in filters)]
        if order:
            column, _, direction = order.partition(".")
            rows.sort(key=lambda r: str(r.get(column)), reverse=direction == "desc")
        return rows


class FakeRealtime:
    def __init__(self):
        self.channels: list[Channel] = []
        self.log: list[tuple[str, str]] = []

    @property
    def open_channels(self) -> list[Channel]:
        return [c for c in self.channels if not c.closed]

    def subscribe(self, table, events, channel_filter, callback):
        channel = Channel(table, events, channel_filter, callback)
        channel.state = "joined"
        self.channels.append(channel)
        self.log.append(("subscribe", f"{table}:{channel_filter.to_param()}"))
        return channel

    def unsubscribe(self, channel):
        channel.close()
        self.log.append(("unsubscribe", f"{channel.table}:{channel.filter.to_param()}"))

    def push(self, table: str, change_type: ChangeType, record: dict, old_record: dict | None = None) -> int:
        """Deliver a change to matching open channels; returns delivery count."""
        change = ChangeEvent(table=table, type=change_type, record=record, old_record=old_record or {})
        delivered = 0
        for channel in self.open_channels:
            row = record or old_record or {}
            if channel.table == table and channel.filter.matches(row):
                channel.deliver(change)
                delivered += 1
        return delivered


class RecordingNavigator:
    def __init__(self):
        self.paths: list[str] = []

    def navigate(self, path):
        self.paths.append(path)


class RecordingNotifier:
    def __init__(self):
        self.messages: list[tuple[str, str]] = []

    def notify(self, severity, message):
        self.messages.append((severity, message))

    def errors(self) -> list[str]:
        return [m for s, m in self.messages if s == "error"]


@pytest.fixture
def profiles():
    return FakeProfiles()


@pytest.fixture
def provider(profiles):
    return FakeIdentityProvider(profiles)


@pytest.fixture
def navigator():
    return RecordingNavigator()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def realtime():
    return FakeRealtime()


@pytest.fixture
def cache():
    return QueryCache(gc_seconds=0)


@pytest.fixture
async def token_store(tmp_path):
    s = TokenStore(str(tmp_path / "session.db"))
    await s.open()
    yield s
    await s.close()


@pytest.fixture
def auth_config():
    return AuthConfig(readiness_timeout_seconds=0.2, readiness_poll_interval_seconds=0.01)


@pytest.fixture
async def session_store(provider, profiles, token_store, navigator, notifier, auth_config):
    s = SessionStore(
        provider,
        profiles,
        token_store,
        navigator,
        notifier,
        routes=RoutesConfig(),
        auth=auth_config,
    )
    await s.start()
    yield s
    await s.stop()


# ── Integration fixtures ──


class _UvicornServer:
    def __init__(self, app, host: str, port: int):
        self.config = uvicorn.Config(app, host=host, port=port, log_level="error")
        self.server = uvicorn.Server(self.config)
        self._task: asyncio.Task | None = None

    async def start(self):
        self._task = asyncio.create_task(self.server.serve())
        for _ in range(100):
            if self.server.started:
                return
            await asyncio.sleep(0.05)
        raise RuntimeError("Server did not start")

    async def stop(self):
        self.server.should_exit = True
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=5)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                self._task.cancel()


def _pick_port():
    return random.randint(19000, 19999)


async def _serve(app):
    port = _pick_port()
    srv = _UvicornServer(app, "127.0.0.1", port)
    await srv.start()
    return srv, f"http://127.0.0.1:{port}"


@pytest.fixture
async def backend_server():
    srv, url = await _serve(create_backend_app())
    yield url
    await srv.stop()


@pytest.fixture
async def slow_profile_server():
    srv, url = await _serve(create_backend_app(profile_delay=0.3))
    yield url
    await srv.stop()


@pytest.fixture
def client_config_dict(backend_server, tmp_path, monkeypatch):
    monkeypatch.setenv("TEST_VH_ANON_KEY", ANON_KEY)
    return {
        "backend": {
            "url": backend_server,
            "anon_key_env": "TEST_VH_ANON_KEY",
            "verify_tls": False,
            "request_timeout_seconds": 10,
        },
        "realtime": {"reconnect_base_seconds": 0.1, "reconnect_max_seconds": 1.0},
        "auth": {"readiness_timeout_seconds": 2.0, "readiness_poll_interval_seconds": 0.05},
        "state": {"db_path": str(tmp_path / "session.db")},
        "logging": {"level": "debug", "format": "text"},
        "status_interval_seconds": 60,
    }
