"""
Authentication session store.

Single owner of the current identity. Responsibilities:
- Restore the persisted session at startup
- Apply identity-change notifications one at a time from a queue, discarding
  any notification older than the last applied state
- Sign-up / sign-in / sign-out, with auth failures turned into notifications
- Post-auth routing by role
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import structlog

from .backend import IdentityProvider, ProfileDirectory
from .config import AuthConfig, RoutesConfig
from .errors import AUTH_ERROR_MESSAGES, AuthError, FetchError, ProfileLookupError
from .models import AuthChangeKind, AuthStateChange, Identity, Role, SessionTokens, next_sequence
from .session_tokens import TokenStore
from .sinks import Navigator, Notifier

log = structlog.get_logger()

PROFILE_ERROR_MESSAGE = "Could not load your profile. Please try again."


class SessionState(str, Enum):
    LOADING = "loading"
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class Session:
    """Read-only snapshot of who is logged in."""

    identity: Identity | None = None
    loading: bool = True

    @property
    def state(self) -> SessionState:
        if self.loading:
            return SessionState.LOADING
        if self.identity is None:
            return SessionState.UNAUTHENTICATED
        return SessionState.AUTHENTICATED


SessionListener = Callable[[Session], None]


class SessionStore:
    """
    Holds the process-wide Session and the commands that change it.

    Consumers read ``session`` or subscribe for snapshots; only the store
    itself mutates the identity.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        profiles: ProfileDirectory,
        tokens: TokenStore,
        navigator: Navigator,
        notifier: Notifier,
        routes: RoutesConfig | None = None,
        auth: AuthConfig | None = None,
    ):
        self._provider = provider
        self._profiles = profiles
        self._token_store = tokens
        self._navigator = navigator
        self._notifier = notifier
        self._routes = routes or RoutesConfig()
        self._auth = auth or AuthConfig()

        self._session = Session()
        self._tokens: SessionTokens | None = None
        self._applied_sequence = 0
        self._listeners: list[SessionListener] = []
        self._queue: asyncio.Queue[AuthStateChange] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._unsubscribe_provider: Callable[[], None] | None = None

    @property
    def session(self) -> Session:
        return self._session

    @property
    def tokens(self) -> SessionTokens | None:
        return self._tokens

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Receive a snapshot whenever the session visibly changes."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # --- Lifecycle ---

    async def start(self) -> None:
        """Subscribe to provider notifications and start the queue worker."""
        self._unsubscribe_provider = self._provider.on_auth_state_change(self._queue.put_nowait)
        self._worker = asyncio.create_task(self._process_changes())

    async def stop(self) -> None:
        if self._unsubscribe_provider:
            self._unsubscribe_provider()
            self._unsubscribe_provider = None
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    async def drain(self) -> None:
        """Wait until every queued notification has been handled."""
        await self._queue.join()

    async def restore_session(self) -> None:
        """Resolve the persisted session once at startup."""
        sequence = next_sequence()
        identity: Identity | None = None
        tokens = await self._token_store.load()

        try:
            if tokens:
                identity = await self._provider.get_session(tokens)
                if identity is None:
                    refreshed = await self._provider.refresh_session(tokens)
                    if refreshed:
                        identity, tokens = refreshed
                        await self._token_store.save(tokens)
                    else:
                        tokens = None
                        await self._token_store.clear()
        except AuthError as exc:
            log.warning("session.restore_failed", kind=exc.kind.value, error=exc.message)
            identity, tokens = None, None

        if self._applied_sequence > sequence:
            # A newer notification already decided the identity
            log.info("session.restore_superseded")
            self._set(self._session.identity)
            return

        self._applied_sequence = sequence
        self._tokens = tokens
        became_present = self._set(identity)
        log.info("session.restored", user_id=identity.id if identity else None)
        if became_present and identity:
            await self._route_after_auth(identity.id)

    # --- Commands ---

    async def sign_up(self, email: str, password: str, role: Role) -> None:
        try:
            created = await self._provider.sign_up(email, password, role)
            identity, tokens = await self._provider.sign_in_with_password(email, password)
        except AuthError as exc:
            self._report(exc)
            return

        self._commit(identity, tokens)
        await self._token_store.save(tokens)
        log.info("session.signed_up", user_id=created.id, role=role.value)

        ready_role = await self._wait_for_profile(identity.id)
        await self._route_after_auth(identity.id, ready_role)
        self._notifier.notify("success", "Account created and logged in successfully!")

    async def sign_in(self, email: str, password: str) -> None:
        try:
            identity, tokens = await self._provider.sign_in_with_password(email, password)
        except AuthError as exc:
            self._report(exc)
            return

        self._commit(identity, tokens)
        await self._token_store.save(tokens)
        log.info("session.signed_in", user_id=identity.id)
        self._notifier.notify("success", "Logged in successfully!")
        await self._route_after_auth(identity.id)

    async def sign_out(self) -> None:
        """Clear locally first, then sign out remotely; always lands on login."""
        tokens = self._tokens
        self._applied_sequence = next_sequence()
        self._tokens = None
        self._set(None)
        await self._token_store.clear()

        try:
            await self._provider.sign_out(tokens)
            log.info("session.signed_out")
        except AuthError as exc:
            self._report(exc)

        self._navigator.navigate(self._routes.login)

    # --- Internals ---

    def _commit(self, identity: Identity, tokens: SessionTokens) -> None:
        # Results of local calls outrank notifications emitted before them
        self._applied_sequence = next_sequence()
        self._tokens = tokens
        self._set(identity)

    def _set(self, identity: Identity | None) -> bool:
        """Apply a new snapshot. Returns True when an identity became present."""
        previous = self._session
        updated = Session(identity=identity, loading=False)
        if updated == previous:
            return False

        self._session = updated
        for listener in list(self._listeners):
            try:
                listener(updated)
            except Exception:
                log.exception("session.listener_error")

        if identity is None:
            return False
        return previous.identity is None or previous.identity.id != identity.id

    async def _process_changes(self) -> None:
        while True:
            change = await self._queue.get()
            try:
                await self._handle_change(change)
            except Exception:
                log.exception("session.change_error", kind=change.kind.value)
            finally:
                self._queue.task_done()

    async def _handle_change(self, change: AuthStateChange) -> None:
        if change.sequence <= self._applied_sequence:
            log.debug("session.change_stale", kind=change.kind.value, sequence=change.sequence)
            return
        self._applied_sequence = change.sequence

        if change.kind == AuthChangeKind.SIGNED_OUT or change.identity is None:
            self._tokens = None
            self._set(None)
            await self._token_store.clear()
            return

        identity = change.identity
        if change.tokens:
            self._tokens = change.tokens
        became_present = self._set(identity)
        if change.tokens:
            await self._token_store.save(change.tokens)
        log.info("session.changed", kind=change.kind.value, user_id=identity.id)
        if became_present:
            await self._route_after_auth(identity.id)

    async def _wait_for_profile(self, user_id: str) -> Role | None:
        """Poll for the new profile row, bounded by the readiness timeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._auth.readiness_timeout_seconds
        while True:
            try:
                return await self._profiles.get_role(user_id)
            except (ProfileLookupError, FetchError) as exc:
                if loop.time() >= deadline:
                    log.warning("session.profile_not_ready", user_id=user_id, error=str(exc))
                    return None
            await asyncio.sleep(self._auth.readiness_poll_interval_seconds)

    async def _route_after_auth(self, user_id: str, role: Role | None = None) -> None:
        if role is None:
            try:
                role = await self._profiles.get_role(user_id)
            except (ProfileLookupError, FetchError) as exc:
                log.warning("session.route_lookup_failed", user_id=user_id, error=str(exc))
                self._notifier.notify("error", PROFILE_ERROR_MESSAGE)
                return

        if role == Role.ORGANIZATION:
            self._navigator.navigate(self._routes.organization)
        else:
            self._navigator.navigate(self._routes.volunteer)

    def _report(self, exc: AuthError) -> None:
        log.warning("session.auth_failed", kind=exc.kind.value, error=exc.message)
        self._notifier.notify("error", AUTH_ERROR_MESSAGES[exc.kind])
