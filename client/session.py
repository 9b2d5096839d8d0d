"""
client/session.py -- Client-side session state and its manager.

SessionState is the single in-memory holder of the device's Session. It is an
explicit object passed to whoever needs it, never a module-level singleton.
Every mutation goes through its small API and is persisted to SecureStorage
under one fixed key; no record means logged out.

SessionManager owns the only mutators callers may use: login, register,
logout, refresh, clear_error. Rules it enforces:

  - A successful login / register replaces the whole Session at once, so
    role and tier can never be stale relative to the tokens.
  - refresh() runs proactively (access token has < refresh_margin_seconds
    left) or reactively (a protected call came back 401). Concurrent callers
    share one in-flight refresh. Any refresh failure ends the session.
  - logout() clears local state first and then tries to revoke server-side;
    a failed revoke never leaves the user logged in.
  - logout() wins over an in-flight refresh: every state change bumps a
    generation counter, and a refresh that finishes against an older
    generation is discarded.
  - Every backend call is bounded by a timeout and surfaces as
    AuthErrorCode.TIMEOUT. Refresh retries a timeout with backoff before
    giving up.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timezone
from typing import Any, TypeVar

from auth.errors import AuthError, AuthErrorCode
from auth.models import AuthResponse, Session, TokenPair
from client.backends import AuthBackend
from client.storage import SecureStorage
from core.config import ClientSettings, get_client_settings

logger = logging.getLogger("stagepass.session")

T = TypeVar("T")

STORAGE_KEY = "stagepass.session"


def _not_logged_in() -> AuthError:
    return AuthError(AuthErrorCode.UNAUTHORIZED, "Not logged in.")


def _session_ended() -> AuthError:
    return AuthError(AuthErrorCode.REVOKED, "Session ended during refresh.")


def _is_http_401(response: Any) -> bool:
    return getattr(response, "status_code", None) == 401


# ---------------------------------------------------------------------------
# State holder
# ---------------------------------------------------------------------------


class SessionState:
    """In-memory session plus its persisted copy.

    Usage:
        state = SessionState(EncryptedFileStorage(settings.session_dir))
        state.session          # restored from storage, or None
    """

    def __init__(self, storage: SecureStorage) -> None:
        self._storage = storage
        self._lock = threading.RLock()
        self._session: Session | None = self._load()
        self.generation = 0
        self.error: str | None = None
        self.is_loading = False

    def _load(self) -> Session | None:
        raw = self._storage.get_item(STORAGE_KEY)
        if raw is None:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding malformed persisted session")
            self._storage.remove_item(STORAGE_KEY)
            return None

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        session = self._session
        return session is not None and session.is_authenticated

    def replace(self, session: Session) -> int:
        """Install a whole new session. Returns the new generation."""
        with self._lock:
            self._storage.set_item(STORAGE_KEY, json.dumps(session.to_dict()))
            self._session = session
            self.generation += 1
            self.error = None
            return self.generation

    def update_tokens(self, tokens: TokenPair, generation: int) -> bool:
        """Swap in refreshed tokens, but only if nothing replaced the session meanwhile."""
        with self._lock:
            if self.generation != generation or self._session is None:
                return False
            session = Session(identity=self._session.identity, tokens=tokens)
            self._storage.set_item(STORAGE_KEY, json.dumps(session.to_dict()))
            self._session = session
            return True

    def clear(self) -> Session | None:
        """Drop the session everywhere. Returns what was cleared."""
        with self._lock:
            previous = self._session
            self._session = None
            self.generation += 1
            self.is_loading = False
            self.error = None
            self._storage.remove_item(STORAGE_KEY)
            return previous

    def set_loading(self, loading: bool) -> None:
        self.is_loading = loading

    def set_error(self, message: str | None) -> None:
        self.error = message

    def clear_error(self) -> None:
        self.error = None


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class SessionManager:
    """The mutator API over a SessionState.

    Usage:
        manager = SessionManager(HttpAuthBackend(url), SessionState(storage))
        session = manager.authenticate("ax", "Str0ng!Pass")
        response = manager.call(lambda token: backend.request("GET", "/auth/me", token))
        manager.logout()
    """

    def __init__(
        self,
        backend: AuthBackend,
        state: SessionState,
        settings: ClientSettings | None = None,
        *,
        timeout: float | None = None,
        refresh_margin: float | None = None,
        refresh_attempts: int = 3,
        retry_backoff: float = 0.5,
        max_retry_after: float = 30.0,
        auto_refresh: bool = False,
    ) -> None:
        settings = settings or get_client_settings()
        self.backend = backend
        self.state = state
        self.timeout = timeout if timeout is not None else settings.request_timeout_seconds
        self.refresh_margin = refresh_margin if refresh_margin is not None else settings.refresh_margin_seconds
        self.refresh_attempts = max(1, refresh_attempts)
        self.retry_backoff = retry_backoff
        self.max_retry_after = max_retry_after
        self.auto_refresh = auto_refresh
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="stagepass-auth")
        self._refresh_guard = threading.Lock()
        self._inflight: Future | None = None
        self._timer: threading.Timer | None = None
        if self.auto_refresh and state.is_authenticated:
            self._schedule_renewal()

    # ------------------------------------------------------------------
    # Backend calls with a bounded timeout
    # ------------------------------------------------------------------

    def _call(self, fn: Callable[..., T], *args: Any) -> T | AuthError:
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError:
            future.cancel()
            logger.warning("%s timed out after %.1fs", getattr(fn, "__name__", "backend call"), self.timeout)
            return AuthError(AuthErrorCode.TIMEOUT, "The server did not respond in time.")

    # ------------------------------------------------------------------
    # login / register
    # ------------------------------------------------------------------

    def login(self, identifier: str, password: str) -> Session | AuthError:
        return self._start_session(self.backend.login, identifier, password)

    def register(
        self, email: str, username: str, password: str, display_name: str | None = None
    ) -> Session | AuthError:
        return self._start_session(self.backend.register, email, username, password, display_name)

    def authenticate(self, identifier: str, password: str) -> Session | AuthError:
        """Entry point for code outside the auth core: log in and return the Session."""
        return self.login(identifier, password)

    def _start_session(self, fn: Callable[..., AuthResponse | AuthError], *args: Any) -> Session | AuthError:
        self.state.set_error(None)
        self.state.set_loading(True)
        try:
            result = self._call(fn, *args)
        finally:
            self.state.set_loading(False)
        if isinstance(result, AuthError):
            self.state.set_error(result.message)
            return result
        session = Session(identity=result.identity, tokens=result.tokens)
        self.state.replace(session)
        logger.info("Session started for identity %s", session.identity.id)
        if self.auto_refresh:
            self._schedule_renewal()
        return session

    # ------------------------------------------------------------------
    # logout
    # ------------------------------------------------------------------

    def logout(self) -> None:
        """Clear the session locally, then best-effort revoke it server-side."""
        self._cancel_renewal()
        previous = self.state.clear()
        if previous is None:
            return
        try:
            result = self._call(self.backend.revoke, previous.tokens)
        except Exception:
            # Local state is already gone; a failed revoke only means the
            # refresh token lives on server-side until it expires.
            logger.warning("Server-side revoke failed", exc_info=True)
            return
        if isinstance(result, AuthError):
            logger.warning("Server-side revoke failed: %s", result.code.value)
        else:
            logger.info("Session ended for identity %s", previous.identity.id)

    def clear_error(self) -> None:
        self.state.clear_error()

    # ------------------------------------------------------------------
    # refresh
    # ------------------------------------------------------------------

    def needs_refresh(self, now: datetime | None = None) -> bool:
        session = self.state.session
        if session is None:
            return False
        now = now or datetime.now(timezone.utc)
        return (session.tokens.access_expires_at - now).total_seconds() < self.refresh_margin

    def refresh(self) -> TokenPair | AuthError:
        """Renew the access token. Concurrent calls share one backend refresh."""
        with self._refresh_guard:
            inflight = self._inflight
            leader = inflight is None
            if leader:
                session = self.state.session
                if session is None:
                    return _not_logged_in()
                generation = self.state.generation
                inflight = self._inflight = Future()
        if not leader:
            return inflight.result()

        try:
            result = self._refresh_once(session, generation)
        except BaseException as exc:
            inflight.set_exception(exc)
            raise
        else:
            inflight.set_result(result)
        finally:
            with self._refresh_guard:
                self._inflight = None
        return result

    def _refresh_once(self, session: Session, generation: int) -> TokenPair | AuthError:
        result = self._call(self.backend.refresh, session.tokens.refresh_token)
        attempt = 1
        while isinstance(result, AuthError) and result.code == AuthErrorCode.TIMEOUT and attempt < self.refresh_attempts:
            if self.state.generation != generation:
                return _session_ended()
            delay = self.retry_backoff * (2 ** (attempt - 1))
            if result.retry_after is not None:
                # Rate limited: sleep out the server's window, or give up past max_retry_after.
                if result.retry_after > self.max_retry_after:
                    break
                delay = max(delay, result.retry_after)
            time.sleep(delay)
            attempt += 1
            result = self._call(self.backend.refresh, session.tokens.refresh_token)

        if self.state.generation != generation:
            # logout (or a new login) happened while we were waiting.
            return _session_ended()

        if isinstance(result, AuthError):
            logger.info("Refresh failed (%s); ending session", result.code.value)
            self.logout()
            self.state.set_error("Your session has ended. Please log in again.")
            return result

        tokens = TokenPair(
            access_token=result.access_token,
            refresh_token=result.refresh_token or session.tokens.refresh_token,
            access_expires_at=result.access_expires_at,
        )
        if not self.state.update_tokens(tokens, generation):
            return _session_ended()
        if self.auto_refresh:
            self._schedule_renewal()
        return tokens

    def ensure_fresh(self) -> TokenPair | AuthError:
        """Current tokens, refreshed first if the access token is about to expire."""
        session = self.state.session
        if session is None:
            return _not_logged_in()
        if self.needs_refresh():
            return self.refresh()
        return session.tokens

    def _refresh_after_rejection(self, rejected_access_token: str) -> TokenPair | AuthError:
        # Another caller may already have refreshed past the rejected token.
        session = self.state.session
        if session is None:
            return _not_logged_in()
        if session.tokens.access_token != rejected_access_token:
            return session.tokens
        return self.refresh()

    # ------------------------------------------------------------------
    # Protected calls
    # ------------------------------------------------------------------

    def call(
        self,
        operation: Callable[[str], T],
        is_unauthorized: Callable[[T], bool] = _is_http_401,
    ) -> T | AuthError:
        """Run `operation(access_token)` with a fresh token, retrying once after a 401.

        `operation` is any protected call; `is_unauthorized` recognizes its
        401-equivalent result (default: an HTTP response with status 401).
        """
        tokens = self.ensure_fresh()
        if isinstance(tokens, AuthError):
            return tokens
        response = operation(tokens.access_token)
        if not is_unauthorized(response):
            return response
        refreshed = self._refresh_after_rejection(tokens.access_token)
        if isinstance(refreshed, AuthError):
            return refreshed
        return operation(refreshed.access_token)

    # ------------------------------------------------------------------
    # Scheduled renewal
    # ------------------------------------------------------------------

    def _schedule_renewal(self) -> None:
        session = self.state.session
        if session is None:
            return
        remaining = (session.tokens.access_expires_at - datetime.now(timezone.utc)).total_seconds()
        delay = max(0.0, remaining - self.refresh_margin)
        self._cancel_renewal()
        timer = threading.Timer(delay, self._renew)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _renew(self) -> None:
        if self.state.session is not None:
            self.refresh()

    def _cancel_renewal(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def close(self) -> None:
        self._cancel_renewal()
        self._executor.shutdown(wait=False)
