from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from .errors import AuthError, PortalError, SessionExpired
from .portal import Credentials, PortalBrowser, SessionArtifacts

_LOGGER = logging.getLogger("knx_bridge.session")

T = TypeVar("T")


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class Session:
    artifacts: SessionArtifacts
    generation: int
    valid: bool = True
    verified_at: float = 0.0


class SessionManager:
    """Owns the one live portal session.

    Sessions are immutable values with a generation number. Re-authentication
    is single-flight: every caller that needs a login while one is running
    awaits that same login task.
    """

    def __init__(
        self,
        browser: PortalBrowser,
        credentials: Credentials,
        *,
        login_timeout_s: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self._browser = browser
        self._credentials = credentials
        self._login_timeout_s = float(login_timeout_s)
        self._clock = clock

        self._session: Session | None = None
        self._generation = 0
        self._state = SessionState.UNAUTHENTICATED
        self._inflight: asyncio.Task | None = None
        self._last_error: str | None = None
        self._login_count = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def current(self) -> Session | None:
        return self._session

    @property
    def login_count(self) -> int:
        return self._login_count

    def status(self) -> dict[str, Any]:
        s = self._session
        return {
            "state": self._state.value,
            "generation": s.generation if s else 0,
            "valid": bool(s and s.valid),
            "verified_at": s.verified_at if s else None,
            "logins": self._login_count,
            "last_error": self._last_error,
        }

    async def ensure_authenticated(self) -> Session:
        s = self._session
        if s is not None and s.valid:
            return s
        return await self._authenticate()

    def invalidate(self, session: Session) -> None:
        cur = self._session
        if cur is None or cur.generation != session.generation or not cur.valid:
            return
        self._session = replace(cur, valid=False)
        self._state = SessionState.UNAUTHENTICATED
        _LOGGER.info("Session generation %d invalidated", cur.generation)

    async def execute(self, operation: Callable[[SessionArtifacts], Awaitable[T]]) -> T:
        session = await self.ensure_authenticated()
        try:
            result = await operation(session.artifacts)
        except SessionExpired:
            _LOGGER.warning("Session expired (generation %d), re-authenticating", session.generation)
            self.invalidate(session)
        else:
            self._touch(session)
            return result

        session = await self.ensure_authenticated()
        result = await operation(session.artifacts)
        self._touch(session)
        return result

    async def validate(self) -> bool:
        session = self._session
        if session is None or not session.valid:
            return False
        try:
            await self._browser.fetch(session.artifacts, 0)
        except SessionExpired:
            _LOGGER.warning("Session is invalid (401)")
            self.invalidate(session)
            return False
        except PortalError as e:
            _LOGGER.warning("Session validation failed: %s", e)
            return False
        self._touch(session)
        return True

    def _touch(self, session: Session) -> None:
        cur = self._session
        if cur is not None and cur.generation == session.generation and cur.valid:
            self._session = replace(cur, verified_at=self._clock())

    async def _authenticate(self) -> Session:
        task = self._inflight
        if task is None:
            task = asyncio.ensure_future(self._login())
            self._inflight = task
            task.add_done_callback(self._login_done)
        # shield: a cancelled caller must not abort the login other callers wait on
        return await asyncio.shield(task)

    def _login_done(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # mark retrieved; callers already received it through shield
            task.exception()

    async def _login(self) -> Session:
        self._state = SessionState.AUTHENTICATING
        self._login_count += 1
        _LOGGER.info("Logging in to portal (attempt %d)", self._login_count)
        try:
            artifacts = await asyncio.wait_for(self._browser.login(self._credentials), self._login_timeout_s)
        except asyncio.TimeoutError as e:
            self._fail(f"Login timed out after {self._login_timeout_s:.0f}s")
            raise AuthError(self._last_error) from e
        except AuthError as e:
            self._fail(str(e))
            raise
        except Exception as e:
            self._fail(str(e) or type(e).__name__)
            raise AuthError(f"Login failed: {self._last_error}") from e

        self._generation += 1
        session = Session(artifacts=artifacts, generation=self._generation, valid=True, verified_at=self._clock())
        self._session = session
        self._state = SessionState.AUTHENTICATED
        self._last_error = None
        _LOGGER.info("Login successful, session generation %d ready", session.generation)
        return session

    def _fail(self, message: str) -> None:
        self._state = SessionState.UNAUTHENTICATED
        self._last_error = message
        _LOGGER.error("Portal login failed: %s", message)
