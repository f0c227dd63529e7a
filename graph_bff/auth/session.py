"""
Server-Side Session Management
==============================

Sessions live in process memory, keyed by an opaque random id. The browser
only ever holds that id, inside an HS256-signed JWT cookie; access and
refresh tokens never leave the server.

Components:
- Session: per-user state (pending login nonce, requested scopes, token set)
- InMemorySessionStore: owns every session and performs token refresh
- SessionMiddleware: loads the session for each request and writes or
  clears the cookie on the way out

Refresh is single-flight per session: concurrent requests that find the same
expired token share one refresh exchange instead of racing each other.
"""

import asyncio
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import jwt
from jwt.exceptions import PyJWTError
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..config import Settings
from ..models import TokenResponse, utcnow
from .token_cache import EXPIRY_SKEW_SECONDS
from .token_service import TokenService, TokenServiceError

logger = logging.getLogger(__name__)

SESSION_COOKIE_ALGORITHM = "HS256"


# =============================================================================
# Session Model
# =============================================================================

class Session(BaseModel):
    """State kept for one browser session."""
    id: str
    token_response: Optional[TokenResponse] = None
    auth_state: Optional[str] = None
    requested_scopes: List[str] = Field(default_factory=list)
    last_accessed: datetime = Field(default_factory=utcnow)
    destroyed: bool = False

    def is_empty(self) -> bool:
        if self.destroyed:
            return True
        return self.token_response is None and self.auth_state is None and not self.requested_scopes

    @property
    def is_pending_login(self) -> bool:
        """Holds a login nonce but no tokens yet."""
        return self.token_response is None

    @property
    def account(self) -> Optional[dict]:
        return self.token_response.account if self.token_response else None


# =============================================================================
# Cookie Signing
# =============================================================================

def encode_session_cookie(session_id: str, secret: str) -> str:
    """Sign a session id into the cookie value."""
    payload = {
        "sid": session_id,
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, secret, algorithm=SESSION_COOKIE_ALGORITHM)


def decode_session_cookie(value: Optional[str], secret: str) -> Optional[str]:
    """
    Recover the session id from a cookie value.

    Returns:
        The session id, or None for a missing, tampered or foreign cookie
    """
    if not value:
        return None
    try:
        payload = jwt.decode(value, secret, algorithms=[SESSION_COOKIE_ALGORITHM])
    except PyJWTError as e:
        logger.debug(f"Ignoring invalid session cookie: {e}")
        return None
    sid = payload.get("sid")
    return sid if isinstance(sid, str) and sid else None


# =============================================================================
# Session Store
# =============================================================================

class InMemorySessionStore:
    """
    Process-local session store.

    Only this class mutates Session objects. A durable store can replace it
    by providing the same methods.
    """

    def __init__(
        self,
        token_service: TokenService,
        refresh_scopes: List[str],
        ttl_seconds: int = 60 * 60 * 8,
        skew_seconds: float = EXPIRY_SKEW_SECONDS,
        pending_ttl_seconds: int = 60 * 10,
    ):
        self.token_service = token_service
        self.refresh_scopes = list(refresh_scopes)
        self.ttl = timedelta(seconds=ttl_seconds)
        # A login that never reaches the callback only needs its nonce briefly.
        self.pending_ttl = min(timedelta(seconds=pending_ttl_seconds), self.ttl)
        self.skew_seconds = skew_seconds
        self._sessions: Dict[str, Session] = {}
        self._refreshes: Dict[str, "asyncio.Task[Optional[str]]"] = {}

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def new_session(self) -> Session:
        """A fresh, unsaved session. It is persisted only once it holds state."""
        return Session(id=secrets.token_urlsafe(32))

    def _is_expired(self, session: Session, now: datetime) -> bool:
        ttl = self.pending_ttl if session.is_pending_login else self.ttl
        return session.last_accessed + ttl < now

    def get(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is None:
            return None

        now = utcnow()
        if self._is_expired(session, now):
            logger.info("Session expired after idle timeout")
            self.destroy(session_id)
            return None

        session.last_accessed = now
        return session

    def save(self, session: Session) -> None:
        """
        Persist a session. Destroyed sessions are never written back, so a
        request that loaded a session before logout cannot restore it.
        """
        if session.destroyed:
            return
        session.last_accessed = utcnow()
        self._sessions[session.id] = session

    def destroy(self, session_id: Optional[str]) -> bool:
        """
        Remove a session and end it for every request still holding it.

        Destroying an unknown session is not an error.
        """
        if not session_id:
            return False
        self._refreshes.pop(session_id, None)
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        self.end(session)
        return True

    def end(self, session: Session) -> None:
        """Mark a session object as ended and drop its tokens and login state."""
        session.destroyed = True
        session.token_response = None
        session.auth_state = None
        session.requested_scopes = []

    def purge_expired(self) -> int:
        """Destroy every session past its idle lifetime. Returns how many."""
        now = utcnow()
        stale = [sid for sid, s in self._sessions.items() if self._is_expired(s, now)]
        for sid in stale:
            self.destroy(sid)
        if stale:
            logger.info("Purged expired sessions", extra={"purged": len(stale)})
        return len(stale)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # -------------------------------------------------------------------------
    # Login state
    # -------------------------------------------------------------------------

    def begin_login(self, session: Session, state: str, scopes: List[str]) -> None:
        """Record a pending login; replaces any earlier pending nonce."""
        session.auth_state = state
        session.requested_scopes = list(scopes)

    def consume_auth_state(self, session: Session) -> Optional[str]:
        """Return and clear the pending nonce. A nonce is usable once."""
        state = session.auth_state
        session.auth_state = None
        return state

    def complete_login(self, session: Session, token_response: TokenResponse) -> None:
        session.token_response = token_response
        session.auth_state = None
        session.requested_scopes = []

    # -------------------------------------------------------------------------
    # Token access
    # -------------------------------------------------------------------------

    async def get_valid_access_token(self, session: Optional[Session]) -> Optional[str]:
        """
        Return a usable access token for the session, refreshing if needed.

        1. No stored token set -> None
        2. Access token valid for more than the skew -> cached token, no call
        3. Refresh token stored -> one refresh exchange (shared by concurrent
           callers); on success the stored set is replaced
        4. Otherwise, or when refresh fails -> None
        """
        if session is None or session.destroyed or session.token_response is None:
            return None

        current = session.token_response
        if current.is_fresh(self.skew_seconds):
            return current.access_token

        if not current.refresh_token:
            return None

        task = self._refreshes.get(session.id)
        if task is None:
            task = asyncio.ensure_future(self._refresh(session, current))
            self._refreshes[session.id] = task
            task.add_done_callback(lambda t, sid=session.id: self._forget_refresh(sid, t))
        return await asyncio.shield(task)

    def _forget_refresh(self, session_id: str, task: "asyncio.Task[Optional[str]]") -> None:
        if self._refreshes.get(session_id) is task:
            del self._refreshes[session_id]

    async def _refresh(self, session: Session, current: TokenResponse) -> Optional[str]:
        try:
            refreshed = await self.token_service.acquire_token_by_refresh_token(
                current.refresh_token,
                self.refresh_scopes,
                previous=current,
            )
        except TokenServiceError as e:
            logger.warning(
                f"Refresh token exchange failed: {e.error}",
                extra={"status_code": e.status_code},
            )
            return None

        if session.destroyed:
            logger.info("Discarding refreshed token for a session that ended")
            return None

        if session.token_response is not current:
            # Re-authenticated while the refresh was in flight.
            logger.info("Discarding refreshed token for a session that changed")
            current_set = session.token_response
            return current_set.access_token if current_set and current_set.is_fresh(self.skew_seconds) else None

        session.token_response = refreshed
        logger.info(
            "Refreshed session access token",
            extra={"expires_on": refreshed.expires_on.isoformat()},
        )
        return refreshed.access_token


async def purge_sessions_periodically(store: InMemorySessionStore, interval_seconds: float) -> None:
    """Run ``store.purge_expired()`` every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        store.purge_expired()


# =============================================================================
# Middleware
# =============================================================================

class SessionMiddleware(BaseHTTPMiddleware):
    """
    Attach ``request.state.session`` and maintain the session cookie.

    A session that never receives state sets no cookie. Handlers that end a
    session set ``request.state.session_destroyed``; the cookie is then
    cleared instead of refreshed.
    """

    def __init__(self, app, store: InMemorySessionStore, settings: Settings):
        super().__init__(app)
        self.store = store
        self.cookie_name = settings.SESSION_COOKIE_NAME
        self.secret = settings.BFF_SESSION_SECRET
        self.secure = settings.SESSION_COOKIE_SECURE
        self.max_age = settings.SESSION_TTL_SECONDS

    async def dispatch(self, request: Request, call_next) -> Response:
        session_id = decode_session_cookie(request.cookies.get(self.cookie_name), self.secret)
        session = self.store.get(session_id) if session_id else None
        is_new = session is None
        if is_new:
            session = self.store.new_session()

        request.state.session = session
        request.state.session_destroyed = False

        response = await call_next(request)

        # A stored session that disappeared mid-request (logout, purge) must
        # not be written back by this response.
        if not is_new and session.id not in self.store:
            self.store.end(session)

        if request.state.session_destroyed or session.destroyed:
            response.delete_cookie(
                self.cookie_name,
                path="/",
                secure=self.secure,
                httponly=True,
                samesite="lax",
            )
        elif not session.is_empty():
            self.store.save(session)
            response.set_cookie(
                self.cookie_name,
                encode_session_cookie(session.id, self.secret),
                max_age=self.max_age,
                path="/",
                secure=self.secure,
                httponly=True,
                samesite="lax",
            )
        return response
