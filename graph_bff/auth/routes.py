"""
Authentication routes for the authorization code flow.

The browser is sent to the identity provider with a one-time state nonce
kept in the server-side session. The callback checks that nonce before any
network call, exchanges the code for tokens and stores them in the session;
the SPA only ever receives the session cookie.
"""

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import RedirectResponse

from ..dependencies import AppState, get_app_state, get_session
from ..errors import InvalidRequestError, TokenAcquisitionError
from ..models import LogoutResponse, SessionInfoResponse
from .session import Session
from .token_service import TokenServiceError

logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
)


# =============================================================================
# Login Endpoint
# =============================================================================

@auth_router.get("/login", response_class=RedirectResponse)
async def login(
    session: Session = Depends(get_session),
    app_state: AppState = Depends(get_app_state),
):
    """
    Start the authorization code flow.

    A fresh state nonce and the delegated scope list are stored in the
    session; calling login again replaces any pending nonce.

    Returns:
        302 redirect to the provider's authorization endpoint
    """
    settings = app_state.settings
    scopes = settings.delegated_scopes_list
    state = secrets.token_urlsafe(32)

    app_state.session_store.begin_login(session, state, scopes)
    authorization_url = app_state.token_service.build_authorization_url(
        scopes,
        settings.redirect_uri,
        state,
    )

    logger.info("Redirecting to identity provider", extra={"scopes": scopes})
    return RedirectResponse(url=authorization_url, status_code=status.HTTP_302_FOUND)


# =============================================================================
# Callback Endpoint
# =============================================================================

@auth_router.get("/callback", response_class=RedirectResponse)
async def callback(
    code: Optional[str] = Query(None, description="Authorization code"),
    state: Optional[str] = Query(None, description="State nonce echoed by the provider"),
    error: Optional[str] = Query(None, description="Provider error code"),
    error_description: Optional[str] = Query(None, description="Provider error description"),
    session: Session = Depends(get_session),
    app_state: AppState = Depends(get_app_state),
):
    """
    Finish the authorization code flow.

    1. The stored nonce is consumed, whatever the outcome
    2. A missing or mismatched state is rejected with 400 before any exchange
    3. The code is exchanged with the scopes recorded at login
    4. The token set is written to the session and the browser is sent to
       the frontend

    Raises:
        InvalidRequestError: state mismatch, provider error, or no code
        TokenAcquisitionError: the code exchange failed
    """
    settings = app_state.settings
    store = app_state.session_store

    requested_scopes = session.requested_scopes or settings.delegated_scopes_list
    expected_state = store.consume_auth_state(session)

    if not state or not expected_state or not secrets.compare_digest(state, expected_state):
        logger.warning(
            "Rejected auth callback with invalid state",
            extra={"endpoint": "/auth/callback", "has_pending_login": expected_state is not None},
        )
        raise InvalidRequestError("Invalid state")

    if error:
        logger.warning(
            f"Identity provider returned an error: {error}",
            extra={"endpoint": "/auth/callback"},
        )
        raise InvalidRequestError(
            "Authentication failed",
            details={"error": error, "error_description": error_description},
        )

    if not code:
        raise InvalidRequestError("Missing authorization code")

    try:
        token_response = await app_state.token_service.acquire_token_by_authorization_code(
            code,
            requested_scopes,
            settings.redirect_uri,
        )
    except TokenServiceError as e:
        logger.error(
            f"Authorization code exchange failed: {e.error}",
            extra={"endpoint": "/auth/callback", "status_code": e.status_code},
        )
        raise TokenAcquisitionError("Failed to complete auth", details=e.to_details()) from e

    store.complete_login(session, token_response)
    logger.info(
        "User signed in",
        extra={"expires_on": token_response.expires_on.isoformat()},
    )

    return RedirectResponse(url=settings.FRONTEND_REDIRECT_URI, status_code=status.HTTP_302_FOUND)


# =============================================================================
# Session Endpoints
# =============================================================================

@auth_router.get("/session", response_model=SessionInfoResponse)
async def session_info(session: Session = Depends(get_session)) -> SessionInfoResponse:
    """Report whether a signed-in session exists. Never refreshes or returns tokens."""
    has_session = session.token_response is not None
    return SessionInfoResponse(
        hasSession=has_session,
        account=session.account if has_session else None,
    )


@auth_router.post("/logout", response_model=LogoutResponse)
async def logout(
    request: Request,
    session: Session = Depends(get_session),
    app_state: AppState = Depends(get_app_state),
) -> LogoutResponse:
    """
    Destroy the server-side session and clear the cookie.

    Logging out without a session, or twice, succeeds the same way.
    """
    app_state.session_store.destroy(session.id)
    request.state.session_destroyed = True
    logger.info("Session ended", extra={"endpoint": "/auth/logout"})
    return LogoutResponse(ok=True, redirect=app_state.settings.FRONTEND_REDIRECT_URI)
