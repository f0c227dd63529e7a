"""
Proxy Routes - Graph API Access
===============================

Endpoints the SPA calls instead of talking to the graph API directly. Every
handler asks the TokenBroker for a downstream token and the
ForwardingGateway for the call itself.

Endpoints:
----------
- GET  /api/claims: decoded (unverified) claims of the inbound bearer token
- GET  /api/me: caller's profile, claims and photo
- GET  /api/users/{user_id}: arbitrary user lookup
- GET  /api/users/{user_id}/photo: user photo as a data URL
- POST /api/obo/forward: generic call with a delegated token only
- POST /api/forward: generic call with the app-only token
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, status
from fastapi.responses import JSONResponse

from ..auth.broker import TokenBroker
from ..auth.claims import user_id_from_claims
from ..auth.session import InMemorySessionStore, Session
from ..dependencies import get_broker, get_gateway, get_inbound_token, get_session, get_session_store
from ..errors import AuthenticationRequiredError, DownstreamError, InvalidRequestError
from ..models import ForwardRequest, InboundToken, MeResponse, OboForwardRequest, PhotoResponse
from .gateway import ForwardingGateway, relay_response

logger = logging.getLogger(__name__)

proxy_router = APIRouter(prefix="/api", tags=["graph"])


# ============================================================================
# Claims
# ============================================================================

@proxy_router.get("/claims")
async def get_claims(inbound: Optional[InboundToken] = Depends(get_inbound_token)) -> Dict[str, Any]:
    if inbound is None:
        raise AuthenticationRequiredError("No bearer token provided")
    return {"claims": inbound.claims}


# ============================================================================
# Users
# ============================================================================

@proxy_router.get("/me", response_model=MeResponse)
async def get_me(
    inbound: Optional[InboundToken] = Depends(get_inbound_token),
    session: Session = Depends(get_session),
    store: InMemorySessionStore = Depends(get_session_store),
    broker: TokenBroker = Depends(get_broker),
    gateway: ForwardingGateway = Depends(get_gateway),
) -> MeResponse:
    """
    Load the caller's profile and photo.

    Claims come from the inbound bearer token, or from the id_token of a
    signed-in session when no bearer token was sent.
    """
    claims: Optional[Dict[str, Any]] = inbound.claims if inbound is not None else None
    if claims is None and await store.get_valid_access_token(session):
        claims = (session.account or {}).get("id_token_claims")

    if not claims:
        raise AuthenticationRequiredError("No bearer token provided")

    user_id = user_id_from_claims(claims)
    if not user_id:
        raise InvalidRequestError("Could not determine user id from token claims")

    token = await broker.acquire_downstream_token(session, inbound, endpoint="/api/me")
    profile = await gateway.get_json(
        gateway.user_url(user_id),
        token.access_token,
        error="Failed to load profile from Graph",
    )
    photo_data_url = await gateway.get_photo_data_url(gateway.user_photo_url(user_id), token.access_token)

    logger.info(
        "Loaded profile",
        extra={"endpoint": "/api/me", "token_source": token.source.value, "has_photo": photo_data_url is not None},
    )
    return MeResponse(profile=profile, claims=claims, photoDataUrl=photo_data_url)


@proxy_router.get("/users/{user_id}")
async def get_user(
    user_id: str,
    inbound: Optional[InboundToken] = Depends(get_inbound_token),
    session: Session = Depends(get_session),
    broker: TokenBroker = Depends(get_broker),
    gateway: ForwardingGateway = Depends(get_gateway),
):
    """Look up any user (the app registration needs User.Read.All)."""
    if not user_id.strip():
        raise InvalidRequestError("id required")

    token = await broker.acquire_downstream_token(session, inbound, endpoint="/api/users")
    return await gateway.get_json(
        gateway.user_url(user_id),
        token.access_token,
        error="Failed to load user from Graph",
    )


@proxy_router.get(
    "/users/{user_id}/photo",
    response_model=PhotoResponse,
    responses={status.HTTP_404_NOT_FOUND: {"description": "User has no photo"}},
)
async def get_user_photo(
    user_id: str,
    inbound: Optional[InboundToken] = Depends(get_inbound_token),
    session: Session = Depends(get_session),
    broker: TokenBroker = Depends(get_broker),
    gateway: ForwardingGateway = Depends(get_gateway),
):
    if not user_id.strip():
        raise InvalidRequestError("id required")

    token = await broker.acquire_downstream_token(session, inbound, endpoint="/api/users/photo")
    photo_data_url = await gateway.get_photo_data_url(gateway.user_photo_url(user_id), token.access_token)
    if photo_data_url is None:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"error": "Photo not found"})
    return PhotoResponse(photoDataUrl=photo_data_url)


# ============================================================================
# Generic Forwarding
# ============================================================================

@proxy_router.post("/obo/forward")
async def obo_forward(
    payload: Optional[OboForwardRequest] = Body(None),
    inbound: Optional[InboundToken] = Depends(get_inbound_token),
    session: Session = Depends(get_session),
    broker: TokenBroker = Depends(get_broker),
    gateway: ForwardingGateway = Depends(get_gateway),
):
    """
    Forward a request under the user's identity.

    Uses the session token or an on-behalf-of token; never the app token.

    Raises:
        AuthenticationRequiredError: no session token and no bearer token
        AudienceMismatchError: bearer token issued for another client
        InvalidRequestError: path missing
        TokenAcquisitionError: the on-behalf-of exchange failed
        DownstreamError: the forwarded call failed
    """
    if payload is None or not payload.path:
        raise InvalidRequestError("path required")

    token = await broker.acquire_downstream_token(
        session,
        inbound,
        require_delegated=True,
        endpoint="/api/obo/forward",
    )

    url = gateway.graph_url(payload.path)
    logger.info(
        "Forwarding delegated request",
        extra={"endpoint": "/api/obo/forward", "method": payload.method, "token_source": token.source.value},
    )
    response = await gateway.request(
        payload.method,
        url,
        token.access_token,
        data=payload.data,
        headers=payload.headers,
        error="OBO forward failed",
    )
    return relay_response(response)


@proxy_router.post("/forward")
async def forward(
    payload: Optional[ForwardRequest] = Body(None),
    broker: TokenBroker = Depends(get_broker),
    gateway: ForwardingGateway = Depends(get_gateway),
):
    """Forward a request to an absolute URL with the app-only token."""
    if payload is None or not payload.url:
        raise InvalidRequestError("url required")

    token = await broker.acquire_app_token()
    logger.info(
        "Forwarding app request",
        extra={"endpoint": "/api/forward", "method": payload.method},
    )
    try:
        response = await gateway.request(
            payload.method,
            payload.url,
            token.access_token,
            data=payload.data,
            headers=payload.headers,
            error="Forward failed",
        )
    except DownstreamError:
        logger.error("App forward failed", extra={"endpoint": "/api/forward", "url": payload.url})
        raise
    return relay_response(response)
