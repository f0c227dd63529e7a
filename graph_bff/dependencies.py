"""
Shared application state and FastAPI dependencies.

The factory builds one AppState per application and stores it on
``app.state.app_state``. Route handlers reach the broker, gateway and
session store only through these dependencies.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request, status

from .auth.broker import TokenBroker
from .auth.claims import parse_inbound_token
from .auth.session import InMemorySessionStore, Session
from .auth.token_service import TokenService
from .config import Settings
from .models import InboundToken
from .proxy.gateway import ForwardingGateway


@dataclass
class AppState:
    """Process-wide collaborators, built once at startup."""
    settings: Settings
    token_service: TokenService
    session_store: InMemorySessionStore
    broker: TokenBroker
    gateway: ForwardingGateway


def get_app_state(request: Request) -> AppState:
    app_state = getattr(request.app.state, "app_state", None)
    if app_state is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Application state not initialized",
        )
    return app_state


def get_session_store(request: Request) -> InMemorySessionStore:
    return get_app_state(request).session_store


def get_broker(request: Request) -> TokenBroker:
    return get_app_state(request).broker


def get_gateway(request: Request) -> ForwardingGateway:
    return get_app_state(request).gateway


def get_session(request: Request) -> Session:
    """Session attached by SessionMiddleware."""
    session = getattr(request.state, "session", None)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Session middleware not installed",
        )
    return session


def get_inbound_token(request: Request) -> Optional[InboundToken]:
    """Decoded bearer token, or None for anonymous requests."""
    return parse_inbound_token(request.headers.get("Authorization"))
