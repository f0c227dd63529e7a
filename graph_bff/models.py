"""
Data Models Module

This module defines Pydantic models for request/response validation
and for the token and session data passed between broker components.

Models are organized by functional area:
- Token models (token-service results, decoded inbound tokens)
- Forwarding models (generic and on-behalf-of forward request bodies)
- Response models (profile, photo, session info, logout, health)
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


ALLOWED_FORWARD_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Token Models
# ============================================================================

class TokenResponse(BaseModel):
    """
    Normalized token-service result.

    ``expires_on`` is always an absolute, timezone-aware instant. Durations
    returned by the provider are resolved when the response is parsed.
    """
    access_token: str = Field(..., description="Bearer token for the downstream API")
    refresh_token: Optional[str] = Field(None, description="Refresh token, when offline_access was granted")
    expires_on: datetime = Field(..., description="Absolute UTC expiry of access_token")
    account: Optional[Dict[str, Any]] = Field(None, description="Signed-in account derived from the id_token")
    scopes: List[str] = Field(default_factory=list, description="Scopes granted by the provider")

    @field_validator("expires_on")
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def is_fresh(self, skew_seconds: float, now: Optional[datetime] = None) -> bool:
        """True while the access token expires more than ``skew_seconds`` from now."""
        now = now or utcnow()
        return bool(self.access_token) and self.expires_on > now + timedelta(seconds=skew_seconds)


class InboundToken(BaseModel):
    """Bearer token presented by the caller, decoded without signature checks."""
    raw: str
    claims: Dict[str, Any]
    audiences: List[str] = Field(default_factory=list)
    authorized_party: Optional[str] = None


# ============================================================================
# Forwarding Models
# ============================================================================

class _ForwardBase(BaseModel):
    method: str = Field(default="GET", description="HTTP method for the downstream call")
    data: Optional[Any] = Field(default=None, description="JSON body sent downstream")
    headers: Dict[str, str] = Field(default_factory=dict, description="Extra headers sent downstream")

    @field_validator("method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        method = (v or "GET").upper()
        if method not in ALLOWED_FORWARD_METHODS:
            raise ValueError(f"Unsupported method '{v}'")
        return method


class OboForwardRequest(_ForwardBase):
    """Body of POST /api/obo/forward. ``path`` is relative to the graph base URL."""
    path: Optional[str] = Field(default=None, description="Path such as /v1.0/me/messages")


class ForwardRequest(_ForwardBase):
    """Body of POST /api/forward. ``url`` is absolute."""
    url: Optional[str] = Field(default=None, description="Absolute downstream URL")


# ============================================================================
# Response Models
# ============================================================================

class MeResponse(BaseModel):
    profile: Dict[str, Any]
    claims: Dict[str, Any]
    photoDataUrl: Optional[str] = None


class PhotoResponse(BaseModel):
    photoDataUrl: str


class SessionInfoResponse(BaseModel):
    """Whether the browser holds a signed-in server-side session."""
    hasSession: bool
    account: Optional[Dict[str, Any]] = None


class LogoutResponse(BaseModel):
    ok: bool = True
    redirect: str


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    active_sessions: int = Field(0, description="Sessions held by the in-memory store")

