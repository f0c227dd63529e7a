"""
Shared fixtures for the Graph BFF test suite.

Provides test settings, unsigned-looking JWT builders for inbound tokens,
and TokenResponse factories.
"""

from datetime import timedelta
from typing import Any, Dict, Optional

import jwt
import pytest

from graph_bff.config import Settings
from graph_bff.models import TokenResponse, utcnow

TEST_CLIENT_ID = "11111111-2222-3333-4444-555555555555"
TEST_SESSION_SECRET = "test-session-secret-0123456789abcdef0123456789abcdef"
# Inbound tokens are never verified, so any key will do.
TEST_SIGNING_KEY = "inbound-token-signing-key-for-tests-only-0123456789"


def make_jwt(claims: Dict[str, Any]) -> str:
    """Encode claims as a JWT the way an identity provider would hand it out."""
    return jwt.encode(claims, TEST_SIGNING_KEY, algorithm="HS256")


def make_user_token(aud: Any = TEST_CLIENT_ID, **extra: Any) -> str:
    claims = {
        "aud": aud,
        "oid": "user-oid-123",
        "sub": "user-sub-123",
        "preferred_username": "ada@example.com",
        "name": "Ada Lovelace",
        "tid": "tenant-1",
    }
    claims.update(extra)
    return make_jwt(claims)


def make_token_response(
    access_token: str = "access-token",
    refresh_token: Optional[str] = "refresh-token",
    expires_in: int = 3600,
    account: Optional[Dict[str, Any]] = None,
) -> TokenResponse:
    return TokenResponse(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_on=utcnow() + timedelta(seconds=expires_in),
        account=account,
    )


@pytest.fixture
def mock_settings() -> Settings:
    """Settings isolated from the developer's .env file"""
    return Settings(
        _env_file=None,
        BFF_CLIENT_ID=TEST_CLIENT_ID,
        BFF_CLIENT_SECRET="test-client-secret",
        BFF_TENANT_ID="test-tenant",
        BFF_REDIRECT_URI="http://localhost:3000/auth/callback",
        FRONTEND_REDIRECT_URI="http://localhost:4000",
        BFF_SESSION_SECRET=TEST_SESSION_SECRET,
    )


@pytest.fixture
def user_token() -> str:
    return make_user_token()
