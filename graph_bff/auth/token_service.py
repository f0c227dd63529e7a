"""
Identity provider token service client.

Talks to the provider's OAuth 2.0 v2 endpoints as a confidential client:

- authorize URL construction for the authorization code flow
- authorization_code, refresh_token and client_credentials grants
- the on-behalf-of grant (jwt-bearer assertion, requested_token_use=on_behalf_of)

Every successful grant is normalized into a TokenResponse whose expiry is an
absolute instant. Every failure is raised as TokenServiceError; callers
decide whether that is fatal or a reason to fall back.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from ..config import Settings
from ..models import TokenResponse, utcnow
from .claims import decode_unverified_claims

logger = logging.getLogger(__name__)

OBO_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"
DEFAULT_EXPIRES_IN = 3600


# =============================================================================
# Exceptions
# =============================================================================

class TokenServiceError(Exception):
    """A token request was rejected or could not be completed."""

    def __init__(
        self,
        error: str,
        description: Optional[str] = None,
        status_code: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(f"{error}: {description}" if description else error)
        self.error = error
        self.description = description
        self.status_code = status_code
        self.payload = payload

    def to_details(self) -> Any:
        if self.payload:
            return self.payload
        return {"error": self.error, "error_description": self.description}


# =============================================================================
# Response Normalization
# =============================================================================

def _account_from_id_token(id_token: Optional[str]) -> Optional[Dict[str, Any]]:
    if not id_token:
        return None
    claims = decode_unverified_claims(id_token)
    if not claims:
        return None

    oid = claims.get("oid") or claims.get("sub")
    tid = claims.get("tid")
    return {
        "home_account_id": f"{oid}.{tid}" if oid and tid else oid,
        "local_account_id": oid,
        "tenant_id": tid,
        "username": claims.get("preferred_username") or claims.get("upn") or claims.get("email"),
        "name": claims.get("name"),
        "id_token_claims": claims,
    }


def _resolve_expiry(data: Dict[str, Any], now: datetime) -> datetime:
    expires_on = data.get("expires_on")
    if expires_on not in (None, ""):
        try:
            return datetime.fromtimestamp(int(expires_on), tz=timezone.utc)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring unparseable expires_on value: {expires_on!r}")

    try:
        expires_in = int(data.get("expires_in") or DEFAULT_EXPIRES_IN)
    except (TypeError, ValueError):
        expires_in = DEFAULT_EXPIRES_IN
    return now + timedelta(seconds=expires_in)


def parse_token_response(
    data: Dict[str, Any],
    now: Optional[datetime] = None,
    previous: Optional[TokenResponse] = None,
) -> TokenResponse:
    """
    Normalize a raw token endpoint response.

    Args:
        data: JSON body from the token endpoint
        now: Reference time for relative expiries (defaults to current UTC)
        previous: Token set being refreshed; its refresh token and account
                  are kept when the provider does not return new ones

    Raises:
        TokenServiceError: If no access_token is present
    """
    access_token = data.get("access_token")
    if not access_token:
        raise TokenServiceError("invalid_response", "Token response missing access_token", payload=data)

    now = now or utcnow()
    refresh_token = data.get("refresh_token")
    account = _account_from_id_token(data.get("id_token"))
    if previous is not None:
        refresh_token = refresh_token or previous.refresh_token
        account = account or previous.account

    return TokenResponse(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_on=_resolve_expiry(data, now),
        account=account,
        scopes=str(data.get("scope") or "").split(),
    )


# =============================================================================
# Token Service
# =============================================================================

class TokenService:
    """
    Confidential client for the identity provider.

    Built once per process by the application factory and shared by all
    requests. The underlying httpx.AsyncClient is created lazily so the
    service can be constructed outside a running event loop.
    """

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.client_id = settings.BFF_CLIENT_ID
        self.client_secret = settings.BFF_CLIENT_SECRET
        self.authority = settings.authority
        self.timeout = settings.HTTP_TIMEOUT_SECONDS
        self._client = client

    @property
    def authorize_endpoint(self) -> str:
        return f"{self.authority}/oauth2/v2.0/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"{self.authority}/oauth2/v2.0/token"

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # Authorization code flow
    # -------------------------------------------------------------------------

    def build_authorization_url(self, scopes: List[str], redirect_uri: str, state: str) -> str:
        """Provider URL the browser is sent to at /auth/login."""
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "response_mode": "query",
            "scope": " ".join(scopes),
            "state": state,
        }
        return f"{self.authorize_endpoint}?{urlencode(params)}"

    async def acquire_token_by_authorization_code(
        self, code: str, scopes: List[str], redirect_uri: str
    ) -> TokenResponse:
        return await self._request_token(
            "authorization_code",
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "scope": " ".join(scopes),
            },
        )

    # -------------------------------------------------------------------------
    # Silent / service grants
    # -------------------------------------------------------------------------

    async def acquire_token_by_refresh_token(
        self, refresh_token: str, scopes: List[str], previous: Optional[TokenResponse] = None
    ) -> TokenResponse:
        return await self._request_token(
            "refresh_token",
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "scope": " ".join(scopes),
            },
            previous=previous,
        )

    async def acquire_token_for_client(self, scopes: List[str]) -> TokenResponse:
        return await self._request_token(
            "client_credentials",
            {
                "grant_type": "client_credentials",
                "scope": " ".join(scopes),
            },
        )

    async def acquire_token_on_behalf_of(self, user_assertion: str, scopes: List[str]) -> TokenResponse:
        return await self._request_token(
            "on_behalf_of",
            {
                "grant_type": OBO_GRANT_TYPE,
                "assertion": user_assertion,
                "requested_token_use": "on_behalf_of",
                "scope": " ".join(scopes),
            },
        )

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _request_token(
        self,
        grant: str,
        payload: Dict[str, str],
        previous: Optional[TokenResponse] = None,
    ) -> TokenResponse:
        form = {"client_id": self.client_id, **payload}
        if self.client_secret:
            form["client_secret"] = self.client_secret

        try:
            response = await self.client.post(
                self.token_endpoint,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            logger.warning(
                f"Token request failed before a response was received: {e}",
                extra={"grant": grant},
            )
            raise TokenServiceError("network_error", str(e)) from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if not response.is_success or "error" in data:
            error = data.get("error") or f"http_{response.status_code}"
            description = data.get("error_description") or response.text[:500]
            logger.warning(
                f"Token request rejected: {error}",
                extra={"grant": grant, "status_code": response.status_code},
            )
            raise TokenServiceError(error, description, response.status_code, data or None)

        token = parse_token_response(data, previous=previous)
        logger.debug(
            "Token acquired",
            extra={"grant": grant, "expires_on": token.expires_on.isoformat()},
        )
        return token
