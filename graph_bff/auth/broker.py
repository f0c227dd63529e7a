"""
Token broker: the single credential-selection policy for downstream calls.

Preference order:
    1. the session's delegated token (refreshed if needed)
    2. an on-behalf-of token, only for an inbound bearer token whose
       audience names this broker
    3. the broker's own app-only (client credential) token

Handlers call ``acquire_downstream_token`` and never repeat this logic.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from ..config import Settings
from ..errors import AudienceMismatchError, AuthenticationRequiredError, TokenAcquisitionError
from ..models import InboundToken
from .audience import token_targets_client
from .session import InMemorySessionStore, Session
from .token_cache import ExpiringTokenCache, cache_key
from .token_service import TokenService, TokenServiceError

logger = logging.getLogger(__name__)


class TokenSource(str, Enum):
    SESSION = "session"
    ON_BEHALF_OF = "on_behalf_of"
    APP = "app"


@dataclass(frozen=True)
class AcquiredToken:
    access_token: str
    source: TokenSource

    @property
    def is_delegated(self) -> bool:
        return self.source is not TokenSource.APP


class TokenBroker:
    def __init__(
        self,
        settings: Settings,
        token_service: TokenService,
        session_store: InMemorySessionStore,
        cache: Optional[ExpiringTokenCache] = None,
    ):
        self.client_id = settings.BFF_CLIENT_ID
        self.scopes: List[str] = settings.graph_scopes_list
        self.token_service = token_service
        self.session_store = session_store
        self.cache = cache if cache is not None else ExpiringTokenCache()

    async def acquire_downstream_token(
        self,
        session: Optional[Session],
        inbound: Optional[InboundToken],
        *,
        require_delegated: bool = False,
        endpoint: Optional[str] = None,
    ) -> AcquiredToken:
        """
        Select and acquire the bearer token for a downstream call.

        Args:
            session: Current server-side session (may hold a user token set)
            inbound: Decoded inbound bearer token, or None
            require_delegated: Refuse to fall back to the app-only token
            endpoint: Calling endpoint, for log context

        Raises:
            AuthenticationRequiredError: delegated call with no session token
                and no inbound token
            AudienceMismatchError: delegated call whose inbound token was not
                issued for this broker
            TokenAcquisitionError: the exchange the call depends on failed
        """
        log_extra = {"endpoint": endpoint}

        session_token = await self.session_store.get_valid_access_token(session)
        if session_token:
            return AcquiredToken(session_token, TokenSource.SESSION)

        if inbound is not None and token_targets_client(inbound, self.client_id):
            try:
                return await self.acquire_on_behalf_of(inbound)
            except TokenAcquisitionError as e:
                if require_delegated:
                    raise
                logger.warning(
                    "On-behalf-of exchange failed, falling back to app token",
                    extra={**log_extra, "details": e.details},
                )
        elif inbound is not None:
            if require_delegated:
                raise AudienceMismatchError(
                    "Incoming token audience does not match BFF client. Request a delegated token "
                    "for the BFF (audience = your BFF app) before calling this endpoint."
                )
            logger.warning(
                "Incoming token audience does not match this BFF client id; skipping OBO and using app token",
                extra={**log_extra, "audiences": inbound.audiences, "azp": inbound.authorized_party},
            )
        elif require_delegated:
            raise AuthenticationRequiredError("No incoming user token for OBO")

        return await self.acquire_app_token()

    async def acquire_on_behalf_of(self, inbound: InboundToken) -> AcquiredToken:
        key = cache_key("on_behalf_of", self.scopes, assertion=inbound.raw)
        cached = self.cache.get(key)
        if cached is not None:
            return AcquiredToken(cached.access_token, TokenSource.ON_BEHALF_OF)

        try:
            token = await self.token_service.acquire_token_on_behalf_of(inbound.raw, self.scopes)
        except TokenServiceError as e:
            raise TokenAcquisitionError("Failed to acquire OBO token", details=e.to_details()) from e

        self.cache.put(key, token)
        return AcquiredToken(token.access_token, TokenSource.ON_BEHALF_OF)

    async def acquire_app_token(self) -> AcquiredToken:
        key = cache_key("client_credentials", self.scopes)
        cached = self.cache.get(key)
        if cached is not None:
            return AcquiredToken(cached.access_token, TokenSource.APP)

        try:
            token = await self.token_service.acquire_token_for_client(self.scopes)
        except TokenServiceError as e:
            logger.error(f"Client credential token request failed: {e}")
            raise TokenAcquisitionError("Failed to acquire app token", details=e.to_details()) from e

        self.cache.put(key, token)
        return AcquiredToken(token.access_token, TokenSource.APP)
