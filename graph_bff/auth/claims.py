"""
Inbound bearer token decoding.

Tokens are decoded structurally (base64url JSON payload) without any
signature verification. An undecodable token is treated exactly like a
missing one: the request is anonymous.

Production deployments must verify inbound signatures against the identity
provider's published signing keys before trusting any claim read here.
"""

import logging
from typing import Any, Dict, List, Optional

import jwt
from jwt.exceptions import PyJWTError

from ..models import InboundToken

logger = logging.getLogger(__name__)


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """
    Return the token part of an ``Authorization: Bearer <token>`` header.

    Unlike a strict parser this never raises: anything that is not a bearer
    credential is simply "no token".
    """
    if not authorization:
        return None

    parts = authorization.strip().split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None

    token = parts[1].strip()
    return token or None


def decode_unverified_claims(token: str) -> Optional[Dict[str, Any]]:
    """Decode a JWT payload without verification; None if it is not a JWT."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except PyJWTError as e:
        logger.debug(f"Ignoring undecodable bearer token: {e}")
        return None
    if not isinstance(claims, dict):
        return None
    return claims


def normalize_audiences(aud: Any) -> List[str]:
    """``aud`` may be a single string or a list; always return a list of strings."""
    if aud is None:
        return []
    if isinstance(aud, (list, tuple)):
        return [str(a) for a in aud if a]
    return [str(aud)] if aud else []


def parse_inbound_token(authorization: Optional[str]) -> Optional[InboundToken]:
    """
    Build the request-scoped InboundToken from an Authorization header.

    Returns:
        InboundToken, or None when the header is absent, not a bearer
        credential, or the token cannot be decoded.
    """
    raw = extract_bearer_token(authorization)
    if raw is None:
        return None

    claims = decode_unverified_claims(raw)
    if claims is None:
        return None

    azp = claims.get("azp") or claims.get("appid")
    return InboundToken(
        raw=raw,
        claims=claims,
        audiences=normalize_audiences(claims.get("aud")),
        authorized_party=str(azp) if azp else None,
    )


def user_id_from_claims(claims: Optional[Dict[str, Any]]) -> Optional[str]:
    """Pick the identifier used to look the caller up in the graph API."""
    if not claims:
        return None
    for claim_name in ("oid", "sub", "upn", "preferred_username"):
        value = claims.get(claim_name)
        if value:
            return str(value)
    return None
