"""
Audience matching for delegated (on-behalf-of) exchange.

An inbound token may name this broker in several shapes: the bare client
id, the ``api://<client id>`` application URI, or embedded in a longer
identifier. The authorized party (``azp``/``appid``) is also accepted.

Matching is by substring containment of the exact client id. This is looser
than equality and could accept an unrelated id that happens to embed ours;
it is kept for compatibility with existing app registrations.
"""

from typing import Optional

from ..models import InboundToken


def token_targets_client(inbound: Optional[InboundToken], client_id: str) -> bool:
    """
    Decide whether ``inbound`` was issued for this broker.

    Args:
        inbound: Decoded inbound token, or None for anonymous requests
        client_id: This broker's client id

    Returns:
        True if any audience or the authorized party matches client_id
    """
    if inbound is None or not client_id:
        return False

    app_id_uri = f"api://{client_id}"
    for aud in inbound.audiences:
        if not aud:
            continue
        if aud == client_id or aud == app_id_uri:
            return True
        if client_id in aud:
            return True

    azp = inbound.authorized_party
    if azp and (azp == client_id or client_id in azp):
        return True

    return False
