"""
In-process cache for app-only and on-behalf-of tokens.

Entries are keyed by grant and scopes (plus a digest of the user assertion
for on-behalf-of) and are served only while fresh by the same skew rule the
session store applies.
"""

import hashlib
from typing import Dict, Iterable, Optional

from ..models import TokenResponse

# Tokens expiring within this many seconds are treated as expired.
EXPIRY_SKEW_SECONDS = 5


def cache_key(grant: str, scopes: Iterable[str], assertion: Optional[str] = None) -> str:
    key = f"{grant}|{' '.join(sorted(scopes))}"
    if assertion:
        key += "|" + hashlib.sha256(assertion.encode("utf-8")).hexdigest()
    return key


class ExpiringTokenCache:
    def __init__(self, skew_seconds: float = EXPIRY_SKEW_SECONDS, max_entries: int = 1024):
        self.skew_seconds = skew_seconds
        self.max_entries = max_entries
        self._entries: Dict[str, TokenResponse] = {}

    def get(self, key: str) -> Optional[TokenResponse]:
        token = self._entries.get(key)
        if token is None:
            return None
        if not token.is_fresh(self.skew_seconds):
            self._entries.pop(key, None)
            return None
        return token

    def put(self, key: str, token: TokenResponse) -> None:
        if len(self._entries) >= self.max_entries:
            self.purge_expired()
        if len(self._entries) >= self.max_entries:
            # Drop the entry closest to expiry.
            oldest = min(self._entries, key=lambda k: self._entries[k].expires_on)
            self._entries.pop(oldest, None)
        self._entries[key] = token

    def purge_expired(self) -> int:
        stale = [k for k, t in self._entries.items() if not t.is_fresh(self.skew_seconds)]
        for k in stale:
            del self._entries[k]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)
