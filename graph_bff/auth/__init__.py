"""
Authentication Package

Token acquisition and session brokering for the BFF.

Modules:
- claims: bearer header parsing and unverified claim decoding
- audience: decides whether an inbound token was issued for this broker
- token_service: confidential client for the identity provider's endpoints
- token_cache: in-process cache for app-only and on-behalf-of tokens
- session: server-side sessions, signed session cookie, refresh
- broker: the credential preference order used by every downstream call
- routes: /auth/login, /auth/callback and /auth/logout

The authentication flow:
1. SPA navigates to /auth/login; a state nonce is stored in the session
2. User authenticates with the identity provider
3. /auth/callback checks the nonce, exchanges the code, stores the tokens
4. Later /api calls use the session token, refreshing it when it expires
"""
