"""
Proxy Package
=============

Endpoints that call the downstream graph API with a broker-selected token.

Main Components:
----------------
- gateway.py: ForwardingGateway (outbound HTTP, header injection, photo data URLs)
- routes.py: FastAPI router (/api/claims, /api/me, /api/users, /api/obo/forward, /api/forward)

Usage:
------
    from graph_bff.proxy.routes import proxy_router
    app.include_router(proxy_router)
"""
