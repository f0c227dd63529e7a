"""
Graph BFF
=========

Backend-for-frontend that keeps OAuth tokens on the server. The SPA holds
only a session cookie; this service signs users in with the authorization
code flow, refreshes their tokens, exchanges inbound bearer tokens
on-behalf-of the user, and calls the graph API for them.

Run with:
    uvicorn graph_bff.main:app --port 3000
"""

__version__ = "1.0.0"
