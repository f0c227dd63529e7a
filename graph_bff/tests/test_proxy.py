"""
Unit Tests for Proxy Routes
===========================

Tests for graph_bff/proxy/routes.py

Test Coverage:
--------------
1. Authentication enforcement on /api/claims and /api/obo/forward
2. Token selection (session, on-behalf-of, app-only) per endpoint
3. Profile and photo loading, including missing photos
4. Header stripping and bearer injection on forwarded requests
5. Downstream error propagation
6. Logout while another request for the same session is in flight

The graph API is simulated with httpx.MockTransport behind a real
ForwardingGateway; the identity provider is a mocked TokenService.

Run tests:
----------
    pytest graph_bff/tests/test_proxy.py -v
"""

import asyncio
import base64
import json
from unittest.mock import AsyncMock, Mock

import httpx
import pytest
from fastapi import status
from fastapi.testclient import TestClient

from graph_bff.auth.session import encode_session_cookie
from graph_bff.auth.token_service import TokenService, TokenServiceError
from graph_bff.main import create_application
from graph_bff.proxy.gateway import ForwardingGateway
from graph_bff.tests.conftest import TEST_SESSION_SECRET, make_jwt, make_token_response, make_user_token

PHOTO_BYTES = b"\x89PNG\r\n\x1a\nfake-image"


class GraphStub:
    """Downstream graph API double; routes are keyed by (method, path)."""

    def __init__(self):
        self.requests = []
        self.routes = {
            ("GET", "/v1.0/users/user-oid-123"): httpx.Response(
                200, json={"id": "user-oid-123", "displayName": "Ada Lovelace"}
            ),
            ("GET", "/v1.0/users/user-oid-123/photo/$value"): httpx.Response(
                200, content=PHOTO_BYTES, headers={"content-type": "image/png"}
            ),
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": {"code": "Request_ResourceNotFound"}})
        return httpx.Response(route.status_code, content=route.content, headers=route.headers)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def graph():
    return GraphStub()


@pytest.fixture
def token_service():
    service = Mock(spec=TokenService)
    service.acquire_token_on_behalf_of = AsyncMock(return_value=make_token_response(access_token="obo-token"))
    service.acquire_token_for_client = AsyncMock(return_value=make_token_response(access_token="app-token"))
    service.acquire_token_by_refresh_token = AsyncMock(return_value=make_token_response(access_token="refreshed"))
    return service


@pytest.fixture
def app(mock_settings, token_service, graph):
    gateway = ForwardingGateway(
        mock_settings,
        client=httpx.AsyncClient(transport=httpx.MockTransport(graph)),
    )
    return create_application(settings=mock_settings, token_service=token_service, gateway=gateway)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def auth_headers(user_token):
    return {"Authorization": f"Bearer {user_token}"}


@pytest.fixture
def signed_in(app, client):
    """Create a server-side session holding a user token and attach its cookie."""
    store = app.state.app_state.session_store
    session = store.new_session()
    account = {"username": "ada@example.com", "id_token_claims": {"oid": "user-oid-123", "name": "Ada"}}
    store.complete_login(session, make_token_response(access_token="session-token", account=account))
    store.save(session)
    client.cookies.set("bff_session", encode_session_cookie(session.id, TEST_SESSION_SECRET))
    return session


# ============================================================================
# /api/claims
# ============================================================================

def test_claims_requires_bearer_token(client):
    response = client.get("/api/claims")

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert response.json() == {"error": "No bearer token provided"}


def test_claims_returns_decoded_claims(client, auth_headers):
    response = client.get("/api/claims", headers=auth_headers)

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["claims"]["preferred_username"] == "ada@example.com"


# ============================================================================
# /api/me
# ============================================================================

class TestMe:

    def test_profile_claims_and_photo_via_obo(self, client, auth_headers, token_service, graph):
        response = client.get("/api/me", headers=auth_headers)

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["profile"]["displayName"] == "Ada Lovelace"
        assert body["claims"]["oid"] == "user-oid-123"
        assert body["photoDataUrl"] == "data:image/png;base64," + base64.b64encode(PHOTO_BYTES).decode()

        token_service.acquire_token_on_behalf_of.assert_awaited_once()
        assert all(r.headers["Authorization"] == "Bearer obo-token" for r in graph.requests)

    def test_missing_photo_is_null(self, client, auth_headers, graph):
        del graph.routes[("GET", "/v1.0/users/user-oid-123/photo/$value")]

        response = client.get("/api/me", headers=auth_headers)

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["photoDataUrl"] is None

    def test_requires_claims_or_session(self, client, graph):
        response = client.get("/api/me")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert graph.requests == []

    def test_claims_without_user_id(self, client, graph):
        token = make_jwt({"aud": "whatever", "name": "No Id"})

        response = client.get("/api/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Could not determine user id from token claims"

    def test_session_only_uses_session_token(self, client, signed_in, token_service, graph):
        response = client.get("/api/me")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["claims"] == {"oid": "user-oid-123", "name": "Ada"}
        assert graph.requests[0].headers["Authorization"] == "Bearer session-token"
        token_service.acquire_token_on_behalf_of.assert_not_called()

    def test_graph_failure(self, client, auth_headers, graph):
        graph.routes[("GET", "/v1.0/users/user-oid-123")] = httpx.Response(
            403, json={"error": {"code": "Authorization_RequestDenied"}}
        )

        response = client.get("/api/me", headers=auth_headers)

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        body = response.json()
        assert body["error"] == "Failed to load profile from Graph"
        assert body["details"]["error"]["code"] == "Authorization_RequestDenied"

    def test_foreign_audience_uses_app_token(self, client, token_service, graph):
        token = make_user_token(aud="https://graph.microsoft.com")

        response = client.get("/api/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == status.HTTP_200_OK
        token_service.acquire_token_on_behalf_of.assert_not_called()
        assert graph.requests[0].headers["Authorization"] == "Bearer app-token"


# ============================================================================
# /api/users
# ============================================================================

class TestUsers:

    def test_lookup_with_app_token(self, client, graph):
        response = client.get("/api/users/user-oid-123")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["id"] == "user-oid-123"
        assert graph.last.headers["Authorization"] == "Bearer app-token"

    def test_blank_id(self, client, graph):
        response = client.get("/api/users/%20")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"error": "id required"}
        assert graph.requests == []

    def test_lookup_failure(self, client):
        response = client.get("/api/users/missing-user")

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json()["error"] == "Failed to load user from Graph"

    def test_photo(self, client):
        response = client.get("/api/users/user-oid-123/photo")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["photoDataUrl"].startswith("data:image/png;base64,")

    def test_photo_not_found(self, client):
        response = client.get("/api/users/no-photo-user/photo")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json() == {"error": "Photo not found"}

    def test_photo_defaults_to_jpeg(self, client, graph):
        graph.routes[("GET", "/v1.0/users/user-oid-123/photo/$value")] = httpx.Response(200, content=b"raw")

        response = client.get("/api/users/user-oid-123/photo")

        assert response.json()["photoDataUrl"] == "data:image/jpeg;base64," + base64.b64encode(b"raw").decode()


# ============================================================================
# /api/obo/forward
# ============================================================================

class TestOboForward:

    def test_no_token_and_no_session(self, client, token_service, graph):
        response = client.post("/api/obo/forward", json={"path": "/v1.0/me"})

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["error"] == "No incoming user token for OBO"
        token_service.acquire_token_for_client.assert_not_called()
        assert graph.requests == []

    def test_audience_mismatch(self, client, token_service, graph):
        token = make_user_token(aud="https://graph.microsoft.com")

        response = client.post(
            "/api/obo/forward",
            json={"path": "/v1.0/me"},
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"].startswith("Incoming token audience does not match BFF client")
        token_service.acquire_token_on_behalf_of.assert_not_called()
        assert graph.requests == []

    def test_matching_audience_performs_one_obo(self, client, auth_headers, token_service, graph):
        graph.routes[("POST", "/v1.0/me/sendMail")] = httpx.Response(202)

        response = client.post(
            "/api/obo/forward",
            json={"method": "post", "path": "/v1.0/me/sendMail", "data": {"message": {"subject": "hi"}}},
            headers=auth_headers,
        )

        assert response.status_code == status.HTTP_202_ACCEPTED
        token_service.acquire_token_on_behalf_of.assert_awaited_once()
        assert graph.last.method == "POST"
        assert graph.last.headers["Authorization"] == "Bearer obo-token"
        assert json.loads(graph.last.content) == {"message": {"subject": "hi"}}

    def test_relays_json_body(self, client, auth_headers, graph):
        graph.routes[("GET", "/v1.0/me/messages")] = httpx.Response(200, json={"value": [{"id": "m1"}]})

        response = client.post("/api/obo/forward", json={"path": "/v1.0/me/messages"}, headers=auth_headers)

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"value": [{"id": "m1"}]}

    def test_session_token_needs_no_bearer(self, client, signed_in, token_service, graph):
        graph.routes[("GET", "/v1.0/me")] = httpx.Response(200, json={"id": "me"})

        response = client.post("/api/obo/forward", json={"path": "/v1.0/me"})

        assert response.status_code == status.HTTP_200_OK
        assert graph.last.headers["Authorization"] == "Bearer session-token"
        token_service.acquire_token_on_behalf_of.assert_not_called()

    def test_path_required(self, client, auth_headers):
        response = client.post("/api/obo/forward", json={"method": "GET"}, headers=auth_headers)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"error": "path required"}

    def test_obo_failure(self, client, auth_headers, token_service):
        token_service.acquire_token_on_behalf_of.side_effect = TokenServiceError("invalid_grant", "AADSTS65001", 400)

        response = client.post("/api/obo/forward", json={"path": "/v1.0/me"}, headers=auth_headers)

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json()["error"] == "Failed to acquire OBO token"
        token_service.acquire_token_for_client.assert_not_called()

    def test_downstream_failure(self, client, auth_headers):
        response = client.post("/api/obo/forward", json={"path": "/v1.0/nowhere"}, headers=auth_headers)

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        body = response.json()
        assert body["error"] == "OBO forward failed"
        assert body["details"]["error"]["code"] == "Request_ResourceNotFound"


# ============================================================================
# /api/forward
# ============================================================================

class TestForward:

    def test_url_required(self, client, graph):
        response = client.post("/api/forward", json={"method": "GET"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"error": "url required"}
        assert graph.requests == []

    def test_missing_body(self, client):
        response = client.post("/api/forward")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"error": "url required"}

    def test_uses_app_token_and_strips_caller_credentials(self, client, auth_headers, token_service, graph):
        graph.routes[("GET", "/v1.0/groups")] = httpx.Response(200, json={"value": []})

        response = client.post(
            "/api/forward",
            json={
                "url": "https://graph.microsoft.com/v1.0/groups",
                "headers": {
                    "Authorization": "Bearer caller-supplied",
                    "Cookie": "bff_session=stolen",
                    "ConsistencyLevel": "eventual",
                },
            },
            headers=auth_headers,
        )

        assert response.status_code == status.HTTP_200_OK
        forwarded = graph.last.headers
        assert forwarded["Authorization"] == "Bearer app-token"
        assert "cookie" not in forwarded
        assert forwarded["ConsistencyLevel"] == "eventual"
        token_service.acquire_token_on_behalf_of.assert_not_called()

    def test_unsupported_method(self, client):
        response = client.post("/api/forward", json={"url": "https://graph.microsoft.com/v1.0/me", "method": "TRACE"})
        assert response.status_code == 422

    def test_network_failure(self, mock_settings, token_service):
        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        gateway = ForwardingGateway(mock_settings, client=httpx.AsyncClient(transport=httpx.MockTransport(unreachable)))
        client = TestClient(create_application(settings=mock_settings, token_service=token_service, gateway=gateway))

        response = client.post("/api/forward", json={"url": "https://graph.microsoft.com/v1.0/me"})

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json() == {"error": "Forward failed", "details": "connection refused"}


# ============================================================================
# Logout racing an in-flight request
# ============================================================================

class TestLogoutDuringRequest:

    @pytest.mark.asyncio
    async def test_in_flight_refresh_cannot_restore_session(self, app, token_service, graph):
        async def slow_refresh(*args, **kwargs):
            await asyncio.sleep(0.2)
            return make_token_response(access_token="late-token")

        token_service.acquire_token_by_refresh_token.side_effect = slow_refresh
        graph.routes[("GET", "/v1.0/me/messages")] = httpx.Response(200, json={"value": []})

        store = app.state.app_state.session_store
        session = store.new_session()
        store.complete_login(session, make_token_response(access_token="expired", expires_in=-60))
        store.save(session)
        cookie = {"Cookie": f"bff_session={encode_session_cookie(session.id, TEST_SESSION_SECRET)}"}

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:

            async def logout_soon():
                await asyncio.sleep(0.05)
                return await client.post("/auth/logout", headers=cookie)

            forward, logout = await asyncio.gather(
                client.post("/api/obo/forward", json={"path": "/v1.0/me/messages"}, headers=cookie),
                logout_soon(),
            )

        assert logout.json()["ok"] is True
        assert len(store) == 0
        assert session.destroyed
        assert session.token_response is None

        # The slower request ends with the session gone and clears the cookie.
        assert forward.status_code == status.HTTP_401_UNAUTHORIZED
        assert "max-age=0" in forward.headers["set-cookie"].lower()
        assert graph.requests == []
