"""
Forwarding Gateway - Downstream API Calls
=========================================

Issues bearer-authenticated requests to the downstream graph API with a
token chosen by the broker and turns the result into something a route can
return: parsed JSON, a relayed Response, or a photo data URL.

Security Model:
---------------
1. The Authorization header is always the broker-selected token
2. Caller-supplied Authorization, Cookie, Host and Content-Length headers
   are dropped before forwarding
3. Downstream failures raise DownstreamError carrying the downstream payload
"""

import base64
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx
from fastapi.responses import JSONResponse
from starlette.responses import Response

from ..config import Settings
from ..errors import DownstreamError

logger = logging.getLogger(__name__)

DEFAULT_PHOTO_CONTENT_TYPE = "image/jpeg"

# Headers callers may not set on forwarded requests.
STRIPPED_HEADERS = {"authorization", "cookie", "host", "content-length"}


def build_forward_headers(token: str, extra_headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Build headers for a downstream request.

    Caller headers are passed through except the stripped set; the bearer
    token always wins.
    """
    headers = {
        k: v for k, v in (extra_headers or {}).items()
        if k.lower() not in STRIPPED_HEADERS
    }
    headers["Authorization"] = f"Bearer {token}"
    return headers


def error_payload(response: httpx.Response) -> Any:
    """Downstream error body as JSON when possible, otherwise text."""
    try:
        return response.json()
    except ValueError:
        return response.text or None


def to_data_url(content: bytes, content_type: Optional[str]) -> str:
    encoded = base64.b64encode(content).decode("ascii")
    return f"data:{content_type or DEFAULT_PHOTO_CONTENT_TYPE};base64,{encoded}"


def relay_response(response: httpx.Response) -> Response:
    """Pass a successful downstream response back to the caller."""
    if not response.content or response.status_code in (204, 304):
        return Response(status_code=response.status_code)

    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return JSONResponse(content=response.json(), status_code=response.status_code)
        except ValueError:
            pass
    return Response(
        content=response.content,
        status_code=response.status_code,
        media_type=content_type or None,
    )


class ForwardingGateway:
    """
    HTTP client for the downstream graph API.

    One instance per process; the httpx.AsyncClient is created lazily and
    closed by the application lifespan.
    """

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.graph_base = settings.BFF_GRAPH_BASE.rstrip("/")
        self.api_root = settings.graph_api_root
        self.timeout = settings.HTTP_TIMEOUT_SECONDS
        self._client = client

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
    # URL helpers
    # -------------------------------------------------------------------------

    def graph_url(self, path: str) -> str:
        """Resolve a caller path (e.g. /v1.0/me) against the graph base URL."""
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.graph_base}{path}"

    def user_url(self, user_id: str) -> str:
        return f"{self.api_root}/users/{quote(user_id, safe='')}"

    def user_photo_url(self, user_id: str) -> str:
        return f"{self.user_url(user_id)}/photo/$value"

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def request(
        self,
        method: str,
        url: str,
        token: str,
        data: Any = None,
        headers: Optional[Dict[str, str]] = None,
        error: str = "Downstream request failed",
    ) -> httpx.Response:
        """
        Send one bearer-authenticated request.

        Raises:
            DownstreamError: transport failure or non-2xx status
        """
        kwargs: Dict[str, Any] = {"headers": build_forward_headers(token, headers)}
        if data is not None:
            kwargs["json"] = data

        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(
                f"Downstream request error: {e}",
                extra={"method": method, "url": url},
            )
            raise DownstreamError(error, details=str(e) or type(e).__name__) from e

        if not response.is_success:
            logger.warning(
                f"Downstream returned {response.status_code}",
                extra={"method": method, "url": url, "status_code": response.status_code},
            )
            raise DownstreamError(error, details=error_payload(response), upstream_status=response.status_code)

        return response

    async def get_json(self, url: str, token: str, error: str = "Downstream request failed") -> Any:
        response = await self.request("GET", url, token, error=error)
        try:
            return response.json()
        except ValueError as e:
            raise DownstreamError(error, details="Downstream returned a non-JSON body") from e

    async def get_photo_data_url(self, url: str, token: str) -> Optional[str]:
        """
        Fetch a binary photo and return it as a data URL.

        Returns:
            The data URL, or None when the photo is missing or cannot be
            fetched (many accounts have no photo).
        """
        try:
            response = await self.request("GET", url, token, error="Photo request failed")
        except DownstreamError as e:
            logger.info(
                "Photo not available",
                extra={"url": url, "status_code": e.upstream_status},
            )
            return None
        return to_data_url(response.content, response.headers.get("content-type"))
