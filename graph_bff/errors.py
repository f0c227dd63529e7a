"""
Broker error taxonomy.

Every failure a handler can surface to the SPA is a BrokerError. The
application registers one exception handler that renders these as
``{"error": ..., "details": ...}`` JSON bodies with the carried status.
"""

from typing import Any, Optional

from fastapi import status


class BrokerError(Exception):
    """Base class for errors rendered to the caller as JSON."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        error: str,
        details: Any = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(error)
        self.error = error
        self.details = details
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.details is not None:
            body["details"] = self.details
        return body


class AuthenticationRequiredError(BrokerError):
    """No usable inbound token and no session."""

    status_code = status.HTTP_401_UNAUTHORIZED


class AudienceMismatchError(BrokerError):
    """Inbound token was issued for some other client."""

    status_code = status.HTTP_400_BAD_REQUEST


class InvalidRequestError(BrokerError):
    status_code = status.HTTP_400_BAD_REQUEST


class TokenAcquisitionError(BrokerError):
    """A token-service exchange the caller depends on failed."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class DownstreamError(BrokerError):
    """
    The downstream API call failed.

    ``details`` carries the downstream error payload when one was returned,
    otherwise the transport error message. ``upstream_status`` keeps the
    downstream status code (None for transport failures).
    """

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, error: str, details: Any = None, upstream_status: Optional[int] = None):
        super().__init__(error, details)
        self.upstream_status = upstream_status
