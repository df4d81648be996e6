from typing import Any, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse, PlainTextResponse

from canva_relay.logging_util import get_logger


logger = get_logger(__name__)


class RelayError(Exception):
    """
    Base class for every handled failure in the relay.

    `status_code` and `error` (an OAuth error code) are class defaults that a
    raise site may override. `context` carries diagnostic fields for the
    request event and is never sent to the caller.
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "server_error"
    outcome: str = "error"

    def __init__(
        self,
        description: str,
        *,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(description)
        self.description = description
        if status_code is not None:
            self.status_code = status_code
        if error is not None:
            self.error = error
        self.context = context or {}


class ConfigurationError(RelayError):
    outcome = "configuration_missing"


class InvalidRequestError(RelayError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "invalid_request"
    outcome = "invalid_request"


class InvalidGrantError(RelayError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "invalid_grant"
    outcome = "invalid_grant"


class UnsupportedGrantTypeError(RelayError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "unsupported_grant_type"
    outcome = "unsupported_grant_type"


class StateError(RelayError):
    """Unknown or expired session. Expected under normal TTL expiry."""

    status_code = status.HTTP_400_BAD_REQUEST
    error = "invalid_grant"
    outcome = "state_expired"


class UpstreamDeniedError(RelayError):
    """The upstream provider redirected back with an `error` parameter."""

    status_code = status.HTTP_400_BAD_REQUEST
    error = "access_denied"
    outcome = "upstream_denied"


class UpstreamError(RelayError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error = "server_error"
    outcome = "upstream_rejected"

    def __init__(self, description: str, *, upstream_status: int, body: str, **kwargs):
        super().__init__(description, **kwargs)
        self.upstream_status = upstream_status
        self.body = body


class UpstreamUnavailableError(RelayError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error = "server_error"
    outcome = "upstream_unreachable"


class StoreUnavailableError(RelayError):
    outcome = "store_unavailable"


class ServerError(RelayError):
    """A stored record exists but is missing a field it must have."""

    outcome = "invariant_violation"


def oauth_error_response(exc: RelayError) -> JSONResponse:
    headers = {"Cache-Control": "no-store", "Pragma": "no-cache"}
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "error_description": exc.description},
        headers=headers,
    )


async def relay_error_handler(request: Request, exc: RelayError) -> PlainTextResponse:
    """Human-facing endpoints (authorize, callback) answer with plain text."""
    return PlainTextResponse(exc.description, status_code=exc.status_code)


async def unhandled_error_handler(request: Request, exc: Exception) -> PlainTextResponse:
    logger.error(f"Unhandled error for {request.method} {request.url.path}", exc_info=exc)
    return PlainTextResponse("Internal server error", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
