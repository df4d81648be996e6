"""
===========================================================================
OAUTH RELAY: PKCE + ONE-TIME CODE BROKERAGE FOR CANVA
===========================================================================

### Requirement ###
-------------------------------
1.  Provider Constraint: Canva only accepts redirect URIs registered against a
    statically issued client, and requires PKCE on every authorization.

2.  Consumer Constraint: the consumer (a chat-style client) can neither
    register its own redirect URI with Canva nor perform PKCE itself. It only
    speaks plain Authorization Code against a configurable authorize/token
    endpoint pair.

### Solution and Mechanism ###
-----------------------------
1.  /authorize: the relay opens a short-lived session holding the consumer's
    redirect URI and state plus a relay-generated PKCE verifier, then sends
    the browser to Canva with the relay's own callback URL and `state` set to
    the session id.

2.  /callback: the relay resolves the session from `state`, exchanges Canva's
    code (Basic client auth + the verifier), parks the token set under a
    fresh one-time code and redirects the browser back to the consumer.

3.  /token: the consumer redeems the one-time code exactly once for the
    token set, and later refreshes through the relay, which adds the client
    credentials it never shares.
"""

from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

from fastapi import APIRouter, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import ValidationError

from canva_relay.body import MalformedBody, negotiate_body
from canva_relay.config import Settings
from canva_relay.errors import (
    ConfigurationError,
    InvalidGrantError,
    InvalidRequestError,
    RelayError,
    ServerError,
    StateError,
    StoreUnavailableError,
    UnsupportedGrantTypeError,
    UpstreamDeniedError,
    UpstreamError,
    oauth_error_response,
)
from canva_relay.events import EventSink, RequestEvent, observe
from canva_relay.logging_util import get_logger
from canva_relay.models import RedemptionRecord, Session, TokenResponse, UpstreamToken
from canva_relay.persistence import CorruptRecordError, PersistenceProvider, StoreError
from canva_relay.pkce import CODE_PREFIX, SESSION_PREFIX, code_challenge_s256, generate_code_verifier, random_id
from canva_relay.upstream import UpstreamClient, UpstreamResponse, build_url_with_params


logger = get_logger(__name__)

SESSION_SCOPE = "relay_sessions"
CODE_SCOPE = "relay_codes"

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _config_problem(missing: list[str], store_configured: bool) -> Optional[str]:
    if missing:
        return f"Server not configured: missing {', '.join(missing)}"
    if not store_configured:
        return "Server not configured: session store missing"
    return None


def _is_absolute_uri(uri: str) -> bool:
    # A scheme is enough; private-use schemes such as `com.example.app:/cb` carry no authority
    return bool(urlparse(uri).scheme)


class AuthorizationInitiator:

    REQUIRED = ("client_id", "relay_base_url")

    def __init__(self, settings: Settings, sessions: PersistenceProvider[Session], upstream: UpstreamClient):
        self.settings = settings
        self.sessions = sessions
        self.upstream = upstream
        self.config_problem = _config_problem(settings.missing(*self.REQUIRED), settings.store_configured)

    async def authorize(self, redirect_uri: Optional[str], state: Optional[str], event: RequestEvent) -> Response:
        """
        ## Authorization Endpoint (Stage 1)

        Opens a session for the consumer's request and redirects the user
        agent to Canva. Each call creates an independent session.
        """
        if self.config_problem:
            raise ConfigurationError(self.config_problem)

        if not redirect_uri:
            raise InvalidRequestError("Missing redirect_uri")
        if not _is_absolute_uri(redirect_uri):
            raise InvalidRequestError("redirect_uri must be an absolute URI")

        session_id = random_id(SESSION_PREFIX)
        code_verifier = generate_code_verifier()

        try:
            session = Session(
                session_id=session_id,
                consumer_redirect_uri=redirect_uri,
                consumer_state=state or None,
                code_verifier=code_verifier,
                created_at=datetime.now(timezone.utc),
            )
        except ValidationError as e:
            raise InvalidRequestError("redirect_uri must be an absolute URI") from e

        try:
            await self.sessions.set(session_id, session, ttl_in_sec=self.settings.session_ttl_seconds)
        except StoreError as e:
            raise StoreUnavailableError("Session store unavailable", context={"store_error": str(e)}) from e

        event.outcome = "redirected"
        event.context["session_id"] = session_id
        location = self.upstream.authorization_url(state=session_id, code_challenge=code_challenge_s256(code_verifier))
        return RedirectResponse(url=location, status_code=status.HTTP_302_FOUND)


class CallbackHandler:

    REQUIRED = ("client_id", "client_secret", "relay_base_url")

    def __init__(
        self,
        settings: Settings,
        sessions: PersistenceProvider[Session],
        codes: PersistenceProvider[RedemptionRecord],
        upstream: UpstreamClient,
    ):
        self.settings = settings
        self.sessions = sessions
        self.codes = codes
        self.upstream = upstream
        self.config_problem = _config_problem(settings.missing(*self.REQUIRED), settings.store_configured)

    async def _take_session(self, session_id: str) -> Optional[Session]:
        try:
            return await self.sessions.pop(session_id)
        except CorruptRecordError as e:
            raise StateError("Session record is unreadable", context={"session_id": session_id}) from e
        except StoreError as e:
            raise StoreUnavailableError("Session store unavailable", context={"store_error": str(e)}) from e

    async def callback(
        self,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str],
        error_description: Optional[str],
        event: RequestEvent,
    ) -> Response:
        """
        ## Callback Endpoint (Stage 2)

        Canva's redirect target. Outcomes, in precedence order: missing
        configuration, upstream error, malformed callback, then the code
        exchange for a well-formed one.
        """
        if self.config_problem:
            raise ConfigurationError(self.config_problem)

        if error:
            return await self._upstream_denied(error, error_description or "", state, event)

        if not code or not state:
            raise InvalidRequestError(
                "Missing code or state",
                context={"has_code": bool(code), "has_state": bool(state)},
            )

        event.context["session_id"] = state
        session = await self._take_session(state)
        if session is None:
            raise StateError("Session not found or expired", context={"session_id": state})
        if not session.code_verifier:
            raise ServerError(
                "PKCE verifier missing",
                status_code=status.HTTP_400_BAD_REQUEST,
                context={"session_id": state},
            )

        result = await self.upstream.exchange_code(code, session.code_verifier)
        event.context["upstream_status"] = result.status_code
        token = self._token_from(result)

        redemption_code = random_id(CODE_PREFIX)
        record = RedemptionRecord(token=token, created_at=datetime.now(timezone.utc))
        try:
            await self.codes.set(redemption_code, record, ttl_in_sec=self.settings.redemption_code_ttl_seconds)
        except StoreError as e:
            raise StoreUnavailableError("Session store unavailable", context={"store_error": str(e)}) from e

        event.outcome = "code_issued"
        location = build_url_with_params(session.consumer_redirect_uri, {
            "code": redemption_code,
            "state": session.consumer_state,
        })
        return RedirectResponse(url=location, status_code=status.HTTP_302_FOUND)

    def _token_from(self, result: UpstreamResponse) -> UpstreamToken:
        if not result.ok:
            raise UpstreamError(
                f"Token exchange failed (status {result.status_code}). Body: {result.text}",
                upstream_status=result.status_code,
                body=result.text,
            )
        try:
            token = UpstreamToken.model_validate(result.payload) if result.payload else None
        except ValidationError:
            token = None
        if token is None or not token.access_token:
            raise ServerError(f"Token parse failed. Body: {result.text}")
        return token

    async def _upstream_denied(
        self,
        error: str,
        description: str,
        state: Optional[str],
        event: RequestEvent,
    ) -> Response:
        event.context.update({"upstream_error": error, "session_id": state})

        session = None
        if state:
            try:
                session = await self.sessions.pop(state)
            except StoreError as e:
                # Fall through to the direct error page
                logger.warning(f"Session lookup failed while relaying upstream error: {e}")

        if session is None:
            raise UpstreamDeniedError(f"Authorization failed: {error} - {description}")

        event.outcome = "upstream_denied"
        location = build_url_with_params(session.consumer_redirect_uri, {
            "error": error,
            "error_description": description,
            "state": session.consumer_state,
        })
        return RedirectResponse(url=location, status_code=status.HTTP_302_FOUND)


class TokenEndpoint:

    REQUIRED = ("client_id", "client_secret")

    def __init__(self, settings: Settings, codes: PersistenceProvider[RedemptionRecord], upstream: UpstreamClient):
        self.settings = settings
        self.codes = codes
        self.upstream = upstream
        self.refresh_config_problem = _config_problem(settings.missing(*self.REQUIRED), True)

    async def token(self, request: Request, event: RequestEvent) -> Response:
        """
        ## Token Endpoint (Stage 3)

        Redeems a one-time code for the stored token set, or refreshes a token
        through Canva. Every failure is an OAuth JSON error.
        """
        try:
            return await self._token(request, event)
        except RelayError:
            raise
        except Exception as e:
            logger.error("Token request failed unexpectedly", exc_info=True)
            raise ServerError("Internal error while processing the token request") from e

    async def _token(self, request: Request, event: RequestEvent) -> Response:
        body = negotiate_body(request.headers.get("content-type"), await request.body())
        if isinstance(body, MalformedBody):
            raise InvalidRequestError(body.reason)

        grant_type = body.text("grant_type")
        event.context["grant_type"] = grant_type

        if grant_type == "authorization_code":
            token = await self.redeem(body.text("code"))
        elif grant_type == "refresh_token":
            token = await self.refresh(body.text("refresh_token"))
        else:
            raise UnsupportedGrantTypeError("Use authorization_code or refresh_token")

        event.outcome = "token_issued"
        return JSONResponse(content=token.model_dump(exclude_none=True), headers=NO_STORE_HEADERS)

    async def redeem(self, code: Optional[str]) -> TokenResponse:
        if not code:
            raise InvalidRequestError("Missing code")

        try:
            # single use: the record is gone after this read
            record = await self.codes.pop(code)
        except CorruptRecordError as e:
            raise ServerError("Stored token record is invalid") from e
        except StoreError as e:
            raise StoreUnavailableError("Session store unavailable", context={"store_error": str(e)}) from e

        if record is None:
            raise InvalidGrantError("Unknown or expired code")
        if not record.token.access_token:
            raise ServerError("Token missing in store")
        return TokenResponse.from_upstream(record.token)

    async def refresh(self, refresh_token: Optional[str]) -> TokenResponse:
        if self.refresh_config_problem:
            raise ConfigurationError(self.refresh_config_problem)
        if not refresh_token:
            raise InvalidRequestError("Missing refresh_token")

        result = await self.upstream.refresh(refresh_token)
        if not result.ok:
            raise InvalidGrantError(
                f"Refresh failed ({result.status_code}) {result.text}".rstrip(),
                context={"upstream_status": result.status_code},
            )
        try:
            token = UpstreamToken.model_validate(result.payload) if result.payload else None
        except ValidationError:
            token = None
        if token is None or not token.access_token:
            raise ServerError(f"Bad refresh payload {result.text}".rstrip())
        return TokenResponse.from_upstream(token, fallback_refresh_token=refresh_token)


def build_relay_router(
    authorizer: AuthorizationInitiator,
    callback_handler: CallbackHandler,
    token_endpoint: TokenEndpoint,
    events: EventSink,
) -> APIRouter:
    router = APIRouter()
    settings = authorizer.settings

    @router.get("/.well-known/oauth-authorization-server")
    async def oauth_authorization_server():
        """
        ## OAuth 2.0 Authorization Server Metadata (Discovery)

        Lets the consumer find the relay's own authorize and token
        endpoints. Canva's endpoints are never advertised.
        """
        base = (settings.relay_base_url or "").rstrip("/")
        return {
            "issuer": base + "/",
            "authorization_endpoint": f"{base}/authorize",
            "token_endpoint": f"{base}/token",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "scopes_supported": settings.scopes.split(),
            "token_endpoint_auth_methods_supported": ["none"],
        }

    @router.get("/authorize")
    async def authorize(
        request: Request,
        redirect_uri: Optional[str] = Query(None),
        state: Optional[str] = Query(None),
    ):
        event = RequestEvent.for_request(request, "authorize")
        return await observe(events, event, lambda: authorizer.authorize(redirect_uri, state, event))

    @router.get("/callback")
    async def callback(
        request: Request,
        code: Optional[str] = Query(None),
        state: Optional[str] = Query(None),
        error: Optional[str] = Query(None),
        error_description: Optional[str] = Query(None),
    ):
        event = RequestEvent.for_request(request, "callback")
        return await observe(
            events,
            event,
            lambda: callback_handler.callback(code, state, error, error_description, event),
        )

    @router.post("/token")
    async def token(request: Request):
        event = RequestEvent.for_request(request, "token")
        return await observe(
            events,
            event,
            lambda: token_endpoint.token(request, event),
            render_error=oauth_error_response,
        )

    @router.api_route("/token", methods=["GET", "HEAD", "PUT", "PATCH", "DELETE", "OPTIONS"], include_in_schema=False)
    async def token_method_not_allowed():
        return JSONResponse(
            status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
            content={"error": "invalid_request", "error_description": "Method Not Allowed"},
            headers={"Allow": "POST"},
        )

    return router
