from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse, Response

from canva_relay.errors import RelayError, UpstreamUnavailableError
from canva_relay.events import EventSink, RequestEvent, observe
from canva_relay.logging_util import get_logger
from canva_relay.upstream import UpstreamClient


logger = get_logger(__name__)

PROXY_PREFIX = "/proxy"
PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

FORWARDED_REQUEST_HEADERS = ("authorization", "content-type")
# The body is re-framed and already decoded by httpx
STRIPPED_RESPONSE_HEADERS = frozenset({"transfer-encoding", "content-encoding", "content-length"})


def _raw_upstream_path(request: Request, path: str) -> str:
    """
    The part of the request path after `/proxy/`, still percent-encoded, so an
    encoded `?` or `/` inside a segment reaches Canva as the same segment.
    """
    raw_path = request.scope.get("raw_path")
    if not raw_path:
        return path
    raw = raw_path.decode("latin-1")
    prefix = PROXY_PREFIX + "/"
    return raw[len(prefix):] if raw.startswith(prefix) else path


def _bad_gateway(exc: RelayError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"error": "bad_gateway", "message": exc.description},
    )


class ApiProxy:
    """
    Transparent pass-through from `/proxy/<path>` to Canva's REST API.

    Only Authorization and Content-Type travel upstream. The response comes
    back with upstream status, headers and body untouched apart from
    framing headers.
    """

    def __init__(self, upstream: UpstreamClient):
        self.upstream = upstream

    async def forward(self, request: Request, path: str, event: RequestEvent) -> Response:
        try:
            return await self._forward(request, path, event)
        except RelayError:
            raise
        except Exception as e:
            logger.error(f"Proxy request to {path} failed", exc_info=True)
            raise UpstreamUnavailableError("Failed to reach Canva API", context={"path": path}) from e

    async def _forward(self, request: Request, path: str, event: RequestEvent) -> Response:
        headers = {
            name: request.headers[name]
            for name in FORWARDED_REQUEST_HEADERS
            if name in request.headers
        }
        headers["accept"] = "application/json"

        content = None
        if request.method not in ("GET", "HEAD"):
            content = await request.body()

        event.context.update({"method": request.method, "path": path})
        upstream_response = await self.upstream.forward(
            request.method,
            _raw_upstream_path(request, path),
            request.url.query,
            headers=headers,
            content=content,
        )

        event.outcome = "forwarded"
        event.context["upstream_status"] = upstream_response.status_code
        response = Response(content=upstream_response.content, status_code=upstream_response.status_code)
        for name, value in upstream_response.headers.multi_items():
            if name.lower() not in STRIPPED_RESPONSE_HEADERS:
                response.headers.append(name, value)
        # HEAD has no body to measure; mirror the upstream length
        if request.method == "HEAD" and "content-length" in upstream_response.headers:
            response.headers["content-length"] = upstream_response.headers["content-length"]
        return response


def build_proxy_router(proxy: ApiProxy, events: EventSink) -> APIRouter:
    router = APIRouter()

    @router.api_route(PROXY_PREFIX + "/{path:path}", methods=PROXY_METHODS)
    async def forward(request: Request, path: str):
        event = RequestEvent.for_request(request, "proxy")
        return await observe(events, event, lambda: proxy.forward(request, path, event), render_error=_bad_gateway)

    return router
