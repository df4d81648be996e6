import asyncio
import contextlib
import uuid
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from canva_relay.config import Settings
from canva_relay.errors import RelayError, relay_error_handler, unhandled_error_handler
from canva_relay.events import REQUEST_ID_HEADER, EventSink, LoggingEventSink
from canva_relay.health import HEALTH_SCOPE, build_health_router
from canva_relay.logging_util import configure_logging, get_logger
from canva_relay.models import HealthProbe, RedemptionRecord, Session
from canva_relay.persistence import InMemoryProvider, PersistenceFactory, ttl_cleanup_task
from canva_relay.proxy import ApiProxy, build_proxy_router
from canva_relay.relay import (
    CODE_SCOPE,
    SESSION_SCOPE,
    AuthorizationInitiator,
    CallbackHandler,
    TokenEndpoint,
    build_relay_router,
)
from canva_relay.upstream import UpstreamClient


logger = get_logger(__name__)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with an id (the caller's X-Request-ID if it sent one)
    for request events, and echoes it on the response.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def create_app(
    settings: Optional[Settings] = None,
    store_factory: Optional[PersistenceFactory] = None,
    upstream: Optional[UpstreamClient] = None,
    events: Optional[EventSink] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    store_factory = store_factory or PersistenceFactory(settings)
    upstream = upstream or UpstreamClient(settings)
    events = events or LoggingEventSink()

    sessions = store_factory.create(Session, scope=SESSION_SCOPE)
    codes = store_factory.create(RedemptionRecord, scope=CODE_SCOPE)
    probes = store_factory.create(HealthProbe, scope=HEALTH_SCOPE)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        cleanup_tasks = [
            asyncio.create_task(ttl_cleanup_task(store))
            for store in (sessions, codes, probes)
            if isinstance(store, InMemoryProvider)
        ]
        try:
            yield
        finally:
            for task in cleanup_tasks:
                task.cancel()
            await store_factory.close()

    app = FastAPI(title="Canva OAuth Relay", lifespan=lifespan)
    app.state.settings = settings
    app.state.sessions = sessions
    app.state.codes = codes
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(RelayError, relay_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(build_relay_router(
        authorizer=AuthorizationInitiator(settings, sessions, upstream),
        callback_handler=CallbackHandler(settings, sessions, codes, upstream),
        token_endpoint=TokenEndpoint(settings, codes, upstream),
        events=events,
    ))
    app.include_router(build_proxy_router(ApiProxy(upstream), events))
    app.include_router(build_health_router(settings, probes))
    return app


def main():
    settings = Settings.from_env()
    configure_logging(
        level=settings.log_level,
        log_file=settings.log_file,
        max_bytes=5 * 1024 * 1024,  # 5 MB
        backup_count=3,
    )
    missing = settings.missing("client_id", "client_secret", "relay_base_url")
    if missing:
        # Endpoints answer with configuration errors until these are set
        logger.warning(f"Starting with missing configuration: {', '.join(missing)}")
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
