import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol

from fastapi import Request, Response

from canva_relay.errors import RelayError
from canva_relay.logging_util import get_logger


REQUEST_ID_HEADER = "X-Request-ID"


@dataclass
class RequestEvent:
    """One record per handled request, emitted when the outcome is known."""

    request_id: str
    stage: str
    outcome: str = "pending"
    status_code: Optional[int] = None
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_request(cls, request: Request, stage: str) -> "RequestEvent":
        request_id = getattr(request.state, "request_id", None) or uuid.uuid4().hex
        return cls(request_id=request_id, stage=stage)


class EventSink(Protocol):
    def emit(self, event: RequestEvent) -> None: ...


class LoggingEventSink:
    """
    Writes request events through the logging stack.

    5xx outcomes are errors. Upstream rejections and unknown sessions or
    codes are routine and logged at INFO so they don't page anyone.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or get_logger("canva_relay.events")

    def _level(self, event: RequestEvent) -> int:
        if event.status_code is None or event.status_code >= 500:
            return logging.ERROR
        if event.outcome in ("invalid_request", "unsupported_grant_type", "configuration_missing"):
            return logging.WARNING
        return logging.INFO

    def emit(self, event: RequestEvent) -> None:
        fields = {
            "request_id": event.request_id,
            "stage": event.stage,
            "outcome": event.outcome,
            "status": event.status_code,
            **event.context,
        }
        self.logger.log(self._level(event), f"{event.stage} -> {event.outcome}", extra={"fields": fields})


class RecordingEventSink:
    """Keeps events in memory. Handy for tests and local debugging."""

    def __init__(self):
        self.events: list[RequestEvent] = []

    def emit(self, event: RequestEvent) -> None:
        self.events.append(event)

    def last(self, stage: Optional[str] = None) -> Optional[RequestEvent]:
        for event in reversed(self.events):
            if stage is None or event.stage == stage:
                return event
        return None


async def observe(
    sink: EventSink,
    event: RequestEvent,
    call: Callable[[], Awaitable[Response]],
    render_error: Optional[Callable[[RelayError], Response]] = None,
) -> Response:
    """
    Run a handler and emit exactly one event for its outcome.

    Handled failures are rendered by `render_error` when given, otherwise
    re-raised for the application's exception handlers.
    """
    try:
        response = await call()
    except RelayError as exc:
        event.outcome = exc.outcome
        event.status_code = exc.status_code
        event.context.update(exc.context)
        sink.emit(event)
        if render_error is None:
            raise
        return render_error(exc)
    except Exception:
        event.outcome = "crashed"
        event.status_code = 500
        sink.emit(event)
        raise

    if event.outcome == "pending":
        event.outcome = "ok"
    event.status_code = response.status_code
    sink.emit(event)
    return response
