import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from harvester.metrics import record_http_request


# Picked up by every log record emitted while set
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
group_id_ctx: ContextVar[Optional[str]] = ContextVar("group_id", default=None)
run_id_ctx: ContextVar[Optional[int]] = ContextVar("run_id", default=None)

_CONTEXT_FIELDS = (
    ("request_id", request_id_ctx),
    ("group_id", group_id_ctx),
    ("run_id", run_id_ctx),
)

# Third-party loggers that share the JSON handler instead of printing their own format
_ROUTED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "apscheduler")


@contextmanager
def scrape_context(group_id: str) -> Iterator[Callable[[int], None]]:
    """
    Tag log records with group_id for the duration of a scrape.

    Yields a setter that adds run_id once the run record exists.
    """
    group_token = group_id_ctx.set(group_id)
    run_token = run_id_ctx.set(None)
    try:
        yield run_id_ctx.set
    finally:
        run_id_ctx.reset(run_token)
        group_id_ctx.reset(group_token)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON records with an ISO-8601 `ts`, `level` and whichever context ids are set."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            now = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record["ts"] = now.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        log_record["level"] = record.levelname

        for key, ctx in _CONTEXT_FIELDS:
            value = ctx.get()
            if value is not None:
                log_record.setdefault(key, value)


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Send every log record to stdout as one JSON object per line.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in _ROUTED_LOGGERS:
        routed = logging.getLogger(name)
        routed.handlers = [handler]
        routed.propagate = False

    # Requests are logged by RequestLoggingMiddleware
    logging.getLogger("uvicorn.access").disabled = True

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one "Request completed" record per request and records its metrics.

    Log keys: request_id, method, path, status, latency_ms, plus group_id and
    queued for scrape triggers (see log_scrape_trigger). 5xx log as ERROR,
    4xx as WARNING.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers["X-Request-ID"] = request_id

            if request.url.path != "/metrics":
                record_http_request(request.method, _route_template(request), response.status_code, elapsed)

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            log_data.update(getattr(request.state, "scrape_log_data", {}))

            level = logging.INFO
            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            logging.getLogger("harvester.requests").log(level, "Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def _route_template(request: Request) -> str:
    """Route path template (/api/groups/{group_id}/messages) to keep label cardinality low."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def log_scrape_trigger(request: Request, group_id: Optional[str] = None, queued: int = 0) -> None:
    """
    Attach scrape-trigger fields to the request log emitted by the middleware.

    Args:
        group_id: group whose scrape was queued, None for scrape-all
        queued: background tasks waiting behind this one
    """
    data = {"queued": queued}
    if group_id is not None:
        data["group_id"] = group_id
    request.state.scrape_log_data = data
