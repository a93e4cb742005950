"""
Structured JSON logging and per-request access logs.

Every record is rendered as one JSON object carrying ``ts``, ``level``,
``name`` and ``message``, plus ``request_id`` when emitted while a request
is being served. The request middleware writes a single "Request completed"
line per HTTP call; routes enrich it through log_request_data().
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from sms_gateway.metrics import record_http_request

REQUEST_ID_HEADER = "X-Request-ID"
LOG_FORMAT = "%(ts)s %(level)s %(name)s %(message)s"

# Paths served without metrics or access log lines
QUIET_PATHS = frozenset({"/metrics"})

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

request_logger = logging.getLogger("sms_gateway.requests")


def get_request_id() -> Optional[str]:
    """Request ID of the request currently being served, if any."""
    return request_id_ctx.get()


def _iso_timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding a millisecond UTC ``ts``, ``level`` and ``request_id``."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record.setdefault("ts", None)
        if not log_record["ts"]:
            log_record["ts"] = _iso_timestamp()
        log_record["level"] = record.levelname

        request_id = get_request_id()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Route the root logger and uvicorn's loggers through one JSON stdout handler.

    The uvicorn access logger is disabled; RequestLoggingMiddleware
    writes the access line instead.

    Args:
        log_level: Logging level name, case-insensitive
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter(LOG_FORMAT))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    access_logger = logging.getLogger("uvicorn.access")
    access_logger.handlers = []
    access_logger.propagate = False
    access_logger.disabled = True

    return root


def _level_for_status(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Assign each request an ID, then log and time it.

    The ID comes from the caller's X-Request-ID header when one is sent and
    is echoed back on the response. The access line holds request_id,
    method, path, status and latency_ms, merged with whatever the route
    attached through log_request_data() (device_id, message_id, result).
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers[REQUEST_ID_HEADER] = request_id

            path = request.url.path
            if path not in QUIET_PATHS:
                record_http_request(
                    method=request.method,
                    path=path,
                    status=response.status_code,
                    latency_seconds=elapsed,
                )

                fields: Dict[str, Any] = dict(getattr(request.state, "route_log_data", {}))
                fields.update(
                    request_id=request_id,
                    method=request.method,
                    path=path,
                    status=response.status_code,
                    latency_ms=round(elapsed * 1000, 2),
                )
                request_logger.log(
                    _level_for_status(response.status_code), "Request completed", extra=fields
                )

            return response
        finally:
            request_id_ctx.reset(token)


def log_request_data(request: Request, **fields: Any) -> None:
    """
    Add fields to the access line the middleware writes for this request.

    None values are dropped; repeated calls merge, later values winning.
    """
    data = getattr(request.state, "route_log_data", None)
    if data is None:
        data = request.state.route_log_data = {}
    data.update((key, value) for key, value in fields.items() if value is not None)
