"""
Logging setup and HTTP request logging.

Every request gets an id (reused from the ``X-Request-ID`` header when the
client sends one) that is stored in a ContextVar, attached to log records by
``RequestIdFilter`` and echoed back on the response.
"""

from __future__ import annotations

import contextvars
import logging
import time
import uuid

from fastapi import Request
from pythonjsonlogger import jsonlogger
from starlette.middleware.base import BaseHTTPMiddleware

from marketplace.config import Settings

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
REQUEST_ID_HEADER = "X-Request-ID"

request_logger = logging.getLogger("marketplace.requests")

TEXT_FORMAT = "%(name)s %(levelname)s %(asctime)s [%(request_id)s] %(message)s"
JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"


class RequestIdFilter(logging.Filter):
    """Attach a ``request_id`` attribute to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = REQUEST_ID_CTX.get()
        return True


class JsonFormatter(jsonlogger.JsonFormatter):
    """One JSON object per line; extra ``http`` fields are merged in flat."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        http = log_record.pop("http", None)
        if http:
            log_record.update(http)


def configure_logging(settings: Settings) -> None:
    handler = logging.StreamHandler()
    handler.addFilter(RequestIdFilter())
    if settings.log_format == "json":
        handler.setFormatter(JsonFormatter(JSON_FORMAT))
    else:
        handler.setFormatter(
            logging.Formatter(TEXT_FORMAT, datefmt="%m/%d/%Y %I:%M:%S %p")
        )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level.upper())


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and duration of each request.

    Health checks are not logged.
    """

    def __init__(self, app, skip_paths: tuple[str, ...] = ()):
        super().__init__(app)
        self.skip_paths = skip_paths

    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        token = REQUEST_ID_CTX.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            REQUEST_ID_CTX.reset(token)
        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers[REQUEST_ID_HEADER] = rid

        if request.url.path not in self.skip_paths:
            client = request.client.host if request.client else "-"
            request_logger.info(
                "%s %s %d %.1f ms - %s",
                request.method,
                request.url.path,
                response.status_code,
                elapsed_ms,
                client,
                extra={
                    "request_id": rid,
                    "http": {
                        "method": request.method,
                        "url": str(request.url.path),
                        "status": response.status_code,
                        "responseTime": f"{elapsed_ms:.1f}ms",
                        "ip": client,
                        "userAgent": request.headers.get("user-agent"),
                    },
                },
            )
        return response
