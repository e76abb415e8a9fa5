"""Structured JSON logging for the GeneraPix backend.

``configure_logging()`` runs once, before the routers are imported; from then
on every ``logging.getLogger(__name__)`` record is written to stdout as one
JSON object per line.

Two context variables are stamped onto records automatically:

* ``request_id`` — bound by ``RequestIdMiddleware`` for the duration of an
  HTTP request (taken from ``X-Request-ID`` or generated).
* ``batch_id`` — bound by ``bind_batch_id`` inside the background batch
  worker, so row-level logs from concurrent rows can be grouped per batch.
"""

import json
import logging
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

_request_id_var: ContextVar[str] = ContextVar("request_id", default="")
_batch_id_var: ContextVar[str] = ContextVar("batch_id", default="")

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "openai", "google_genai")

_access_logger = logging.getLogger("app.access")


def get_request_id() -> str:
    """Request ID of the current context ("" outside a request)."""
    return _request_id_var.get()


def get_batch_id() -> str:
    """Batch ID bound by the worker in the current context ("" if none)."""
    return _batch_id_var.get()


@contextmanager
def bind_batch_id(batch_id: str) -> Iterator[None]:
    """Attach ``batch_id`` to every record logged inside the block.

    Tasks created inside the block (e.g. concurrent rows of a chunk) inherit
    the binding.
    """
    token = _batch_id_var.set(batch_id)
    try:
        yield
    finally:
        _batch_id_var.reset(token)


class _JsonFormatter(logging.Formatter):
    """Render a record as a single-line JSON object.

    Standard attributes become ``timestamp``/``level``/``logger``/``message``;
    anything passed via ``extra=`` is copied through as-is.
    """

    # Attributes every LogRecord has; anything else on a record came from extra=
    _STANDARD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {
        "message",
        "asctime",
    }

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()

        payload: dict = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
        }

        for key, value in (("request_id", get_request_id()), ("batch_id", get_batch_id())):
            if value:
                payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in self._STANDARD_ATTRS and not key.startswith("_"):
                payload[key] = value

        return json.dumps(payload, default=str)


def configure_logging(level: str = "INFO") -> None:
    """Install a single JSON stdout handler on the root logger.

    Args:
        level: Level name such as ``"INFO"`` or ``"DEBUG"``; unknown names
               fall back to INFO.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(_JsonFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    for noisy in _QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "JSON logging configured",
        extra={"log_level": level.upper()},
    )


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind an ``X-Request-ID`` to each request and echo it on the response.

    An incoming header value is reused so a proxy's trace ID carries through;
    otherwise a fresh hex UUID is generated.  Emits one ``app.access`` record
    per request with method, path, status and duration (WARNING for 5xx).
    """

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID") -> None:
        super().__init__(app)
        self._header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self._header_name) or uuid.uuid4().hex

        token = _request_id_var.set(request_id)
        start = time.monotonic()
        try:
            response = await call_next(request)
        finally:
            duration_ms = round((time.monotonic() - start) * 1000, 1)
            _request_id_var.reset(token)

        response.headers[self._header_name] = request_id

        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        _access_logger.log(
            level,
            "%s %s %s",
            request.method,
            request.url.path,
            response.status_code,
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )

        return response
