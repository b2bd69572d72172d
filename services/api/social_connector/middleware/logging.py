"""Structured logging setup and request logging with secret redaction.

Provider URLs carry ``access_token``, ``client_secret`` and friends as query
parameters. Nothing here logs a query string, and every string field that
reaches the structlog renderer passes through :func:`redact_params` first.
"""

import logging
import re
import time
import uuid
from typing import Any, Callable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

SECRET_PARAM_PATTERN = re.compile(
    r"((?:access_token|client_secret|fb_exchange_token|code|app_secret)=)[^&\s\"']+",
    re.IGNORECASE,
)


def redact_secret(value: str | None) -> str:
    """Show at most the first 4 characters of a secret."""
    if not value:
        return ""
    return f"{value[:4]}***"


def redact_params(text: str) -> str:
    """Mask secret-bearing query parameters embedded in text."""
    return SECRET_PARAM_PATTERN.sub(r"\1[REDACTED]", text)


def redact_event(logger: Any, method_name: str, event_dict: dict) -> dict:
    """structlog processor applying :func:`redact_params` to string values."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = redact_params(value)
    return event_dict


def setup_logging(debug: bool = False) -> None:
    """Configure structlog JSON output for the API and the Celery workers."""
    log_level = logging.DEBUG if debug else logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_event,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", level=log_level)
    # httpx logs full request URLs at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with a short id bound for the lifetime of the request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid.uuid4().hex[:8]
        start = time.perf_counter()

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            tenant_id=request.headers.get("x-tenant-id"),
        )
        logger = structlog.get_logger()

        await logger.ainfo(
            "request_started",
            method=request.method,
            path=request.url.path,
            client=request.client.host if request.client else "unknown",
        )

        try:
            response = await call_next(request)
            await logger.ainfo(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
        finally:
            structlog.contextvars.clear_contextvars()

        response.headers["X-Request-ID"] = request_id
        return response
