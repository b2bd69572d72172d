"""Error responses: typed connector errors and a catch-all for the rest."""

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from social_connector.errors import ConnectorError
from social_connector.middleware.logging import redact_params

logger = logging.getLogger(__name__)


def error_body(exc: ConnectorError) -> dict:
    return {"detail": exc.message, "code": exc.code, "kind": exc.kind.value}


async def connector_error_handler(request: Request, exc: ConnectorError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, redact_params(exc.message))
    else:
        logger.info("%s on %s %s: %s", exc.code, request.method, request.url.path, redact_params(exc.message))
    return JSONResponse(status_code=exc.status_code, content=error_body(exc))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ConnectorError, connector_error_handler)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch unhandled exceptions and return safe error responses."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            logger.error(
                "Unhandled exception: %s\n%s",
                redact_params(str(exc)),
                redact_params(traceback.format_exc()),
            )

            return JSONResponse(
                status_code=500,
                content={
                    "detail": "An internal error occurred. Please try again later.",
                    "code": "E_INTERNAL",
                    "kind": "internal",
                },
            )
