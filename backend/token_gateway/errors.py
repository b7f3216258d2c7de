import html
import logging
from enum import Enum
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse
from sqlalchemy.exc import SQLAlchemyError

log = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    REPLAY = "replay"
    UPSTREAM = "upstream"
    RESOLUTION = "resolution"
    PERSISTENCE = "persistence"
    AUTH = "auth"
    INTERNAL = "internal"


class GatewayError(Exception):
    """Base for errors that map onto a caller-visible status and `error` code."""

    kind = ErrorKind.INTERNAL
    status_code = 500
    error = "internal_error"

    def __init__(self, message: str = "", *, detail: Any = None, status_code: Optional[int] = None, error: Optional[str] = None):
        super().__init__(message or self.error)
        self.message = message or self.error
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code
        if error is not None:
            self.error = error

    def to_dict(self) -> dict:
        body = {"error": self.error, "message": self.message}
        if self.detail is not None:
            body["detail"] = self.detail
        return body


class ValidationFailed(GatewayError):
    kind = ErrorKind.VALIDATION
    status_code = 400
    error = "validation_error"


class ReplayRejected(GatewayError):
    kind = ErrorKind.REPLAY
    status_code = 400
    error = "invalid_state"


class UpstreamError(GatewayError):
    """The provider answered with an error; its status and body pass through."""

    kind = ErrorKind.UPSTREAM
    status_code = 502
    error = "exchange_failed"


class ProviderTimeout(UpstreamError):
    status_code = 504
    error = "provider_timeout"


class ProviderUnavailable(UpstreamError):
    status_code = 502
    error = "provider_unavailable"


class TenantUnresolved(GatewayError):
    kind = ErrorKind.RESOLUTION
    status_code = 202
    error = "tenant_unresolved"


class AuthError(GatewayError):
    kind = ErrorKind.AUTH
    status_code = 401
    error = "unauthorized"


class Forbidden(GatewayError):
    kind = ErrorKind.AUTH
    status_code = 403
    error = "endpoint_not_allowed"


class NotFound(GatewayError):
    kind = ErrorKind.VALIDATION
    status_code = 404
    error = "not_found"


class TokenDecryptionError(GatewayError):
    kind = ErrorKind.INTERNAL
    status_code = 500
    error = "internal_error"


def wants_html(request: Request) -> bool:
    accept = request.headers.get("accept", "")
    return "text/html" in accept and "application/json" not in accept


def html_page(title: str, message: str, status_code: int = 200) -> HTMLResponse:
    body = (
        "<!doctype html><html><head><meta charset=\"utf-8\">"
        f"<title>{html.escape(title)}</title></head>"
        f"<body><p>{html.escape(message)}</p></body></html>"
    )
    return HTMLResponse(body, status_code=status_code)


async def handle_gateway_error(request: Request, exc: GatewayError):
    if exc.status_code >= 500 and exc.kind == ErrorKind.INTERNAL:
        log.error("internal error on %s %s: %s", request.method, request.url.path, exc.message)
        payload = {"error": "internal_error", "message": "Something went wrong"}
    else:
        log.info(
            "request failed",
            extra={"meta": {"path": request.url.path, "error": exc.error, "status": exc.status_code}},
        )
        payload = exc.to_dict()
    if request.url.path.startswith("/oauth/callback") and wants_html(request):
        return html_page("Connection failed", payload["message"], exc.status_code)
    return JSONResponse(payload, status_code=exc.status_code)


async def handle_db_error(request: Request, exc: SQLAlchemyError):
    log.exception("persistence failure on %s %s", request.method, request.url.path)
    return JSONResponse(
        {"error": "persistence_unavailable", "message": "Storage is unavailable, try again later"},
        status_code=503,
    )


async def handle_unexpected(request: Request, exc: Exception):
    log.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "internal_error", "message": "Something went wrong"}, status_code=500)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(GatewayError, handle_gateway_error)
    app.add_exception_handler(SQLAlchemyError, handle_db_error)
    app.add_exception_handler(Exception, handle_unexpected)
