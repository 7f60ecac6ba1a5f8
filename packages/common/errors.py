"""Error taxonomy shared by the SchoolChat services.

Every error carries a machine-readable `kind` and the HTTP status it maps to,
so route handlers and the exception handler in `register_error_handlers` can
render a uniform `{"error": ..., "kind": ...}` body that a UI can act on
(retry dependency failures, surface validation problems once).
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

log = logging.getLogger(__name__)


class ChatError(Exception):
    """Base class for errors surfaced to API callers."""

    kind = "internal"
    status_code = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_body(self) -> dict[str, str]:
        return {"error": self.message, "kind": self.kind}


class InvalidRequestError(ChatError):
    """Missing or malformed input; the caller should not retry as-is."""

    kind = "validation"
    status_code = 400


class NotFoundError(ChatError):
    kind = "not_found"
    status_code = 404


class TransportError(ChatError):
    """Chat transport rejected or failed a delivery; status comes from the transport."""

    kind = "transport"
    status_code = 502


class SafetyClassifierError(ChatError):
    kind = "safety"
    status_code = 502


class UpstreamError(ChatError):
    """The chat-completion provider answered with a non-OK status or no body."""

    kind = "upstream"
    status_code = 502


class MisconfigurationError(ChatError):
    """Required settings are missing; detected before any external call."""

    kind = "misconfiguration"
    status_code = 500


def register_error_handlers(app: FastAPI) -> None:
    """Attach JSON renderers for `ChatError` and request validation failures."""

    @app.exception_handler(ChatError)
    async def _chat_error(request: Request, exc: ChatError) -> JSONResponse:
        if exc.status_code >= 500:
            log.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.kind)
        return JSONResponse(exc.to_body(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        msg = first.get("msg", "Invalid request")
        detail = f"{where}: {msg}" if where else msg
        return JSONResponse({"error": detail, "kind": "validation"}, status_code=400)
