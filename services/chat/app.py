"""Chat service FastAPI application.

Exposes the FastAPI app, attaches tracing middleware and error handlers,
includes the chat/audit routes, and prepares the metadata store on startup.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from packages.common.config import get_settings
from packages.common.errors import register_error_handlers
from packages.common.logging import configure_logging
from packages.common.tracing import trace_middleware
from .routes import router as chat_router, get_chat_service
from .service import build_chat_service

settings = get_settings()
configure_logging(settings.LOG_LEVEL)

app = FastAPI(title="SchoolChat Chat Service", version="1.0.0")
app.middleware("http")(trace_middleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
)
register_error_handlers(app)
app.include_router(chat_router)


@app.get("/healthz", tags=["infra"])
def healthz() -> dict[str, str]:
    return {"status": "ok", "env": settings.ENV}


@app.get("/metrics", tags=["infra"])
def metrics() -> PlainTextResponse:
    return PlainTextResponse(generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)


@app.on_event("startup")
async def _init() -> None:
    """Wire the chat service and prepare its store at application startup."""
    app.state.chat_service = build_chat_service(settings)
    await app.state.chat_service.startup()


@app.on_event("shutdown")
async def _close() -> None:
    service = getattr(app.state, "chat_service", None)
    if service is not None:
        await service.aclose()


__all__ = ["app", "get_chat_service"]
