"""FastAPI app for the SchoolChat assistant service.

Provides a streaming chat endpoint that sanitizes input, guards against
prompt injection, composes the language/mode system prompt and relays the
model's answer token by token.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from packages.common.config import get_settings
from packages.common.errors import register_error_handlers
from packages.common.logging import configure_logging
from packages.common.tracing import trace_middleware
from .routes import router as assistant_router

settings = get_settings()
configure_logging(settings.LOG_LEVEL)

app = FastAPI(title="SchoolChat Assistant Service", version="1.0.0")
app.middleware("http")(trace_middleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins(),
    allow_credentials=True,
    allow_methods=["POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
)
register_error_handlers(app)
app.include_router(assistant_router)


@app.get("/healthz", tags=["infra"])
def healthz() -> dict[str, str]:
    return {"status": "ok", "env": settings.ENV}


@app.get("/metrics", tags=["infra"])
def metrics() -> PlainTextResponse:
    return PlainTextResponse(generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)


@app.on_event("shutdown")
async def _close() -> None:
    streamer = getattr(app.state, "assistant_streamer", None)
    if streamer is not None:
        await streamer.aclose()
