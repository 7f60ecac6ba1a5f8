"""SchoolChat main entrypoint.

Unified ASGI app serving the chat/audit routes and the streaming assistant
from one process. Each service can also run on its own via
`services.chat.app:app` and `services.assistant.app:app`.
"""
from __future__ import annotations

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

load_dotenv(override=False)

from packages.common.config import get_settings  # noqa: E402
from packages.common.errors import register_error_handlers  # noqa: E402
from packages.common.logging import configure_logging  # noqa: E402
from packages.common.tracing import trace_middleware  # noqa: E402
from services.assistant.routes import router as assistant_router  # noqa: E402
from services.chat.routes import router as chat_router  # noqa: E402
from services.chat.service import build_chat_service  # noqa: E402

settings = get_settings()
logger = configure_logging(settings.LOG_LEVEL)

# ===== App (ASGI) =====
app = FastAPI(title="SchoolChat Unified API", version="1.0.0")
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
app.include_router(assistant_router)


@app.get("/healthz", tags=["infra"])
def healthz() -> dict[str, str]:
    return {"status": "ok", "env": settings.ENV}


@app.get("/metrics", tags=["infra"])
def metrics() -> PlainTextResponse:
    return PlainTextResponse(generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)


@app.on_event("startup")
async def _startup() -> None:
    app.state.chat_service = build_chat_service(settings)
    await app.state.chat_service.startup()
    logger.info("SchoolChat started", extra={"env": settings.ENV, "simulated": not settings.acs_configured()})


@app.on_event("shutdown")
async def _shutdown() -> None:
    for name in ("chat_service", "assistant_streamer"):
        resource = getattr(app.state, name, None)
        if resource is not None:
            await resource.aclose()
    logger.info("SchoolChat stopped")


# Export ASGI for uvicorn/gunicorn
__all__ = ["app"]

if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.ENV == "dev")
