"""Request tracing and audit events.

- `trace_middleware`: binds an `X-Request-ID` (incoming or fresh UUID4) for the
  duration of the request, echoes it back and writes one access-log line.
- `audit_event`: records who did what to which chat object (sent, blocked,
  moderated, verified) on the "schoolchat.audit" logger.
"""

import json
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict

from fastapi import Request, Response

from .logging import set_request_id

access_log = logging.getLogger("schoolchat.access")
audit_log = logging.getLogger("schoolchat.audit")


async def trace_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    """HTTP middleware: correlate logs by request id and log method, path, status and latency."""
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    set_request_id(rid)
    started = time.perf_counter()
    try:
        response = await call_next(request)
        access_log.info(
            "%s %s", request.method, request.url.path,
            extra={"status": response.status_code, "duration_ms": round((time.perf_counter() - started) * 1000, 1)},
        )
    finally:
        set_request_id(None)
    response.headers["X-Request-ID"] = rid
    return response


def audit_event(actor_id: str, verb: str, obj: str, **extras: Any) -> Dict[str, Any]:
    """Log an audit event as `EVENT {...}` and return its payload.

    Args:
        actor_id: User id, or a platform sender such as "ai-verifier".
        verb: What happened, e.g. "sent", "blocked", "moderated", "verified".
        obj: Message or thread id acted upon.
        **extras: JSON-serializable details (severity, categories, sources...).
    """
    event: Dict[str, Any] = {
        "actor": actor_id,
        "verb": verb,
        "object": obj,
        "ts": round(time.time(), 3),
        "extras": extras,
    }
    audit_log.info("EVENT %s", json.dumps(event, ensure_ascii=False, default=str))
    return event
