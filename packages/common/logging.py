"""Structured logging for the SchoolChat services.

Every record is one JSON line on stdout carrying the request correlation id
(when a request is in flight) and whatever was passed through `extra=`, e.g.
`log.info("stream closed", extra={"state": "done"})`.
"""

import json
import logging
import sys
import time
from contextvars import ContextVar

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def set_request_id(rid: str | None) -> None:
    """Bind (or clear, with None) the correlation id of the current request."""
    _request_id.set(rid)


def get_request_id() -> str | None:
    return _request_id.get()


class JSONFormatter(logging.Formatter):
    """Render a record as a single JSON object.

    Keys: level, ts (epoch seconds, 3dp), logger, msg, request_id when bound,
    every `extra=` field, and exc_info when an exception is attached.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "level": record.levelname,
            "ts": round(record.created, 3),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        rid = _request_id.get()
        if rid:
            entry["request_id"] = rid
        entry.update(
            (key, value) for key, value in vars(record).items()
            if key not in _RESERVED and not key.startswith("_")
        )
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def configure_logging(level: int | str = "INFO") -> logging.Logger:
    """Send all logging to stdout as JSON at `level` and return the "schoolchat" logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    logging.basicConfig(level=level, handlers=[handler], force=True)
    # httpx logs every request at INFO; vendor calls are logged by our clients.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logging.getLogger("schoolchat")
