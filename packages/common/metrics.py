"""
Prometheus metrics for the chat and assistant services.
Exposed by the services on GET /metrics.
"""
from prometheus_client import Counter

# Messages delivered through the transport, by message type
messages_sent_total = Counter(
    "chat_messages_sent_total",
    "Total number of chat messages delivered",
    ["message_type"],
)

# Messages rejected by the content-safety classifier before delivery
messages_blocked_total = Counter(
    "chat_messages_blocked_total",
    "Total number of messages blocked by content safety",
    ["origin"],
)

moderation_flags_total = Counter(
    "chat_moderation_flags_total",
    "Total number of moderation flags recorded",
    ["severity"],
)

verifications_total = Counter(
    "chat_verifications_total",
    "Total number of verification records persisted",
    ["result"],
)

# Final state of each assistant stream (done, client_cancelled, upstream_error)
assistant_streams_total = Counter(
    "assistant_streams_total",
    "Assistant streams by final state",
    ["state"],
)


def mark_sent(message_type: str) -> None:
    """Increment the delivered-message counter for a message type."""
    messages_sent_total.labels(message_type=message_type).inc()


def mark_blocked(origin: str) -> None:
    """Increment the blocked counter; origin is "student" or "ai"."""
    messages_blocked_total.labels(origin=origin).inc()


def mark_flag(severity: str) -> None:
    moderation_flags_total.labels(severity=severity).inc()


def mark_verification(result: str) -> None:
    verifications_total.labels(result=result).inc()


def mark_stream(state: str) -> None:
    assistant_streams_total.labels(state=state).inc()
