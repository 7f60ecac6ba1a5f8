# services/chat/__init__.py
"""chat services package initializer: explicit exports only; no runtime side effects."""

__all__ = ["aggregator", "moderation", "oracle", "repo", "routes", "safety", "service", "transport", "verification"]
