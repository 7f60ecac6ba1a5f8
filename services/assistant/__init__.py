"""Assistant package public interface.

Exposes key submodules through __all__ for convenient imports.
"""

__all__ = ["guardrails", "prompts", "routes", "sse", "upstream"]
