"""Guardrail helpers for the assistant service.

Provides prompt-injection detection and input sanitization for the latest
user turn before it is forwarded upstream.
"""

import re

INJECTION_PATTERNS = [
    r"ignore (all|the|any|your) (previous|prior|above) instructions",
    r"disregard (all|the|your) (previous|prior|above) (instructions|rules)",
    r"(reveal|show|print|repeat) (me )?your (system prompt|instructions|hidden rules)",
    r"you are (now|no longer) ",
    r"pretend (to be|you are)",
    r"act as (a|an) (?!student|teacher)",
    r"send your api key",
]

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def is_prompt_injection(text: str) -> bool:
    """Heuristically detect attempts to override the assistant's instructions.

    Checks the text against a small set of regex patterns targeting:
      - Attempts to override instructions (e.g., "ignore previous instructions")
      - Persona changes (e.g., "you are now", "pretend to be")
      - Requests to exfiltrate the system prompt or credentials

    Args:
        text: The user-provided input to inspect.

    Returns:
        True if any pattern matches; otherwise False.
    """
    return any(re.search(p, text, flags=re.I) for p in INJECTION_PATTERNS)


def sanitize(text: str) -> str:
    """Strip control characters and surrounding whitespace."""
    return _CONTROL_CHARS.sub("", text).strip()
