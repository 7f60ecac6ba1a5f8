# services/chat/moderation.py
"""Keyword moderation for chat messages.

- `assess`: classify a message's risk tier from its content.
- `action_for`: map a severity to the remediation the caller must perform.

Runs after delivery and is advisory: the content-safety classifier decides
hard blocks before a message reaches the transport, this engine produces the
audit flag and decides whether a warning is posted into the thread.
"""

from dataclasses import dataclass
from typing import Optional

from packages.schemas.chat import ModerationAction, ModerationSeverity

# Matched as lowercase substrings, so "bully" also catches "bullying".
HIGH_RISK = ("threat", "violence", "bully", "harass")
MEDIUM_RISK = ("cheat", "plagiarize", "skip class")

WARNING_TEXT = (
    "This message triggered safety filters and has been escalated to a moderator. "
    "Please keep the conversation respectful."
)


@dataclass(frozen=True)
class ModerationAssessment:
    severity: ModerationSeverity
    reason: str
    action_taken: ModerationAction


def action_for(severity: ModerationSeverity) -> ModerationAction:
    """Return the action for a severity: high posts a warning, medium asks for review."""
    if severity == "high":
        return "warning_posted"
    if severity == "medium":
        return "review_required"
    return "none"


def assess(content: Optional[str]) -> ModerationAssessment:
    """Classify `content`; high-risk terms win over medium-risk ones, no match is low."""
    text = (content or "").lower()
    severity: ModerationSeverity = "low"
    reason = "Routine scan"
    if any(k in text for k in HIGH_RISK):
        severity, reason = "high", "High-risk keyword detected"
    elif any(k in text for k in MEDIUM_RISK):
        severity, reason = "medium", "Possible policy violation"
    return ModerationAssessment(severity=severity, reason=reason, action_taken=action_for(severity))
