"""Verification state machine.

A message starts `unverified`. Each verification attempt appends exactly one
record. A successful verdict re-derives the message's status (the last
applied verdict wins; nothing accumulates) and posts a separate AI-authored
summary; an unverified outcome is recorded for human review and leaves the
status alone. The original message content is never touched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from packages.common import metrics
from packages.common.errors import ChatError
from packages.common.tracing import audit_event
from packages.schemas.chat import (
    AIVerification,
    AugmentedThread,
    ChatMessage,
    ModerationFlag,
    SuccessfulVerification,
    UnverifiedVerification,
    VerificationResult,
    VerifiedStatus,
)
from .aggregator import ThreadAggregator
from .oracle import OracleUnverified, OracleVerdict, VerificationOracle
from .posting import SystemPoster, new_id, utcnow
from .repo import MetadataStore
from .safety import AzureContentSafetyClient, SafetyResult

log = logging.getLogger(__name__)

AI_VERIFIER_ID = "ai-verifier"
SAFETY_SENDER_ID = "system-content-safety"
BLOCKED_TEXT = "This AI verification could not be posted due to school safety policy."


def status_for(result: VerificationResult) -> VerifiedStatus:
    """Map a successful verdict to the message status it implies."""
    match result:
        case "confirmed":
            return "verified"
        case "partially_correct":
            return "partially_verified"
        case "incorrect":
            return "conflict"
    raise ValueError(f"unknown verification result {result!r}")


def summary_text(record: SuccessfulVerification) -> str:
    return (
        f"AI verification: {record.verification_result}\n"
        f"Reason: {record.explanation}\n"
        f"Sources: {', '.join(record.official_source_ids)}"
    )


@dataclass
class VerifyOutcome:
    verification: AIVerification
    thread: AugmentedThread
    ai_message: Optional[ChatMessage] = None
    system_message: Optional[ChatMessage] = None
    moderation: Optional[ModerationFlag] = None
    blocked: bool = False


class VerificationStateMachine:
    def __init__(
        self,
        store: MetadataStore,
        aggregator: ThreadAggregator,
        oracle: VerificationOracle,
        safety: AzureContentSafetyClient,
        poster: SystemPoster,
    ) -> None:
        self.store = store
        self.aggregator = aggregator
        self.oracle = oracle
        self.safety = safety
        self.poster = poster

    async def verify(self, message_id: str) -> VerifyOutcome:
        """Run one verification attempt for `message_id`.

        Raises:
            NotFoundError: if the message does not exist.
        """
        message, thread = await self.aggregator.find_message(message_id)
        outcome = await self.oracle.verify(message, thread.official_rules)

        match outcome:
            case OracleUnverified(reason=reason, requires_human_review=review):
                record = await self.store.add_verification(UnverifiedVerification(
                    verification_id=new_id(),
                    message_id=message_id,
                    reason=reason,
                    requires_human_review=review,
                    created_at=utcnow(),
                ))
                metrics.mark_verification("unverified")
                audit_event(AI_VERIFIER_ID, "verification_deferred", message_id, reason=reason)
                return VerifyOutcome(verification=record, thread=await self.aggregator.build(message.thread_id))
            case OracleVerdict(result=result, explanation=explanation, source_ids=source_ids):
                record = await self.store.add_verification(SuccessfulVerification(
                    verification_id=new_id(),
                    message_id=message_id,
                    verification_result=result,
                    explanation=explanation,
                    official_source_ids=source_ids,
                    created_at=utcnow(),
                ))
            case _:
                raise TypeError(f"unexpected oracle outcome {outcome!r}")
        metrics.mark_verification(record.verification_result)
        await self.store.set_verified_status(message_id, status_for(record.verification_result))
        audit_event(AI_VERIFIER_ID, "verified", message_id, result=record.verification_result,
                    sources=record.official_source_ids)
        return await self._post_summary(message, thread, record)

    async def _post_summary(
        self, message: ChatMessage, thread: AugmentedThread, record: SuccessfulVerification
    ) -> VerifyOutcome:
        text = summary_text(record)
        checked_at = utcnow()
        try:
            safety = await self.safety.analyze(text)
        except ChatError as e:
            # AI output fails open: the verdict is already recorded either way.
            log.error("content safety check of AI verification failed: %s", e.message)
            safety = SafetyResult(blocked=False)
        metadata = safety.metadata(checked_at)

        if safety.blocked:
            metrics.mark_blocked("ai")
            system_message = await self.poster.post(
                thread,
                content=BLOCKED_TEXT,
                message_type="system_warning",
                sender_id=SAFETY_SENDER_ID,
                display_name="System",
                related_message_id=message.message_id,
                prefer_user_id=message.sender_id,
            )
            moderation = await self.poster.flag(
                system_message.message_id, "high", "Azure Content Safety blocked an AI verification.",
                "warning_posted", metadata,
            )
            audit_event(AI_VERIFIER_ID, "blocked", message.message_id, categories=safety.categories)
            return VerifyOutcome(
                verification=record,
                thread=await self.aggregator.build(message.thread_id),
                system_message=system_message,
                moderation=moderation,
                blocked=True,
            )

        ai_message = await self.poster.post(
            thread,
            content=text,
            message_type="ai_verification",
            sender_id=AI_VERIFIER_ID,
            display_name="AI Verifier",
            related_message_id=message.message_id,
            verified_status="verified",
            prefer_user_id=message.sender_id,
        )
        metrics.mark_sent("ai_verification")
        await self.poster.flag(ai_message.message_id, "low", "Azure Content Safety scan completed.", "none", metadata)
        return VerifyOutcome(
            verification=record,
            thread=await self.aggregator.build(message.thread_id),
            ai_message=ai_message,
        )
