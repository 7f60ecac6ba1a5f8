"""Chat service operations: thread bootstrap, send, moderate, verify and audit views.

Each operation is an independent request: it mutates the store through
append-only writes (plus the single verified-status update done by the
verification state machine) and then re-reads the aggregated thread, so
concurrent sends, moderations and verifications see each other's results
without any in-process locking. Create operations mint fresh identifiers and
are safe to retry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from packages.common import metrics
from packages.common.config import Settings
from packages.common.errors import InvalidRequestError
from packages.common.tracing import audit_event
from packages.schemas.chat import (
    AugmentedThread,
    ChatMessage,
    ChatThread,
    MessageType,
    ModerationFlag,
    ModerationFlagDetail,
    ModerationSeverity,
    TransportIdentity,
    User,
    VerificationDetail,
)
from . import moderation
from .aggregator import ThreadAggregator
from .oracle import VerificationOracle, build_oracle
from .posting import SystemPoster, new_id, utcnow
from .repo import MetadataStore, build_store, demo_rules
from .safety import AzureContentSafetyClient, build_safety_client
from .transport import ChatTransport, build_transport
from .verification import SAFETY_SENDER_ID, VerificationStateMachine, VerifyOutcome

log = logging.getLogger(__name__)

MODERATION_SENDER_ID = "system-moderation"
BLOCKED_TEXT = "This message could not be posted due to school safety policy."

# Audit query parameter -> stored verification result
AUDIT_STATUS = {
    "confirmed": "confirmed",
    "partial": "partially_correct",
    "incorrect": "incorrect",
    "unverified": "unverified",
}


@dataclass
class SendOutcome:
    thread: AugmentedThread
    message: Optional[ChatMessage] = None
    moderation: Optional[ModerationFlag] = None
    system_message: Optional[ChatMessage] = None
    blocked: bool = False


@dataclass
class ModerateOutcome:
    moderation: ModerationFlag
    thread: AugmentedThread
    system_message: Optional[ChatMessage] = None


class ChatService:
    def __init__(
        self,
        store: MetadataStore,
        transport: ChatTransport,
        safety: AzureContentSafetyClient,
        oracle: VerificationOracle,
        *,
        store_message_content: bool = True,
        seed_school_id: str = "demo-school",
    ) -> None:
        self.store = store
        self.transport = transport
        self.safety = safety
        self.oracle = oracle
        self.store_message_content = store_message_content
        self.seed_school_id = seed_school_id
        self.aggregator = ThreadAggregator(store, transport)
        self.poster = SystemPoster(store, transport)
        self.verifier = VerificationStateMachine(store, self.aggregator, oracle, safety, self.poster)

    async def startup(self) -> None:
        """Prepare the store and seed the default school's official rules."""
        await self.store.init()
        await self.store.seed_rules(demo_rules(self.seed_school_id))

    async def aclose(self) -> None:
        for resource in (self.transport, self.safety, self.oracle):
            await resource.aclose()
        await self.store.close()

    async def create_identity(self) -> TransportIdentity:
        return await self.transport.create_identity()

    async def get_thread(self, thread_id: str) -> AugmentedThread:
        return await self.aggregator.build(thread_id)

    async def get_or_create_thread(self, school_id: str, user: User) -> AugmentedThread:
        """Return the school's active thread, creating it through the transport on first use."""
        await self.store.upsert_user(user)
        thread = await self.store.find_active_thread(school_id)
        if thread is None:
            thread_id = await self.transport.create_thread(f"{school_id} general chat", user.transport_user_id)
            thread = await self.store.create_thread(ChatThread(
                thread_id=thread_id,
                school_id=school_id,
                created_at=utcnow(),
                created_by=user.user_id,
                is_active=True,
            ))
            audit_event(user.user_id, "created_thread", thread_id, school_id=school_id)
        return await self.aggregator.build(thread.thread_id)

    async def send_message(
        self,
        user: User,
        content: str,
        message_type: MessageType = "student_answer",
        *,
        thread_id: Optional[str] = None,
        school_id: Optional[str] = None,
    ) -> SendOutcome:
        """Screen, deliver and record a user message.

        Raises:
            InvalidRequestError: empty content or neither thread nor school given.
            NotFoundError: unknown thread id.
            MisconfigurationError / SafetyClassifierError: classifier unusable (fails closed).
            TransportError: delivery failed; the message is not recorded.
        """
        text = (content or "").strip()
        if not text:
            raise InvalidRequestError("content is required")
        if not thread_id and not school_id:
            raise InvalidRequestError("threadId or schoolId is required")

        if thread_id:
            thread = await self.aggregator.build(thread_id)
            await self.store.upsert_user(user)
        else:
            thread = await self.get_or_create_thread(school_id, user)

        checked_at = utcnow()
        safety = await self.safety.analyze(text)
        metadata = safety.metadata(checked_at)

        if safety.blocked:
            metrics.mark_blocked("student")
            system_message = await self.poster.post(
                await self.aggregator.build(thread.thread_id),
                content=BLOCKED_TEXT,
                message_type="system_warning",
                sender_id=SAFETY_SENDER_ID,
                display_name="System",
                prefer_user_id=user.user_id,
            )
            flag = await self.poster.flag(
                system_message.message_id, "high", "Azure Content Safety blocked a student message.",
                "warning_posted", metadata,
            )
            audit_event(user.user_id, "blocked", thread.thread_id, categories=safety.categories)
            return SendOutcome(
                thread=await self.aggregator.build(thread.thread_id),
                moderation=flag,
                system_message=system_message,
                blocked=True,
            )

        delivery = await self.transport.send(thread.thread_id, text, user.transport_user_id)
        stored = await self.store.add_message(ChatMessage(
            message_id=new_id(),
            thread_id=thread.thread_id,
            sender_id=user.user_id,
            sender_role="senior" if user.role == "senior" else "student",
            content=delivery.content if self.store_message_content else None,
            created_at=delivery.delivered_at,
            message_type=message_type,
            verified_status="unverified",
            transport_message_id=delivery.message_id,
        ))
        metrics.mark_sent(message_type)
        await self.poster.flag(stored.message_id, "low", "Azure Content Safety scan completed.", "none", metadata)
        audit_event(user.user_id, "sent", stored.message_id, thread_id=thread.thread_id, message_type=message_type)
        return SendOutcome(
            thread=await self.aggregator.build(thread.thread_id),
            message=stored.model_copy(update={"content": delivery.content}),
        )

    async def moderate(self, message_id: str) -> ModerateOutcome:
        """Run the keyword moderation engine on a message and apply its action.

        Raises:
            NotFoundError: unknown message.
        """
        message, thread = await self.aggregator.find_message(message_id)
        assessment = moderation.assess(message.content)
        flag = await self.poster.flag(message_id, assessment.severity, assessment.reason, assessment.action_taken)

        system_message = None
        if assessment.action_taken == "warning_posted":
            system_message = await self.poster.post(
                thread,
                content=moderation.WARNING_TEXT,
                message_type="system_warning",
                sender_id=MODERATION_SENDER_ID,
                display_name="Moderation",
                related_message_id=message_id,
                verified_status=message.verified_status,
                prefer_user_id=message.sender_id,
            )
        audit_event(MODERATION_SENDER_ID, "moderated", message_id, severity=assessment.severity,
                    action=assessment.action_taken)
        return ModerateOutcome(
            moderation=flag,
            thread=await self.aggregator.build(message.thread_id),
            system_message=system_message,
        )

    async def verify(self, message_id: str) -> VerifyOutcome:
        return await self.verifier.verify(message_id)

    async def list_flags(self, severity: ModerationSeverity) -> list[ModerationFlagDetail]:
        """Moderation flags of one severity, most recent first, with their messages."""
        flags = await self.store.list_moderation_flags_by_severity(severity)
        details = []
        for flag in sorted(flags, key=lambda f: f.created_at, reverse=True):
            message = await self.store.get_message(flag.message_id)
            details.append(ModerationFlagDetail(
                flag=flag, message=message, thread_id=message.thread_id if message else None,
            ))
        return details

    async def list_verifications(self, status: str) -> list[VerificationDetail]:
        """Verification records for an audit status (confirmed, partial, incorrect, unverified).

        Raises:
            InvalidRequestError: unknown status.
        """
        result = AUDIT_STATUS.get(status.lower())
        if result is None:
            raise InvalidRequestError("Invalid status. Use confirmed, partial, incorrect or unverified.")
        records = await self.store.list_verifications_by_result(result)
        details = []
        for record in sorted(records, key=lambda v: v.created_at, reverse=True):
            message = await self.store.get_message(record.message_id)
            details.append(VerificationDetail(
                verification=record, message=message, thread_id=message.thread_id if message else None,
            ))
        return details


def build_chat_service(settings: Settings) -> ChatService:
    """Wire the service from settings; every collaborator can be swapped in tests."""
    return ChatService(
        store=build_store(settings),
        transport=build_transport(settings),
        safety=build_safety_client(settings),
        oracle=build_oracle(settings),
        store_message_content=settings.STORE_MESSAGE_CONTENT,
        seed_school_id=settings.DEFAULT_SCHOOL_ID,
    )
