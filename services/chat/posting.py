"""Posting of platform-authored messages (AI verifications, system warnings).

Delivery through the transport is best-effort here: the record is persisted
with its content even when the transport is unavailable, so a warning can
never be lost because of a transport outage.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from packages.common import metrics
from packages.common.errors import TransportError
from packages.schemas.chat import AugmentedThread, ChatMessage, MessageType, ModerationFlag, SafetyMetadata, VerifiedStatus
from packages.schemas.chat import ModerationAction, ModerationSeverity
from .repo import MetadataStore
from .transport import ChatTransport

log = logging.getLogger(__name__)


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SystemPoster:
    def __init__(self, store: MetadataStore, transport: ChatTransport) -> None:
        self.store = store
        self.transport = transport

    @staticmethod
    def sender_identity(thread: AugmentedThread, prefer_user_id: Optional[str] = None) -> Optional[str]:
        """Transport identity to post as: the preferred user, the thread creator, then any member."""
        by_id = {u.user_id: u.transport_user_id for u in thread.users}
        for candidate in (prefer_user_id, thread.created_by):
            if candidate and by_id.get(candidate):
                return by_id[candidate]
        return thread.users[0].transport_user_id if thread.users else None

    async def post(
        self,
        thread: AugmentedThread,
        *,
        content: str,
        message_type: MessageType,
        sender_id: str,
        display_name: str,
        related_message_id: Optional[str] = None,
        verified_status: VerifiedStatus = "unverified",
        prefer_user_id: Optional[str] = None,
    ) -> ChatMessage:
        """Deliver (best-effort) and persist a platform-authored message."""
        created_at = utcnow()
        transport_id: Optional[str] = None
        identity = self.sender_identity(thread, prefer_user_id)
        if identity:
            try:
                delivery = await self.transport.send(thread.thread_id, content, identity, display_name)
                created_at, transport_id = delivery.delivered_at, delivery.message_id
            except TransportError as e:
                log.error("system message delivery failed: %s", e.message, extra={"thread_id": thread.thread_id})
        message = ChatMessage(
            message_id=new_id(),
            thread_id=thread.thread_id,
            sender_id=sender_id,
            sender_role="ai",
            content=content,
            created_at=created_at,
            message_type=message_type,
            verified_status=verified_status,
            related_message_id=related_message_id,
            transport_message_id=transport_id,
        )
        return await self.store.add_message(message)

    async def flag(
        self,
        message_id: str,
        severity: ModerationSeverity,
        reason: str,
        action_taken: ModerationAction,
        metadata: Optional[SafetyMetadata] = None,
    ) -> ModerationFlag:
        """Persist a moderation flag."""
        record = await self.store.add_moderation_flag(ModerationFlag(
            flag_id=new_id(),
            message_id=message_id,
            severity=severity,
            reason=reason,
            action_taken=action_taken,
            created_at=metadata.created_at if metadata else utcnow(),
            metadata=metadata,
        ))
        metrics.mark_flag(severity)
        return record
