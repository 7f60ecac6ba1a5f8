"""Read-side projection of a chat thread.

`ThreadAggregator.build` joins the thread record with its messages, the
school's users and official rules, and every verification and moderation
flag that references one of the thread's messages. It only reads, so running
it twice without intervening writes yields identical snapshots. Every
operation that mutates a conversation calls it afterwards to return the
current state.
"""

from __future__ import annotations

import logging
from typing import Optional

from packages.common.errors import NotFoundError
from packages.schemas.chat import AugmentedThread, ChatMessage, ChatThread, User
from .repo import MetadataStore
from .transport import ChatTransport

log = logging.getLogger(__name__)

UNKNOWN_SENDER = "unknown"


class ThreadAggregator:
    def __init__(self, store: MetadataStore, transport: ChatTransport) -> None:
        self.store = store
        self.transport = transport

    async def build(self, thread_id: str) -> AugmentedThread:
        """Return the augmented snapshot of `thread_id`.

        Raises:
            NotFoundError: if the thread does not exist.
        """
        thread = await self.store.get_thread(thread_id)
        if thread is None:
            raise NotFoundError("Thread not found")

        users = await self.store.list_users(thread.school_id)
        reader = self._reader(thread, users)
        stored = await self.store.list_messages(thread_id)
        messages = [await self._reconcile(thread, m, reader) for m in stored]
        # Stable sort: equal timestamps keep store insertion order.
        messages.sort(key=lambda m: m.created_at)

        message_ids = [m.message_id for m in messages]
        return AugmentedThread(
            **thread.model_dump(),
            messages=messages,
            users=users,
            official_rules=await self.store.list_rules(thread.school_id),
            verifications=await self.store.list_verifications(message_ids),
            moderation_flags=await self.store.list_moderation_flags(message_ids),
        )

    async def find_message(self, message_id: str) -> tuple[ChatMessage, AugmentedThread]:
        """Return a message with reconciled content together with its thread snapshot.

        Raises:
            NotFoundError: if the message (or its thread) does not exist.
        """
        stored = await self.store.get_message(message_id)
        if stored is None:
            raise NotFoundError("Message not found")
        thread = await self.build(stored.thread_id)
        for message in thread.messages:
            if message.message_id == message_id:
                return message, thread
        raise NotFoundError("Message not found")

    @staticmethod
    def _reader(thread: ChatThread, users: list[User]) -> str:
        """Transport identity used to read thread content: creator first, then any member."""
        for user in users:
            if user.user_id == thread.created_by:
                return user.transport_user_id
        return users[0].transport_user_id if users else ""

    async def _reconcile(self, thread: ChatThread, message: ChatMessage, reader: str) -> ChatMessage:
        if message.content is not None and message.sender_id:
            return message
        content: Optional[str] = message.content
        if content is None:
            envelope = await self.transport.try_get_message(
                thread.thread_id, message.transport_message_id or message.message_id, reader
            )
            if envelope is None:
                log.warning("transport content unavailable", extra={"message_id": message.message_id})
            content = envelope.content if envelope else ""
        return message.model_copy(update={"content": content, "sender_id": message.sender_id or UNKNOWN_SENDER})
