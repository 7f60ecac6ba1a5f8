"""Repository layer for the chat service.

`MetadataStore` is the storage contract the chat core depends on. Two
implementations are swappable at construction time:

- `InMemoryStore`: per-instance dictionaries (dev, tests).
- `SqlStore`: SQLAlchemy async engine over any supported DSN.

Messages, verifications and moderation flags are append-only; the one
in-place mutation is `set_verified_status`, which touches that single field.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Collection, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from packages.common.config import Settings
from packages.schemas.chat import (
    AIVerification,
    ChatMessage,
    ChatThread,
    ModerationFlag,
    ModerationSeverity,
    OfficialRule,
    SafetyMetadata,
    SuccessfulVerification,
    UnverifiedVerification,
    User,
    VerifiedStatus,
)
from .models import Base, MessageRow, ModerationFlagRow, OfficialRuleRow, ThreadRow, UserRow, VerificationRow

log = logging.getLogger(__name__)


def demo_rules(school_id: str = "demo-school") -> list[OfficialRule]:
    """Official rules seeded for the demo school."""
    now = datetime.now(timezone.utc)
    seeds = [
        ("attendance-001", "Attendance Check-in",
         "Students must check in by 8:15 AM and report absences to the office.", "attendance"),
        ("behavior-002", "Respectful Conduct",
         "Bullying, harassment, or discriminatory language is prohibited on all channels.", "behavior"),
        ("exams-003", "Exam Materials",
         "Personal electronic devices must be stored away during exams unless accommodations apply.", "exams"),
        ("administrative-004", "ID Badges",
         "Students must carry their school ID badge at all times on campus.", "administrative"),
    ]
    return [
        OfficialRule(rule_id=rid, school_id=school_id, language="en", title=title,
                     content=content, category=category, last_updated=now)
        for rid, title, content, category in seeds
    ]


class MetadataStore(ABC):
    """Keyed storage for users, threads, messages, verifications, flags and rules."""

    async def init(self) -> None:
        """Prepare the backing storage; no-op unless overridden."""

    async def close(self) -> None:
        """Release backing resources; no-op unless overridden."""

    @abstractmethod
    async def upsert_user(self, user: User) -> User:
        """Insert a user, or refresh only the transport identity of an existing one."""

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    async def list_users(self, school_id: str) -> list[User]: ...

    @abstractmethod
    async def create_thread(self, thread: ChatThread) -> ChatThread: ...

    @abstractmethod
    async def get_thread(self, thread_id: str) -> Optional[ChatThread]: ...

    @abstractmethod
    async def find_active_thread(self, school_id: str) -> Optional[ChatThread]:
        """Most recently created active thread of the school."""

    @abstractmethod
    async def add_message(self, message: ChatMessage) -> ChatMessage: ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[ChatMessage]: ...

    @abstractmethod
    async def list_messages(self, thread_id: str) -> list[ChatMessage]:
        """Messages of a thread in insertion order."""

    @abstractmethod
    async def set_verified_status(self, message_id: str, status: VerifiedStatus) -> bool:
        """Update only `verified_status`; returns False if the message is unknown."""

    @abstractmethod
    async def add_verification(self, verification: AIVerification) -> AIVerification: ...

    @abstractmethod
    async def list_verifications(self, message_ids: Collection[str]) -> list[AIVerification]: ...

    @abstractmethod
    async def list_verifications_by_result(self, result: str) -> list[AIVerification]: ...

    @abstractmethod
    async def add_moderation_flag(self, flag: ModerationFlag) -> ModerationFlag: ...

    @abstractmethod
    async def list_moderation_flags(self, message_ids: Collection[str]) -> list[ModerationFlag]: ...

    @abstractmethod
    async def list_moderation_flags_by_severity(self, severity: ModerationSeverity) -> list[ModerationFlag]: ...

    @abstractmethod
    async def list_rules(self, school_id: str, language: Optional[str] = None) -> list[OfficialRule]: ...

    @abstractmethod
    async def seed_rules(self, rules: list[OfficialRule]) -> None:
        """Insert rules whose id is not stored yet."""


class InMemoryStore(MetadataStore):
    """Dictionary-backed store; every read returns copies so callers cannot mutate state."""

    def __init__(self) -> None:
        self.users: dict[str, User] = {}
        self.threads: dict[str, ChatThread] = {}
        self.messages: dict[str, ChatMessage] = {}
        self.verifications: dict[str, AIVerification] = {}
        self.flags: dict[str, ModerationFlag] = {}
        self.rules: dict[str, OfficialRule] = {}

    async def upsert_user(self, user: User) -> User:
        existing = self.users.get(user.user_id)
        if existing is None:
            self.users[user.user_id] = user.model_copy(deep=True)
        elif existing.transport_user_id != user.transport_user_id:
            self.users[user.user_id] = existing.model_copy(update={"transport_user_id": user.transport_user_id})
        return self.users[user.user_id].model_copy()

    async def get_user(self, user_id: str) -> Optional[User]:
        user = self.users.get(user_id)
        return user.model_copy() if user else None

    async def list_users(self, school_id: str) -> list[User]:
        return [u.model_copy() for u in self.users.values() if u.school_id == school_id]

    async def create_thread(self, thread: ChatThread) -> ChatThread:
        self.threads[thread.thread_id] = thread.model_copy()
        return thread.model_copy()

    async def get_thread(self, thread_id: str) -> Optional[ChatThread]:
        thread = self.threads.get(thread_id)
        return thread.model_copy() if thread else None

    async def find_active_thread(self, school_id: str) -> Optional[ChatThread]:
        active = [t for t in self.threads.values() if t.school_id == school_id and t.is_active]
        if not active:
            return None
        return max(active, key=lambda t: t.created_at).model_copy()

    async def add_message(self, message: ChatMessage) -> ChatMessage:
        self.messages[message.message_id] = message.model_copy()
        return message.model_copy()

    async def get_message(self, message_id: str) -> Optional[ChatMessage]:
        message = self.messages.get(message_id)
        return message.model_copy() if message else None

    async def list_messages(self, thread_id: str) -> list[ChatMessage]:
        return [m.model_copy() for m in self.messages.values() if m.thread_id == thread_id]

    async def set_verified_status(self, message_id: str, status: VerifiedStatus) -> bool:
        current = self.messages.get(message_id)
        if current is None:
            return False
        self.messages[message_id] = current.model_copy(update={"verified_status": status})
        return True

    async def add_verification(self, verification: AIVerification) -> AIVerification:
        self.verifications[verification.verification_id] = verification.model_copy(deep=True)
        return verification.model_copy(deep=True)

    async def list_verifications(self, message_ids: Collection[str]) -> list[AIVerification]:
        wanted = set(message_ids)
        return [v.model_copy(deep=True) for v in self.verifications.values() if v.message_id in wanted]

    async def list_verifications_by_result(self, result: str) -> list[AIVerification]:
        return [v.model_copy(deep=True) for v in self.verifications.values() if v.verification_result == result]

    async def add_moderation_flag(self, flag: ModerationFlag) -> ModerationFlag:
        self.flags[flag.flag_id] = flag.model_copy(deep=True)
        return flag.model_copy(deep=True)

    async def list_moderation_flags(self, message_ids: Collection[str]) -> list[ModerationFlag]:
        wanted = set(message_ids)
        return [f.model_copy(deep=True) for f in self.flags.values() if f.message_id in wanted]

    async def list_moderation_flags_by_severity(self, severity: ModerationSeverity) -> list[ModerationFlag]:
        return [f.model_copy(deep=True) for f in self.flags.values() if f.severity == severity]

    async def list_rules(self, school_id: str, language: Optional[str] = None) -> list[OfficialRule]:
        return [
            r.model_copy() for r in self.rules.values()
            if r.school_id == school_id and (language is None or r.language == language)
        ]

    async def seed_rules(self, rules: list[OfficialRule]) -> None:
        for rule in rules:
            self.rules.setdefault(rule.rule_id, rule.model_copy())


def _utc(value: datetime) -> datetime:
    # SQLite drops tzinfo; every timestamp we write is UTC.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _user(row: UserRow) -> User:
    return User(user_id=row.user_id, transport_user_id=row.transport_user_id, role=row.role,
                school_id=row.school_id, language=row.language)


def _thread(row: ThreadRow) -> ChatThread:
    return ChatThread(thread_id=row.thread_id, school_id=row.school_id, created_at=_utc(row.created_at),
                      created_by=row.created_by, is_active=row.is_active)


def _message(row: MessageRow) -> ChatMessage:
    return ChatMessage(
        message_id=row.message_id, thread_id=row.thread_id, sender_id=row.sender_id,
        sender_role=row.sender_role, content=row.content, created_at=_utc(row.created_at),
        message_type=row.message_type, verified_status=row.verified_status,
        related_message_id=row.related_message_id, transport_message_id=row.transport_message_id,
    )


def _verification(row: VerificationRow) -> AIVerification:
    if row.verification_result == "unverified":
        return UnverifiedVerification(
            verification_id=row.verification_id, message_id=row.message_id, reason=row.reason or "",
            requires_human_review=row.requires_human_review, created_at=_utc(row.created_at),
        )
    return SuccessfulVerification(
        verification_id=row.verification_id, message_id=row.message_id,
        verification_result=row.verification_result, explanation=row.explanation or "",
        official_source_ids=list(row.official_source_ids or []), created_at=_utc(row.created_at),
    )


def _flag(row: ModerationFlagRow) -> ModerationFlag:
    metadata = SafetyMetadata.model_validate(row.safety_metadata) if row.safety_metadata else None
    return ModerationFlag(
        flag_id=row.flag_id, message_id=row.message_id, severity=row.severity, reason=row.reason,
        action_taken=row.action_taken, created_at=_utc(row.created_at), metadata=metadata,
    )


def _rule(row: OfficialRuleRow) -> OfficialRule:
    return OfficialRule(rule_id=row.rule_id, school_id=row.school_id, language=row.language, title=row.title,
                        content=row.content, category=row.category, last_updated=_utc(row.last_updated))


class SqlStore(MetadataStore):
    """SQLAlchemy async store; one short session per operation."""

    def __init__(self, dsn: str) -> None:
        self.engine = create_async_engine(dsn, echo=False)
        self.Session = async_sessionmaker(self.engine, expire_on_commit=False)

    async def init(self) -> None:
        """Create database schema if it doesn't exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    async def upsert_user(self, user: User) -> User:
        async with self.Session() as session:
            row = await session.get(UserRow, user.user_id)
            if row is None:
                row = UserRow(user_id=user.user_id, transport_user_id=user.transport_user_id, role=user.role,
                              school_id=user.school_id, language=user.language)
                session.add(row)
            else:
                row.transport_user_id = user.transport_user_id
            await session.commit()
            return _user(row)

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self.Session() as session:
            row = await session.get(UserRow, user_id)
            return _user(row) if row else None

    async def list_users(self, school_id: str) -> list[User]:
        async with self.Session() as session:
            res = await session.execute(select(UserRow).where(UserRow.school_id == school_id))
            return [_user(r) for r in res.scalars()]

    async def create_thread(self, thread: ChatThread) -> ChatThread:
        async with self.Session() as session:
            session.add(ThreadRow(**thread.model_dump()))
            await session.commit()
        return thread

    async def get_thread(self, thread_id: str) -> Optional[ChatThread]:
        async with self.Session() as session:
            row = await session.get(ThreadRow, thread_id)
            return _thread(row) if row else None

    async def find_active_thread(self, school_id: str) -> Optional[ChatThread]:
        q = (
            select(ThreadRow)
            .where(ThreadRow.school_id == school_id, ThreadRow.is_active.is_(True))
            .order_by(ThreadRow.created_at.desc())
            .limit(1)
        )
        async with self.Session() as session:
            row = (await session.execute(q)).scalar_one_or_none()
            return _thread(row) if row else None

    async def add_message(self, message: ChatMessage) -> ChatMessage:
        async with self.Session() as session:
            session.add(MessageRow(**message.model_dump()))
            await session.commit()
        return message

    async def get_message(self, message_id: str) -> Optional[ChatMessage]:
        async with self.Session() as session:
            res = await session.execute(select(MessageRow).where(MessageRow.message_id == message_id))
            row = res.scalar_one_or_none()
            return _message(row) if row else None

    async def list_messages(self, thread_id: str) -> list[ChatMessage]:
        q = select(MessageRow).where(MessageRow.thread_id == thread_id).order_by(MessageRow.seq)
        async with self.Session() as session:
            return [_message(r) for r in (await session.execute(q)).scalars()]

    async def set_verified_status(self, message_id: str, status: VerifiedStatus) -> bool:
        q = update(MessageRow).where(MessageRow.message_id == message_id).values(verified_status=status)
        async with self.Session() as session:
            res = await session.execute(q)
            await session.commit()
            return res.rowcount > 0

    async def add_verification(self, verification: AIVerification) -> AIVerification:
        row = VerificationRow(
            verification_id=verification.verification_id,
            message_id=verification.message_id,
            verification_result=verification.verification_result,
            created_at=verification.created_at,
        )
        match verification:
            case SuccessfulVerification(explanation=explanation, official_source_ids=sources):
                row.explanation = explanation
                row.official_source_ids = list(sources)
            case UnverifiedVerification(reason=reason, requires_human_review=review):
                row.reason = reason
                row.requires_human_review = review
        async with self.Session() as session:
            session.add(row)
            await session.commit()
        return verification

    async def list_verifications(self, message_ids: Collection[str]) -> list[AIVerification]:
        if not message_ids:
            return []
        q = select(VerificationRow).where(VerificationRow.message_id.in_(list(message_ids))).order_by(VerificationRow.seq)
        async with self.Session() as session:
            return [_verification(r) for r in (await session.execute(q)).scalars()]

    async def list_verifications_by_result(self, result: str) -> list[AIVerification]:
        q = select(VerificationRow).where(VerificationRow.verification_result == result).order_by(VerificationRow.seq)
        async with self.Session() as session:
            return [_verification(r) for r in (await session.execute(q)).scalars()]

    async def add_moderation_flag(self, flag: ModerationFlag) -> ModerationFlag:
        row = ModerationFlagRow(
            flag_id=flag.flag_id, message_id=flag.message_id, severity=flag.severity, reason=flag.reason,
            action_taken=flag.action_taken, created_at=flag.created_at,
            safety_metadata=flag.metadata.model_dump(mode="json") if flag.metadata else None,
        )
        async with self.Session() as session:
            session.add(row)
            await session.commit()
        return flag

    async def list_moderation_flags(self, message_ids: Collection[str]) -> list[ModerationFlag]:
        if not message_ids:
            return []
        q = select(ModerationFlagRow).where(ModerationFlagRow.message_id.in_(list(message_ids))).order_by(ModerationFlagRow.seq)
        async with self.Session() as session:
            return [_flag(r) for r in (await session.execute(q)).scalars()]

    async def list_moderation_flags_by_severity(self, severity: ModerationSeverity) -> list[ModerationFlag]:
        q = select(ModerationFlagRow).where(ModerationFlagRow.severity == severity).order_by(ModerationFlagRow.seq)
        async with self.Session() as session:
            return [_flag(r) for r in (await session.execute(q)).scalars()]

    async def list_rules(self, school_id: str, language: Optional[str] = None) -> list[OfficialRule]:
        q = select(OfficialRuleRow).where(OfficialRuleRow.school_id == school_id)
        if language is not None:
            q = q.where(OfficialRuleRow.language == language)
        async with self.Session() as session:
            return [_rule(r) for r in (await session.execute(q.order_by(OfficialRuleRow.rule_id))).scalars()]

    async def seed_rules(self, rules: list[OfficialRule]) -> None:
        async with self.Session() as session:
            for rule in rules:
                if await session.get(OfficialRuleRow, rule.rule_id) is None:
                    session.add(OfficialRuleRow(**rule.model_dump()))
            await session.commit()


def build_store(settings: Settings) -> MetadataStore:
    """Return the store selected by `STORE_DSN` (empty -> in-memory)."""
    if settings.STORE_DSN:
        log.info("using SQL metadata store")
        return SqlStore(settings.STORE_DSN)
    log.info("using in-memory metadata store")
    return InMemoryStore()
