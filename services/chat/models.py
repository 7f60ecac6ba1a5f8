"""SQLAlchemy models for the durable chat metadata store.

Tables:
- users, threads, messages: identity/metadata records
- verifications, moderation_flags: append-only facts keyed by message
- official_rules: seeded per school, read-only to the chat service
"""

from datetime import datetime

from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy import Boolean, DateTime, Integer, JSON, String, Text

Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    transport_user_id: Mapped[str] = mapped_column(String(128))
    role: Mapped[str] = mapped_column(String(16))
    school_id: Mapped[str] = mapped_column(String(64), index=True)
    language: Mapped[str] = mapped_column(String(8), default="en")


class ThreadRow(Base):
    __tablename__ = "threads"
    thread_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    school_id: Mapped[str] = mapped_column(String(64), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[str] = mapped_column(String(64))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class MessageRow(Base):
    """Message metadata.

    Attributes:
        seq: Insertion order; breaks ties between equal `created_at` values.
        content: Local copy of the text, NULL when only the transport holds it.
        verified_status: The single field updated in place after creation.
    """

    __tablename__ = "messages"
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    thread_id: Mapped[str] = mapped_column(String(128), index=True)
    sender_id: Mapped[str] = mapped_column(String(64))
    sender_role: Mapped[str] = mapped_column(String(16))
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    message_type: Mapped[str] = mapped_column(String(32))
    verified_status: Mapped[str] = mapped_column(String(32), default="unverified")
    related_message_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    transport_message_id: Mapped[str | None] = mapped_column(String(128), nullable=True)


class VerificationRow(Base):
    """Both verification shapes in one table; `verification_result` is the discriminant."""

    __tablename__ = "verifications"
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    verification_id: Mapped[str] = mapped_column(String(64), unique=True)
    message_id: Mapped[str] = mapped_column(String(64), index=True)
    verification_result: Mapped[str] = mapped_column(String(32), index=True)
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    official_source_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    requires_human_review: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class ModerationFlagRow(Base):
    __tablename__ = "moderation_flags"
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    flag_id: Mapped[str] = mapped_column(String(64), unique=True)
    message_id: Mapped[str] = mapped_column(String(64), index=True)
    severity: Mapped[str] = mapped_column(String(8), index=True)
    reason: Mapped[str] = mapped_column(Text)
    action_taken: Mapped[str] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    safety_metadata: Mapped[dict | None] = mapped_column(JSON, nullable=True)


class OfficialRuleRow(Base):
    __tablename__ = "official_rules"
    rule_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    school_id: Mapped[str] = mapped_column(String(64), index=True)
    language: Mapped[str] = mapped_column(String(8))
    title: Mapped[str] = mapped_column(String(200))
    content: Mapped[str] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(32))
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True))
