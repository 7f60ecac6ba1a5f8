"""Tests for the SQLAlchemy metadata store (SQLite via aiosqlite)."""

from datetime import datetime, timedelta, timezone

import pytest

from packages.schemas.chat import (
    ChatMessage,
    ChatThread,
    ModerationFlag,
    SafetyMetadata,
    SuccessfulVerification,
    UnverifiedVerification,
    User,
)
from services.chat.repo import SqlStore, demo_rules
from .helpers import make_service

T0 = datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc)


def _store(tmp_path) -> SqlStore:
    return SqlStore(f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}")


def _message(message_id: str, at: datetime, content="hello") -> ChatMessage:
    return ChatMessage(message_id=message_id, thread_id="t1", sender_id="student-1", sender_role="student",
                       content=content, created_at=at, message_type="student_answer")


@pytest.mark.asyncio
async def test_users_keep_their_profile_and_refresh_transport_identity(tmp_path) -> None:
    store = _store(tmp_path)
    await store.init()
    try:
        await store.upsert_user(User(user_id="u1", transport_user_id="acs-1", role="student", school_id="s1"))
        again = await store.upsert_user(User(user_id="u1", transport_user_id="acs-2", role="moderator", school_id="s2"))

        assert (again.transport_user_id, again.role, again.school_id) == ("acs-2", "student", "s1")
        assert [u.user_id for u in await store.list_users("s1")] == ["u1"]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_active_thread_lookup_returns_the_most_recent(tmp_path) -> None:
    store = _store(tmp_path)
    await store.init()
    try:
        await store.create_thread(ChatThread(thread_id="old", school_id="s1", created_at=T0, created_by="u1"))
        await store.create_thread(ChatThread(thread_id="new", school_id="s1",
                                             created_at=T0 + timedelta(days=1), created_by="u1"))
        await store.create_thread(ChatThread(thread_id="closed", school_id="s1", created_at=T0 + timedelta(days=2),
                                             created_by="u1", is_active=False))

        assert (await store.find_active_thread("s1")).thread_id == "new"
        assert await store.find_active_thread("s2") is None
        assert (await store.get_thread("old")).created_at == T0
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_messages_keep_insertion_order_and_status_updates_touch_one_field(tmp_path) -> None:
    store = _store(tmp_path)
    await store.init()
    try:
        await store.add_message(_message("b", T0 + timedelta(minutes=1)))
        await store.add_message(_message("a", T0, content=None))

        assert [m.message_id for m in await store.list_messages("t1")] == ["b", "a"]
        assert await store.set_verified_status("a", "conflict") is True
        assert await store.set_verified_status("missing", "verified") is False
        updated = await store.get_message("a")
        assert (updated.verified_status, updated.content, updated.created_at) == ("conflict", None, T0)
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_both_verification_shapes_round_trip(tmp_path) -> None:
    store = _store(tmp_path)
    await store.init()
    try:
        ok = SuccessfulVerification(verification_id="v1", message_id="m1", verification_result="incorrect",
                                    explanation="Contradicts exams-003.", official_source_ids=["exams-003"],
                                    created_at=T0)
        pending = UnverifiedVerification(verification_id="v2", message_id="m1", reason="Timed out.",
                                         created_at=T0 + timedelta(seconds=1))
        await store.add_verification(ok)
        await store.add_verification(pending)

        assert await store.list_verifications(["m1"]) == [ok, pending]
        assert await store.list_verifications([]) == []
        assert await store.list_verifications_by_result("unverified") == [pending]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_moderation_flags_keep_safety_metadata(tmp_path) -> None:
    store = _store(tmp_path)
    await store.init()
    try:
        flag = ModerationFlag(
            flag_id="f1", message_id="m1", severity="high", reason="Azure Content Safety blocked a student message.",
            action_taken="warning_posted", created_at=T0,
            metadata=SafetyMetadata(categories={"Violence": 4, "Hate": 0}, blocked=True, created_at=T0),
        )
        await store.add_moderation_flag(flag)

        assert await store.list_moderation_flags(["m1"]) == [flag]
        assert await store.list_moderation_flags_by_severity("high") == [flag]
        assert await store.list_moderation_flags_by_severity("low") == []
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_rule_seeding_is_idempotent(tmp_path) -> None:
    store = _store(tmp_path)
    await store.init()
    try:
        await store.seed_rules(demo_rules("s1"))
        await store.seed_rules(demo_rules("s1"))

        rules = await store.list_rules("s1")
        assert [r.rule_id for r in rules] == ["administrative-004", "attendance-001", "behavior-002", "exams-003"]
        assert await store.list_rules("s1", language="fr") == []
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_service_runs_end_to_end_on_the_sql_store(tmp_path, student) -> None:
    service = make_service(store=_store(tmp_path))
    await service.startup()
    try:
        sent = await service.send_message(student, "Attendance is at 8:15", school_id="demo-school")
        out = await service.verify(sent.message.message_id)

        assert out.verification.verification_result == "confirmed"
        statuses = {m.message_id: m.verified_status for m in out.thread.messages}
        assert statuses[sent.message.message_id] == "verified"
        assert len(out.thread.verifications) == 1
    finally:
        await service.aclose()
