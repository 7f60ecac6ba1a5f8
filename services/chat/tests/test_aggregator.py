"""Tests for the thread aggregator (read-side projection)."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from packages.common.errors import NotFoundError
from packages.schemas.chat import ChatMessage, ChatThread, ModerationFlag, SuccessfulVerification, User
from services.chat.aggregator import ThreadAggregator
from services.chat.repo import InMemoryStore, demo_rules
from services.chat.transport import AcsTransport, SimulatedTransport

T0 = datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc)


def _message(message_id: str, thread_id: str, at: datetime, content="hello", **kw) -> ChatMessage:
    return ChatMessage(
        message_id=message_id, thread_id=thread_id, sender_id=kw.pop("sender_id", "student-1"),
        sender_role="student", content=content, created_at=at, message_type="student_answer", **kw,
    )


async def _seeded(student: User) -> tuple[InMemoryStore, SimulatedTransport]:
    store, transport = InMemoryStore(), SimulatedTransport()
    await store.upsert_user(student)
    await store.seed_rules(demo_rules("demo-school"))
    await store.create_thread(ChatThread(thread_id="t1", school_id="demo-school", created_at=T0, created_by=student.user_id))
    await store.create_thread(ChatThread(thread_id="t2", school_id="demo-school", created_at=T0, created_by=student.user_id))
    transport.threads.update(t1=[], t2=[])
    return store, transport


@pytest.mark.asyncio
async def test_messages_are_ordered_by_time_with_ties_in_insertion_order(student) -> None:
    store, transport = await _seeded(student)
    await store.add_message(_message("late", "t1", T0 + timedelta(minutes=5)))
    await store.add_message(_message("tie-a", "t1", T0 + timedelta(minutes=1)))
    await store.add_message(_message("tie-b", "t1", T0 + timedelta(minutes=1)))
    await store.add_message(_message("early", "t1", T0))

    thread = await ThreadAggregator(store, transport).build("t1")

    assert [m.message_id for m in thread.messages] == ["early", "tie-a", "tie-b", "late"]


@pytest.mark.asyncio
async def test_only_annotations_of_this_threads_messages_are_joined(student) -> None:
    store, transport = await _seeded(student)
    await store.add_message(_message("m1", "t1", T0))
    await store.add_message(_message("other", "t2", T0))
    for mid in ("m1", "other"):
        await store.add_verification(SuccessfulVerification(
            verification_id=f"v-{mid}", message_id=mid, verification_result="confirmed",
            explanation="ok", official_source_ids=["attendance-001"], created_at=T0,
        ))
        await store.add_moderation_flag(ModerationFlag(
            flag_id=f"f-{mid}", message_id=mid, severity="low", reason="Routine scan",
            action_taken="none", created_at=T0,
        ))

    thread = await ThreadAggregator(store, transport).build("t1")

    assert [v.verification_id for v in thread.verifications] == ["v-m1"]
    assert [f.flag_id for f in thread.moderation_flags] == ["f-m1"]
    assert {r.rule_id for r in thread.official_rules} == {
        "attendance-001", "behavior-002", "exams-003", "administrative-004",
    }
    assert [u.user_id for u in thread.users] == ["student-1"]


@pytest.mark.asyncio
async def test_missing_content_is_reconciled_from_the_transport(student) -> None:
    store, transport = await _seeded(student)
    delivery = await transport.send("t1", "Check in by 8:15", student.transport_user_id)
    await store.add_message(_message("m1", "t1", delivery.delivered_at, content=None,
                                     transport_message_id=delivery.message_id))

    thread = await ThreadAggregator(store, transport).build("t1")

    assert thread.messages[0].content == "Check in by 8:15"
    assert (await store.get_message("m1")).content is None


@pytest.mark.asyncio
async def test_failed_transport_lookup_degrades_to_empty_content(student) -> None:
    store, transport = await _seeded(student)
    await store.add_message(_message("lost", "t1", T0, content=None, sender_id=""))
    await store.add_message(_message("kept", "t1", T0 + timedelta(seconds=1)))

    thread = await ThreadAggregator(store, transport).build("t1")

    lost, kept = thread.messages
    assert (lost.content, lost.sender_id) == ("", "unknown")
    assert kept.content == "hello"


@pytest.mark.asyncio
async def test_unreadable_transport_body_does_not_fail_the_thread(student) -> None:
    store, _ = await _seeded(student)
    gateway = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>gateway</html>"))
    acs = AcsTransport("https://acs.example.test", "token", client=httpx.AsyncClient(transport=gateway))
    await store.add_message(_message("m1", "t1", T0, content=None, transport_message_id="acs-1"))

    thread = await ThreadAggregator(store, acs).build("t1")

    assert [m.content for m in thread.messages] == [""]


@pytest.mark.asyncio
async def test_build_is_idempotent(student) -> None:
    store, transport = await _seeded(student)
    await store.add_message(_message("m1", "t1", T0))
    aggregator = ThreadAggregator(store, transport)

    first = await aggregator.build("t1")
    second = await aggregator.build("t1")

    assert first == second


@pytest.mark.asyncio
async def test_unknown_thread_and_message_raise_not_found(student) -> None:
    store, transport = await _seeded(student)
    aggregator = ThreadAggregator(store, transport)

    with pytest.raises(NotFoundError):
        await aggregator.build("missing")
    with pytest.raises(NotFoundError):
        await aggregator.find_message("missing")
