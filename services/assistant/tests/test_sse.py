"""Tests for the incremental SSE decoder."""

import json

import pytest

from services.assistant.sse import SSEDecoder, iter_tokens


def frame(token) -> bytes:
    return f"data: {json.dumps({'choices': [{'delta': {'content': token}}]}, ensure_ascii=False)}\n\n".encode()


def test_tokens_come_out_in_order() -> None:
    decoder = SSEDecoder()
    assert decoder.feed(frame("Hel") + frame("lo")) == ["Hel", "lo"]
    assert decoder.done is False


def test_frames_split_anywhere_are_reassembled_exactly_once() -> None:
    payload = frame("Bonjour") + frame("élève") + frame("مرحبا") + b"data: [DONE]\n\n"
    decoder = SSEDecoder()
    tokens = []
    for i in range(len(payload)):
        tokens += decoder.feed(payload[i:i + 1])
    assert tokens == ["Bonjour", "élève", "مرحبا"]
    assert decoder.done is True


def test_crlf_framing_is_accepted() -> None:
    raw = frame("a").replace(b"\n", b"\r\n") + b"data: [DONE]\r\n\r\n"
    decoder = SSEDecoder()
    assert decoder.feed(raw) == ["a"]
    assert decoder.done is True


def test_done_stops_decoding_and_later_input_is_ignored() -> None:
    decoder = SSEDecoder()
    assert decoder.feed(frame("a") + b"data: [DONE]\n\n" + frame("b")) == ["a"]
    assert decoder.feed(frame("c")) == []
    assert decoder.finish() == []


def test_malformed_and_empty_frames_are_skipped() -> None:
    decoder = SSEDecoder()
    raw = (
        b"data: {not json\n\n"
        + b'data: {"choices": []}\n\n'
        + b'data: {"choices": [{"delta": {}}]}\n\n'
        + b'data: {"choices": [{"delta": {"content": 7}}]}\n\n'
        + b": keep-alive comment\n\n"
        + b"event: ping\n\n"
        + frame("ok")
    )
    assert decoder.feed(raw) == ["ok"]


def test_trailing_partial_block_waits_for_more_input() -> None:
    decoder = SSEDecoder()
    chunk = frame("x")
    assert decoder.feed(chunk[:-1]) == []
    assert decoder.feed(chunk[-1:]) == ["x"]


def test_finish_flushes_a_final_block_without_blank_line() -> None:
    decoder = SSEDecoder()
    assert decoder.feed(frame("a") + frame("b")[:-2]) == ["a"]
    assert decoder.finish() == ["b"]


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


@pytest.mark.asyncio
async def test_iter_tokens_stops_at_done() -> None:
    tokens = [t async for t in iter_tokens(_chunks(frame("a"), b"data: [DONE]\n\n", frame("late")))]
    assert tokens == ["a"]


@pytest.mark.asyncio
async def test_iter_tokens_flushes_at_eof() -> None:
    tokens = [t async for t in iter_tokens(_chunks(frame("a"), b'data: {"choices":[{"delta":{"content":"z"}}]}'))]
    assert tokens == ["a", "z"]
