# services/assistant/routes.py
"""HTTP route of the school-support assistant: POST /assistant/chat.

The response is plain incremental text. The upstream SSE framing is decoded
server-side and only the content tokens are written to the client.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from packages.common.config import Settings, get_settings
from packages.common.errors import InvalidRequestError, MisconfigurationError
from packages.schemas.assistant import AssistantChatRequest
from .guardrails import is_prompt_injection, sanitize
from .prompts import build_system_prompt
from .upstream import AssistantStream, AzureChatStreamer, build_streamer

log = logging.getLogger(__name__)

router = APIRouter()

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def get_streamer(request: Request, settings: Settings = Depends(get_settings)) -> AzureChatStreamer:
    """Return the app's streamer; a 500 when Azure OpenAI is not configured."""
    streamer = getattr(request.app.state, "assistant_streamer", None)
    if streamer is None:
        try:
            streamer = build_streamer(settings)
        except MisconfigurationError as e:
            log.error("assistant unavailable: %s", e.message)
            raise MisconfigurationError("Server misconfiguration.") from e
        request.app.state.assistant_streamer = streamer
    return streamer


async def _parse(request: Request) -> AssistantChatRequest:
    try:
        payload = await request.json()
    except ValueError as e:
        raise InvalidRequestError("Invalid JSON.") from e
    if not isinstance(payload, dict) or not payload.get("messages"):
        raise InvalidRequestError("Empty conversation.")
    try:
        return AssistantChatRequest.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(p) for p in first["loc"])
        raise InvalidRequestError(f"{where}: {first['msg']}") from e


@router.post("/assistant/chat", tags=["assistant"])
async def chat(
    request: Request,
    settings: Settings = Depends(get_settings),
    streamer: AzureChatStreamer = Depends(get_streamer),
) -> StreamingResponse:
    """Stream a scoped answer to the conversation in `messages`.

    Raises:
        InvalidRequestError: 400 for bad JSON, empty conversation or injection;
            413 when the latest user message is too long.
        MisconfigurationError: 500 when Azure OpenAI settings are missing.
        UpstreamError: 502 when the provider fails before streaming starts.
    """
    body = await _parse(request)
    user_turns = [m for m in body.messages if m.role == "user"]
    latest = sanitize(user_turns[-1].content) if user_turns else ""
    if not latest:
        raise InvalidRequestError("Your message cannot be empty.")
    limit = settings.ASSISTANT_MAX_MESSAGE_LENGTH
    if len(latest) > limit:
        raise InvalidRequestError(
            f"Your message is too long. Please keep it under {limit} characters.", status_code=413,
        )
    if is_prompt_injection(latest):
        raise InvalidRequestError("prompt injection detected")

    messages = [{"role": "system", "content": build_system_prompt(body.language, body.mode)}]
    history = [{"role": m.role, "content": m.content} for m in body.messages]
    last_user = max(i for i, m in enumerate(body.messages) if m.role == "user")
    history[last_user]["content"] = latest
    messages += history
    response = await streamer.open(messages)
    stream = AssistantStream(response)
    return StreamingResponse(stream.tokens(), media_type="text/plain; charset=utf-8", headers=STREAM_HEADERS)
