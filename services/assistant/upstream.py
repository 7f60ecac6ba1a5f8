"""Streaming chat-completion client and the per-request stream state.

`AzureChatStreamer.open` returns only once the upstream has answered with a
success status, so every failure before the first byte surfaces as an
`UpstreamError` the route can turn into a JSON error. After that point the
response belongs to an `AssistantStream`, which forwards tokens as they are
decoded and always releases the upstream connection.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Optional

import httpx

from packages.common import metrics
from packages.common.config import Settings
from packages.common.errors import UpstreamError
from .sse import SSEDecoder

log = logging.getLogger(__name__)

APOLOGY = "Sorry, something went wrong while contacting the AI. Please try again."


class StreamState(str, Enum):
    AWAITING_FIRST_BYTE = "awaiting_first_byte"
    STREAMING = "streaming"
    DONE = "done"
    CLIENT_CANCELLED = "client_cancelled"
    UPSTREAM_ERROR = "upstream_error"


class AzureChatStreamer:
    """Opens `stream: true` chat-completion requests against one deployment URL."""

    def __init__(self, url: str, api_key: str, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 30.0) -> None:
        self.url = url
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def open(self, messages: list[dict[str, str]]) -> httpx.Response:
        """Send the request and return the still-unread streaming response.

        Raises:
            UpstreamError: transport failure, non-OK status or empty response.
        """
        request = self._client.build_request(
            "POST",
            self.url,
            headers={"Content-Type": "application/json", "api-key": self.api_key},
            json={"stream": True, "messages": messages},
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            log.error("chat completion request failed: %s", e)
            raise UpstreamError(APOLOGY) from e

        if not response.is_success or response.status_code == 204:
            detail = (await response.aread()).decode("utf-8", "replace")[:500]
            await response.aclose()
            log.error("chat completion rejected", extra={"status": response.status_code, "detail": detail})
            raise UpstreamError(APOLOGY)
        return response

    async def aclose(self) -> None:
        await self._client.aclose()


class AssistantStream:
    """Relays decoded tokens from one upstream response to one client."""

    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        self.decoder = SSEDecoder()
        self.state = StreamState.AWAITING_FIRST_BYTE
        self.tokens_sent = 0

    async def tokens(self) -> AsyncIterator[str]:
        """Yield tokens until `[DONE]`, EOF, upstream failure or client cancellation.

        An upstream failure after streaming started ends the stream quietly;
        the apology is emitted only if the client has not seen any token yet.
        """
        try:
            async for chunk in self.response.aiter_bytes():
                if self.state is StreamState.AWAITING_FIRST_BYTE:
                    self.state = StreamState.STREAMING
                for token in self.decoder.feed(chunk):
                    self.tokens_sent += 1
                    yield token
                if self.decoder.done:
                    break
            else:
                for token in self.decoder.finish():
                    self.tokens_sent += 1
                    yield token
            self.state = StreamState.DONE
        except (asyncio.CancelledError, GeneratorExit):
            self.state = StreamState.CLIENT_CANCELLED
            raise
        except httpx.HTTPError as e:
            self.state = StreamState.UPSTREAM_ERROR
            log.error("upstream stream broke", extra={"tokens_sent": self.tokens_sent, "error": str(e)})
            if self.tokens_sent == 0:
                yield APOLOGY
        finally:
            metrics.mark_stream(self.state.value)
            log.info("assistant stream closed", extra={"state": self.state.value, "tokens_sent": self.tokens_sent})
            # Shielded so a cancelled request still releases the connection
            await asyncio.shield(self.response.aclose())


def build_streamer(settings: Settings) -> AzureChatStreamer:
    """Create the streamer for the configured deployment.

    Raises:
        MisconfigurationError: if the Azure OpenAI settings are incomplete.
    """
    return AzureChatStreamer(
        settings.chat_completions_url(),
        settings.AZURE_OPENAI_API_KEY,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
