"""Incremental decoder for the chat-completion Server-Sent-Events stream.

Upstream frames look like ``data: {"choices":[{"delta":{"content":"..."}}]}``
separated by blank lines and terminated by ``data: [DONE]``. `SSEDecoder`
turns arbitrary byte chunks (frames and even UTF-8 sequences may be split
anywhere) into the content tokens, in order, exactly once each.
"""

from __future__ import annotations

import codecs
import json
from typing import AsyncIterator, List, Optional

DONE_SENTINEL = "[DONE]"


def _delta_content(event: object) -> Optional[str]:
    try:
        token = event["choices"][0]["delta"]["content"]  # type: ignore[index]
    except (KeyError, IndexError, TypeError):
        return None
    return token if isinstance(token, str) else None


class SSEDecoder:
    """Buffering state for one upstream stream.

    Attributes:
        done: set once the ``[DONE]`` sentinel is seen; later input is ignored.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, chunk: bytes) -> List[str]:
        """Consume a chunk and return the tokens of every block it completed."""
        if self.done:
            return []
        self._buffer += self._utf8.decode(chunk)
        self._buffer = self._buffer.replace("\r\n", "\n")
        *blocks, self._buffer = self._buffer.split("\n\n")
        tokens: List[str] = []
        for block in blocks:
            self._parse_block(block, tokens)
            if self.done:
                break
        return tokens

    def finish(self) -> List[str]:
        """Flush at end of input; a trailing block without a blank line still counts."""
        if self.done:
            return []
        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        tokens: List[str] = []
        self._parse_block(tail.replace("\r\n", "\n"), tokens)
        return tokens

    def _parse_block(self, block: str, tokens: List[str]) -> None:
        for line in block.split("\n"):
            line = line.strip()
            if not line.startswith("data:"):
                continue
            payload = line[5:].strip()
            if payload == DONE_SENTINEL:
                self.done = True
                self._buffer = ""
                return
            try:
                event = json.loads(payload)
            except ValueError:
                # Malformed frame: skip it, keep the stream alive
                continue
            token = _delta_content(event)
            if token is not None:
                tokens.append(token)


async def iter_tokens(chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
    """Yield content tokens from an async byte iterator until ``[DONE]`` or EOF."""
    decoder = SSEDecoder()
    async for chunk in chunks:
        for token in decoder.feed(chunk):
            yield token
        if decoder.done:
            return
    for token in decoder.finish():
        yield token
