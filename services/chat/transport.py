"""Chat transport: delivery of message bytes to a thread.

The transport is the sender of record. It mints the thread and message
identifiers and its delivery timestamp is the authoritative message time.

- `SimulatedTransport`: in-process transport used when ACS is not configured.
- `AcsTransport`: Azure Communication Services chat REST API over httpx.

Reads (`try_get_message`, `try_list_messages`) are best-effort: they return
None / [] instead of raising, so callers can treat the transport as an
optional content source.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from packages.common.config import Settings, normalize_endpoint
from packages.common.errors import TransportError
from packages.schemas.chat import TransportIdentity

log = logging.getLogger(__name__)

CHAT_API_VERSION = "2024-10-15-preview"


@dataclass(frozen=True)
class Delivery:
    message_id: str
    delivered_at: datetime
    content: str


@dataclass(frozen=True)
class TransportEnvelope:
    message_id: str
    content: str
    sender_transport_id: Optional[str]
    delivered_at: Optional[datetime]


class ChatTransport(ABC):
    """Contract for the chat delivery layer."""

    @abstractmethod
    async def create_thread(self, topic: str, creator_transport_id: str) -> str:
        """Create a transport thread and return its identifier."""

    @abstractmethod
    async def send(
        self,
        thread_id: str,
        content: str,
        sender_transport_id: str,
        display_name: Optional[str] = None,
    ) -> Delivery:
        """Deliver `content`; raises TransportError with the transport's status code."""

    @abstractmethod
    async def try_get_message(self, thread_id: str, message_id: str, reader_transport_id: str) -> Optional[TransportEnvelope]:
        ...

    @abstractmethod
    async def try_list_messages(self, thread_id: str, reader_transport_id: str) -> list[TransportEnvelope]:
        ...

    async def create_identity(self) -> TransportIdentity:
        """Issue a chat identity for a new participant."""
        return TransportIdentity(
            transport_user_id=f"sim-{uuid.uuid4()}",
            token="simulated-acs-token",
            expires_on=datetime.now(timezone.utc) + timedelta(hours=1),
            simulated=True,
        )

    async def aclose(self) -> None:
        """Release network resources; no-op unless overridden."""


class SimulatedTransport(ChatTransport):
    """In-process transport; keeps delivered envelopes so reads can be served."""

    def __init__(self, max_message_chars: int = 8000) -> None:
        self.max_message_chars = max_message_chars
        self.threads: dict[str, list[TransportEnvelope]] = {}

    async def create_thread(self, topic: str, creator_transport_id: str) -> str:
        thread_id = str(uuid.uuid4())
        self.threads[thread_id] = []
        log.info("simulated thread created", extra={"thread_id": thread_id, "topic": topic})
        return thread_id

    async def send(
        self,
        thread_id: str,
        content: str,
        sender_transport_id: str,
        display_name: Optional[str] = None,
    ) -> Delivery:
        if thread_id not in self.threads:
            raise TransportError("Thread not found", status_code=404)
        text = content.strip()
        if len(text) > self.max_message_chars:
            raise TransportError("Message exceeds the transport size limit", status_code=413)
        delivery = Delivery(message_id=str(uuid.uuid4()), delivered_at=datetime.now(timezone.utc), content=text)
        self.threads[thread_id].append(
            TransportEnvelope(delivery.message_id, text, sender_transport_id, delivery.delivered_at)
        )
        return delivery

    async def try_get_message(self, thread_id: str, message_id: str, reader_transport_id: str) -> Optional[TransportEnvelope]:
        for envelope in self.threads.get(thread_id, []):
            if envelope.message_id == message_id:
                return envelope
        return None

    async def try_list_messages(self, thread_id: str, reader_transport_id: str) -> list[TransportEnvelope]:
        return list(self.threads.get(thread_id, []))


def _parse_time(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None


def _envelope(item: dict[str, Any]) -> TransportEnvelope:
    sender = (item.get("senderCommunicationIdentifier") or {}).get("communicationUserId")
    return TransportEnvelope(
        message_id=item["id"],
        content=(item.get("content") or {}).get("message", ""),
        sender_transport_id=sender,
        delivered_at=_parse_time(item.get("createdOn")),
    )


class AcsTransport(ChatTransport):
    """Azure Communication Services chat over REST, acting as the service identity."""

    def __init__(self, endpoint: str, access_token: str, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 30.0) -> None:
        self.endpoint = normalize_endpoint(endpoint, "ACS_ENDPOINT").rstrip("/")
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"},
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        sep = "&" if "?" in path else "?"
        url = f"{self.endpoint}{path}{sep}api-version={CHAT_API_VERSION}"
        try:
            res = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(f"ACS request failed: {e.__class__.__name__}", status_code=503) from e
        if res.is_error:
            raise TransportError(f"ACS request failed: {res.status_code} {res.text}", status_code=res.status_code)
        if res.status_code == 204:
            return None
        try:
            return res.json()
        except ValueError as e:
            raise TransportError("ACS returned a body that is not JSON.", status_code=502) from e

    async def create_thread(self, topic: str, creator_transport_id: str) -> str:
        body = {
            "topic": topic,
            "participants": [{
                "id": {"communicationUserId": creator_transport_id},
                "displayName": "Thread Owner",
                "shareHistoryTime": datetime.now(timezone.utc).isoformat(),
            }],
            "idempotencyToken": str(uuid.uuid4()),
        }
        data = await self._request("POST", "/chat/threads", json=body) or {}
        thread_id = (data.get("chatThread") or {}).get("id") or data.get("id") or data.get("chatThreadId")
        if not thread_id:
            raise TransportError("ACS did not return a thread id.", status_code=502)
        return thread_id

    async def send(
        self,
        thread_id: str,
        content: str,
        sender_transport_id: str,
        display_name: Optional[str] = None,
    ) -> Delivery:
        text = content.strip()
        body = {"content": text, "type": "text", "senderDisplayName": display_name}
        data = await self._request("POST", f"/chat/threads/{thread_id}/messages", json=body) or {}
        if "id" not in data:
            raise TransportError("ACS did not return a message id.", status_code=502)
        return Delivery(message_id=data["id"], delivered_at=datetime.now(timezone.utc), content=text)

    async def try_get_message(self, thread_id: str, message_id: str, reader_transport_id: str) -> Optional[TransportEnvelope]:
        try:
            data = await self._request("GET", f"/chat/threads/{thread_id}/messages/{message_id}")
            return _envelope(data) if data else None
        except (TransportError, KeyError, TypeError, AttributeError) as e:
            log.warning("ACS message read failed: %s", e)
            return None

    async def try_list_messages(self, thread_id: str, reader_transport_id: str) -> list[TransportEnvelope]:
        try:
            data = await self._request("GET", f"/chat/threads/{thread_id}/messages?maxPageSize=50") or {}
            return [_envelope(item) for item in data.get("value", []) if item.get("type") == "text"]
        except (TransportError, KeyError, TypeError, AttributeError) as e:
            log.warning("ACS message listing failed: %s", e)
            return []

    async def aclose(self) -> None:
        await self._client.aclose()


def build_transport(settings: Settings) -> ChatTransport:
    """ACS when configured, otherwise the in-process simulation."""
    if settings.acs_configured():
        return AcsTransport(settings.ACS_ENDPOINT, settings.ACS_ACCESS_TOKEN, timeout=settings.HTTP_TIMEOUT_SECONDS)
    return SimulatedTransport(max_message_chars=settings.TRANSPORT_MAX_MESSAGE_CHARS)
