"""Shared builders for the chat service tests.

Vendor HTTP calls go through `httpx.MockTransport`; the metadata store is the
in-memory one unless a test wires `SqlStore` explicitly.
"""

import json
from typing import Callable, Optional

import httpx

from services.chat.oracle import RuleMatchOracle, VerificationOracle
from services.chat.repo import InMemoryStore, MetadataStore
from services.chat.safety import AzureContentSafetyClient
from services.chat.service import ChatService
from services.chat.transport import SimulatedTransport

SAFETY_ENDPOINT = "https://safety.example.test/"
UNSAFE_MARKER = "[unsafe]"


def safety_handler(request: httpx.Request) -> httpx.Response:
    """Classify as Violence severity 4 when the text carries the unsafe marker, else all zero."""
    text = json.loads(request.content)["text"]
    violence = 4 if UNSAFE_MARKER in text else 0
    return httpx.Response(200, json={"categoriesAnalysis": [
        {"category": "Hate", "severity": 0},
        {"category": "Violence", "severity": violence},
        {"category": "SelfHarm", "severity": 0},
        {"category": "Sexual", "severity": 0},
    ]})


def make_safety(handler: Callable[[httpx.Request], httpx.Response] = safety_handler,
                endpoint: str = SAFETY_ENDPOINT, key: str = "test-key") -> AzureContentSafetyClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AzureContentSafetyClient(endpoint, key, client=client)


def make_service(
    store: Optional[MetadataStore] = None,
    oracle: Optional[VerificationOracle] = None,
    safety: Optional[AzureContentSafetyClient] = None,
    transport: Optional[SimulatedTransport] = None,
    store_message_content: bool = True,
) -> ChatService:
    return ChatService(
        store=store or InMemoryStore(),
        transport=transport or SimulatedTransport(),
        safety=safety or make_safety(),
        oracle=oracle or RuleMatchOracle(),
        store_message_content=store_message_content,
        seed_school_id="demo-school",
    )
