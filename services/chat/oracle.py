"""Verification oracle: judges a student message against a school's official rules.

Two outcome shapes, never an exception:

- `OracleVerdict`: confirmed / partially_correct / incorrect, with cited rule ids.
- `OracleUnverified`: the oracle could not decide; a human must review.

`AzureOpenAIOracle` asks a chat-completion deployment for a JSON verdict and
validates it against `VERDICT_SCHEMA`; any network, status, parse or schema
failure becomes `OracleUnverified`. `RuleMatchOracle` is the deterministic
oracle used when no model is configured.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import httpx
from jsonschema import ValidationError, validate

from packages.common.config import Settings
from packages.schemas.chat import ChatMessage, OfficialRule, VerificationResult

log = logging.getLogger(__name__)

JsonObj = dict[str, Any]

VERDICT_SCHEMA: JsonObj = {
    "type": "object",
    "required": ["verificationResult", "explanation"],
    "properties": {
        "verificationResult": {"type": "string", "enum": ["confirmed", "partially_correct", "incorrect"]},
        "explanation": {"type": "string"},
        "officialSourceIds": {"type": ["array", "null"], "items": {"type": "string"}},
    },
    "additionalProperties": True,
}

SYSTEM_INSTRUCTION = "You only return JSON with keys verificationResult, explanation, officialSourceIds."


@dataclass(frozen=True)
class OracleVerdict:
    result: VerificationResult
    explanation: str
    source_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class OracleUnverified:
    reason: str
    requires_human_review: bool = True


OracleOutcome = Union[OracleVerdict, OracleUnverified]


class VerificationOracle(ABC):
    @abstractmethod
    async def verify(self, message: ChatMessage, rules: list[OfficialRule]) -> OracleOutcome:
        """Judge `message` against `rules`; must not raise."""

    async def aclose(self) -> None:
        """Release network resources; no-op unless overridden."""


def compose_prompt(message: ChatMessage, rules: list[OfficialRule]) -> str:
    """Build the verifier prompt listing every rule as `- [id] title: content`."""
    rule_lines = "\n".join(f"- [{r.rule_id}] {r.title}: {r.content}" for r in rules)
    return (
        "You are a verifier ensuring student answers match official school rules.\n\n"
        f"Message to verify:\n{message.content or ''}\n\n"
        f"Official rules for the school:\n{rule_lines}\n\n"
        "Decide if the message matches the rules. Respond with:\n"
        "- verificationResult: one of confirmed | partially_correct | incorrect\n"
        "- explanation: short neutral justification referencing rule ids\n"
        "- officialSourceIds: array of rule ids used."
    )


def _extract_json(text: str) -> JsonObj:
    """Parse the model output directly, or the outermost {...} block inside it."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    m = re.search(r"\{.*\}", text, flags=re.DOTALL)
    if not m:
        raise ValueError("no JSON object in model output")
    return json.loads(m.group(0))


class AzureOpenAIOracle(VerificationOracle):
    """Asks an Azure OpenAI deployment for a verdict at temperature 0."""

    def __init__(self, url: str, api_key: str, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 30.0) -> None:
        self.url = url
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def verify(self, message: ChatMessage, rules: list[OfficialRule]) -> OracleOutcome:
        try:
            return await self._call(message, rules)
        except httpx.HTTPError as e:
            log.warning("verification oracle unreachable: %s", e.__class__.__name__)
            return OracleUnverified(reason=f"Verification service unreachable ({e.__class__.__name__}).")
        except (ValueError, KeyError, TypeError, IndexError, ValidationError) as e:
            log.warning("verification oracle returned an unusable answer: %s", e)
            return OracleUnverified(reason="Verification service returned an unusable answer.")

    async def _call(self, message: ChatMessage, rules: list[OfficialRule]) -> OracleOutcome:
        res = await self._client.post(
            self.url,
            headers={"api-key": self.api_key},
            json={
                "messages": [
                    {"role": "system", "content": SYSTEM_INSTRUCTION},
                    {"role": "user", "content": compose_prompt(message, rules)},
                ],
                "temperature": 0,
            },
        )
        if res.is_error:
            log.warning("verification oracle failed with status %s", res.status_code)
            return OracleUnverified(reason=f"Verification service failed with status {res.status_code}.")

        content = res.json()["choices"][0]["message"]["content"]
        if not isinstance(content, str):
            raise TypeError("model content is not a string")
        parsed = _extract_json(content)
        validate(instance=parsed, schema=VERDICT_SCHEMA)
        return OracleVerdict(
            result=parsed["verificationResult"],
            explanation=parsed["explanation"],
            source_ids=list(parsed.get("officialSourceIds") or []),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


class RuleMatchOracle(VerificationOracle):
    """Deterministic oracle: a rule matches when its title, or the first word
    of its title as a whole word, appears in the message."""

    async def verify(self, message: ChatMessage, rules: list[OfficialRule]) -> OracleOutcome:
        if not rules:
            return OracleUnverified(reason="No official rules available for this school.")
        content = (message.content or "").lower()
        matched = next((r for r in rules if self._matches(content, r.title)), None)
        if matched:
            return OracleVerdict(
                result="confirmed",
                explanation=f"Matches guidance from {matched.title}.",
                source_ids=[matched.rule_id],
            )
        return OracleVerdict(
            result="partially_correct",
            explanation="Could not find a direct match; treat as partially verified until a moderator reviews.",
            source_ids=[r.rule_id for r in rules],
        )

    @staticmethod
    def _matches(content: str, title: str) -> bool:
        title = title.lower().strip()
        if not title:
            return False
        if title in content:
            return True
        first = title.split()[0]
        return re.search(rf"\b{re.escape(first)}\b", content) is not None


def build_oracle(settings: Settings) -> VerificationOracle:
    if settings.openai_configured():
        return AzureOpenAIOracle(
            settings.chat_completions_url(),
            settings.AZURE_OPENAI_API_KEY,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )
    log.info("Azure OpenAI not configured; verification uses rule matching")
    return RuleMatchOracle()
