"""Schemas for the school-support assistant: conversation turns and chat requests."""

from pydantic import BaseModel
from typing import List, Literal

Language = Literal["en", "fr", "ar", "es"]
Mode = Literal["rules", "rights", "guidance"]


class AssistantMessage(BaseModel):
    """A single turn of the conversation sent by the client."""
    role: Literal["user", "assistant"]
    content: str


class AssistantChatRequest(BaseModel):
    """Conversation so far plus the persona language and behavioural mode."""
    messages: List[AssistantMessage]
    language: Language = "en"
    mode: Mode = "rules"
