"""Chat schemas: users, threads, messages, verifications, moderation flags and rules.

Fields are snake_case in Python and camelCase on the wire.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Discriminator, Field, Tag
from pydantic.alias_generators import to_camel

UserRole = Literal["student", "senior", "moderator"]
SenderRole = Literal["student", "senior", "ai"]
MessageType = Literal["question", "student_answer", "ai_verification", "official_reference", "system_warning"]
VerifiedStatus = Literal["unverified", "verified", "partially_verified", "conflict"]
VerificationResult = Literal["confirmed", "partially_correct", "incorrect"]
ModerationSeverity = Literal["low", "medium", "high"]
ModerationAction = Literal["none", "warning_posted", "review_required"]
RuleCategory = Literal["attendance", "behavior", "exams", "administrative"]


class ChatModel(BaseModel):
    """Base model: camelCase aliases on the wire, either spelling accepted."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class User(ChatModel):
    """A platform user; only the transport identity may change after creation."""
    user_id: str
    transport_user_id: str = Field(validation_alias=AliasChoices("transport_user_id", "transportUserId", "acsUserId"))
    role: UserRole
    school_id: str
    language: str = "en"


class ChatThread(ChatModel):
    """A school-scoped conversation container."""
    thread_id: str
    school_id: str
    created_at: datetime
    created_by: str
    is_active: bool = True


class ChatMessage(ChatModel):
    """Message metadata; `content` is None when only the transport holds it."""
    message_id: str
    thread_id: str
    sender_id: str
    sender_role: SenderRole
    content: Optional[str] = None
    created_at: datetime
    message_type: MessageType
    verified_status: VerifiedStatus = "unverified"
    related_message_id: Optional[str] = None
    transport_message_id: Optional[str] = None


class SuccessfulVerification(ChatModel):
    verification_id: str
    message_id: str
    verification_result: VerificationResult
    explanation: str
    official_source_ids: List[str] = []
    created_at: datetime


class UnverifiedVerification(ChatModel):
    """Oracle could not decide; persisted for human review, never changes message status."""
    verification_id: str
    message_id: str
    verification_result: Literal["unverified"] = "unverified"
    reason: str
    requires_human_review: bool = True
    created_at: datetime


def _verification_tag(value: Any) -> str:
    """Pick the union member from the `verification_result` discriminant (either spelling)."""
    if isinstance(value, dict):
        result = value.get("verification_result", value.get("verificationResult"))
    else:
        result = getattr(value, "verification_result", None)
    return "unverified" if result == "unverified" else "successful"


AIVerification = Annotated[
    Union[
        Annotated[SuccessfulVerification, Tag("successful")],
        Annotated[UnverifiedVerification, Tag("unverified")],
    ],
    Discriminator(_verification_tag),
]


class SafetyMetadata(ChatModel):
    """Content-safety classifier output attached to a moderation flag."""
    source: str = "azure_content_safety"
    categories: Dict[str, int] = {}
    blocked: bool = False
    created_at: datetime


class ModerationFlag(ChatModel):
    flag_id: str
    message_id: str
    severity: ModerationSeverity
    reason: str
    action_taken: ModerationAction
    created_at: datetime
    metadata: Optional[SafetyMetadata] = None


class OfficialRule(ChatModel):
    rule_id: str
    school_id: str
    language: str
    title: str
    content: str
    category: RuleCategory
    last_updated: datetime


class AugmentedThread(ChatThread):
    """Read-only projection of a thread and everything that references it."""
    messages: List[ChatMessage] = []
    users: List[User] = []
    official_rules: List[OfficialRule] = []
    verifications: List[AIVerification] = []
    moderation_flags: List[ModerationFlag] = []


class ModerationFlagDetail(ChatModel):
    """Audit row: a flag with the message it annotates."""
    flag: ModerationFlag
    message: Optional[ChatMessage] = None
    thread_id: Optional[str] = None


class VerificationDetail(ChatModel):
    """Audit row: a verification record with the message it judged."""
    verification: AIVerification
    message: Optional[ChatMessage] = None
    thread_id: Optional[str] = None


class TransportIdentity(ChatModel):
    transport_user_id: str
    token: str
    expires_on: datetime
    simulated: bool = True


# ---------- Request / response bodies ----------

class ThreadRequest(ChatModel):
    school_id: str
    user: User


class SendMessageRequest(ChatModel):
    user: User
    content: str
    school_id: Optional[str] = None
    thread_id: Optional[str] = None
    message_type: MessageType = "student_answer"


class MessageRef(ChatModel):
    message_id: str


class ThreadResponse(ChatModel):
    thread: AugmentedThread


class SendResponse(ChatModel):
    blocked: bool = False
    message: Optional[ChatMessage] = None
    moderation: Optional[ModerationFlag] = None
    system_message: Optional[ChatMessage] = None
    thread: AugmentedThread


class ModerateResponse(ChatModel):
    moderation: ModerationFlag
    system_message: Optional[ChatMessage] = None
    thread: AugmentedThread


class VerifyResponse(ChatModel):
    blocked: bool = False
    verification: AIVerification
    ai_message: Optional[ChatMessage] = None
    moderation: Optional[ModerationFlag] = None
    system_message: Optional[ChatMessage] = None
    thread: AugmentedThread


class FlagsResponse(ChatModel):
    flags: List[ModerationFlagDetail]


class VerificationsResponse(ChatModel):
    verifications: List[VerificationDetail]
