# services/chat/routes.py
"""HTTP routes of the chat service.

Every mutating route returns the refreshed augmented thread so a UI can
render the latest state without a second round trip.
"""

from fastapi import APIRouter, Depends, Query, Request

from packages.common.config import get_settings
from packages.common.errors import InvalidRequestError
from packages.common.rbac import require_roles
from packages.schemas.chat import (
    FlagsResponse,
    MessageRef,
    ModerateResponse,
    ModerationSeverity,
    SendMessageRequest,
    SendResponse,
    ThreadRequest,
    ThreadResponse,
    TransportIdentity,
    VerificationsResponse,
    VerifyResponse,
)
from .service import ChatService, build_chat_service

router = APIRouter()
moderator = require_roles("moderator")


async def get_chat_service(request: Request) -> ChatService:
    """Return the app's ChatService, wiring and starting it on first use."""
    service = getattr(request.app.state, "chat_service", None)
    if service is None:
        service = build_chat_service(get_settings())
        request.app.state.chat_service = service
        await service.startup()
    return service


@router.post("/chat/identity", response_model=TransportIdentity, tags=["chat"])
async def create_identity(service: ChatService = Depends(get_chat_service)) -> TransportIdentity:
    return await service.create_identity()


@router.post("/chat/thread", response_model=ThreadResponse, tags=["chat"])
async def create_or_get_thread(body: ThreadRequest, service: ChatService = Depends(get_chat_service)) -> ThreadResponse:
    """Bootstrap the school's active thread for `body.user`."""
    thread = await service.get_or_create_thread(body.school_id, body.user)
    return ThreadResponse(thread=thread)


@router.get("/chat/thread", response_model=ThreadResponse, tags=["chat"])
async def read_thread(
    thread_id: str = Query(default="", alias="threadId"),
    service: ChatService = Depends(get_chat_service),
) -> ThreadResponse:
    """Return the augmented thread; 404 if it does not exist."""
    if not thread_id:
        raise InvalidRequestError("threadId is required")
    return ThreadResponse(thread=await service.get_thread(thread_id))


@router.post("/chat/send", response_model=SendResponse, tags=["chat"])
async def send_message(body: SendMessageRequest, service: ChatService = Depends(get_chat_service)) -> SendResponse:
    """Screen and deliver a message; blocked messages come back with `blocked: true`."""
    out = await service.send_message(
        body.user, body.content, body.message_type, thread_id=body.thread_id, school_id=body.school_id,
    )
    return SendResponse(
        blocked=out.blocked,
        message=out.message,
        moderation=out.moderation,
        system_message=out.system_message,
        thread=out.thread,
    )


@router.post("/chat/moderate", response_model=ModerateResponse, tags=["chat"])
async def moderate_message(body: MessageRef, service: ChatService = Depends(get_chat_service)) -> ModerateResponse:
    out = await service.moderate(body.message_id)
    return ModerateResponse(moderation=out.moderation, system_message=out.system_message, thread=out.thread)


@router.post("/chat/verify", response_model=VerifyResponse, tags=["chat"])
async def verify_message(body: MessageRef, service: ChatService = Depends(get_chat_service)) -> VerifyResponse:
    """Verify a message against the school's rules; oracle failures come back as `unverified`."""
    out = await service.verify(body.message_id)
    return VerifyResponse(
        blocked=out.blocked,
        verification=out.verification,
        ai_message=out.ai_message,
        moderation=out.moderation,
        system_message=out.system_message,
        thread=out.thread,
    )


@router.get("/audit/flags", response_model=FlagsResponse, tags=["audit"], dependencies=[Depends(moderator)])
async def audit_flags(
    severity: ModerationSeverity = Query(default="high"),
    service: ChatService = Depends(get_chat_service),
) -> FlagsResponse:
    return FlagsResponse(flags=await service.list_flags(severity))


@router.get("/audit/verifications", response_model=VerificationsResponse, tags=["audit"],
            dependencies=[Depends(moderator)])
async def audit_verifications(
    status: str = Query(default="partial"),
    service: ChatService = Depends(get_chat_service),
) -> VerificationsResponse:
    return VerificationsResponse(verifications=await service.list_verifications(status))


@router.get("/audit/thread/{thread_id}", response_model=ThreadResponse, tags=["audit"],
            dependencies=[Depends(moderator)])
async def audit_thread(thread_id: str, service: ChatService = Depends(get_chat_service)) -> ThreadResponse:
    return ThreadResponse(thread=await service.get_thread(thread_id))
