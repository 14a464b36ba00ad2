"""Conversation management API routes."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Annotated

import psycopg
from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from fastapi.responses import StreamingResponse

from ..conversations import schemas as convo_schemas
from ..conversations.attachments import error_code
from ..conversations.errors import (
    AlreadyParticipant,
    ConversationNotFoundError,
    InvalidTransition,
    MessageNotFoundError,
    ParticipantPermissionError,
    StoreUnavailable,
    ValidationError,
)
from ..conversations.models import CallerContext, FileDescriptor
from ..conversations.repository import ensure_schema
from ..conversations.service import ConversationService
from ..security.auth import (
    get_current_caller,
    require_messaging_allowed,
    require_portal_role,
)
from ..sse_utils import sse_snapshots

logger = logging.getLogger(__name__)

router = APIRouter(tags=["conversations"])

_DATABASE_URL = os.getenv("DATABASE_URL")
_SERVICE: ConversationService | None = None

MultiUpload = Annotated[list[UploadFile], File(...)]


def get_service() -> ConversationService:
    """Return the process-wide service, built on first use."""

    global _SERVICE
    if _SERVICE is None:
        if _DATABASE_URL:
            with psycopg.connect(_DATABASE_URL) as conn:
                ensure_schema(conn)
            _SERVICE = ConversationService.from_database_url(_DATABASE_URL)
        else:
            logger.warning("DATABASE_URL not configured; using in-memory stores")
            _SERVICE = ConversationService.in_memory()
    return _SERVICE


@contextmanager
def _service_context() -> Iterator[None]:
    """Translate domain errors raised inside the block to HTTP errors."""

    try:
        yield
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    except ParticipantPermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except (ConversationNotFoundError, MessageNotFoundError) as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (InvalidTransition, AlreadyParticipant) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except StoreUnavailable as exc:
        logger.error("Store unavailable: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc


Service = Annotated[ConversationService, Depends(get_service)]
Caller = Annotated[CallerContext, Depends(get_current_caller)]
MessagingCaller = Annotated[CallerContext, Depends(require_messaging_allowed)]


@router.get("/api/conversations", response_model=convo_schemas.ConversationList)
def list_conversations(
    service: Service, caller: Caller, q: str | None = None
) -> convo_schemas.ConversationList:
    with _service_context():
        return service.list_for_user(caller, q)


@router.post(
    "/api/conversations",
    response_model=convo_schemas.ConversationMetadata,
    status_code=status.HTTP_201_CREATED,
)
def create_conversation(
    payload: convo_schemas.ConversationCreateRequest,
    service: Service,
    caller: MessagingCaller,
) -> convo_schemas.ConversationMetadata:
    with _service_context():
        return service.create_conversation(caller, payload)


@router.get(
    "/api/conversations/{conversation_id}",
    response_model=convo_schemas.ConversationMetadata,
)
def get_conversation(
    conversation_id: str, service: Service, caller: Caller
) -> convo_schemas.ConversationMetadata:
    with _service_context():
        return service.get_conversation(conversation_id, caller)


@router.get(
    "/api/conversations/{conversation_id}/messages",
    response_model=convo_schemas.MessageTimeline,
)
def list_messages(
    conversation_id: str, service: Service, caller: Caller
) -> convo_schemas.MessageTimeline:
    with _service_context():
        return service.timeline(conversation_id, caller)


@router.get(
    "/api/conversations/{conversation_id}/unread",
    response_model=convo_schemas.UnreadCount,
)
def unread_count(
    conversation_id: str, service: Service, caller: Caller
) -> convo_schemas.UnreadCount:
    with _service_context():
        count = service.unread_count(conversation_id, caller)
    return convo_schemas.UnreadCount(conversation_id=conversation_id, unread=count)


@router.get("/api/conversations/{conversation_id}/stream")
def stream_messages(
    conversation_id: str, service: Service, caller: Caller
) -> StreamingResponse:
    """Stream the reconciled timeline as Server-Sent Events."""

    with _service_context():
        snapshots = service.stream_timeline(conversation_id, caller)
    return StreamingResponse(
        sse_snapshots(snapshots),
        media_type="text/event-stream; charset=utf-8",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post(
    "/api/conversations/{conversation_id}/messages",
    response_model=convo_schemas.SendResult,
    status_code=status.HTTP_201_CREATED,
)
def send_message(
    conversation_id: str,
    payload: convo_schemas.MessageSendRequest,
    service: Service,
    caller: MessagingCaller,
) -> convo_schemas.SendResult:
    with _service_context():
        return service.send(
            conversation_id,
            caller,
            payload.content,
            priority=payload.priority,
            department=payload.department,
            reply_to=payload.reply_to,
            attachments=payload.attachments,
        )


@router.patch("/api/messages/{message_id}", response_model=convo_schemas.EnhancedMessage)
def edit_message(
    message_id: str,
    payload: convo_schemas.MessageEditRequest,
    service: Service,
    caller: MessagingCaller,
) -> convo_schemas.EnhancedMessage:
    with _service_context():
        return service.edit_message(message_id, caller, payload.content)


@router.post(
    "/api/conversations/{conversation_id}/messages/{message_id}/read",
    response_model=convo_schemas.EnhancedMessage,
)
def mark_read(
    conversation_id: str,
    message_id: str,
    service: Service,
    caller: MessagingCaller,
) -> convo_schemas.EnhancedMessage:
    with _service_context():
        return service.mark_read(message_id, caller, conversation_id)


@router.post(
    "/api/conversations/{conversation_id}/participants",
    response_model=convo_schemas.ConversationMetadata,
)
def add_participant(
    conversation_id: str,
    payload: convo_schemas.ParticipantIn,
    service: Service,
    caller: Annotated[CallerContext, Depends(require_portal_role("admin", "governor"))],
) -> convo_schemas.ConversationMetadata:
    with _service_context():
        return service.add_participant(conversation_id, payload, caller)


@router.post(
    "/api/conversations/{conversation_id}/escalate",
    response_model=convo_schemas.ConversationMetadata,
)
def escalate_conversation(
    conversation_id: str,
    payload: convo_schemas.EscalationRequest,
    service: Service,
    caller: MessagingCaller,
) -> convo_schemas.ConversationMetadata:
    with _service_context():
        return service.escalate(conversation_id, caller, payload.reason)


@router.post(
    "/api/conversations/{conversation_id}/join",
    response_model=convo_schemas.ConversationMetadata,
)
def join_conversation(
    conversation_id: str, service: Service, caller: MessagingCaller
) -> convo_schemas.ConversationMetadata:
    with _service_context():
        return service.join_as_governor(conversation_id, caller)


@router.post(
    "/api/conversations/{conversation_id}/resolve",
    response_model=convo_schemas.ConversationMetadata,
)
def resolve_conversation(
    conversation_id: str, service: Service, caller: MessagingCaller
) -> convo_schemas.ConversationMetadata:
    with _service_context():
        return service.resolve(conversation_id, caller)


@router.post(
    "/api/conversations/{conversation_id}/archive",
    response_model=convo_schemas.ConversationMetadata,
)
def archive_conversation(
    conversation_id: str, service: Service, caller: MessagingCaller
) -> convo_schemas.ConversationMetadata:
    with _service_context():
        return service.archive(conversation_id, caller)


@router.post("/api/attachments", response_model=convo_schemas.AttachmentUploadResponse)
async def upload_attachments(
    files: MultiUpload, service: Service, caller: MessagingCaller
) -> convo_schemas.AttachmentUploadResponse:
    """Validate and store each file; rejected files are reported individually."""

    descriptors = []
    for upload in files:
        data = await upload.read()
        descriptors.append(
            FileDescriptor(
                filename=upload.filename or "file",
                size=len(data),
                content_type=upload.content_type,
                data=data,
            )
        )
    with _service_context():
        report = service.upload_attachments(descriptors)
    logger.info(
        "Attachments from %s: %d accepted, %d rejected",
        caller.user_id,
        len(report.accepted),
        len(report.errors),
    )
    return convo_schemas.AttachmentUploadResponse(
        accepted=report.accepted,
        errors=[
            convo_schemas.AttachmentErrorOut(
                filename=getattr(error, "filename", ""),
                code=error_code(error),
                detail=str(error),
            )
            for error in report.errors
        ],
    )


@router.get("/api/recipients", response_model=list[convo_schemas.Recipient])
def list_recipients(service: Service, caller: Caller) -> list[convo_schemas.Recipient]:
    with _service_context():
        return service.available_recipients(caller)
