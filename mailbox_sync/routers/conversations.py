"""Conversation listing, detail, outbound mail and attachment download."""

from __future__ import annotations

import uuid
from typing import Annotated
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from mailbox_sync.deps import get_current_user, get_service
from mailbox_sync.models import ConversationFilters
from mailbox_sync.schemas import (
    ConversationDetail,
    ConversationOut,
    ForwardIn,
    PaginatedResponse,
    ReplyIn,
    SendResultOut,
)
from mailbox_sync.service import MailboxService

router = APIRouter(prefix="/api/v1/conversations", tags=["conversations"])


@router.get("", response_model=PaginatedResponse[ConversationOut])
async def list_conversations(
    service: Annotated[MailboxService, Depends(get_service)],
    user: Annotated[dict, Depends(get_current_user)],
    search: str | None = Query(default=None),
    unread_only: bool = Query(default=False),
    archived: bool = Query(default=False),
    has_attachments: bool | None = Query(default=None),
    linked_entity_id: uuid.UUID | None = Query(default=None),
    participant: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=25, ge=1, le=200),
):
    """Newest activity first."""
    filters = ConversationFilters(
        search=search,
        unread_only=unread_only,
        archived=archived,
        has_attachments=has_attachments,
        linked_entity_id=linked_entity_id,
        participant=participant,
        page=page,
        page_size=page_size,
    )
    return await service.list_conversations(user["id"], filters)


@router.get("/{conversation_id}", response_model=ConversationDetail)
async def get_conversation(
    conversation_id: uuid.UUID,
    service: Annotated[MailboxService, Depends(get_service)],
    user: Annotated[dict, Depends(get_current_user)],
):
    return await service.get_conversation(user["id"], conversation_id)


@router.post("/{conversation_id}/reply", response_model=SendResultOut)
async def reply(
    conversation_id: uuid.UUID,
    body: ReplyIn,
    service: Annotated[MailboxService, Depends(get_service)],
    user: Annotated[dict, Depends(get_current_user)],
):
    return await service.reply(user["id"], conversation_id, body)


@router.post("/{conversation_id}/forward", response_model=SendResultOut)
async def forward(
    conversation_id: uuid.UUID,
    body: ForwardIn,
    service: Annotated[MailboxService, Depends(get_service)],
    user: Annotated[dict, Depends(get_current_user)],
):
    return await service.forward(user["id"], conversation_id, body)


@router.post("/{conversation_id}/read", response_model=ConversationOut)
async def mark_read(
    conversation_id: uuid.UUID,
    service: Annotated[MailboxService, Depends(get_service)],
    user: Annotated[dict, Depends(get_current_user)],
):
    return await service.mark_read(user["id"], conversation_id)


@router.post("/{conversation_id}/unread", response_model=ConversationOut)
async def mark_unread(
    conversation_id: uuid.UUID,
    service: Annotated[MailboxService, Depends(get_service)],
    user: Annotated[dict, Depends(get_current_user)],
):
    return await service.mark_unread(user["id"], conversation_id)


@router.post("/{conversation_id}/archive", response_model=ConversationOut)
async def archive(
    conversation_id: uuid.UUID,
    service: Annotated[MailboxService, Depends(get_service)],
    user: Annotated[dict, Depends(get_current_user)],
):
    return await service.archive(user["id"], conversation_id)


@router.post("/{conversation_id}/unarchive", response_model=ConversationOut)
async def unarchive(
    conversation_id: uuid.UUID,
    service: Annotated[MailboxService, Depends(get_service)],
    user: Annotated[dict, Depends(get_current_user)],
):
    return await service.unarchive(user["id"], conversation_id)


@router.get("/{conversation_id}/attachments/{attachment_id}")
async def download_attachment(
    conversation_id: uuid.UUID,
    attachment_id: uuid.UUID,
    service: Annotated[MailboxService, Depends(get_service)],
    user: Annotated[dict, Depends(get_current_user)],
):
    attachment, chunks = await service.download_attachment(user["id"], conversation_id, attachment_id)
    disposition = "inline" if attachment.is_inline else "attachment"
    return StreamingResponse(
        chunks,
        media_type=attachment.content_type,
        headers={
            "Content-Disposition": f"{disposition}; filename*=UTF-8''{quote(attachment.file_name)}",
            "Content-Length": str(attachment.size_bytes),
        },
    )
