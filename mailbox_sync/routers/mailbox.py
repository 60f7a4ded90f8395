"""Mailbox configuration and sync endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from mailbox_sync.deps import get_current_user, get_service
from mailbox_sync.models import SyncOutcome
from mailbox_sync.schemas import ConnectionTestOut, MailConfigOut, MailCredentialIn, SyncStatusOut
from mailbox_sync.service import MailboxService

router = APIRouter(prefix="/api/v1/mail", tags=["mail"])


@router.get("/config", response_model=MailConfigOut)
async def get_config(
    service: Annotated[MailboxService, Depends(get_service)],
    user: Annotated[dict, Depends(get_current_user)],
):
    return await service.get_config(user["id"])


@router.put("/config", response_model=MailConfigOut)
async def save_config(
    body: MailCredentialIn,
    service: Annotated[MailboxService, Depends(get_service)],
    user: Annotated[dict, Depends(get_current_user)],
):
    """Store credentials; the next sync starts from the saved cursor unless the mailbox changed."""
    return await service.save_config(user["id"], body)


@router.post("/config/test", response_model=ConnectionTestOut)
async def test_config(
    body: MailCredentialIn,
    service: Annotated[MailboxService, Depends(get_service)],
    user: Annotated[dict, Depends(get_current_user)],
):
    return await service.test_config(user["id"], body)


@router.post("/sync", response_model=SyncOutcome)
async def trigger_sync(
    service: Annotated[MailboxService, Depends(get_service)],
    user: Annotated[dict, Depends(get_current_user)],
):
    return await service.trigger_sync(user["id"])


@router.get("/status", response_model=SyncStatusOut)
async def get_sync_status(
    service: Annotated[MailboxService, Depends(get_service)],
    user: Annotated[dict, Depends(get_current_user)],
):
    return await service.get_sync_status(user["id"])
