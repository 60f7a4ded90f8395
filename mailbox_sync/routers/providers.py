"""Admin endpoints for per-domain server defaults."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from mailbox_sync.deps import get_service, require_role
from mailbox_sync.schemas import ProviderSettingIn, ProviderSettingOut
from mailbox_sync.service import MailboxService

router = APIRouter(prefix="/api/v1/admin/providers", tags=["providers"])


@router.get("", response_model=list[ProviderSettingOut])
async def list_providers(
    service: Annotated[MailboxService, Depends(get_service)],
    _user: Annotated[dict, Depends(require_role("admin"))],
):
    return await service.list_providers()


@router.put("", response_model=ProviderSettingOut)
async def save_provider(
    body: ProviderSettingIn,
    service: Annotated[MailboxService, Depends(get_service)],
    _user: Annotated[dict, Depends(require_role("admin"))],
):
    """Create or replace the defaults for ``body.domain``."""
    return await service.save_provider(body)
