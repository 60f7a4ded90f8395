"""FastAPI dependencies: the service facade and the calling user.

Authentication happens upstream; the gateway forwards the verified
identity in ``X-User-Id``, ``X-User-Email`` and ``X-User-Role``.
"""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status

from mailbox_sync.config import Settings
from mailbox_sync.service import MailboxService


def get_service(request: Request) -> MailboxService:
    return request.app.state.service


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def get_current_user(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_email: Annotated[str | None, Header()] = None,
    x_user_role: Annotated[str | None, Header()] = None,
) -> dict:
    """Return ``{"id": UUID, "email": str | None, "roles": [...]}``."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing user identity",
        )
    try:
        user_id = UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user identity",
        )
    roles = [r.strip() for r in (x_user_role or "").split(",") if r.strip()]
    return {"id": user_id, "email": x_user_email, "roles": roles}


def require_role(*allowed_roles: str):
    """Return a dependency that checks the user has at least one of *allowed_roles*."""
    allowed = set(allowed_roles)

    async def _check(user: dict = Depends(get_current_user)) -> dict:
        if not set(user["roles"]) & allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return user

    return _check
