"""Server-side role resolution. Roles are never taken from the request."""

from typing import Iterable, Optional

from fastapi import HTTPException, status
from services.billing_service.models import AppRole, UserRole
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession


async def get_user_role(db: AsyncSession, user_id: str) -> Optional[AppRole]:
    result = await db.execute(select(UserRole.role).where(UserRole.user_id == user_id))
    return result.scalar_one_or_none()


async def require_role(
    db: AsyncSession,
    user_id: str,
    allowed: Iterable[AppRole],
    detail: str = "Forbidden",
) -> AppRole:
    """Return the caller's role, or raise 403 if it is not in ``allowed``."""
    role = await get_user_role(db, user_id)
    if role not in set(allowed):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
    return role
