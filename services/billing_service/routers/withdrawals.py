"""Coach withdrawal endpoints."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from libs.db.session import get_async_db
from services.billing_service.models import WithdrawalStatus
from services.billing_service.schemas import WithdrawalCreate, WithdrawalResponse
from services.billing_service.services.withdrawals import (
    cancel_withdrawal,
    list_withdrawals,
    request_withdrawal,
)
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/withdrawals", tags=["withdrawals"])


@router.post("", response_model=WithdrawalResponse)
async def create_withdrawal(
    payload: WithdrawalCreate,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Submit a withdrawal. Credits are held, not deducted, until approval."""
    return await request_withdrawal(db, current_user, payload)


@router.get("", response_model=list[WithdrawalResponse])
async def get_withdrawals(
    status_filter: Optional[WithdrawalStatus] = Query(default=None, alias="status"),
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    return await list_withdrawals(db, current_user, status_filter=status_filter)


@router.post("/{withdrawal_id}/cancel", response_model=WithdrawalResponse)
async def cancel_my_withdrawal(
    withdrawal_id: uuid.UUID,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    return await cancel_withdrawal(db, current_user, withdrawal_id)
