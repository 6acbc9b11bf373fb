"""Admin withdrawal decisions."""

import uuid

from fastapi import APIRouter, Depends
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from libs.db.session import get_async_db
from services.billing_service.paychangu_client import (
    PaymentGateway,
    get_paychangu_client,
)
from services.billing_service.schemas import (
    WithdrawalProcess,
    WithdrawalProcessResponse,
)
from services.billing_service.services.withdrawals import process_withdrawal
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/admin/withdrawals", tags=["admin-withdrawals"])


@router.post("/{withdrawal_id}/process", response_model=WithdrawalProcessResponse)
async def process_withdrawal_request(
    withdrawal_id: uuid.UUID,
    payload: WithdrawalProcess,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    gateway: PaymentGateway = Depends(get_paychangu_client),
):
    """Approve (deduct and pay out) or reject a pending withdrawal."""
    return await process_withdrawal(db, gateway, current_user, withdrawal_id, payload)
