"""Checkout endpoint."""

from fastapi import APIRouter, Depends
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from libs.db.session import get_async_db
from services.billing_service.paychangu_client import (
    PaymentGateway,
    get_paychangu_client,
)
from services.billing_service.schemas import CreatePaymentRequest, CreatePaymentResponse
from services.billing_service.services.payment_initiation import create_payment_link
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/checkout", response_model=CreatePaymentResponse)
async def create_checkout(
    payload: CreatePaymentRequest,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    gateway: PaymentGateway = Depends(get_paychangu_client),
):
    """Start a hosted checkout for a coach plan or a client purchase."""
    return await create_payment_link(db, gateway, current_user, payload)
