import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from services.billing_service.models import (
    BillingCycle,
    PaymentMode,
    SubscriptionStatus,
    WithdrawalAction,
    WithdrawalStatus,
)


class CreatePaymentRequest(BaseModel):
    """Checkout request. Mode-specific requirements are checked by the service."""

    mode: PaymentMode
    tier_id: Optional[uuid.UUID] = None
    billing_cycle: Optional[BillingCycle] = None
    coach_id: Optional[str] = None
    course_id: Optional[str] = None
    # Ignored for coach_subscription: the tier price is authoritative.
    amount: Optional[float] = Field(default=None, allow_inf_nan=False)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=8)
    return_url: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class CreatePaymentResponse(BaseModel):
    checkout_url: str
    transaction_ref: str
    order_id: Optional[uuid.UUID] = None
    subscription_id: Optional[uuid.UUID] = None


class RenewalResult(BaseModel):
    """Outcome for one subscription in a renewal run."""

    subscription_id: uuid.UUID
    status: str  # initiated, skipped, failed, grace, expired, error
    reason: Optional[str] = None
    transaction_id: Optional[uuid.UUID] = None
    pending_transaction_id: Optional[uuid.UUID] = None
    checkout_url: Optional[str] = None
    payment_status: Optional[str] = None
    failed_attempts: Optional[int] = None
    grace_expires_at: Optional[datetime] = None
    error: Optional[str] = None


class RenewalRunResponse(BaseModel):
    processed: int
    results: list[RenewalResult]
    message: Optional[str] = None


class CoachSubscriptionResponse(BaseModel):
    id: uuid.UUID
    coach_id: str
    tier_id: uuid.UUID
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    renewal_date: Optional[datetime] = None
    grace_expires_at: Optional[datetime] = None
    failed_renewal_attempts: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = None
    cancel_immediately: bool = True


class CancelSubscriptionResponse(BaseModel):
    success: bool = True
    status: str
    cancelled_effective_at: Optional[datetime] = None
    cancel_immediately: Optional[bool] = None


class WithdrawalCreate(BaseModel):
    """Coach request to cash out wallet credits."""

    credits_amount: float = Field(..., gt=0, allow_inf_nan=False)
    payment_method: str = Field(..., min_length=1, max_length=32)
    payment_details: dict[str, Any]
    notes: Optional[str] = None


class WithdrawalProcess(BaseModel):
    """Admin decision on a pending withdrawal."""

    action: WithdrawalAction
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None


class WithdrawalResponse(BaseModel):
    id: uuid.UUID
    coach_id: str
    credits_amount: float
    amount_mwk: float
    status: WithdrawalStatus
    payment_method: str
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    fraud_score: Optional[float] = None
    payout_reference: Optional[str] = None
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class WithdrawalProcessResponse(BaseModel):
    success: bool = True
    action: str
    withdrawal_request_id: uuid.UUID
    status: WithdrawalStatus
    credits_deducted: Optional[float] = None
    new_balance: Optional[float] = None
    message: str


class WithdrawalReconcileResult(BaseModel):
    """Outcome for one ``processing`` withdrawal in a reconciliation run."""

    withdrawal_id: uuid.UUID
    status: str  # completed, failed, still_processing, unknown, skipped, error
    reason: Optional[str] = None


class WithdrawalReconcileResponse(BaseModel):
    processed: int
    results: list[WithdrawalReconcileResult]
