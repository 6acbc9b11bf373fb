"""Billing Service schemas package."""

from services.billing_service.schemas.main import (
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    CoachSubscriptionResponse,
    CreatePaymentRequest,
    CreatePaymentResponse,
    RenewalResult,
    RenewalRunResponse,
    WithdrawalCreate,
    WithdrawalProcess,
    WithdrawalProcessResponse,
    WithdrawalReconcileResponse,
    WithdrawalReconcileResult,
    WithdrawalResponse,
)

__all__ = [
    "CancelSubscriptionRequest",
    "CancelSubscriptionResponse",
    "CoachSubscriptionResponse",
    "CreatePaymentRequest",
    "CreatePaymentResponse",
    "RenewalResult",
    "RenewalRunResponse",
    "WithdrawalCreate",
    "WithdrawalProcess",
    "WithdrawalProcessResponse",
    "WithdrawalReconcileResponse",
    "WithdrawalReconcileResult",
    "WithdrawalResponse",
]
