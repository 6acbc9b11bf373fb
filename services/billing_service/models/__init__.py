"""Billing Service models package."""

from services.billing_service.models.core import (
    ClientOrder,
    CoachSubscription,
    CreditTransaction,
    CreditWallet,
    Profile,
    SubscriptionAuditLog,
    Tier,
    Transaction,
    UserRole,
    WithdrawalRequest,
)
from services.billing_service.models.enums import (
    AppRole,
    BillingCycle,
    CreditTransactionType,
    OrderStatus,
    OrderType,
    PaymentMethod,
    PaymentMode,
    SubscriptionStatus,
    TransactionMode,
    TransactionStatus,
    WithdrawalAction,
    WithdrawalStatus,
)

__all__ = [
    "AppRole",
    "BillingCycle",
    "ClientOrder",
    "CoachSubscription",
    "CreditTransaction",
    "CreditTransactionType",
    "CreditWallet",
    "OrderStatus",
    "OrderType",
    "PaymentMethod",
    "PaymentMode",
    "Profile",
    "SubscriptionAuditLog",
    "SubscriptionStatus",
    "Tier",
    "Transaction",
    "TransactionMode",
    "TransactionStatus",
    "UserRole",
    "WithdrawalAction",
    "WithdrawalStatus",
    "WithdrawalRequest",
]
