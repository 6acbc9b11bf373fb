"""Enum definitions for billing service models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class AppRole(str, enum.Enum):
    ADMIN = "admin"
    COACH = "coach"
    CLIENT = "client"


class BillingCycle(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PaymentMode(str, enum.Enum):
    COACH_SUBSCRIPTION = "coach_subscription"
    CLIENT_ONE_TIME = "client_one_time"
    CLIENT_SUBSCRIPTION = "client_subscription"


class TransactionMode(str, enum.Enum):
    COACH_SUBSCRIPTION = "coach_subscription"
    COACH_SUBSCRIPTION_RENEWAL = "coach_subscription_renewal"
    CLIENT_ONE_TIME = "client_one_time"
    CLIENT_SUBSCRIPTION = "client_subscription"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class SubscriptionStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    GRACE = "grace"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class OrderType(str, enum.Enum):
    ONE_TIME = "one_time"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WithdrawalStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    APPROVED = "approved"
    REJECTED = "rejected"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WithdrawalAction(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"


class PaymentMethod(str, enum.Enum):
    MOBILE_MONEY = "mobile_money"
    BANK_TRANSFER = "bank_transfer"


class CreditTransactionType(str, enum.Enum):
    PURCHASE = "purchase"
    WITHDRAWAL = "withdrawal"
    WITHDRAWAL_REFUND = "withdrawal_refund"
