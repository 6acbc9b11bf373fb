import uuid
from datetime import datetime

from libs.common.datetime_utils import utc_now
from libs.db.base import Base, JSONType
from services.billing_service.models.enums import (
    AppRole,
    BillingCycle,
    CreditTransactionType,
    OrderStatus,
    OrderType,
    SubscriptionStatus,
    TransactionStatus,
    WithdrawalStatus,
    enum_values,
)
from sqlalchemy import DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import Float, ForeignKey, Index, Integer, String, Text, Uuid, event, text
from sqlalchemy.orm import Mapped, mapped_column


def _sa_enum(enum_cls, name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=enum_values,
        validate_strings=True,
    )


class Profile(Base):
    """Payer details for a user (mirrors the auth provider's profile row)."""

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    full_name: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    @property
    def first_name(self) -> str:
        parts = (self.full_name or "").split()
        return parts[0] if parts else ""

    @property
    def last_name(self) -> str:
        parts = (self.full_name or "").split()
        return " ".join(parts[1:])


class UserRole(Base):
    """Server-side source of truth for a user's application role."""

    __tablename__ = "user_roles"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    role: Mapped[AppRole] = mapped_column(
        _sa_enum(AppRole, "app_role_enum"), nullable=False
    )


class Tier(Base):
    """Coach pricing plan. Read-only to the billing engine."""

    __tablename__ = "tiers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    price_monthly: Mapped[float] = mapped_column(Float, nullable=False)
    price_yearly: Mapped[float] = mapped_column(Float, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    def price_for(self, cycle: BillingCycle) -> float:
        if cycle == BillingCycle.YEARLY:
            return self.price_yearly
        return self.price_monthly

    def __repr__(self):
        return f"<Tier {self.name}>"


class CoachSubscription(Base):
    """A coach's recurring billing relationship to a pricing tier."""

    __tablename__ = "coach_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    coach_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    tier_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tiers.id"), nullable=False
    )

    status: Mapped[SubscriptionStatus] = mapped_column(
        _sa_enum(SubscriptionStatus, "subscription_status_enum"),
        default=SubscriptionStatus.PENDING,
        nullable=False,
    )
    billing_cycle: Mapped[BillingCycle] = mapped_column(
        _sa_enum(BillingCycle, "billing_cycle_enum"),
        default=BillingCycle.MONTHLY,
        nullable=False,
    )
    payment_method: Mapped[str] = mapped_column(
        String(32), default="paychangu", nullable=False
    )

    start_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    renewal_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), index=True, nullable=True
    )
    # Only set while status is grace
    grace_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failed_renewal_attempts: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def __repr__(self):
        return f"<CoachSubscription {self.id} {self.status.value}>"


class ClientOrder(Base):
    """A client's one-time or recurring purchase from a coach."""

    __tablename__ = "client_orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    coach_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    course_id: Mapped[str | None] = mapped_column(String, nullable=True)

    type: Mapped[OrderType] = mapped_column(
        _sa_enum(OrderType, "order_type_enum"), nullable=False
    )
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="MWK", nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        _sa_enum(OrderStatus, "order_status_enum"),
        default=OrderStatus.PENDING,
        nullable=False,
    )

    start_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )


class Transaction(Base):
    """One attempt to collect money through the payment gateway."""

    __tablename__ = "transactions"
    __table_args__ = (
        # At most one outstanding charge per subscription, enforced by the
        # database as well as by the scheduler's pre-check.
        Index(
            "uq_transactions_one_pending_per_subscription",
            "subscription_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    transaction_ref: Mapped[str] = mapped_column(
        String(64), unique=True, index=True, nullable=False
    )

    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="MWK", nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        _sa_enum(TransactionStatus, "transaction_status_enum"),
        default=TransactionStatus.PENDING,
        nullable=False,
    )
    transaction_mode: Mapped[str | None] = mapped_column(String(40), nullable=True)
    gateway_response: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    order_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("client_orders.id"), nullable=True
    )
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("coach_subscriptions.id"), index=True, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    @staticmethod
    def generate_reference(prefix: str = "TX") -> str:
        """Mint a fresh gateway reference. Never reused across attempts."""
        return f"{prefix}-{uuid.uuid4()}"

    def __repr__(self):
        return f"<Transaction {self.transaction_ref} {self.status.value}>"


class SubscriptionAuditLog(Base):
    """Append-only record of a subscription status transition."""

    __tablename__ = "subscription_audit_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True, nullable=False)
    subscription_type: Mapped[str] = mapped_column(
        String(20), default="coach", nullable=False
    )
    old_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    changed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    change_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # "metadata" is reserved by SQLAlchemy's Declarative API
    audit_metadata: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )


@event.listens_for(SubscriptionAuditLog, "before_update")
@event.listens_for(SubscriptionAuditLog, "before_delete")
def _audit_log_is_immutable(mapper, connection, target):
    raise ValueError("subscription_audit_log entries are append-only")


class CreditWallet(Base):
    """A user's credit balance."""

    __tablename__ = "credit_wallets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    balance: Mapped[float] = mapped_column(Float, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )


class CreditTransaction(Base):
    """Ledger entry for a wallet balance change, with before/after snapshots."""

    __tablename__ = "credit_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    transaction_type: Mapped[CreditTransactionType] = mapped_column(
        _sa_enum(CreditTransactionType, "credit_transaction_type_enum"),
        nullable=False,
    )
    amount: Mapped[float] = mapped_column(Float, nullable=False)  # signed
    balance_before: Mapped[float] = mapped_column(Float, nullable=False)
    balance_after: Mapped[float] = mapped_column(Float, nullable=False)
    reference_type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    credit_metadata: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )


class WithdrawalRequest(Base):
    """A coach's request to cash out wallet credits."""

    __tablename__ = "withdrawal_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    coach_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    credits_amount: Mapped[float] = mapped_column(Float, nullable=False)
    amount_mwk: Mapped[float] = mapped_column(Float, nullable=False)

    status: Mapped[WithdrawalStatus] = mapped_column(
        _sa_enum(WithdrawalStatus, "withdrawal_status_enum"),
        default=WithdrawalStatus.PENDING,
        nullable=False,
    )
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    fraud_score: Mapped[float | None] = mapped_column(Float, nullable=True)

    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    payout_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    gateway_response: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    @property
    def payout_charge_id(self) -> str:
        """Stable gateway charge id, so a retried payout is deduplicated upstream."""
        return f"WD-{self.id}"

    def __repr__(self):
        return f"<WithdrawalRequest {self.id} {self.status.value}>"
