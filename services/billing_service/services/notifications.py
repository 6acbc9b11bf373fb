"""Best-effort side channels for subscription status changes.

Both the audit log insert and the alert webhook run after the authoritative
state change has been committed. Failures are logged and swallowed so they
can never block or roll back subscription processing.
"""

import uuid
from typing import Any, Optional

import httpx
from libs.common.config import get_settings
from libs.common.logging import get_logger
from services.billing_service.models import SubscriptionAuditLog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


class SubscriptionAlerter:
    """POSTs subscription status changes to an external webhook, if configured."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        *,
        timeout: float = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        settings = get_settings()
        self.webhook_url = webhook_url
        self.timeout = timeout if timeout is not None else settings.ALERT_TIMEOUT_SECONDS
        self._transport = transport

    @classmethod
    def from_settings(cls) -> "SubscriptionAlerter":
        return cls(get_settings().SUBSCRIPTION_ALERT_WEBHOOK)

    async def send(self, payload: dict[str, Any]) -> bool:
        """Deliver ``payload``. Returns False instead of raising on any failure."""
        if not self.webhook_url:
            return False

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.post(self.webhook_url, json=payload)
        except httpx.HTTPError as exc:
            logger.error(
                "Failed to send subscription alert webhook for %s: %r",
                payload.get("subscription_id"),
                exc,
            )
            return False

        if resp.status_code >= 400:
            logger.warning(
                "Subscription alert webhook returned %s for %s",
                resp.status_code,
                payload.get("subscription_id"),
            )
            return False
        return True


async def write_audit_entry(
    db: AsyncSession,
    *,
    subscription_id: uuid.UUID,
    old_status: Optional[str],
    new_status: str,
    reason: str,
    metadata: Optional[dict] = None,
    changed_by: Optional[str] = None,
    subscription_type: str = "coach",
) -> Optional[SubscriptionAuditLog]:
    """Append an audit row in its own commit. Returns None if the write failed."""
    entry = SubscriptionAuditLog(
        subscription_id=subscription_id,
        subscription_type=subscription_type,
        old_status=old_status,
        new_status=new_status,
        changed_by=changed_by,
        change_reason=reason,
        audit_metadata=metadata,
    )
    try:
        db.add(entry)
        await db.commit()
    except SQLAlchemyError:
        logger.exception("Failed to write subscription audit log for %s", subscription_id)
        await db.rollback()
        return None
    return entry


async def notify_subscription_status_change(
    db: AsyncSession,
    *,
    subscription_id: uuid.UUID,
    old_status: Optional[str],
    new_status: str,
    reason: str,
    metadata: Optional[dict] = None,
    changed_by: Optional[str] = None,
    alerter: Optional[SubscriptionAlerter] = None,
) -> None:
    """Record a status transition in the audit log and raise an alert."""
    await write_audit_entry(
        db,
        subscription_id=subscription_id,
        old_status=old_status,
        new_status=new_status,
        reason=reason,
        metadata=metadata,
        changed_by=changed_by,
    )

    if alerter is not None:
        await alerter.send(
            {
                "subscription_id": str(subscription_id),
                "old_status": old_status,
                "new_status": new_status,
                "reason": reason,
                "metadata": metadata,
            }
        )
