"""
PayChangu API client for hosted checkout and mobile-money payouts.

Provides async methods for:
- Initiating a hosted checkout (returns a checkout URL)
- Looking up the mobile-money operator for a Malawian number
- Initiating a mobile-money payout and polling its status

The engine only depends on the ``PaymentGateway`` surface, so business logic
can be exercised against a fake in tests.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from libs.common.config import get_settings

logger = logging.getLogger(__name__)

MALAWI_PREFIX = re.compile(r"^\+?265")
AIRTEL_PREFIXES = ("99", "88")
TNM_PREFIXES = ("77", "76")


@dataclass
class Payer:
    """Customer details sent to the hosted checkout."""

    email: Optional[str] = None
    first_name: str = ""
    last_name: str = ""


@dataclass
class CheckoutSession:
    """Result of a successful checkout initiation."""

    checkout_url: str
    reference: str
    raw: dict = field(default_factory=dict)


@dataclass
class PayoutResult:
    """Result of a successful mobile-money payout."""

    charge_id: str
    ref_id: Optional[str]
    trans_id: Optional[str]
    raw: dict = field(default_factory=dict)


@dataclass
class PayoutStatus:
    """Current state of a previously submitted payout."""

    status: Optional[str]
    failure_reason: Optional[str] = None
    raw: dict = field(default_factory=dict)


class PayChanguError(Exception):
    """Gateway rejected the request or could not be reached.

    ``response_data`` is the raw gateway payload, kept for diagnostics.
    """

    def __init__(
        self,
        message: str,
        status_code: int = None,
        response_data: dict = None,
        outcome_unknown: bool = False,
    ):
        self.message = message
        self.status_code = status_code
        self.response_data = response_data or {}
        # True when the request may have reached PayChangu (read timeout,
        # dropped connection, 5xx): the operation might still have happened.
        self.outcome_unknown = outcome_unknown
        super().__init__(message)

    @property
    def gateway_status(self) -> Optional[str]:
        return self.response_data.get("status")


class PayoutPending(Exception):
    """Payout accepted (or possibly accepted) but not final yet.

    The money may still move, so callers must not refund. Settle it later
    with ``get_payout_status``.
    """

    def __init__(
        self,
        message: str,
        charge_id: str,
        ref_id: Optional[str] = None,
        response_data: dict = None,
    ):
        self.message = message
        self.charge_id = charge_id
        self.ref_id = ref_id
        self.response_data = response_data or {}
        super().__init__(message)


class GatewayNotConfigured(Exception):
    """The gateway credential is missing from the environment."""


PAYOUT_SUCCESS_STATUSES = frozenset({"success", "completed"})
PAYOUT_FAILED_STATUSES = frozenset({"failed", "rejected", "cancelled"})
PAYOUT_IN_FLIGHT_STATUSES = frozenset({"pending", "processing"})
# Connection never established, so the request cannot have been received.
_NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


def normalize_malawi_mobile(mobile: str) -> str:
    """Strip the +265 country code, leaving the 9-digit local number."""
    return MALAWI_PREFIX.sub("", (mobile or "").strip())


class PaymentGateway:
    """Interface the billing engine uses to talk to a payment provider."""

    async def initiate_payment(
        self,
        *,
        amount: float,
        currency: str,
        payer: Payer,
        callback_url: str,
        return_url: str,
        reference: str,
        description: str = "",
        meta: Optional[dict] = None,
    ) -> CheckoutSession:
        raise NotImplementedError

    async def initiate_payout(
        self,
        *,
        mobile: str,
        amount: float,
        currency: str,
        charge_id: str,
        reason: str,
    ) -> PayoutResult:
        raise NotImplementedError

    async def get_payout_status(self, reference: str) -> PayoutStatus:
        raise NotImplementedError


class PayChanguClient(PaymentGateway):
    """Async client for the PayChangu payment and payout APIs."""

    def __init__(
        self,
        secret_key: str = None,
        *,
        base_url: str = None,
        timeout: float = None,
        title: str = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        settings = get_settings()
        self.secret_key = secret_key or settings.PAYCHANGU_SECRET_KEY
        if not self.secret_key:
            raise GatewayNotConfigured("PAYCHANGU_SECRET_KEY is required")
        self.base_url = (base_url or settings.PAYCHANGU_API_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.PAYCHANGU_TIMEOUT_SECONDS
        self.title = title or settings.CHECKOUT_TITLE
        self._transport = transport
        self._headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_data: dict = None,
    ) -> dict:
        """Make a request to PayChangu and return the decoded body.

        Raises PayChanguError for transport failures, non-JSON bodies and
        non-2xx responses. The caller decides what a successful body means.
        """
        url = f"{self.base_url}{endpoint}"

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=self._headers,
                    json=json_data,
                )
        except httpx.HTTPError as exc:
            logger.error(f"PayChangu request to {endpoint} failed: {exc!r}")
            raise PayChanguError(
                message=f"Payment gateway unreachable: {exc}",
                response_data={"status": "error", "message": str(exc)},
                outcome_unknown=not isinstance(exc, _NOT_SENT_ERRORS),
            ) from exc

        try:
            data = response.json()
        except ValueError:
            data = {"status": "error", "message": response.text}

        if not isinstance(data, dict):
            data = {"status": "error", "message": data}

        if not response.is_success:
            logger.error(f"PayChangu API error: {response.status_code} - {data}")
            raise PayChanguError(
                message=data.get("message") or "Unknown PayChangu error",
                status_code=response.status_code,
                response_data=data,
                outcome_unknown=response.status_code >= 500,
            )

        return data

    # =========================================================================
    # Checkout
    # =========================================================================

    async def initiate_payment(
        self,
        *,
        amount: float,
        currency: str,
        payer: Payer,
        callback_url: str,
        return_url: str,
        reference: str,
        description: str = "",
        meta: Optional[dict] = None,
    ) -> CheckoutSession:
        """
        Create a hosted checkout for ``reference``.

        The reference is the gateway idempotency key; callers mint a new one
        for every attempt.

        Returns:
            CheckoutSession with the checkout URL and the raw response

        Raises:
            PayChanguError: non-success status or a response without a checkout URL
        """
        payload: dict[str, Any] = {
            "amount": _format_amount(amount),
            "currency": currency,
            "email": payer.email,
            "first_name": payer.first_name,
            "last_name": payer.last_name,
            "callback_url": callback_url,
            "return_url": return_url,
            "tx_ref": reference,
            "customization": {"title": self.title, "description": description},
            "meta": meta or {},
        }

        data = await self._request("POST", "/payment", json_data=payload)

        checkout_url = (data.get("data") or {}).get("checkout_url")
        if data.get("status") != "success" or not checkout_url:
            raise PayChanguError(
                message=data.get("message") or "Payment initialization failed",
                response_data=data,
            )

        logger.info(f"PayChangu checkout created for {reference}")
        return CheckoutSession(checkout_url=checkout_url, reference=reference, raw=data)

    # =========================================================================
    # Payouts
    # =========================================================================

    async def get_mobile_operator_ref(self, mobile: str) -> str:
        """
        Resolve the PayChangu operator ref_id for a Malawian mobile number.

        Falls back to the well-known operator ids when the operator list is
        unavailable or does not contain a match.
        """
        number = normalize_malawi_mobile(mobile)
        if number.startswith(AIRTEL_PREFIXES):
            operator_name, fallback = "airtel", "AIRTEL_MW"
        elif number.startswith(TNM_PREFIXES):
            operator_name, fallback = "tnm", "TNM_MW"
        else:
            raise PayChanguError(
                message="Unsupported mobile number prefix",
                response_data={"status": "error", "mobile": number},
            )

        try:
            data = await self._request("GET", "/mobile-money/")
        except PayChanguError as exc:
            logger.warning(f"Operator lookup failed, using fallback: {exc.message}")
            return fallback

        for operator in data.get("data") or []:
            name = str(operator.get("name") or "").lower()
            country = str((operator.get("supported_country") or {}).get("name") or "")
            if operator_name in name and country.lower() == "malawi":
                return operator.get("ref_id") or fallback

        return fallback

    async def initiate_payout(
        self,
        *,
        mobile: str,
        amount: float,
        currency: str,
        charge_id: str,
        reason: str,
    ) -> PayoutResult:
        """
        Send money to a mobile-money wallet.

        Args:
            mobile: Malawian number, with or without the +265 prefix
            amount: Amount in ``currency``
            charge_id: Unique charge id; reusing it lets PayChangu reject duplicates
            reason: Narrative shown to the recipient

        Raises:
            PayChanguError: payout definitely rejected; nothing was sent
            PayoutPending: accepted but not final, or the outcome is unknown
        """
        number = normalize_malawi_mobile(mobile)
        if not re.fullmatch(r"\d{9}", number):
            raise PayChanguError(
                message=f"Invalid mobile number format: {number}",
                response_data={"status": "error", "mobile": number},
            )

        operator_ref = await self.get_mobile_operator_ref(number)
        payload = {
            "mobile_money_operator_ref_id": operator_ref,
            "mobile": number,
            "amount": _format_amount(amount),
            "currency": currency,
            "reason": reason,
            "charge_id": charge_id,
        }

        try:
            data = await self._request(
                "POST", "/mobile-money/payouts/initialize", json_data=payload
            )
        except PayChanguError as exc:
            if not exc.outcome_unknown:
                raise
            logger.warning(f"PayChangu payout {charge_id} outcome unknown: {exc.message}")
            raise PayoutPending(
                message=exc.message,
                charge_id=charge_id,
                response_data=exc.response_data,
            ) from exc

        body = data.get("data") or {}
        transaction = body.get("transaction") or {}
        ref_id = body.get("ref_id") or transaction.get("ref_id")
        tx_status = str(transaction.get("status") or "").lower()

        if data.get("status") != "success" or tx_status in PAYOUT_FAILED_STATUSES:
            raise PayChanguError(
                message=data.get("message") or "Failed to execute payout",
                response_data=data,
            )

        if tx_status not in PAYOUT_SUCCESS_STATUSES:
            logger.info(f"PayChangu payout {charge_id} accepted, status {tx_status or 'unknown'}")
            raise PayoutPending(
                message=f"Payout {tx_status or 'submitted'}",
                charge_id=charge_id,
                ref_id=ref_id,
                response_data=data,
            )

        logger.info(f"PayChangu payout {charge_id} completed")
        return PayoutResult(
            charge_id=charge_id,
            ref_id=ref_id,
            trans_id=body.get("trans_id") or transaction.get("trans_id"),
            raw=data,
        )

    async def get_payout_status(self, reference: str) -> PayoutStatus:
        """
        Look up a submitted payout by its PayChangu reference or charge id.

        Returns:
            PayoutStatus with the lower-cased status (None if absent)

        Raises:
            PayChanguError: the lookup itself failed
        """
        data = await self._request("GET", f"/mobile-money/payouts/status/{reference}")
        body = data.get("data") or {}
        status = body.get("status")
        return PayoutStatus(
            status=str(status).lower() if status else None,
            failure_reason=body.get("failure_reason"),
            raw=data,
        )


def _format_amount(amount: float) -> str:
    if float(amount).is_integer():
        return str(int(amount))
    return f"{amount:.2f}"


def get_paychangu_client() -> PaymentGateway:
    """FastAPI dependency returning a configured gateway client."""
    return PayChanguClient()
