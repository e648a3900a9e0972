"""
Payment processor client (PayPal REST API).

Features:
- OAuth client-credentials token, cached until shortly before expiry
- Explicit timeouts on every call
- Error classification: network errors, timeouts, 429 and 5xx are
  retryable; other 4xx are terminal. Nothing is retried here; the next
  scheduled run (or the processor's own redelivery) is the retry.

InMemoryPaymentGateway stands in for PayPal in tests and, when
PAYMENT_DEV_MODE or DEBUG is set, in place of missing credentials.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from config import settings
from domain.exceptions import ExternalServiceError
from services.clock import utcnow

logger = logging.getLogger(__name__)

# PayPal reporting API status code for a successful transaction
SUCCESS_STATUS = "S"


@dataclass
class ExternalTransaction:
    """One row of the processor's transaction ledger."""
    transaction_id: str
    status: str
    amount: Decimal
    currency: str = "USD"
    initiated_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_successful(self) -> bool:
        return self.status == SUCCESS_STATUS


@dataclass
class ProcessorOrder:
    order_id: str
    approve_url: Optional[str] = None


@dataclass
class ProcessorSubscription:
    subscription_id: str
    approve_url: Optional[str] = None


@dataclass
class CaptureResult:
    order_id: str
    status: str
    capture_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: str = "USD"

    @property
    def is_completed(self) -> bool:
        return self.status == "COMPLETED"


def parse_processor_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse PayPal timestamps (``...Z`` or ``...+0000``) to naive UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        parsed = datetime.strptime(value, "%Y-%m-%dT%H:%M:%S%z")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def format_processor_datetime(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


class PaymentGateway(ABC):
    """Operations the platform needs from the payment processor."""

    dev_mode = False

    @abstractmethod
    def list_transactions(self, start: datetime, end: datetime) -> list[ExternalTransaction]:
        ...

    @abstractmethod
    def create_order(
        self,
        amount: Decimal,
        currency: str,
        reference_id: str,
        description: str,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> ProcessorOrder:
        ...

    @abstractmethod
    def capture_order(self, order_id: str) -> CaptureResult:
        ...

    @abstractmethod
    def create_subscription(
        self,
        processor_plan_id: str,
        custom_id: str,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> ProcessorSubscription:
        ...


class PayPalGateway(PaymentGateway):
    """Synchronous PayPal REST client built on httpx."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str,
        timeout: float = 15.0,
        http_client: Optional[httpx.Client] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = http_client
        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    def _get_client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Accept": "application/json"},
            )
        return self._client

    def close(self):
        if self._client and not self._client.is_closed:
            self._client.close()

    # ------------------------------------------------------------------
    # Generic HTTP helpers
    # ------------------------------------------------------------------

    def _send(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        """Execute one HTTP request and classify any failure."""
        client = self._get_client()
        try:
            response = client.request(method, path, timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.warning("PayPal %s %s timed out: %s", method, path, exc)
            raise ExternalServiceError(f"PayPal request timed out: {path}", retryable=True) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            retryable = status >= 500 or status == 429
            logger.warning(
                "PayPal %s %s → %d: %s",
                method, path, status, exc.response.text[:200],
            )
            raise ExternalServiceError(
                f"PayPal {method} {path} failed with status {status}",
                retryable=retryable,
                upstream_status=status,
            ) from exc
        except httpx.RequestError as exc:
            logger.warning("PayPal %s %s connection error: %s", method, path, exc)
            raise ExternalServiceError(f"PayPal unreachable: {exc}", retryable=True) from exc

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            logger.warning("PayPal %s %s returned a non-JSON body", method, path)
            raise ExternalServiceError(
                f"PayPal {method} {path} returned a malformed body",
                upstream_status=response.status_code,
            ) from exc
        if not isinstance(data, dict):
            raise ExternalServiceError(
                f"PayPal {method} {path} returned a malformed body",
                upstream_status=response.status_code,
            )
        return data

    def _get_access_token(self) -> str:
        now = utcnow()
        if self._token and self._token_expires_at and now < self._token_expires_at:
            return self._token

        data = self._send(
            "POST",
            "/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        token = data.get("access_token")
        if not token:
            raise ExternalServiceError("PayPal auth response carried no access_token")

        expires_in = int(data.get("expires_in", 300))
        self._token = token
        # Refresh a minute early so a token never expires mid-run
        self._token_expires_at = now + timedelta(seconds=max(expires_in - 60, 0))
        return token

    def _authorized(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        token = self._get_access_token()
        headers = kwargs.pop("headers", {})
        headers.update({
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        })
        return self._send(method, path, headers=headers, **kwargs)

    # ------------------------------------------------------------------
    # Reporting API
    # ------------------------------------------------------------------

    def list_transactions(self, start: datetime, end: datetime) -> list[ExternalTransaction]:
        """Fetch every transaction in [start, end], following pagination."""
        transactions: list[ExternalTransaction] = []
        page = 1
        while True:
            data = self._authorized(
                "GET",
                "/v1/reporting/transactions",
                params={
                    "start_date": format_processor_datetime(start),
                    "end_date": format_processor_datetime(end),
                    "fields": "all",
                    "page_size": 500,
                    "page": page,
                },
            )
            for detail in data.get("transaction_details", []) or []:
                transactions.append(self._parse_transaction(detail))

            try:
                total_pages = int(data.get("total_pages", 1) or 1)
            except (TypeError, ValueError) as exc:
                raise ExternalServiceError(f"Malformed PayPal page count: {data.get('total_pages')!r}") from exc
            if page >= total_pages:
                break
            page += 1

        logger.info(f"Fetched {len(transactions)} PayPal transactions ({start} → {end})")
        return transactions

    @staticmethod
    def _parse_transaction(detail: dict) -> ExternalTransaction:
        """Raises ExternalServiceError (terminal) on a malformed report row."""
        try:
            info = detail.get("transaction_info") or detail
            amount = info.get("transaction_amount") or {}
            return ExternalTransaction(
                transaction_id=info["transaction_id"],
                status=info.get("transaction_status", ""),
                amount=Decimal(str(amount.get("value", "0"))),
                currency=amount.get("currency_code", "USD"),
                initiated_at=parse_processor_datetime(info.get("transaction_initiation_date")),
                updated_at=parse_processor_datetime(info.get("transaction_updated_date")),
            )
        except (KeyError, TypeError, AttributeError, ValueError, InvalidOperation) as exc:
            logger.warning(f"Malformed PayPal transaction row: {str(detail)[:200]}")
            raise ExternalServiceError(f"Malformed PayPal transaction row: {exc!r}") from exc

    # ------------------------------------------------------------------
    # Orders API
    # ------------------------------------------------------------------

    def create_order(
        self,
        amount: Decimal,
        currency: str,
        reference_id: str,
        description: str,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> ProcessorOrder:
        value = f"{Decimal(amount):.2f}"
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": reference_id,
                    "custom_id": reference_id,
                    "description": description,
                    "amount": {"currency_code": currency, "value": value},
                },
            ],
            "application_context": {
                "landing_page": "NO_PREFERENCE",
                "user_action": "PAY_NOW",
                "return_url": return_url or settings.PAYPAL_RETURN_URL,
                "cancel_url": cancel_url or settings.PAYPAL_CANCEL_URL,
            },
        }
        data = self._authorized("POST", "/v2/checkout/orders", json=payload)

        approve_url = next(
            (link.get("href") for link in data.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        if not approve_url:
            raise ExternalServiceError("PayPal order response carried no approve link")

        logger.info(f"PayPal order created: {data.get('id')}")
        return ProcessorOrder(order_id=data["id"], approve_url=approve_url)

    def capture_order(self, order_id: str) -> CaptureResult:
        data = self._authorized("POST", f"/v2/checkout/orders/{order_id}/capture")

        capture_id = None
        amount = None
        currency = "USD"
        try:
            capture = data["purchase_units"][0]["payments"]["captures"][0]
            capture_id = capture.get("id")
            amount = Decimal(str(capture["amount"]["value"]))
            currency = capture["amount"].get("currency_code", "USD")
        except (KeyError, IndexError, TypeError):
            logger.warning(f"PayPal capture response for {order_id} has no capture details")

        return CaptureResult(
            order_id=order_id,
            status=data.get("status", ""),
            capture_id=capture_id,
            amount=amount,
            currency=currency,
        )

    # ------------------------------------------------------------------
    # Subscriptions API
    # ------------------------------------------------------------------

    def create_subscription(
        self,
        processor_plan_id: str,
        custom_id: str,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> ProcessorSubscription:
        payload = {
            "plan_id": processor_plan_id,
            "custom_id": custom_id,
            "application_context": {
                "brand_name": settings.APP_NAME,
                "locale": "en-US",
                "shipping_preference": "NO_SHIPPING",
                "user_action": "SUBSCRIBE_NOW",
                "payment_method": {
                    "payer_selected": "PAYPAL",
                    "payee_preferred": "IMMEDIATE_PAYMENT_REQUIRED",
                },
                "return_url": return_url or settings.PAYPAL_RETURN_URL,
                "cancel_url": cancel_url or settings.PAYPAL_CANCEL_URL,
            },
        }
        data = self._authorized("POST", "/v1/billing/subscriptions", json=payload)

        approve_url = next(
            (link.get("href") for link in data.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        if not data.get("id") or not approve_url:
            raise ExternalServiceError("PayPal subscription response carried no id or approve link")

        logger.info(f"PayPal subscription created: {data['id']}")
        return ProcessorSubscription(subscription_id=data["id"], approve_url=approve_url)


@dataclass
class InMemoryPaymentGateway(PaymentGateway):
    """Processor stand-in: mock order ids, captures always complete.

    ``fail_with`` makes every call raise the given error, for exercising
    outage handling.
    """
    transactions: list[ExternalTransaction] = field(default_factory=list)
    orders: dict[str, dict] = field(default_factory=dict)
    subscriptions: dict[str, dict] = field(default_factory=dict)
    fail_with: Optional[ExternalServiceError] = None
    dev_mode = True

    def _check_failure(self):
        if self.fail_with is not None:
            raise self.fail_with

    def add_transaction(
        self,
        transaction_id: str,
        amount: str,
        status: str = SUCCESS_STATUS,
        updated_at: Optional[datetime] = None,
    ) -> ExternalTransaction:
        txn = ExternalTransaction(
            transaction_id=transaction_id,
            status=status,
            amount=Decimal(amount),
            updated_at=updated_at,
        )
        self.transactions.append(txn)
        return txn

    def list_transactions(self, start: datetime, end: datetime) -> list[ExternalTransaction]:
        self._check_failure()
        return [
            t for t in self.transactions
            if t.updated_at is None or start <= t.updated_at <= end
        ]

    def create_order(
        self,
        amount: Decimal,
        currency: str,
        reference_id: str,
        description: str,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> ProcessorOrder:
        self._check_failure()
        order_id = f"MOCK-{uuid.uuid4().hex[:12].upper()}"
        self.orders[order_id] = {
            "amount": Decimal(amount),
            "currency": currency,
            "reference_id": reference_id,
            "status": "CREATED",
        }
        base = return_url or settings.PAYPAL_RETURN_URL
        return ProcessorOrder(order_id=order_id, approve_url=f"{base}?token={order_id}")

    def capture_order(self, order_id: str) -> CaptureResult:
        self._check_failure()
        order = self.orders.get(order_id)
        if order is None:
            raise ExternalServiceError(f"Unknown processor order {order_id}", upstream_status=404)
        order["status"] = "COMPLETED"
        order.setdefault("capture_id", f"CAP-{uuid.uuid4().hex[:12].upper()}")
        return CaptureResult(
            order_id=order_id,
            status="COMPLETED",
            capture_id=order["capture_id"],
            amount=order["amount"],
            currency=order["currency"],
        )

    def create_subscription(
        self,
        processor_plan_id: str,
        custom_id: str,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> ProcessorSubscription:
        self._check_failure()
        subscription_id = f"MOCK-SUB-{uuid.uuid4().hex[:12].upper()}"
        self.subscriptions[subscription_id] = {
            "plan_id": processor_plan_id,
            "custom_id": custom_id,
            "status": "APPROVAL_PENDING",
        }
        base = return_url or settings.PAYPAL_RETURN_URL
        return ProcessorSubscription(
            subscription_id=subscription_id,
            approve_url=f"{base}?subscription_id={subscription_id}&ba_token={subscription_id}",
        )


def build_gateway() -> PaymentGateway:
    """PayPal when credentials are configured.

    The in-memory stand-in is only used when dev mode is explicitly on
    (PAYMENT_DEV_MODE or DEBUG); its captures always complete.

    Raises:
        ExternalServiceError: no credentials and dev mode is off.
    """
    if settings.paypal_configured:
        return PayPalGateway(
            client_id=settings.PAYPAL_CLIENT_ID,
            client_secret=settings.PAYPAL_CLIENT_SECRET,
            base_url=settings.paypal_api_base,
            timeout=settings.PAYPAL_TIMEOUT_SECONDS,
        )
    if not settings.payment_dev_mode:
        logger.error("PayPal credentials not configured and PAYMENT_DEV_MODE is off")
        raise ExternalServiceError("Payment processor is not configured")
    logger.warning("PayPal credentials not configured, using in-memory gateway (dev mode)")
    return InMemoryPaymentGateway()
