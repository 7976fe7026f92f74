from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Protocol, TypeVar

import stripe

from .models import RecurringItem

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BASE_SECONDS = 2.0


class PlatformError(Exception):
    """Raised when the payment platform rejects a request."""


class PlatformRateLimitError(PlatformError):
    """Raised when the payment platform reports a rate limit (HTTP 429)."""


@dataclass(frozen=True)
class InvoiceView:
    invoice_id: str
    status: str
    amount_due: int
    currency: str | None
    customer_id: str | None
    customer_email: str | None
    customer_name: str | None
    customer_country: str | None
    created: datetime | None
    paid_at: datetime | None
    payment_intent_id: str | None = None
    decline_code: str | None = None


@dataclass(frozen=True)
class PaymentIntentView:
    payment_intent_id: str
    status: str | None
    error_code: str | None
    decline_code: str | None
    error_message: str | None
    card_brand: str | None
    card_funding: str | None
    card_country: str | None


@dataclass(frozen=True)
class SubscriptionView:
    subscription_id: str
    customer_id: str | None
    customer_email: str | None
    customer_name: str | None
    currency: str | None
    payment_method_type: str | None
    card_exp_month: int | None
    card_exp_year: int | None
    items: tuple[RecurringItem, ...]


@dataclass(frozen=True)
class InvoicePage:
    items: list[InvoiceView]
    has_more: bool

    @property
    def next_cursor(self) -> str | None:
        return self.items[-1].invoice_id if self.has_more and self.items else None


@dataclass(frozen=True)
class SubscriptionPage:
    items: list[SubscriptionView]
    has_more: bool

    @property
    def next_cursor(self) -> str | None:
        return self.items[-1].subscription_id if self.has_more and self.items else None


class PaymentPlatformClient(Protocol):
    def list_invoices(
        self,
        *,
        limit: int,
        starting_after: str | None = None,
        created_after: datetime | None = None,
    ) -> InvoicePage: ...

    def list_active_subscriptions(self, *, limit: int, starting_after: str | None = None) -> SubscriptionPage: ...

    def retrieve_invoice(self, invoice_id: str) -> InvoiceView: ...

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentView: ...

    def customer_has_recurring_subscription(self, customer_id: str) -> bool: ...


def with_retry(
    call: Callable[[], T],
    *,
    attempts: int = DEFAULT_RETRY_ATTEMPTS,
    base_delay: float = DEFAULT_RETRY_BASE_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``call``, retrying only rate-limit failures with exponential backoff."""
    attempt = 0
    while True:
        try:
            return call()
        except PlatformRateLimitError:
            attempt += 1
            if attempt >= attempts:
                raise
            delay = base_delay * 2 ** (attempt - 1)
            logger.warning("platform rate limited; retry %s/%s in %.1fs", attempt, attempts - 1, delay)
            sleep(delay)


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _expandable_id(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _field(value, "id")


def _lower(value: Any) -> str | None:
    return str(value).lower() if value else None


def _invoice_view(invoice: Any) -> InvoiceView:
    customer = _field(invoice, "customer")
    expanded_customer = None if isinstance(customer, str) else customer
    address = _field(expanded_customer, "address")
    return InvoiceView(
        invoice_id=_field(invoice, "id"),
        status=_field(invoice, "status") or "",
        amount_due=int(_field(invoice, "amount_due") or 0),
        currency=_lower(_field(invoice, "currency")),
        customer_id=_expandable_id(customer),
        customer_email=_field(invoice, "customer_email") or _field(expanded_customer, "email"),
        customer_name=_field(invoice, "customer_name") or _field(expanded_customer, "name"),
        customer_country=_field(address, "country"),
        created=_timestamp(_field(invoice, "created")),
        paid_at=_timestamp(_field(_field(invoice, "status_transitions"), "paid_at")),
        payment_intent_id=_expandable_id(_field(invoice, "payment_intent")),
        decline_code=_field(_field(invoice, "last_payment_error"), "decline_code"),
    )


def _payment_intent_view(intent: Any) -> PaymentIntentView:
    error = _field(intent, "last_payment_error")
    payment_method = _field(intent, "payment_method")
    card = _field(payment_method, "card") if not isinstance(payment_method, str) else None
    return PaymentIntentView(
        payment_intent_id=_field(intent, "id"),
        status=_field(intent, "status"),
        error_code=_field(error, "code"),
        decline_code=_field(error, "decline_code"),
        error_message=_field(error, "message"),
        card_brand=_lower(_field(card, "brand")),
        card_funding=_lower(_field(card, "funding")),
        card_country=_lower(_field(card, "country")),
    )


def _subscription_view(subscription: Any) -> SubscriptionView:
    customer = _field(subscription, "customer")
    expanded_customer = None if isinstance(customer, str) else customer
    payment_method = _field(subscription, "default_payment_method")
    card = _field(payment_method, "card") if not isinstance(payment_method, str) else None
    items: list[RecurringItem] = []
    for item in _field(_field(subscription, "items"), "data") or []:
        price = _field(item, "price")
        recurring = _field(price, "recurring")
        if recurring is None:
            continue
        items.append(
            RecurringItem(
                unit_amount=int(_field(price, "unit_amount") or 0),
                quantity=int(_field(item, "quantity") or 1),
                interval=_field(recurring, "interval") or "month",
            )
        )
    exp_month = _field(card, "exp_month")
    exp_year = _field(card, "exp_year")
    return SubscriptionView(
        subscription_id=_field(subscription, "id"),
        customer_id=_expandable_id(customer),
        customer_email=_field(expanded_customer, "email"),
        customer_name=_field(expanded_customer, "name"),
        currency=_lower(_field(subscription, "currency")),
        payment_method_type=_field(payment_method, "type") if not isinstance(payment_method, str) else None,
        card_exp_month=int(exp_month) if exp_month is not None else None,
        card_exp_year=int(exp_year) if exp_year is not None else None,
        items=tuple(items),
    )


class StripePlatformClient:
    """Payment platform reader backed by the Stripe SDK, scoped to one access token."""

    def __init__(self, api_key: str) -> None:
        stripped = api_key.strip()
        if not stripped:
            raise ValueError("api_key must not be empty")
        self._api_key = stripped

    def _call(self, operation: Callable[..., Any], **params: Any) -> Any:
        try:
            return operation(api_key=self._api_key, **params)
        except stripe.RateLimitError as exc:
            raise PlatformRateLimitError(str(exc)) from exc
        except stripe.StripeError as exc:
            if getattr(exc, "http_status", None) == 429:
                raise PlatformRateLimitError(str(exc)) from exc
            raise PlatformError(str(exc)) from exc

    def list_invoices(
        self,
        *,
        limit: int,
        starting_after: str | None = None,
        created_after: datetime | None = None,
    ) -> InvoicePage:
        params: dict[str, Any] = {"limit": limit, "expand": ["data.customer"]}
        if starting_after:
            params["starting_after"] = starting_after
        if created_after is not None:
            params["created"] = {"gt": int(created_after.timestamp())}
        response = self._call(stripe.Invoice.list, **params)
        return InvoicePage(
            items=[_invoice_view(item) for item in _field(response, "data") or []],
            has_more=bool(_field(response, "has_more")),
        )

    def list_active_subscriptions(self, *, limit: int, starting_after: str | None = None) -> SubscriptionPage:
        params: dict[str, Any] = {
            "status": "active",
            "limit": limit,
            "expand": ["data.default_payment_method", "data.customer"],
        }
        if starting_after:
            params["starting_after"] = starting_after
        response = self._call(stripe.Subscription.list, **params)
        return SubscriptionPage(
            items=[_subscription_view(item) for item in _field(response, "data") or []],
            has_more=bool(_field(response, "has_more")),
        )

    def retrieve_invoice(self, invoice_id: str) -> InvoiceView:
        return _invoice_view(self._call(stripe.Invoice.retrieve, id=invoice_id))

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentView:
        intent = self._call(stripe.PaymentIntent.retrieve, id=payment_intent_id, expand=["payment_method"])
        return _payment_intent_view(intent)

    def customer_has_recurring_subscription(self, customer_id: str) -> bool:
        response = self._call(stripe.Subscription.list, customer=customer_id, status="all", limit=10)
        return any(
            _field(item, "status") in {"active", "past_due"} for item in _field(response, "data") or []
        )
