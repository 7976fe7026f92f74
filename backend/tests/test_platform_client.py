from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import stripe

from recovery_engine.platform_client import (
    PlatformError,
    PlatformRateLimitError,
    StripePlatformClient,
    with_retry,
)


def test_with_retry_backs_off_exponentially_on_rate_limits() -> None:
    sleeps: list[float] = []
    call = MagicMock(side_effect=[PlatformRateLimitError("429"), PlatformRateLimitError("429"), "page"])

    assert with_retry(call, attempts=3, base_delay=2.0, sleep=sleeps.append) == "page"
    assert sleeps == [2.0, 4.0]


def test_with_retry_gives_up_after_configured_attempts() -> None:
    sleeps: list[float] = []
    call = MagicMock(side_effect=PlatformRateLimitError("429"))

    with pytest.raises(PlatformRateLimitError):
        with_retry(call, attempts=3, base_delay=1.0, sleep=sleeps.append)
    assert call.call_count == 3
    assert sleeps == [1.0, 2.0]


def test_with_retry_does_not_retry_other_errors() -> None:
    call = MagicMock(side_effect=PlatformError("invalid api key"))

    with pytest.raises(PlatformError):
        with_retry(call, sleep=lambda seconds: None)
    assert call.call_count == 1


def test_stripe_client_rejects_empty_key() -> None:
    with pytest.raises(ValueError):
        StripePlatformClient("  ")


@patch("recovery_engine.platform_client.stripe.Invoice.list")
def test_list_invoices_converts_pages(mock_list: MagicMock) -> None:
    mock_list.return_value = {
        "data": [
            {
                "id": "in_001",
                "status": "open",
                "amount_due": 2500,
                "currency": "GBP",
                "customer": {
                    "id": "cus_001",
                    "email": "jane.doe@example.com",
                    "name": "Jane Doe",
                    "address": {"country": "GB"},
                },
                "created": 1760000000,
                "payment_intent": "pi_001",
                "status_transitions": {"paid_at": None},
            }
        ],
        "has_more": True,
    }
    client = StripePlatformClient("sk_test_token")
    since = datetime(2026, 10, 1, tzinfo=timezone.utc)

    page = client.list_invoices(limit=100, starting_after="in_000", created_after=since)

    kwargs = mock_list.call_args.kwargs
    assert kwargs["api_key"] == "sk_test_token"
    assert kwargs["limit"] == 100
    assert kwargs["starting_after"] == "in_000"
    assert kwargs["created"] == {"gt": int(since.timestamp())}
    assert page.next_cursor == "in_001"
    view = page.items[0]
    assert view.customer_id == "cus_001"
    assert view.customer_email == "jane.doe@example.com"
    assert view.customer_country == "GB"
    assert view.currency == "gbp"
    assert view.payment_intent_id == "pi_001"
    assert view.created == datetime.fromtimestamp(1760000000, tz=timezone.utc)
    assert view.paid_at is None


@patch("recovery_engine.platform_client.stripe.Subscription.list")
def test_list_active_subscriptions_reads_card_and_items(mock_list: MagicMock) -> None:
    mock_list.return_value = {
        "data": [
            {
                "id": "sub_001",
                "customer": {"id": "cus_001", "email": "sam.lee@example.com", "name": "Sam Lee"},
                "currency": "gbp",
                "default_payment_method": {"type": "card", "card": {"exp_month": 11, "exp_year": 2026}},
                "items": {
                    "data": [
                        {"quantity": 2, "price": {"unit_amount": 1000, "recurring": {"interval": "week"}}},
                        {"quantity": 1, "price": {"unit_amount": 5000, "recurring": None}},
                    ]
                },
            }
        ],
        "has_more": False,
    }

    page = StripePlatformClient("sk_test_token").list_active_subscriptions(limit=100)

    assert mock_list.call_args.kwargs["status"] == "active"
    assert page.next_cursor is None
    view = page.items[0]
    assert view.payment_method_type == "card"
    assert (view.card_exp_month, view.card_exp_year) == (11, 2026)
    assert view.items[0].unit_amount == 1000
    assert view.items[0].quantity == 2
    assert view.items[0].interval == "week"
    assert len(view.items) == 1


@patch("recovery_engine.platform_client.stripe.Invoice.list")
def test_stripe_rate_limit_is_translated(mock_list: MagicMock) -> None:
    mock_list.side_effect = stripe.RateLimitError("Too many requests")

    with pytest.raises(PlatformRateLimitError):
        StripePlatformClient("sk_test_token").list_invoices(limit=100)


@patch("recovery_engine.platform_client.stripe.PaymentIntent.retrieve")
def test_other_stripe_errors_become_platform_errors(mock_retrieve: MagicMock) -> None:
    mock_retrieve.side_effect = stripe.InvalidRequestError("No such payment_intent", param="id")

    with pytest.raises(PlatformError) as exc_info:
        StripePlatformClient("sk_test_token").retrieve_payment_intent("pi_missing")
    assert not isinstance(exc_info.value, PlatformRateLimitError)


@patch("recovery_engine.platform_client.stripe.Subscription.list")
def test_customer_recurring_check_accepts_active_or_past_due(mock_list: MagicMock) -> None:
    mock_list.return_value = {"data": [{"status": "canceled"}, {"status": "past_due"}], "has_more": False}

    assert StripePlatformClient("sk_test_token").customer_has_recurring_subscription("cus_001") is True
    assert mock_list.call_args.kwargs["customer"] == "cus_001"
