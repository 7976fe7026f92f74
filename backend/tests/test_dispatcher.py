from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from recovery_engine.dispatcher import RecoveryDispatcher, describe_golden_hour, within_golden_window
from recovery_engine.ledger_store import GoldenHour, TargetUpsert
from recovery_engine.mailer import MailResult
from recovery_fakes import NOW, add_merchant, make_ledger


def _sent(*, dry_run: bool = False) -> MailResult:
    return MailResult(success=True, dry_run=dry_run, attempted_at=NOW, message_id="msg-001")


def _mailer(result: MailResult | None = None) -> MagicMock:
    mailer = MagicMock()
    mailer.send.return_value = result or _sent()
    return mailer


def _setup(*, auto_pilot: bool = True, strategy: str = "immediate", **overrides):
    ledger = make_ledger()
    merchant = add_merchant(ledger, auto_pilot_enabled=auto_pilot, recovery_strategy=strategy)
    values = {
        "merchant_id": merchant.merchant_id,
        "natural_key": "in_001",
        "email": "jane.doe@example.com",
        "customer_name": "Jane Doe",
        "amount": 2500,
        "decline_type": "soft",
        "recovery_strategy": "smart_retry",
        "discovered_at": NOW - timedelta(hours=6),
    }
    values.update(overrides)
    outcome = ledger.upsert_by_natural_key(TargetUpsert(**values), now=NOW)
    return ledger, merchant, outcome.target_id


def _dispatcher(ledger, mailer, **kwargs) -> RecoveryDispatcher:
    return RecoveryDispatcher(
        ledger=ledger,
        mailer=mailer,
        tracking_base_url="https://recover.test/api/v1/recovery/",
        clock=lambda: NOW,
        **kwargs,
    )


def test_tracking_url_points_at_click_endpoint() -> None:
    dispatcher = _dispatcher(make_ledger(), _mailer())

    assert dispatcher.tracking_url("tgt_001") == "https://recover.test/api/v1/recovery/l/tgt_001"


def test_successful_send_records_contact_and_counts_toward_hourly_limit() -> None:
    ledger, merchant, target_id = _setup()
    mailer = _mailer()

    result = _dispatcher(ledger, mailer).process_queue()

    assert result.sent == 1
    assert result.recovery_emails == 1
    assert result.failed == 0
    target_arg, merchant_arg, url_arg = mailer.send.call_args[0]
    assert target_arg.target_id == target_id
    assert target_arg.email == "jane.doe@example.com"
    assert merchant_arg.merchant_id == merchant.merchant_id
    assert url_arg.endswith(f"/l/{target_id}")

    target = ledger.get_target(target_id)
    assert target is not None
    assert target.email_count == 1
    assert target.last_emailed_at == NOW
    assert ledger.read_hourly_counter(merchant.merchant_id, now=NOW) == 1


def test_send_log_masks_customer_identity(caplog) -> None:
    ledger, _, _ = _setup()

    with caplog.at_level(logging.INFO, logger="recovery_engine.dispatcher"):
        _dispatcher(ledger, _mailer()).process_queue()

    messages = [record.getMessage() for record in caplog.records]
    assert any("to=jan***@***.com name=Jan*** Doe***" in message for message in messages)
    assert not any("Jane Doe" in message or "jane.doe@example.com" in message for message in messages)


def test_autopilot_disabled_leaves_targets_for_manual_review() -> None:
    ledger, _, target_id = _setup(auto_pilot=False)
    mailer = _mailer()

    result = _dispatcher(ledger, mailer).process_queue()

    assert result.pending_manual_review == 1
    assert result.sent == 0
    mailer.send.assert_not_called()
    target = ledger.get_target(target_id)
    assert target is not None
    assert target.email_count == 0


def test_timing_optimized_merchant_waits_for_golden_hour() -> None:
    ledger, merchant, _ = _setup(strategy="oracle")
    ledger.add_timing_sample(merchant.merchant_id, day_of_week=3, hour=9)
    mailer = _mailer()

    result = _dispatcher(ledger, mailer).process_queue()

    assert result.outside_window == 1
    assert result.sent == 0
    assert result.next_golden_hour == "Wednesday at 09:00 UTC"
    mailer.send.assert_not_called()


def test_timing_optimized_merchant_sends_inside_golden_window() -> None:
    ledger, merchant, _ = _setup(strategy="oracle")
    ledger.add_timing_sample(merchant.merchant_id, day_of_week=0, hour=10)

    result = _dispatcher(ledger, _mailer()).process_queue()

    assert result.sent == 1
    assert result.outside_window == 0


def test_timing_optimized_merchant_without_samples_sends_immediately() -> None:
    ledger, _, _ = _setup(strategy="oracle")

    result = _dispatcher(ledger, _mailer()).process_queue()

    assert result.sent == 1


def test_hard_declines_bypass_golden_hour() -> None:
    ledger, merchant, _ = _setup(strategy="oracle", decline_type="hard", recovery_strategy="card_refresh")
    ledger.add_timing_sample(merchant.merchant_id, day_of_week=3, hour=9)

    result = _dispatcher(ledger, _mailer()).process_queue()

    assert result.sent == 1
    assert result.outside_window == 0


def test_impending_targets_bypass_golden_hour_and_send_protection_mail() -> None:
    ledger, merchant, _ = _setup(
        strategy="oracle",
        natural_key="impending_sub_001",
        status="impending",
        decline_type="hard",
        failure_reason="card_expiring_11_2026",
    )
    ledger.add_timing_sample(merchant.merchant_id, day_of_week=3, hour=9)

    result = _dispatcher(ledger, _mailer()).process_queue()

    assert result.sent == 1
    assert result.protection_emails == 1
    assert result.recovery_emails == 0


def test_hourly_limit_stops_sends_for_the_merchant() -> None:
    ledger, merchant, _ = _setup()
    ledger.upsert_by_natural_key(
        TargetUpsert(
            merchant_id=merchant.merchant_id,
            natural_key="in_002",
            email="sam.lee@example.com",
            customer_name="Sam Lee",
            amount=1200,
            discovered_at=NOW - timedelta(hours=5),
        ),
        now=NOW,
    )
    mailer = _mailer()

    result = _dispatcher(ledger, mailer, hourly_limit=1).process_queue()

    assert result.sent == 1
    assert result.rate_limited == 1
    assert mailer.send.call_count == 1
    assert ledger.read_hourly_counter(merchant.merchant_id, now=NOW) == 1


def test_third_contact_exhausts_target() -> None:
    ledger, _, target_id = _setup()
    ledger.record_contact(target_id, now=NOW - timedelta(days=2))
    ledger.record_contact(target_id, now=NOW - timedelta(days=1))

    result = _dispatcher(ledger, _mailer()).process_queue()

    assert result.sent == 1
    assert result.exhausted == 1
    target = ledger.get_target(target_id)
    assert target is not None
    assert target.email_count == 3
    assert target.status == "exhausted"


def test_failed_send_does_not_mutate_target_or_counter() -> None:
    ledger, merchant, target_id = _setup()
    failure = MailResult(
        success=False,
        dry_run=False,
        attempted_at=NOW,
        error_code="http_500",
        error="HTTP 500: Internal Server Error (recipient: jan***@***.com)",
    )

    result = _dispatcher(ledger, _mailer(failure)).process_queue()

    assert result.failed == 1
    assert result.sent == 0
    assert result.errors == [f"{target_id}: HTTP 500: Internal Server Error (recipient: jan***@***.com)"]
    target = ledger.get_target(target_id)
    assert target is not None
    assert target.email_count == 0
    assert ledger.read_hourly_counter(merchant.merchant_id, now=NOW) == 0


def test_mailer_exception_is_counted_and_the_pass_continues() -> None:
    ledger, merchant, _ = _setup()
    ledger.upsert_by_natural_key(
        TargetUpsert(
            merchant_id=merchant.merchant_id,
            natural_key="in_002",
            email="sam.lee@example.com",
            customer_name="Sam Lee",
            amount=1200,
            discovered_at=NOW - timedelta(hours=5),
        ),
        now=NOW,
    )
    mailer = MagicMock()
    mailer.send.side_effect = [RuntimeError("provider exploded"), _sent()]

    result = _dispatcher(ledger, mailer).process_queue()

    assert result.failed == 1
    assert result.sent == 1
    assert "provider exploded" in result.errors[0]


def test_targets_inside_grace_period_are_not_contacted() -> None:
    ledger, _, _ = _setup(discovered_at=NOW - timedelta(hours=1))
    mailer = _mailer()

    result = _dispatcher(ledger, mailer).process_queue()

    assert result.sent == 0
    mailer.send.assert_not_called()


def test_dry_run_sends_are_counted() -> None:
    ledger, _, _ = _setup()

    result = _dispatcher(ledger, _mailer(_sent(dry_run=True))).process_queue()

    assert result.sent == 1
    assert result.dry_run == 1


def test_golden_window_wraps_around_the_week() -> None:
    saturday_late = datetime(2026, 10, 17, 23, 0, tzinfo=timezone.utc)
    sunday_early = GoldenHour(day_of_week=0, hour=1, sample_count=4)

    assert within_golden_window(saturday_late, sunday_early) is True
    assert within_golden_window(saturday_late - timedelta(hours=1), sunday_early) is False
    assert describe_golden_hour(sunday_early) == "Sunday at 01:00 UTC"
