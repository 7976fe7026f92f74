from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from .classification import DeclineType
from .ledger_store import MAX_CONTACTS, GoldenHour, LedgerStore, MerchantRecord, TargetRecord, js_day_of_week
from .mailer import RecoveryMailer
from .vault import redact_email, redact_name

logger = logging.getLogger(__name__)

DISPATCH_JOB_NAME = "pulse_engine"
DEFAULT_HOURLY_LIMIT = 50
DEFAULT_GRACE = timedelta(hours=4)
GOLDEN_WINDOW_HOURS = 2
HOURS_PER_WEEK = 7 * 24
TIMING_OPTIMIZED = "oracle"

DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def within_golden_window(now: datetime, golden: GoldenHour, *, window_hours: int = GOLDEN_WINDOW_HOURS) -> bool:
    """True when ``now`` falls within +/- ``window_hours`` of the golden hour, measured across the week."""
    current = js_day_of_week(now) * 24 + now.hour
    target = golden.day_of_week * 24 + golden.hour
    distance = abs(current - target) % HOURS_PER_WEEK
    return min(distance, HOURS_PER_WEEK - distance) <= window_hours


def describe_golden_hour(golden: GoldenHour) -> str:
    return f"{DAY_NAMES[golden.day_of_week]} at {golden.hour:02d}:00 UTC"


@dataclass
class DispatchResult:
    sent: int = 0
    failed: int = 0
    rate_limited: int = 0
    pending_manual_review: int = 0
    outside_window: int = 0
    exhausted: int = 0
    dry_run: int = 0
    recovery_emails: int = 0
    protection_emails: int = 0
    next_golden_hour: str | None = None
    errors: list[str] = field(default_factory=list)


class RecoveryDispatcher:
    def __init__(
        self,
        *,
        ledger: LedgerStore,
        mailer: RecoveryMailer,
        tracking_base_url: str,
        hourly_limit: int = DEFAULT_HOURLY_LIMIT,
        grace: timedelta = DEFAULT_GRACE,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._ledger = ledger
        self._mailer = mailer
        self._tracking_base_url = tracking_base_url.rstrip("/")
        self._hourly_limit = hourly_limit
        self._grace = grace
        self._clock = clock

    def tracking_url(self, target_id: str) -> str:
        return f"{self._tracking_base_url}/l/{target_id}"

    def process_queue(self) -> DispatchResult:
        result = DispatchResult()
        now = self._clock()
        merchants: dict[str, MerchantRecord | None] = {}
        golden_hours: dict[str, GoldenHour | None] = {}

        targets = self._ledger.list_outreach_eligible(now=now, grace=self._grace)
        logger.info("dispatch started eligible=%s", len(targets))

        for target in targets:
            if target.merchant_id not in merchants:
                merchants[target.merchant_id] = self._ledger.get_merchant(target.merchant_id)
            merchant = merchants[target.merchant_id]
            if merchant is None:
                result.failed += 1
                result.errors.append(f"{target.target_id}: merchant not found: {target.merchant_id}")
                continue

            if not merchant.auto_pilot_enabled:
                result.pending_manual_review += 1
                continue

            if self._ledger.read_hourly_counter(merchant.merchant_id, now=now) >= self._hourly_limit:
                result.rate_limited += 1
                continue

            if self._timing_gated(target, merchant):
                if merchant.merchant_id not in golden_hours:
                    golden_hours[merchant.merchant_id] = self._ledger.get_golden_hour(merchant.merchant_id)
                golden = golden_hours[merchant.merchant_id]
                if golden is not None and not within_golden_window(now, golden):
                    result.outside_window += 1
                    if result.next_golden_hour is None:
                        result.next_golden_hour = describe_golden_hour(golden)
                    continue

            self._send(target, merchant, now, result)

        logger.info(
            "dispatch finished sent=%s failed=%s rate_limited=%s manual_review=%s outside_window=%s",
            result.sent,
            result.failed,
            result.rate_limited,
            result.pending_manual_review,
            result.outside_window,
        )
        return result

    @staticmethod
    def _timing_gated(target: TargetRecord, merchant: MerchantRecord) -> bool:
        if target.status == "impending":
            return False
        if target.decline_type == DeclineType.HARD.value:
            return False
        return merchant.recovery_strategy == TIMING_OPTIMIZED

    def _send(self, target: TargetRecord, merchant: MerchantRecord, now: datetime, result: DispatchResult) -> None:
        masked = redact_email(target.email)
        kind = "protection" if target.status == "impending" else "recovery"
        try:
            outcome = self._mailer.send(target, merchant, self.tracking_url(target.target_id))
        except Exception as exc:
            logger.exception("send raised target=%s to=%s", target.target_id, masked)
            result.failed += 1
            result.errors.append(f"{target.target_id}: {exc}")
            return

        if not outcome.success:
            logger.warning(
                "send failed target=%s strategy=%s kind=%s to=%s error=%s",
                target.target_id,
                target.recovery_strategy,
                kind,
                masked,
                outcome.error,
            )
            result.failed += 1
            result.errors.append(f"{target.target_id}: {outcome.error or outcome.error_code or 'send failed'}")
            return

        logger.info(
            "send ok target=%s strategy=%s kind=%s to=%s name=%s dry_run=%s",
            target.target_id,
            target.recovery_strategy,
            kind,
            masked,
            redact_name(target.customer_name),
            outcome.dry_run,
        )
        contact_count = self._ledger.record_contact(target.target_id, now=now)
        self._ledger.increment_hourly_counter(merchant.merchant_id, now=now)
        result.sent += 1
        if outcome.dry_run:
            result.dry_run += 1
        if kind == "protection":
            result.protection_emails += 1
        else:
            result.recovery_emails += 1
        if contact_count >= MAX_CONTACTS and self._ledger.mark_exhausted(target.target_id):
            result.exhausted += 1
