"""External payment events: the authoritative path for recoveries and protections.

The scanner's paid-invoice check is a reconciliation pass that only catches
targets still ``pending`` when no event arrived; it always records ``organic``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .ledger_store import LedgerStore, TargetRecord, js_day_of_week

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class ReconcileOutcome:
    applied: bool
    target_id: str | None = None
    status: str | None = None
    recovery_type: str | None = None
    reason: str | None = None


class PaymentEventReconciler:
    def __init__(self, *, ledger: LedgerStore, clock: Callable[[], datetime] = _now_utc) -> None:
        self._ledger = ledger
        self._clock = clock

    def record_click(self, target_id: str) -> TargetRecord:
        target = self._ledger.record_click(target_id, now=self._clock())
        logger.info("outreach click target=%s clicks=%s", target.target_id, target.click_count)
        return target

    def apply_invoice_paid(self, invoice_id: str, *, paid_at: datetime | None = None) -> ReconcileOutcome:
        paid = _coerce_utc(paid_at) if paid_at is not None else self._clock()
        target = self._ledger.get_target_by_natural_key(invoice_id)
        if target is None:
            return ReconcileOutcome(applied=False, reason="no target for invoice")

        self._ledger.add_timing_sample(
            target.merchant_id,
            day_of_week=js_day_of_week(paid),
            hour=paid.hour,
            source_key=invoice_id,
        )
        if target.status == "recovered":
            return ReconcileOutcome(
                applied=False,
                target_id=target.target_id,
                status=target.status,
                recovery_type=target.recovery_type,
                reason="already recovered",
            )

        attributed = target.attribution_expires_at is not None and paid <= target.attribution_expires_at
        recovery_type = "direct" if attributed else "organic"
        if not self._ledger.mark_recovered(target.target_id, recovery_type=recovery_type, now=paid):
            return ReconcileOutcome(
                applied=False,
                target_id=target.target_id,
                status=target.status,
                reason=f"status {target.status} cannot be recovered",
            )
        self._ledger.increment_recovered(target.merchant_id, target.amount)
        logger.info(
            "invoice paid target=%s merchant=%s amount=%s type=%s",
            target.target_id,
            target.merchant_id,
            target.amount,
            recovery_type,
        )
        return ReconcileOutcome(
            applied=True,
            target_id=target.target_id,
            status="recovered",
            recovery_type=recovery_type,
        )

    def apply_payment_method_updated(self, subscription_id: str) -> ReconcileOutcome:
        target = self._ledger.get_target_by_natural_key(f"impending_{subscription_id}")
        if target is None:
            return ReconcileOutcome(applied=False, reason="no impending target for subscription")
        if not self._ledger.mark_protected(target.target_id, now=self._clock()):
            return ReconcileOutcome(
                applied=False,
                target_id=target.target_id,
                status=target.status,
                reason=f"status {target.status} cannot be protected",
            )
        self._ledger.increment_protected(target.merchant_id, target.amount)
        logger.info("payment method updated target=%s merchant=%s", target.target_id, target.merchant_id)
        return ReconcileOutcome(applied=True, target_id=target.target_id, status="protected")
