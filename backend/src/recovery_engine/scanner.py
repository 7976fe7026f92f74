"""Invoice scanner: discovers failing and expiring recurring payments for a merchant.

A scan walks the merchant's invoice history page by page, classifies each
invoice, and writes recoverable targets to the ledger in fixed-size batches.
A second pass over active subscriptions flags cards that expire this month
or next. Capacity (the merchant's tier limit) is enforced per new natural key.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Callable, TypeVar

from .classification import (
    CategoryTotal,
    DeclineType,
    aggregate_by_category,
    classify_decline_code,
    determine_recovery_strategy,
)
from .ledger_store import BatchCommitError, LedgerStore, MerchantRecord, TargetUpsert, js_day_of_week
from .models import MinorUnitTotal, monthly_normalized_amount
from .platform_client import (
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BASE_SECONDS,
    InvoiceView,
    PaymentIntentView,
    PaymentPlatformClient,
    PlatformError,
    SubscriptionView,
    with_retry,
)
from .vault import CriticalVaultError, Vault

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCAN_JOB_NAME = "ghost_hunter"
PAGE_SIZE = 100
BATCH_SIZE = 50
THROTTLE_EVERY = 50
THROTTLE_SECONDS = 0.2
FAILING_STATUSES = frozenset({"open", "uncollectible", "draft", "incomplete"})
UNKNOWN_EMAIL = "unknown"
UNKNOWN_NAME = "Unknown Customer"

ProgressCallback = Callable[[int, int], None]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ScanResult:
    merchant_id: str
    targets_found: int = 0
    new_targets: int = 0
    updated_targets: int = 0
    skipped_for_capacity: int = 0
    impending_found: int = 0
    recovered_organic: int = 0
    total_at_risk: int = 0
    timing_samples: int = 0
    gross_invoiced: int = 0
    invoices_scanned: int = 0
    remaining_capacity: int = 0
    tier_limit_reached: bool = False
    skipped: bool = False
    currency: str | None = None
    leakage: list[CategoryTotal] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class _ScanAborted(Exception):
    """Internal signal that a scan hit a hard failure and must stop."""


@dataclass
class _ScanState:
    merchant: MerchantRecord
    client: PaymentPlatformClient
    now: datetime
    force_full: bool
    remaining: int
    gross: MinorUnitTotal
    at_risk: MinorUnitTotal = field(default_factory=MinorUnitTotal)
    buffer: list[TargetUpsert] = field(default_factory=list)
    buffered_keys: set[str] = field(default_factory=set)
    recurring_customers: dict[str, bool] = field(default_factory=dict)
    leakage_entries: list[tuple[str | None, int]] = field(default_factory=list)
    currency: str | None = None
    processed: int = 0
    seen: int = 0


def _expiry_window(now: datetime) -> set[tuple[int, int]]:
    next_month = 1 if now.month == 12 else now.month + 1
    next_year = now.year + 1 if now.month == 12 else now.year
    return {(now.month, now.year), (next_month, next_year)}


class InvoiceScanner:
    def __init__(
        self,
        *,
        ledger: LedgerStore,
        vault: Vault,
        client_factory: Callable[[str], PaymentPlatformClient],
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS,
        throttle_seconds: float = THROTTLE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._ledger = ledger
        self._vault = vault
        self._client_factory = client_factory
        self._retry_attempts = retry_attempts
        self._retry_base_seconds = retry_base_seconds
        self._throttle_seconds = throttle_seconds
        self._sleep = sleep
        self._clock = clock

    def _retry(self, call: Callable[[], T]) -> T:
        return with_retry(
            call,
            attempts=self._retry_attempts,
            base_delay=self._retry_base_seconds,
            sleep=self._sleep,
        )

    def scan(
        self,
        merchant_id: str,
        *,
        force_full: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> ScanResult:
        result = ScanResult(merchant_id=merchant_id)
        started = time.perf_counter()

        try:
            diagnostic = self._vault.diagnostic()
        except CriticalVaultError as exc:
            logger.error("scan aborted before start merchant=%s: %s", merchant_id, exc)
            result.errors.append(f"vault pre-flight failed: {exc}")
            self._write_log(result, started)
            return result
        logger.debug(
            "vault pre-flight ok encrypt_ms=%s decrypt_ms=%s", diagnostic.encrypt_ms, diagnostic.decrypt_ms
        )

        merchant = self._ledger.get_merchant(merchant_id)
        if merchant is None:
            result.errors.append(f"merchant not found: {merchant_id}")
            self._write_log(result, started)
            return result

        now = self._clock()
        remaining = merchant.tier_limit - self._ledger.count_active_by_merchant(merchant_id, now=now)
        result.remaining_capacity = max(remaining, 0)
        if remaining <= 0:
            result.skipped = True
            result.tier_limit_reached = True
            note = f"Scan skipped: tier limit of {merchant.tier_limit} reached."
            result.notes.append(note)
            logger.info("scan skipped merchant=%s tier_limit=%s", merchant_id, merchant.tier_limit)
            self._ledger.create_log(SCAN_JOB_NAME, "skipped", details=note)
            return result

        try:
            access_token = self._vault.open(merchant.access_token)
        except CriticalVaultError as exc:
            result.errors.append(f"failed to decrypt access token: {exc}")
            self._write_log(result, started)
            return result

        delta_since = None if force_full else merchant.last_audit_at
        state = _ScanState(
            merchant=merchant,
            client=self._client_factory(access_token),
            now=now,
            force_full=force_full,
            remaining=remaining,
            gross=MinorUnitTotal(merchant.gross_invoiced if delta_since is not None else 0),
        )
        logger.info(
            "scan started merchant=%s mode=%s remaining_capacity=%s",
            merchant_id,
            "delta" if delta_since is not None else "full",
            remaining,
        )

        try:
            self._scan_invoices(state, result, delta_since, on_progress)
            self._flush(state, result)
            if not result.errors:
                self._scan_expiring_cards(state, result)
                self._flush(state, result)
        except _ScanAborted:
            logger.error("scan aborted merchant=%s errors=%s", merchant_id, result.errors)

        result.remaining_capacity = max(state.remaining, 0)
        result.total_at_risk = state.at_risk.value
        result.leakage = aggregate_by_category(state.leakage_entries)
        result.gross_invoiced = state.gross.value
        result.currency = state.currency or merchant.default_currency
        if result.skipped_for_capacity:
            result.notes.append(
                f"tier limit reached mid-scan: {result.skipped_for_capacity} new targets skipped "
                f"(limit {merchant.tier_limit})"
            )

        if not result.errors:
            self._ledger.record_audit(
                merchant_id,
                audited_at=now,
                currency=result.currency,
                gross_invoiced=result.gross_invoiced,
                vetted_increment=result.invoices_scanned,
            )
        self._write_log(result, started)
        return result

    def _scan_invoices(
        self,
        state: _ScanState,
        result: ScanResult,
        delta_since: datetime | None,
        on_progress: ProgressCallback | None,
    ) -> None:
        cursor: str | None = None
        while True:
            try:
                page = self._retry(
                    partial(
                        state.client.list_invoices,
                        limit=PAGE_SIZE,
                        starting_after=cursor,
                        created_after=delta_since,
                    )
                )
            except PlatformError as exc:
                result.errors.append(f"invoice page fetch failed: {exc}")
                return

            state.seen += len(page.items)
            for invoice in page.items:
                self._process_invoice(state, result, invoice)
                state.processed += 1
                result.invoices_scanned += 1
                if state.processed % THROTTLE_EVERY == 0:
                    logger.info(
                        "scan heartbeat merchant=%s processed=%s seen=%s",
                        state.merchant.merchant_id,
                        state.processed,
                        state.seen,
                    )
                    if on_progress is not None:
                        on_progress(state.processed, state.seen)
                    self._sleep(self._throttle_seconds)
                if len(state.buffer) >= BATCH_SIZE:
                    self._flush(state, result)

            if on_progress is not None:
                on_progress(state.processed, state.seen)
            cursor = page.next_cursor
            if cursor is None:
                return

    def _process_invoice(self, state: _ScanState, result: ScanResult, invoice: InvoiceView) -> None:
        state.gross.add(invoice.amount_due)
        if state.currency is None and invoice.currency:
            state.currency = invoice.currency

        if invoice.status in FAILING_STATUSES:
            self._ingest_failing_invoice(state, result, invoice)
        elif invoice.status == "paid":
            self._reconcile_paid_invoice(state, result, invoice)

    def _has_recurring_subscription(self, state: _ScanState, result: ScanResult, customer_id: str) -> bool:
        cached = state.recurring_customers.get(customer_id)
        if cached is not None:
            return cached
        try:
            linked = self._retry(partial(state.client.customer_has_recurring_subscription, customer_id))
        except PlatformError as exc:
            logger.warning("subscription check failed customer=%s: %s", customer_id, exc)
            result.errors.append(f"subscription check failed for customer {customer_id}: {exc}")
            return False
        state.recurring_customers[customer_id] = linked
        return linked

    def _payment_intent(self, state: _ScanState, payment_intent_id: str | None) -> PaymentIntentView | None:
        if not payment_intent_id:
            return None
        try:
            return self._retry(partial(state.client.retrieve_payment_intent, payment_intent_id))
        except PlatformError as exc:
            logger.warning("payment intent lookup failed id=%s: %s", payment_intent_id, exc)
            return None

    def _ingest_failing_invoice(self, state: _ScanState, result: ScanResult, invoice: InvoiceView) -> None:
        if not invoice.customer_id:
            return
        if not state.force_full and not self._has_recurring_subscription(state, result, invoice.customer_id):
            return

        is_new = (
            invoice.invoice_id not in state.buffered_keys
            and self._ledger.get_target_by_natural_key(invoice.invoice_id) is None
        )
        if is_new and state.remaining <= 0:
            result.skipped_for_capacity += 1
            result.tier_limit_reached = True
            return

        intent = self._payment_intent(state, invoice.payment_intent_id)
        decline_code = invoice.decline_code or (intent.decline_code if intent else None)
        decline_type = classify_decline_code(decline_code)
        requires_3ds = intent is not None and (
            intent.error_code == "authentication_required" or intent.status == "requires_action"
        )
        strategy = determine_recovery_strategy(
            requires_3ds=requires_3ds,
            decline_type=decline_type,
            amount=invoice.amount_due,
        )
        customer_country = invoice.customer_country.lower() if invoice.customer_country else None
        failure_code = (intent.decline_code or intent.error_code) if intent else decline_code

        self._buffer(
            state,
            TargetUpsert(
                merchant_id=state.merchant.merchant_id,
                natural_key=invoice.invoice_id,
                email=invoice.customer_email or UNKNOWN_EMAIL,
                customer_name=invoice.customer_name or invoice.customer_email or UNKNOWN_NAME,
                amount=invoice.amount_due,
                status="pending",
                customer_id=invoice.customer_id,
                decline_type=decline_type.value if decline_type else None,
                failure_reason=decline_code,
                failure_code=failure_code,
                failure_message=intent.error_message if intent else None,
                recovery_strategy=strategy.value,
                card_brand=intent.card_brand if intent else None,
                card_funding=intent.card_funding if intent else None,
                country_code=(intent.card_country if intent else None) or customer_country,
                requires_3ds=requires_3ds,
                provider_error_code=intent.error_code if intent else None,
                original_invoice_date=invoice.created,
            ),
        )
        state.at_risk.add(invoice.amount_due)
        state.leakage_entries.append((failure_code, invoice.amount_due))
        result.targets_found += 1
        if is_new:
            state.remaining -= 1

    def _reconcile_paid_invoice(self, state: _ScanState, result: ScanResult, invoice: InvoiceView) -> None:
        existing = self._ledger.get_target_by_natural_key(invoice.invoice_id)
        if existing is not None and existing.status == "pending":
            if self._ledger.mark_recovered(existing.target_id, recovery_type="organic", now=state.now):
                self._ledger.increment_recovered(state.merchant.merchant_id, existing.amount)
                result.recovered_organic += 1
        if invoice.paid_at is None:
            return
        if self._ledger.add_timing_sample(
            state.merchant.merchant_id,
            day_of_week=js_day_of_week(invoice.paid_at),
            hour=invoice.paid_at.hour,
            source_key=invoice.invoice_id,
        ):
            result.timing_samples += 1

    def _scan_expiring_cards(self, state: _ScanState, result: ScanResult) -> None:
        window = _expiry_window(state.now)
        cursor: str | None = None
        while True:
            try:
                page = self._retry(
                    partial(state.client.list_active_subscriptions, limit=PAGE_SIZE, starting_after=cursor)
                )
            except PlatformError as exc:
                result.errors.append(f"subscription page fetch failed: {exc}")
                raise _ScanAborted() from exc

            for subscription in page.items:
                self._ingest_expiring_card(state, result, subscription, window)
                if len(state.buffer) >= BATCH_SIZE:
                    self._flush(state, result)

            cursor = page.next_cursor
            if cursor is None:
                return

    def _ingest_expiring_card(
        self,
        state: _ScanState,
        result: ScanResult,
        subscription: SubscriptionView,
        window: set[tuple[int, int]],
    ) -> None:
        if subscription.payment_method_type != "card":
            return
        if subscription.card_exp_month is None or subscription.card_exp_year is None:
            return
        if (subscription.card_exp_month, subscription.card_exp_year) not in window:
            return
        if state.currency is None and subscription.currency:
            state.currency = subscription.currency

        amount = monthly_normalized_amount(subscription.items)
        strategy = determine_recovery_strategy(
            requires_3ds=None,
            decline_type=DeclineType.HARD,
            amount=amount,
        )
        self._buffer(
            state,
            TargetUpsert(
                merchant_id=state.merchant.merchant_id,
                natural_key=f"impending_{subscription.subscription_id}",
                email=subscription.customer_email or UNKNOWN_EMAIL,
                customer_name=subscription.customer_name or subscription.customer_email or UNKNOWN_NAME,
                amount=amount,
                status="impending",
                customer_id=subscription.customer_id,
                decline_type=DeclineType.HARD.value,
                failure_reason=f"card_expiring_{subscription.card_exp_month}_{subscription.card_exp_year}",
                recovery_strategy=strategy.value,
            ),
        )
        result.impending_found += 1

    def _buffer(self, state: _ScanState, item: TargetUpsert) -> None:
        state.buffer.append(item)
        state.buffered_keys.add(item.natural_key)

    def _flush(self, state: _ScanState, result: ScanResult) -> None:
        if not state.buffer:
            return
        batch = state.buffer
        state.buffer = []
        state.buffered_keys.clear()
        try:
            outcomes = self._ledger.batch_upsert(batch, now=state.now)
        except BatchCommitError as exc:
            result.errors.append(f"batch commit failed: {exc}")
            raise _ScanAborted() from exc
        for outcome in outcomes:
            if outcome.natural_key.startswith("impending_"):
                continue
            if outcome.created:
                result.new_targets += 1
            else:
                result.updated_targets += 1

    def _write_log(self, result: ScanResult, started: float) -> None:
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        details = json.dumps(
            {
                "funnel": {
                    "total": result.invoices_scanned,
                    "at_risk": result.targets_found,
                    "skipped_for_capacity": result.skipped_for_capacity,
                    "impending": result.impending_found,
                },
                "summary": {
                    "merchant_id": result.merchant_id,
                    "new_targets": result.new_targets,
                    "updated_targets": result.updated_targets,
                    "total_at_risk": result.total_at_risk,
                    "timing_samples": result.timing_samples,
                    "recovered_organic": result.recovered_organic,
                    "gross_invoiced": result.gross_invoiced,
                    "remaining_capacity": result.remaining_capacity,
                    "leakage": [
                        {
                            "category": item.category.name,
                            "value": item.value,
                            "count": item.count,
                            "percentage": item.percentage,
                        }
                        for item in result.leakage
                    ],
                    "notes": result.notes,
                    "elapsed_ms": elapsed_ms,
                },
            },
            sort_keys=True,
        )
        self._ledger.create_log(
            SCAN_JOB_NAME,
            "success" if result.ok else "failure",
            details=details,
            error_message="; ".join(result.errors) if result.errors else None,
        )
        logger.info(
            "scan finished merchant=%s found=%s new=%s at_risk=%s errors=%s elapsed_ms=%s",
            result.merchant_id,
            result.targets_found,
            result.new_targets,
            result.total_at_risk,
            len(result.errors),
            elapsed_ms,
        )
