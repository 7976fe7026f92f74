from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

from fastapi import APIRouter, HTTPException, Request, status

from .classification import CategoryTotal, aggregate_by_category
from .config import Settings
from .dispatcher import RecoveryDispatcher
from .events import PaymentEventReconciler, ReconcileOutcome
from .ledger_backends import create_ledger_store
from .ledger_store import LedgerStore, MerchantNotFoundError, ScanJobRecord, SystemLogRecord, TargetNotFoundError
from .mailer import RecoveryMailer, create_mailer
from .models import (
    LEAKAGE_STATUSES,
    ClickResponse,
    InvoicePaidEventRequest,
    LeakageBreakdownResponse,
    LeakageCategoryItem,
    PaymentMethodUpdatedEventRequest,
    ReconcileResponse,
    ScanJobResponse,
    SystemHealthResponse,
    SystemLogItem,
)
from .platform_client import PaymentPlatformClient, StripePlatformClient
from .scanner import InvoiceScanner
from .scheduler import Sentinel
from .vault import Vault

router = APIRouter(prefix="/recovery", tags=["recovery"])


@dataclass(frozen=True)
class RecoveryRuntime:
    settings: Settings
    vault: Vault
    ledger: LedgerStore
    scanner: InvoiceScanner
    dispatcher: RecoveryDispatcher
    reconciler: PaymentEventReconciler
    sentinel: Sentinel


def build_runtime(
    settings: Settings,
    *,
    vault: Vault | None = None,
    ledger: LedgerStore | None = None,
    mailer: RecoveryMailer | None = None,
    client_factory: Callable[[str], PaymentPlatformClient] = StripePlatformClient,
) -> RecoveryRuntime:
    vault = vault or Vault.from_settings(settings)
    ledger = ledger or create_ledger_store(
        backend=settings.ledger_store_backend,
        database_url=settings.database_url,
        vault=vault,
    )
    scanner = InvoiceScanner(
        ledger=ledger,
        vault=vault,
        client_factory=client_factory,
        retry_attempts=settings.platform_retry_attempts,
        retry_base_seconds=settings.platform_retry_base_seconds,
    )
    dispatcher = RecoveryDispatcher(
        ledger=ledger,
        mailer=mailer or create_mailer(settings),
        tracking_base_url=settings.tracking_base_url,
        hourly_limit=settings.dispatch_hourly_limit,
        grace=timedelta(hours=settings.dispatch_grace_hours),
    )
    return RecoveryRuntime(
        settings=settings,
        vault=vault,
        ledger=ledger,
        scanner=scanner,
        dispatcher=dispatcher,
        reconciler=PaymentEventReconciler(ledger=ledger),
        sentinel=Sentinel(
            ledger=ledger,
            scanner=scanner,
            dispatcher=dispatcher,
            lock_ttl=timedelta(seconds=settings.job_lock_ttl_seconds),
            stale_job_after=timedelta(seconds=settings.scan_job_stale_seconds),
        ),
    )


def _runtime(request: Request) -> RecoveryRuntime:
    return request.app.state.runtime


def _job_response(job: ScanJobRecord, *, created: bool = False) -> ScanJobResponse:
    return ScanJobResponse(
        job_id=job.job_id,
        merchant_id=job.merchant_id,
        status=job.status,
        progress=job.progress,
        error=job.error,
        created=created,
        created_at=job.created_at,
        updated_at=job.updated_at,
        completed_at=job.completed_at,
    )


def _log_item(record: SystemLogRecord) -> SystemLogItem:
    return SystemLogItem(
        log_id=record.log_id,
        job_name=record.job_name,
        status=record.status,
        details=record.details,
        error_message=record.error_message,
        created_at=record.created_at,
    )


def _category_item(total: CategoryTotal) -> LeakageCategoryItem:
    return LeakageCategoryItem(
        category=total.category.name,
        description=total.category.description,
        recoverability=total.category.recoverability,
        value=total.value,
        count=total.count,
        percentage=total.percentage,
    )


def _reconcile_response(outcome: ReconcileOutcome) -> ReconcileResponse:
    return ReconcileResponse(
        applied=outcome.applied,
        target_id=outcome.target_id,
        status=outcome.status,
        recovery_type=outcome.recovery_type,
        reason=outcome.reason,
    )


@router.post(
    "/merchants/{merchant_id}/scan-jobs",
    response_model=ScanJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def enqueue_scan(merchant_id: str, request: Request) -> ScanJobResponse:
    try:
        job, created = _runtime(request).sentinel.enqueue_scan(merchant_id)
    except MerchantNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"merchant not found: {merchant_id}") from exc
    return _job_response(job, created=created)


@router.get("/merchants/{merchant_id}/leakage", response_model=LeakageBreakdownResponse)
def leakage_breakdown(merchant_id: str, request: Request) -> LeakageBreakdownResponse:
    ledger = _runtime(request).ledger
    merchant = ledger.get_merchant(merchant_id)
    if merchant is None:
        raise HTTPException(status_code=404, detail=f"merchant not found: {merchant_id}")
    entries = [
        (target.failure_code or target.failure_reason, target.amount)
        for target in ledger.list_targets(merchant_id)
        if target.status in LEAKAGE_STATUSES
    ]
    return LeakageBreakdownResponse(
        merchant_id=merchant_id,
        currency=merchant.default_currency,
        total_at_risk=sum(amount for _, amount in entries),
        categories=[_category_item(total) for total in aggregate_by_category(entries)],
    )


@router.get("/scan-jobs/{job_id}", response_model=ScanJobResponse)
def get_scan_job(job_id: str, request: Request) -> ScanJobResponse:
    job = _runtime(request).ledger.get_scan_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"scan job not found: {job_id}")
    return _job_response(job)


@router.get("/l/{target_id}", response_model=ClickResponse)
def record_click(target_id: str, request: Request) -> ClickResponse:
    try:
        target = _runtime(request).reconciler.record_click(target_id)
    except TargetNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"target not found: {target_id}") from exc
    return ClickResponse(
        target_id=target.target_id,
        click_count=target.click_count,
        attribution_expires_at=target.attribution_expires_at,
    )


@router.post("/events/invoice-paid", response_model=ReconcileResponse)
def invoice_paid(payload: InvoicePaidEventRequest, request: Request) -> ReconcileResponse:
    outcome = _runtime(request).reconciler.apply_invoice_paid(payload.invoice_id, paid_at=payload.paid_at)
    return _reconcile_response(outcome)


@router.post("/events/payment-method-updated", response_model=ReconcileResponse)
def payment_method_updated(payload: PaymentMethodUpdatedEventRequest, request: Request) -> ReconcileResponse:
    outcome = _runtime(request).reconciler.apply_payment_method_updated(payload.subscription_id)
    return _reconcile_response(outcome)


@router.get("/system/health", response_model=SystemHealthResponse)
def system_health(request: Request) -> SystemHealthResponse:
    health = _runtime(request).sentinel.system_health()
    return SystemHealthResponse(
        recent_logs=[_log_item(record) for record in health.recent_logs],
        last_runs={job_name: _log_item(record) for job_name, record in health.last_runs.items()},
    )
