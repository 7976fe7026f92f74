from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from .dispatcher import DISPATCH_JOB_NAME, RecoveryDispatcher
from .ledger_store import LedgerStore, ScanJobRecord, SystemLogRecord
from .scanner import SCAN_JOB_NAME, InvoiceScanner

logger = logging.getLogger(__name__)

SCAN_FANOUT_JOB_NAME = "scan_fanout"
DEFAULT_LOCK_TTL = timedelta(minutes=30)
DEFAULT_STALE_JOB_AFTER = timedelta(minutes=30)
PROGRESS_STARTED = 5
PROGRESS_CAP = 95
MONITORED_JOBS = (SCAN_FANOUT_JOB_NAME, SCAN_JOB_NAME, DISPATCH_JOB_NAME)


@dataclass(frozen=True)
class JobRunOutcome:
    job_name: str
    status: str
    details: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class JobSummary:
    details: str
    error_message: str | None = None


@dataclass(frozen=True)
class SystemHealth:
    recent_logs: list[SystemLogRecord]
    last_runs: dict[str, SystemLogRecord]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def scan_progress(processed: int, seen: int) -> int:
    if seen <= 0:
        return PROGRESS_STARTED
    span = PROGRESS_CAP - PROGRESS_STARTED
    return min(PROGRESS_CAP, PROGRESS_STARTED + (processed * span) // seen)


class Sentinel:
    """Runs the scan fan-out, the dispatcher and the scan-job queue under job locks."""

    def __init__(
        self,
        *,
        ledger: LedgerStore,
        scanner: InvoiceScanner,
        dispatcher: RecoveryDispatcher,
        lock_ttl: timedelta = DEFAULT_LOCK_TTL,
        stale_job_after: timedelta = DEFAULT_STALE_JOB_AFTER,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._ledger = ledger
        self._scanner = scanner
        self._dispatcher = dispatcher
        self._lock_ttl = lock_ttl
        self._stale_job_after = stale_job_after
        self._clock = clock

    def run_locked(self, job_name: str, job: Callable[[], JobSummary]) -> JobRunOutcome:
        grant = self._ledger.acquire_lock(job_name, ttl=self._lock_ttl)
        if grant is None:
            logger.info("job %s skipped: lock held by another instance", job_name)
            outcome = JobRunOutcome(job_name=job_name, status="skipped", details="Lock held by another instance")
            self._ledger.create_log(job_name, outcome.status, details=outcome.details)
            return outcome
        if grant.was_stolen:
            logger.warning("job %s recovered a stale lock; the previous holder likely crashed", job_name)

        try:
            summary = job()
            outcome = JobRunOutcome(
                job_name=job_name,
                status="success",
                details=summary.details,
                error_message=summary.error_message,
            )
        except Exception as exc:
            logger.exception("job %s failed", job_name)
            outcome = JobRunOutcome(job_name=job_name, status="failure", error_message=str(exc))
        finally:
            if not self._ledger.release_lock(job_name, grant.holder_id):
                logger.warning("job %s lock was taken over before release", job_name)

        self._ledger.create_log(
            job_name,
            outcome.status,
            details=outcome.details,
            error_message=outcome.error_message,
        )
        return outcome

    def run_scan_fanout(self) -> JobRunOutcome:
        return self.run_locked(SCAN_FANOUT_JOB_NAME, self._enqueue_all_merchants)

    def run_dispatch(self) -> JobRunOutcome:
        return self.run_locked(DISPATCH_JOB_NAME, self._dispatch)

    def _enqueue_all_merchants(self) -> JobSummary:
        self.release_stale_jobs()
        merchants = self._ledger.list_merchants()
        enqueued = 0
        already_queued = 0
        errors: list[str] = []
        for merchant in merchants:
            try:
                _, created = self._ledger.enqueue_scan_job(merchant.merchant_id)
            except Exception as exc:
                logger.exception("scan enqueue failed merchant=%s", merchant.merchant_id)
                errors.append(f"{merchant.merchant_id}: {exc}")
                continue
            if created:
                enqueued += 1
            else:
                already_queued += 1
        return JobSummary(
            details=(
                f"Enqueued {enqueued} scan jobs for {len(merchants)} merchants "
                f"({already_queued} already queued)"
            ),
            error_message="; ".join(errors) if errors else None,
        )

    def _dispatch(self) -> JobSummary:
        result = self._dispatcher.process_queue()
        details = (
            f"Sent {result.sent} ({result.recovery_emails} recovery, {result.protection_emails} protection), "
            f"failed {result.failed}, rate limited {result.rate_limited}, "
            f"manual review {result.pending_manual_review}, outside window {result.outside_window}, "
            f"exhausted {result.exhausted}"
        )
        if result.next_golden_hour:
            details += f"; next golden hour {result.next_golden_hour}"
        return JobSummary(details=details, error_message="; ".join(result.errors) if result.errors else None)

    def release_stale_jobs(self) -> list[ScanJobRecord]:
        released = self._ledger.fail_stale_scan_jobs(stale_after=self._stale_job_after, now=self._clock())
        for job in released:
            logger.warning(
                "scan job released as stale job=%s merchant=%s started_at=%s",
                job.job_id,
                job.merchant_id,
                job.started_at,
            )
            self._ledger.set_audit_status(job.merchant_id, "failed")
        return released

    def enqueue_scan(self, merchant_id: str) -> tuple[ScanJobRecord, bool]:
        self.release_stale_jobs()
        job, created = self._ledger.enqueue_scan_job(merchant_id)
        if created:
            logger.info("scan job queued job=%s merchant=%s", job.job_id, merchant_id)
        return job, created

    def process_next_job(self) -> ScanJobRecord | None:
        self.release_stale_jobs()
        job = self._ledger.claim_next_scan_job()
        if job is None:
            return None
        logger.info("scan job started job=%s merchant=%s", job.job_id, job.merchant_id)
        self._ledger.set_audit_status(job.merchant_id, "in_progress")
        self._ledger.update_scan_job(job.job_id, progress=PROGRESS_STARTED)

        def _report(processed: int, seen: int) -> None:
            self._ledger.update_scan_job(job.job_id, progress=scan_progress(processed, seen))

        try:
            result = self._scanner.scan(job.merchant_id, on_progress=_report)
        except Exception as exc:
            logger.exception("scan job crashed job=%s", job.job_id)
            self._ledger.create_log(
                SCAN_JOB_NAME,
                "failure",
                details=f"merchant {job.merchant_id}",
                error_message=f"scan crashed: {exc}",
            )
            self._ledger.set_audit_status(job.merchant_id, "failed")
            return self._ledger.update_scan_job(job.job_id, status="failed", error=str(exc))

        if result.errors:
            self._ledger.set_audit_status(job.merchant_id, "failed")
            return self._ledger.update_scan_job(job.job_id, status="failed", error="; ".join(result.errors))

        self._ledger.set_audit_status(job.merchant_id, "completed")
        return self._ledger.update_scan_job(
            job.job_id,
            status="completed",
            progress=100,
            error="; ".join(result.notes) if result.notes else None,
        )

    def drain_job_queue(self) -> int:
        processed = 0
        while self.process_next_job() is not None:
            processed += 1
        return processed

    def system_health(self, limit: int = 20) -> SystemHealth:
        last_runs: dict[str, SystemLogRecord] = {}
        for job_name in MONITORED_JOBS:
            record = self._ledger.latest_log_for_job(job_name)
            if record is not None:
                last_runs[job_name] = record
        return SystemHealth(recent_logs=self._ledger.list_recent_logs(limit), last_runs=last_runs)


class _PeriodicTrigger(threading.Thread):
    def __init__(
        self,
        *,
        name: str,
        interval_seconds: float,
        action: Callable[[], object],
        stop_event: threading.Event,
        run_immediately: bool,
    ) -> None:
        super().__init__(name=name, daemon=True)
        self._interval_seconds = interval_seconds
        self._action = action
        self._stop_event = stop_event
        self._run_immediately = run_immediately

    def run(self) -> None:
        if self._run_immediately and not self._stop_event.is_set():
            self._fire()
        while not self._stop_event.wait(self._interval_seconds):
            self._fire()

    def _fire(self) -> None:
        try:
            self._action()
        except Exception:
            logger.exception("scheduled trigger %s raised", self.name)


class SchedulerHandle:
    def __init__(self, threads: list[threading.Thread], stop_event: threading.Event) -> None:
        self._threads = threads
        self._stop_event = stop_event

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        logger.info("scheduler stopped")


def start_scheduler(
    sentinel: Sentinel,
    *,
    scan_interval_seconds: float,
    dispatch_interval_seconds: float,
    poll_interval_seconds: float,
    run_immediately: bool = False,
) -> SchedulerHandle:
    stop_event = threading.Event()
    threads: list[threading.Thread] = [
        _PeriodicTrigger(
            name=SCAN_FANOUT_JOB_NAME,
            interval_seconds=scan_interval_seconds,
            action=sentinel.run_scan_fanout,
            stop_event=stop_event,
            run_immediately=run_immediately,
        ),
        _PeriodicTrigger(
            name=DISPATCH_JOB_NAME,
            interval_seconds=dispatch_interval_seconds,
            action=sentinel.run_dispatch,
            stop_event=stop_event,
            run_immediately=run_immediately,
        ),
        _PeriodicTrigger(
            name="scan_job_poller",
            interval_seconds=poll_interval_seconds,
            action=sentinel.drain_job_queue,
            stop_event=stop_event,
            run_immediately=True,
        ),
    ]
    for thread in threads:
        thread.start()
    logger.info(
        "scheduler started scan_every=%ss dispatch_every=%ss poll_every=%ss",
        scan_interval_seconds,
        dispatch_interval_seconds,
        poll_interval_seconds,
    )
    return SchedulerHandle(threads, stop_event)
