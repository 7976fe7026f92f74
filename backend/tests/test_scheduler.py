from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from recovery_engine.dispatcher import DISPATCH_JOB_NAME, DispatchResult
from recovery_engine.ledger_store import STALE_JOB_ERROR
from recovery_engine.scanner import SCAN_JOB_NAME, InvoiceScanner, ScanResult
from recovery_engine.scheduler import (
    SCAN_FANOUT_JOB_NAME,
    JobSummary,
    Sentinel,
    scan_progress,
    start_scheduler,
)
from recovery_fakes import NOW, FakePlatformClient, add_merchant, invoice, make_ledger, make_vault


def _sentinel(ledger, *, scanner=None, dispatcher=None) -> Sentinel:
    if dispatcher is None:
        dispatcher = MagicMock()
        dispatcher.process_queue.return_value = DispatchResult(sent=2, recovery_emails=2)
    return Sentinel(ledger=ledger, scanner=scanner or MagicMock(), dispatcher=dispatcher)


def test_scan_progress_is_clamped() -> None:
    assert scan_progress(0, 0) == 5
    assert scan_progress(50, 100) == 50
    assert scan_progress(100, 100) == 95


def test_run_locked_logs_success_and_releases_lock() -> None:
    ledger = make_ledger()
    sentinel = _sentinel(ledger)

    outcome = sentinel.run_dispatch()

    assert outcome.status == "success"
    assert outcome.details is not None
    assert outcome.details.startswith("Sent 2 (2 recovery, 0 protection)")
    log = ledger.latest_log_for_job(DISPATCH_JOB_NAME)
    assert log is not None
    assert log.status == "success"
    assert len(ledger.list_recent_logs()) == 1
    assert ledger.acquire_lock(DISPATCH_JOB_NAME, ttl=timedelta(minutes=30)) is not None


def test_run_locked_skips_when_another_instance_holds_the_lock() -> None:
    ledger = make_ledger()
    dispatcher = MagicMock()
    sentinel = _sentinel(ledger, dispatcher=dispatcher)
    grant = ledger.acquire_lock(DISPATCH_JOB_NAME, ttl=timedelta(minutes=30))
    assert grant is not None

    outcome = sentinel.run_dispatch()

    assert outcome.status == "skipped"
    dispatcher.process_queue.assert_not_called()
    log = ledger.latest_log_for_job(DISPATCH_JOB_NAME)
    assert log is not None
    assert log.status == "skipped"
    assert log.details == "Lock held by another instance"
    assert ledger.release_lock(DISPATCH_JOB_NAME, grant.holder_id) is True


def test_run_locked_takes_over_stale_lock_with_warning(caplog) -> None:
    ledger = make_ledger()
    two_hours_ago = datetime.now(timezone.utc) - timedelta(hours=2)
    ledger.acquire_lock(DISPATCH_JOB_NAME, ttl=timedelta(minutes=30), now=two_hours_ago)
    sentinel = _sentinel(ledger)

    with caplog.at_level(logging.WARNING, logger="recovery_engine.scheduler"):
        outcome = sentinel.run_dispatch()

    assert outcome.status == "success"
    assert any("stale lock" in record.getMessage() for record in caplog.records)


def test_run_locked_records_failure_and_still_releases_lock() -> None:
    ledger = make_ledger()
    sentinel = _sentinel(ledger)

    def _boom() -> JobSummary:
        raise RuntimeError("ledger unavailable")

    outcome = sentinel.run_locked("custom_job", _boom)

    assert outcome.status == "failure"
    assert outcome.error_message == "ledger unavailable"
    log = ledger.latest_log_for_job("custom_job")
    assert log is not None
    assert log.status == "failure"
    assert ledger.acquire_lock("custom_job", ttl=timedelta(minutes=30)) is not None


def test_scan_fanout_enqueues_each_merchant_once() -> None:
    ledger = make_ledger()
    add_merchant(ledger)
    add_merchant(ledger, platform_account_id="acct_002")
    sentinel = _sentinel(ledger)

    first = sentinel.run_scan_fanout()
    second = sentinel.run_scan_fanout()

    assert first.details == "Enqueued 2 scan jobs for 2 merchants (0 already queued)"
    assert second.details == "Enqueued 0 scan jobs for 2 merchants (2 already queued)"
    log = ledger.latest_log_for_job(SCAN_FANOUT_JOB_NAME)
    assert log is not None
    assert log.status == "success"


def test_process_next_job_runs_scan_to_completion() -> None:
    ledger = make_ledger()
    merchant = add_merchant(ledger)
    client = FakePlatformClient(invoices=[invoice("in_001")])
    scanner = InvoiceScanner(
        ledger=ledger,
        vault=make_vault(),
        client_factory=lambda token: client,
        sleep=lambda seconds: None,
        clock=lambda: NOW,
    )
    sentinel = _sentinel(ledger, scanner=scanner)
    job, _ = sentinel.enqueue_scan(merchant.merchant_id)

    finished = sentinel.process_next_job()

    assert finished is not None
    assert finished.job_id == job.job_id
    assert finished.status == "completed"
    assert finished.progress == 100
    assert finished.error is None
    assert finished.completed_at is not None
    stored = ledger.get_merchant(merchant.merchant_id)
    assert stored is not None
    assert stored.last_audit_status == "completed"
    assert ledger.get_target_by_natural_key("in_001") is not None
    assert sentinel.process_next_job() is None


def test_process_next_job_marks_failed_scans() -> None:
    ledger = make_ledger()
    merchant = add_merchant(ledger)
    scanner = MagicMock()
    scanner.scan.return_value = ScanResult(
        merchant_id=merchant.merchant_id,
        errors=["invoice page fetch failed: boom"],
    )
    sentinel = _sentinel(ledger, scanner=scanner)
    sentinel.enqueue_scan(merchant.merchant_id)

    finished = sentinel.process_next_job()

    assert finished is not None
    assert finished.status == "failed"
    assert finished.error == "invoice page fetch failed: boom"
    stored = ledger.get_merchant(merchant.merchant_id)
    assert stored is not None
    assert stored.last_audit_status == "failed"


def test_process_next_job_survives_scanner_crash() -> None:
    ledger = make_ledger()
    merchant = add_merchant(ledger)
    scanner = MagicMock()
    scanner.scan.side_effect = RuntimeError("scanner crashed")
    sentinel = _sentinel(ledger, scanner=scanner)
    sentinel.enqueue_scan(merchant.merchant_id)

    finished = sentinel.process_next_job()

    assert finished is not None
    assert finished.status == "failed"
    assert finished.error == "scanner crashed"
    log = ledger.latest_log_for_job(SCAN_JOB_NAME)
    assert log is not None
    assert log.status == "failure"
    assert log.error_message == "scan crashed: scanner crashed"


def test_platform_client_failure_writes_one_scan_log_row() -> None:
    ledger = make_ledger()
    merchant = add_merchant(ledger)

    def _broken_factory(token: str):
        raise RuntimeError("platform client unavailable")

    scanner = InvoiceScanner(
        ledger=ledger,
        vault=make_vault(),
        client_factory=_broken_factory,
        sleep=lambda seconds: None,
        clock=lambda: NOW,
    )
    sentinel = _sentinel(ledger, scanner=scanner)
    sentinel.enqueue_scan(merchant.merchant_id)

    finished = sentinel.process_next_job()

    assert finished is not None
    assert finished.status == "failed"
    scan_logs = [record for record in ledger.list_recent_logs() if record.job_name == SCAN_JOB_NAME]
    assert len(scan_logs) == 1
    assert scan_logs[0].status == "failure"
    assert scan_logs[0].error_message == "scan crashed: platform client unavailable"


def test_job_abandoned_by_crashed_worker_is_released_and_rescanned() -> None:
    ledger = make_ledger()
    merchant = add_merchant(ledger)
    scanner = MagicMock()
    scanner.scan.side_effect = lambda merchant_id, on_progress=None: ScanResult(merchant_id=merchant_id)
    job, _ = _sentinel(ledger, scanner=scanner).enqueue_scan(merchant.merchant_id)
    assert ledger.claim_next_scan_job() is not None

    later = Sentinel(
        ledger=ledger,
        scanner=scanner,
        dispatcher=MagicMock(),
        clock=lambda: datetime.now(timezone.utc) + timedelta(hours=1),
    )
    fanout = later.run_scan_fanout()

    assert fanout.details == "Enqueued 1 scan jobs for 1 merchants (0 already queued)"
    abandoned = ledger.get_scan_job(job.job_id)
    assert abandoned is not None
    assert abandoned.status == "failed"
    assert abandoned.error == STALE_JOB_ERROR
    assert later.drain_job_queue() == 1
    scanner.scan.assert_called_once()
    stored = ledger.get_merchant(merchant.merchant_id)
    assert stored is not None
    assert stored.last_audit_status == "completed"


def test_job_still_reporting_progress_is_not_released() -> None:
    ledger = make_ledger()
    merchant = add_merchant(ledger)
    sentinel = _sentinel(ledger)
    job, _ = sentinel.enqueue_scan(merchant.merchant_id)
    ledger.claim_next_scan_job()

    again, created = sentinel.enqueue_scan(merchant.merchant_id)

    assert created is False
    assert again.job_id == job.job_id
    assert again.status == "processing"


def test_skipped_scan_completes_with_note() -> None:
    ledger = make_ledger()
    merchant = add_merchant(ledger)
    scanner = MagicMock()
    scanner.scan.return_value = ScanResult(
        merchant_id=merchant.merchant_id,
        skipped=True,
        notes=["Scan skipped: tier limit of 50 reached."],
    )
    sentinel = _sentinel(ledger, scanner=scanner)
    sentinel.enqueue_scan(merchant.merchant_id)

    finished = sentinel.process_next_job()

    assert finished is not None
    assert finished.status == "completed"
    assert finished.error == "Scan skipped: tier limit of 50 reached."


def test_drain_job_queue_processes_every_pending_job() -> None:
    ledger = make_ledger()
    scanner = MagicMock()
    scanner.scan.side_effect = lambda merchant_id, on_progress=None: ScanResult(merchant_id=merchant_id)
    sentinel = _sentinel(ledger, scanner=scanner)
    for index in range(3):
        merchant = add_merchant(ledger, platform_account_id=f"acct_{index}")
        sentinel.enqueue_scan(merchant.merchant_id)

    assert sentinel.drain_job_queue() == 3
    assert scanner.scan.call_count == 3


def test_system_health_reports_last_run_per_job() -> None:
    ledger = make_ledger()
    sentinel = _sentinel(ledger)
    sentinel.run_dispatch()
    sentinel.run_scan_fanout()

    health = sentinel.system_health()

    assert [record.job_name for record in health.recent_logs] == [SCAN_FANOUT_JOB_NAME, DISPATCH_JOB_NAME]
    assert set(health.last_runs) == {SCAN_FANOUT_JOB_NAME, DISPATCH_JOB_NAME}


def test_start_scheduler_polls_queue_and_stops_cleanly() -> None:
    polled = threading.Event()
    sentinel = MagicMock()
    sentinel.drain_job_queue.side_effect = lambda: polled.set()

    handle = start_scheduler(
        sentinel,
        scan_interval_seconds=3600,
        dispatch_interval_seconds=3600,
        poll_interval_seconds=3600,
    )
    try:
        assert polled.wait(5)
        assert handle.running is True
    finally:
        handle.stop(timeout=5)

    assert handle.running is False
    sentinel.run_scan_fanout.assert_not_called()
    sentinel.run_dispatch.assert_not_called()
