from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Protocol

from .models import OUTREACH_STATUSES, OUTSTANDING_JOB_STATUSES
from .vault import SealedValue, Vault

PURGE_AFTER = timedelta(days=90)
ATTRIBUTION_WINDOW = timedelta(hours=24)
MAX_CONTACTS = 3
STALE_JOB_ERROR = "Scan abandoned: no progress reported before the stale-job timeout."
DEFAULT_TIER_LIMIT = 50
DEFAULT_CURRENCY = "gbp"
DEFAULT_BRAND_COLOR = "#6366f1"

TARGET_STATUSES = frozenset({"pending", "impending", "recovered", "protected", "exhausted"})


class MerchantNotFoundError(KeyError):
    """Raised when a merchant id is unknown."""


class TargetNotFoundError(KeyError):
    """Raised when a target id is unknown."""


class ScanJobNotFoundError(KeyError):
    """Raised when a scan job id is unknown."""


class BatchCommitError(Exception):
    """Raised when a batch upsert is rolled back."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


def _hour_bucket(now: datetime) -> datetime:
    return _coerce_utc(now).replace(minute=0, second=0, microsecond=0)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:20]}"


def js_day_of_week(value: datetime) -> int:
    """Day of week with Sunday as 0."""
    return (_coerce_utc(value).weekday() + 1) % 7


def _validate_upsert(item: TargetUpsert) -> None:
    if not item.merchant_id:
        raise ValueError("target upsert requires merchant_id")
    if not item.natural_key:
        raise ValueError("target upsert requires natural_key")
    if isinstance(item.amount, bool) or not isinstance(item.amount, int) or item.amount < 0:
        raise ValueError(f"target amount must be a non-negative int: {item.natural_key}")
    if item.status not in TARGET_STATUSES:
        raise ValueError(f"unsupported target status: {item.status}")


@dataclass(frozen=True)
class NewMerchant:
    platform_account_id: str
    access_token: str
    business_name: str | None = None
    support_email: str | None = None
    brand_color: str = DEFAULT_BRAND_COLOR
    tier_limit: int = DEFAULT_TIER_LIMIT
    default_currency: str = DEFAULT_CURRENCY
    auto_pilot_enabled: bool = False
    recovery_strategy: str = "oracle"
    merchant_id: str | None = None


@dataclass(frozen=True)
class MerchantRecord:
    merchant_id: str
    platform_account_id: str
    access_token: SealedValue
    business_name: str | None
    support_email: str | None
    brand_color: str
    tier_limit: int
    default_currency: str
    gross_invoiced: int
    total_recovered: int
    total_protected: int
    total_vetted_count: int
    last_audit_at: datetime | None
    last_audit_status: str
    auto_pilot_enabled: bool
    recovery_strategy: str
    created_at: datetime


@dataclass(frozen=True)
class TargetUpsert:
    merchant_id: str
    natural_key: str
    email: str
    customer_name: str
    amount: int
    status: str = "pending"
    customer_id: str | None = None
    decline_type: str | None = None
    failure_reason: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None
    recovery_strategy: str | None = None
    card_brand: str | None = None
    card_funding: str | None = None
    country_code: str | None = None
    requires_3ds: bool | None = None
    provider_error_code: str | None = None
    original_invoice_date: datetime | None = None
    discovered_at: datetime | None = None


@dataclass(frozen=True)
class TargetRecord:
    target_id: str
    merchant_id: str
    natural_key: str
    email: str
    customer_name: str
    amount: int
    status: str
    discovered_at: datetime
    purge_at: datetime
    email_count: int
    last_emailed_at: datetime | None
    click_count: int
    last_clicked_at: datetime | None
    attribution_expires_at: datetime | None
    recovered_at: datetime | None
    recovery_type: str | None
    customer_id: str | None
    decline_type: str | None
    failure_reason: str | None
    failure_code: str | None
    failure_message: str | None
    recovery_strategy: str | None
    card_brand: str | None
    card_funding: str | None
    country_code: str | None
    requires_3ds: bool | None
    provider_error_code: str | None
    original_invoice_date: datetime | None
    updated_at: datetime


@dataclass(frozen=True)
class UpsertOutcome:
    target_id: str
    natural_key: str
    created: bool


@dataclass(frozen=True)
class GoldenHour:
    day_of_week: int
    hour: int
    sample_count: int


@dataclass(frozen=True)
class LockGrant:
    job_name: str
    holder_id: str
    was_stolen: bool


@dataclass(frozen=True)
class ScanJobRecord:
    job_id: str
    merchant_id: str
    status: str
    progress: int
    error: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


@dataclass(frozen=True)
class SystemLogRecord:
    log_id: int
    job_name: str
    status: str
    details: str | None
    error_message: str | None
    created_at: datetime


class LedgerStore(Protocol):
    def reset(self) -> None: ...

    def create_merchant(self, payload: NewMerchant) -> MerchantRecord: ...

    def get_merchant(self, merchant_id: str) -> MerchantRecord | None: ...

    def list_merchants(self) -> list[MerchantRecord]: ...

    def set_audit_status(self, merchant_id: str, status: str) -> None: ...

    def record_audit(
        self,
        merchant_id: str,
        *,
        audited_at: datetime,
        currency: str,
        gross_invoiced: int,
        vetted_increment: int,
    ) -> None: ...

    def increment_recovered(self, merchant_id: str, amount: int) -> None: ...

    def increment_protected(self, merchant_id: str, amount: int) -> None: ...

    def get_target(self, target_id: str) -> TargetRecord | None: ...

    def get_target_by_natural_key(self, natural_key: str) -> TargetRecord | None: ...

    def list_targets(self, merchant_id: str) -> list[TargetRecord]: ...

    def upsert_by_natural_key(self, item: TargetUpsert, *, now: datetime | None = None) -> UpsertOutcome: ...

    def batch_upsert(self, items: list[TargetUpsert], *, now: datetime | None = None) -> list[UpsertOutcome]: ...

    def count_active_by_merchant(self, merchant_id: str, *, now: datetime | None = None) -> int: ...

    def list_outreach_eligible(self, *, now: datetime, grace: timedelta) -> list[TargetRecord]: ...

    def record_contact(self, target_id: str, *, now: datetime) -> int: ...

    def mark_exhausted(self, target_id: str) -> bool: ...

    def mark_recovered(self, target_id: str, *, recovery_type: str, now: datetime) -> bool: ...

    def mark_protected(self, target_id: str, *, now: datetime) -> bool: ...

    def record_click(self, target_id: str, *, now: datetime) -> TargetRecord: ...

    def increment_hourly_counter(self, merchant_id: str, *, now: datetime) -> int: ...

    def read_hourly_counter(self, merchant_id: str, *, now: datetime) -> int: ...

    def acquire_lock(self, job_name: str, *, ttl: timedelta, now: datetime | None = None) -> LockGrant | None: ...

    def release_lock(self, job_name: str, holder_id: str) -> bool: ...

    def create_log(
        self,
        job_name: str,
        status: str,
        *,
        details: str | None = None,
        error_message: str | None = None,
    ) -> SystemLogRecord: ...

    def list_recent_logs(self, limit: int = 20) -> list[SystemLogRecord]: ...

    def latest_log_for_job(self, job_name: str) -> SystemLogRecord | None: ...

    def add_timing_sample(
        self,
        merchant_id: str,
        *,
        day_of_week: int,
        hour: int,
        source_key: str | None = None,
    ) -> bool: ...

    def get_golden_hour(self, merchant_id: str) -> GoldenHour | None: ...

    def enqueue_scan_job(self, merchant_id: str) -> tuple[ScanJobRecord, bool]: ...

    def get_scan_job(self, job_id: str) -> ScanJobRecord | None: ...

    def claim_next_scan_job(self) -> ScanJobRecord | None: ...

    def fail_stale_scan_jobs(self, *, stale_after: timedelta, now: datetime | None = None) -> list[ScanJobRecord]: ...

    def update_scan_job(
        self,
        job_id: str,
        *,
        status: str | None = None,
        progress: int | None = None,
        error: str | None = None,
    ) -> ScanJobRecord: ...


@dataclass(frozen=True)
class _StoredTarget:
    target_id: str
    merchant_id: str
    natural_key: str
    email: SealedValue
    customer_name: SealedValue
    amount: int
    status: str
    discovered_at: datetime
    purge_at: datetime
    email_count: int
    last_emailed_at: datetime | None
    click_count: int
    last_clicked_at: datetime | None
    attribution_expires_at: datetime | None
    recovered_at: datetime | None
    recovery_type: str | None
    customer_id: str | None
    decline_type: str | None
    failure_reason: str | None
    failure_code: str | None
    failure_message: str | None
    recovery_strategy: str | None
    card_brand: str | None
    card_funding: str | None
    country_code: str | None
    requires_3ds: bool | None
    provider_error_code: str | None
    original_invoice_date: datetime | None
    updated_at: datetime


class InMemoryLedgerStore:
    def __init__(self, vault: Vault) -> None:
        self._vault = vault
        self._lock = threading.Lock()
        self._merchants: dict[str, MerchantRecord] = {}
        self._targets: dict[str, _StoredTarget] = {}
        self._target_ids_by_key: dict[str, str] = {}
        self._hourly_counters: dict[tuple[str, datetime], int] = {}
        self._job_locks: dict[str, tuple[str, datetime]] = {}
        self._logs: list[SystemLogRecord] = []
        self._timing_samples: dict[str, list[tuple[int, int]]] = {}
        self._timing_sample_keys: set[tuple[str, str]] = set()
        self._scan_jobs: dict[str, ScanJobRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._merchants.clear()
            self._targets.clear()
            self._target_ids_by_key.clear()
            self._hourly_counters.clear()
            self._job_locks.clear()
            self._logs.clear()
            self._timing_samples.clear()
            self._timing_sample_keys.clear()
            self._scan_jobs.clear()

    # Merchants

    def create_merchant(self, payload: NewMerchant) -> MerchantRecord:
        record = MerchantRecord(
            merchant_id=payload.merchant_id or _new_id("mer"),
            platform_account_id=payload.platform_account_id,
            access_token=self._vault.encrypt(payload.access_token),
            business_name=payload.business_name,
            support_email=payload.support_email,
            brand_color=payload.brand_color,
            tier_limit=payload.tier_limit,
            default_currency=payload.default_currency,
            gross_invoiced=0,
            total_recovered=0,
            total_protected=0,
            total_vetted_count=0,
            last_audit_at=None,
            last_audit_status="idle",
            auto_pilot_enabled=payload.auto_pilot_enabled,
            recovery_strategy=payload.recovery_strategy,
            created_at=_now_utc(),
        )
        with self._lock:
            self._merchants[record.merchant_id] = record
        return record

    def get_merchant(self, merchant_id: str) -> MerchantRecord | None:
        return self._merchants.get(merchant_id)

    def list_merchants(self) -> list[MerchantRecord]:
        return sorted(self._merchants.values(), key=lambda item: item.created_at)

    def _update_merchant(self, merchant_id: str, **changes: object) -> None:
        with self._lock:
            current = self._merchants.get(merchant_id)
            if current is None:
                raise MerchantNotFoundError(merchant_id)
            self._merchants[merchant_id] = replace(current, **changes)

    def set_audit_status(self, merchant_id: str, status: str) -> None:
        self._update_merchant(merchant_id, last_audit_status=status)

    def record_audit(
        self,
        merchant_id: str,
        *,
        audited_at: datetime,
        currency: str,
        gross_invoiced: int,
        vetted_increment: int,
    ) -> None:
        with self._lock:
            current = self._merchants.get(merchant_id)
            if current is None:
                raise MerchantNotFoundError(merchant_id)
            self._merchants[merchant_id] = replace(
                current,
                last_audit_at=_coerce_utc(audited_at),
                default_currency=currency,
                gross_invoiced=gross_invoiced,
                total_vetted_count=current.total_vetted_count + vetted_increment,
            )

    def increment_recovered(self, merchant_id: str, amount: int) -> None:
        with self._lock:
            current = self._merchants.get(merchant_id)
            if current is None:
                raise MerchantNotFoundError(merchant_id)
            self._merchants[merchant_id] = replace(current, total_recovered=current.total_recovered + amount)

    def increment_protected(self, merchant_id: str, amount: int) -> None:
        with self._lock:
            current = self._merchants.get(merchant_id)
            if current is None:
                raise MerchantNotFoundError(merchant_id)
            self._merchants[merchant_id] = replace(current, total_protected=current.total_protected + amount)

    # Targets

    def _to_record(self, stored: _StoredTarget) -> TargetRecord:
        values = dict(stored.__dict__)
        values["email"] = self._vault.decrypt_or_placeholder(
            stored.email.ciphertext, stored.email.iv, stored.email.tag, field="email"
        )
        values["customer_name"] = self._vault.decrypt_or_placeholder(
            stored.customer_name.ciphertext,
            stored.customer_name.iv,
            stored.customer_name.tag,
            field="customer_name",
        )
        return TargetRecord(**values)

    def get_target(self, target_id: str) -> TargetRecord | None:
        stored = self._targets.get(target_id)
        return self._to_record(stored) if stored is not None else None

    def get_target_by_natural_key(self, natural_key: str) -> TargetRecord | None:
        target_id = self._target_ids_by_key.get(natural_key)
        if target_id is None:
            return None
        return self.get_target(target_id)

    def list_targets(self, merchant_id: str) -> list[TargetRecord]:
        rows = [item for item in self._targets.values() if item.merchant_id == merchant_id]
        rows.sort(key=lambda item: item.discovered_at)
        return [self._to_record(item) for item in rows]

    def _apply_upsert(
        self,
        targets: dict[str, _StoredTarget],
        keys: dict[str, str],
        item: TargetUpsert,
        now: datetime,
    ) -> UpsertOutcome:
        _validate_upsert(item)
        email = self._vault.encrypt(item.email)
        customer_name = self._vault.encrypt(item.customer_name)
        existing_id = keys.get(item.natural_key)
        if existing_id is not None:
            current = targets[existing_id]
            targets[existing_id] = replace(
                current,
                email=email,
                customer_name=customer_name,
                amount=item.amount,
                customer_id=item.customer_id,
                decline_type=item.decline_type,
                failure_reason=item.failure_reason,
                failure_code=item.failure_code,
                failure_message=item.failure_message,
                recovery_strategy=item.recovery_strategy,
                card_brand=item.card_brand,
                card_funding=item.card_funding,
                country_code=item.country_code,
                requires_3ds=item.requires_3ds,
                provider_error_code=item.provider_error_code,
                original_invoice_date=_optional_utc(item.original_invoice_date),
                updated_at=now,
            )
            return UpsertOutcome(target_id=existing_id, natural_key=item.natural_key, created=False)

        discovered_at = _coerce_utc(item.discovered_at) if item.discovered_at else now
        target_id = _new_id("tgt")
        targets[target_id] = _StoredTarget(
            target_id=target_id,
            merchant_id=item.merchant_id,
            natural_key=item.natural_key,
            email=email,
            customer_name=customer_name,
            amount=item.amount,
            status=item.status,
            discovered_at=discovered_at,
            purge_at=discovered_at + PURGE_AFTER,
            email_count=0,
            last_emailed_at=None,
            click_count=0,
            last_clicked_at=None,
            attribution_expires_at=None,
            recovered_at=None,
            recovery_type=None,
            customer_id=item.customer_id,
            decline_type=item.decline_type,
            failure_reason=item.failure_reason,
            failure_code=item.failure_code,
            failure_message=item.failure_message,
            recovery_strategy=item.recovery_strategy,
            card_brand=item.card_brand,
            card_funding=item.card_funding,
            country_code=item.country_code,
            requires_3ds=item.requires_3ds,
            provider_error_code=item.provider_error_code,
            original_invoice_date=_optional_utc(item.original_invoice_date),
            updated_at=now,
        )
        keys[item.natural_key] = target_id
        return UpsertOutcome(target_id=target_id, natural_key=item.natural_key, created=True)

    def upsert_by_natural_key(self, item: TargetUpsert, *, now: datetime | None = None) -> UpsertOutcome:
        with self._lock:
            return self._apply_upsert(self._targets, self._target_ids_by_key, item, _coerce_utc(now or _now_utc()))

    def batch_upsert(self, items: list[TargetUpsert], *, now: datetime | None = None) -> list[UpsertOutcome]:
        normalized_now = _coerce_utc(now or _now_utc())
        with self._lock:
            staged_targets = dict(self._targets)
            staged_keys = dict(self._target_ids_by_key)
            try:
                outcomes = [self._apply_upsert(staged_targets, staged_keys, item, normalized_now) for item in items]
            except ValueError as exc:
                raise BatchCommitError(f"batch of {len(items)} targets rolled back: {exc}") from exc
            self._targets = staged_targets
            self._target_ids_by_key = staged_keys
        return outcomes

    def count_active_by_merchant(self, merchant_id: str, *, now: datetime | None = None) -> int:
        normalized_now = _coerce_utc(now or _now_utc())
        return sum(
            1
            for item in self._targets.values()
            if item.merchant_id == merchant_id
            and item.status in OUTREACH_STATUSES
            and item.purge_at > normalized_now
        )

    def list_outreach_eligible(self, *, now: datetime, grace: timedelta) -> list[TargetRecord]:
        normalized_now = _coerce_utc(now)
        cutoff = normalized_now - grace
        rows = [
            item
            for item in self._targets.values()
            if item.status in OUTREACH_STATUSES
            and item.email_count < MAX_CONTACTS
            and item.discovered_at < cutoff
            and item.purge_at > normalized_now
        ]
        rows.sort(key=lambda item: item.discovered_at)
        return [self._to_record(item) for item in rows]

    def _require_target(self, target_id: str) -> _StoredTarget:
        current = self._targets.get(target_id)
        if current is None:
            raise TargetNotFoundError(target_id)
        return current

    def record_contact(self, target_id: str, *, now: datetime) -> int:
        with self._lock:
            current = self._require_target(target_id)
            updated = replace(
                current,
                email_count=current.email_count + 1,
                last_emailed_at=_coerce_utc(now),
                updated_at=_coerce_utc(now),
            )
            self._targets[target_id] = updated
            return updated.email_count

    def _transition(self, target_id: str, *, allowed_from: frozenset[str], **changes: object) -> bool:
        with self._lock:
            current = self._require_target(target_id)
            if current.status not in allowed_from:
                return False
            self._targets[target_id] = replace(current, **changes)
            return True

    def mark_exhausted(self, target_id: str) -> bool:
        return self._transition(
            target_id,
            allowed_from=OUTREACH_STATUSES,
            status="exhausted",
            updated_at=_now_utc(),
        )

    def mark_recovered(self, target_id: str, *, recovery_type: str, now: datetime) -> bool:
        return self._transition(
            target_id,
            allowed_from=frozenset({"pending", "impending", "exhausted"}),
            status="recovered",
            recovery_type=recovery_type,
            recovered_at=_coerce_utc(now),
            updated_at=_coerce_utc(now),
        )

    def mark_protected(self, target_id: str, *, now: datetime) -> bool:
        return self._transition(
            target_id,
            allowed_from=frozenset({"impending"}),
            status="protected",
            recovered_at=_coerce_utc(now),
            updated_at=_coerce_utc(now),
        )

    def record_click(self, target_id: str, *, now: datetime) -> TargetRecord:
        normalized_now = _coerce_utc(now)
        with self._lock:
            current = self._require_target(target_id)
            updated = replace(
                current,
                click_count=current.click_count + 1,
                last_clicked_at=normalized_now,
                attribution_expires_at=normalized_now + ATTRIBUTION_WINDOW,
                updated_at=normalized_now,
            )
            self._targets[target_id] = updated
        return self._to_record(updated)

    # Hourly send counter

    def increment_hourly_counter(self, merchant_id: str, *, now: datetime) -> int:
        key = (merchant_id, _hour_bucket(now))
        with self._lock:
            self._hourly_counters[key] = self._hourly_counters.get(key, 0) + 1
            return self._hourly_counters[key]

    def read_hourly_counter(self, merchant_id: str, *, now: datetime) -> int:
        return self._hourly_counters.get((merchant_id, _hour_bucket(now)), 0)

    # Job locks

    def acquire_lock(self, job_name: str, *, ttl: timedelta, now: datetime | None = None) -> LockGrant | None:
        normalized_now = _coerce_utc(now or _now_utc())
        holder_id = uuid.uuid4().hex
        with self._lock:
            existing = self._job_locks.get(job_name)
            if existing is not None and existing[1] >= normalized_now - ttl:
                return None
            self._job_locks[job_name] = (holder_id, normalized_now)
        return LockGrant(job_name=job_name, holder_id=holder_id, was_stolen=existing is not None)

    def release_lock(self, job_name: str, holder_id: str) -> bool:
        with self._lock:
            existing = self._job_locks.get(job_name)
            if existing is None or existing[0] != holder_id:
                return False
            del self._job_locks[job_name]
            return True

    # System logs

    def create_log(
        self,
        job_name: str,
        status: str,
        *,
        details: str | None = None,
        error_message: str | None = None,
    ) -> SystemLogRecord:
        with self._lock:
            record = SystemLogRecord(
                log_id=len(self._logs) + 1,
                job_name=job_name,
                status=status,
                details=details,
                error_message=error_message,
                created_at=_now_utc(),
            )
            self._logs.append(record)
        return record

    def list_recent_logs(self, limit: int = 20) -> list[SystemLogRecord]:
        return list(reversed(self._logs))[:limit]

    def latest_log_for_job(self, job_name: str) -> SystemLogRecord | None:
        for record in reversed(self._logs):
            if record.job_name == job_name:
                return record
        return None

    # Timing samples

    def add_timing_sample(
        self,
        merchant_id: str,
        *,
        day_of_week: int,
        hour: int,
        source_key: str | None = None,
    ) -> bool:
        with self._lock:
            if source_key is not None:
                if (merchant_id, source_key) in self._timing_sample_keys:
                    return False
                self._timing_sample_keys.add((merchant_id, source_key))
            self._timing_samples.setdefault(merchant_id, []).append((day_of_week, hour))
            return True

    def get_golden_hour(self, merchant_id: str) -> GoldenHour | None:
        samples = self._timing_samples.get(merchant_id)
        if not samples:
            return None
        counts: dict[tuple[int, int], int] = {}
        for sample in samples:
            counts[sample] = counts.get(sample, 0) + 1
        (day, hour), total = min(counts.items(), key=lambda entry: (-entry[1], entry[0]))
        return GoldenHour(day_of_week=day, hour=hour, sample_count=total)

    # Scan jobs

    def enqueue_scan_job(self, merchant_id: str) -> tuple[ScanJobRecord, bool]:
        with self._lock:
            if merchant_id not in self._merchants:
                raise MerchantNotFoundError(merchant_id)
            for job in sorted(self._scan_jobs.values(), key=lambda item: item.created_at):
                if job.merchant_id == merchant_id and job.status in OUTSTANDING_JOB_STATUSES:
                    return job, False
            now = _now_utc()
            job = ScanJobRecord(
                job_id=_new_id("scan"),
                merchant_id=merchant_id,
                status="pending",
                progress=0,
                error=None,
                created_at=now,
                updated_at=now,
                started_at=None,
                completed_at=None,
            )
            self._scan_jobs[job.job_id] = job
            return job, True

    def get_scan_job(self, job_id: str) -> ScanJobRecord | None:
        return self._scan_jobs.get(job_id)

    def claim_next_scan_job(self) -> ScanJobRecord | None:
        with self._lock:
            pending = [job for job in self._scan_jobs.values() if job.status == "pending"]
            if not pending:
                return None
            job = min(pending, key=lambda item: item.created_at)
            now = _now_utc()
            claimed = replace(job, status="processing", started_at=now, updated_at=now)
            self._scan_jobs[job.job_id] = claimed
            return claimed

    def fail_stale_scan_jobs(self, *, stale_after: timedelta, now: datetime | None = None) -> list[ScanJobRecord]:
        cutoff = _coerce_utc(now or _now_utc()) - stale_after
        failed: list[ScanJobRecord] = []
        with self._lock:
            for job in list(self._scan_jobs.values()):
                if job.status != "processing" or job.updated_at >= cutoff:
                    continue
                stamp = _now_utc()
                released = replace(
                    job,
                    status="failed",
                    error=STALE_JOB_ERROR,
                    updated_at=stamp,
                    completed_at=stamp,
                )
                self._scan_jobs[job.job_id] = released
                failed.append(released)
        return failed

    def update_scan_job(
        self,
        job_id: str,
        *,
        status: str | None = None,
        progress: int | None = None,
        error: str | None = None,
    ) -> ScanJobRecord:
        with self._lock:
            current = self._scan_jobs.get(job_id)
            if current is None:
                raise ScanJobNotFoundError(job_id)
            now = _now_utc()
            updated = replace(
                current,
                status=status or current.status,
                progress=progress if progress is not None else current.progress,
                error=error if error is not None else current.error,
                updated_at=now,
                completed_at=now if status in {"completed", "failed"} else current.completed_at,
            )
            self._scan_jobs[job_id] = updated
            return updated
