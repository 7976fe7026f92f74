from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .ledger_store import (
    ATTRIBUTION_WINDOW,
    MAX_CONTACTS,
    PURGE_AFTER,
    STALE_JOB_ERROR,
    BatchCommitError,
    GoldenHour,
    InMemoryLedgerStore,
    LedgerStore,
    LockGrant,
    MerchantNotFoundError,
    MerchantRecord,
    NewMerchant,
    ScanJobNotFoundError,
    ScanJobRecord,
    SystemLogRecord,
    TargetNotFoundError,
    TargetRecord,
    TargetUpsert,
    UpsertOutcome,
    _coerce_utc,
    _hour_bucket,
    _new_id,
    _now_utc,
    _optional_utc,
    _validate_upsert,
)
from .models import OUTREACH_STATUSES, OUTSTANDING_JOB_STATUSES
from .vault import SealedValue, Vault


class LedgerBase(DeclarativeBase):
    pass


class _MerchantRow(LedgerBase):
    __tablename__ = "merchants"

    merchant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    platform_account_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    access_token_ciphertext: Mapped[str] = mapped_column(Text, nullable=False)
    access_token_iv: Mapped[str] = mapped_column(String(24), nullable=False)
    access_token_tag: Mapped[str] = mapped_column(String(32), nullable=False)
    business_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    support_email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    brand_color: Mapped[str] = mapped_column(String(16), nullable=False)
    tier_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    default_currency: Mapped[str] = mapped_column(String(8), nullable=False)
    gross_invoiced: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_recovered: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_protected: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_vetted_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_audit_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_audit_status: Mapped[str] = mapped_column(String(16), nullable=False, default="idle")
    auto_pilot_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recovery_strategy: Mapped[str] = mapped_column(String(16), nullable=False, default="oracle")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _TargetRow(LedgerBase):
    __tablename__ = "recovery_targets"

    target_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    merchant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("merchants.merchant_id"), nullable=False, index=True
    )
    natural_key: Mapped[str] = mapped_column(String(160), nullable=False, unique=True)
    email_ciphertext: Mapped[str] = mapped_column(Text, nullable=False)
    email_iv: Mapped[str] = mapped_column(String(24), nullable=False)
    email_tag: Mapped[str] = mapped_column(String(32), nullable=False)
    name_ciphertext: Mapped[str] = mapped_column(Text, nullable=False)
    name_iv: Mapped[str] = mapped_column(String(24), nullable=False)
    name_tag: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    discovered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    purge_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    email_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_emailed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    click_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_clicked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attribution_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    recovered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    recovery_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    decline_type: Mapped[str | None] = mapped_column(String(8), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(128), nullable=True)
    failure_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    failure_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    recovery_strategy: Mapped[str | None] = mapped_column(String(32), nullable=True)
    card_brand: Mapped[str | None] = mapped_column(String(32), nullable=True)
    card_funding: Mapped[str | None] = mapped_column(String(32), nullable=True)
    country_code: Mapped[str | None] = mapped_column(String(8), nullable=True)
    requires_3ds: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    provider_error_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    original_invoice_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _SendCounterRow(LedgerBase):
    __tablename__ = "merchant_send_counters"

    merchant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    send_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class _JobLockRow(LedgerBase):
    __tablename__ = "job_locks"

    job_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    holder_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _SystemLogRow(LedgerBase):
    __tablename__ = "system_logs"

    log_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_name: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class _TimingSampleRow(LedgerBase):
    __tablename__ = "timing_samples"
    __table_args__ = (UniqueConstraint("merchant_id", "source_key", name="uq_timing_samples_merchant_source"),)

    sample_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    source_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    hour: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ScanJobRow(LedgerBase):
    __tablename__ = "scan_jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def _dialect_insert(session: Session, model):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise RuntimeError(f"unsupported ledger database dialect: {dialect}")


def _scan_job_record(row: _ScanJobRow) -> ScanJobRecord:
    return ScanJobRecord(
        job_id=row.job_id,
        merchant_id=row.merchant_id,
        status=row.status,
        progress=row.progress,
        error=row.error,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
        started_at=_optional_utc(row.started_at),
        completed_at=_optional_utc(row.completed_at),
    )


def _log_record(row: _SystemLogRow) -> SystemLogRecord:
    return SystemLogRecord(
        log_id=row.log_id,
        job_name=row.job_name,
        status=row.status,
        details=row.details,
        error_message=row.error_message,
        created_at=_coerce_utc(row.created_at),
    )


class SqlAlchemyLedgerStore:
    def __init__(self, database_url: str, vault: Vault) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for LEDGER_STORE_BACKEND=postgres")
        self._vault = vault
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            LedgerBase.metadata.create_all(self._engine)

    def _session(self) -> Session:
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_ScanJobRow))
                session.execute(delete(_TimingSampleRow))
                session.execute(delete(_SystemLogRow))
                session.execute(delete(_JobLockRow))
                session.execute(delete(_SendCounterRow))
                session.execute(delete(_TargetRow))
                session.execute(delete(_MerchantRow))

    # Merchants

    def _merchant_record(self, row: _MerchantRow) -> MerchantRecord:
        return MerchantRecord(
            merchant_id=row.merchant_id,
            platform_account_id=row.platform_account_id,
            access_token=SealedValue(
                ciphertext=row.access_token_ciphertext,
                iv=row.access_token_iv,
                tag=row.access_token_tag,
            ),
            business_name=row.business_name,
            support_email=row.support_email,
            brand_color=row.brand_color,
            tier_limit=row.tier_limit,
            default_currency=row.default_currency,
            gross_invoiced=row.gross_invoiced,
            total_recovered=row.total_recovered,
            total_protected=row.total_protected,
            total_vetted_count=row.total_vetted_count,
            last_audit_at=_optional_utc(row.last_audit_at),
            last_audit_status=row.last_audit_status,
            auto_pilot_enabled=row.auto_pilot_enabled,
            recovery_strategy=row.recovery_strategy,
            created_at=_coerce_utc(row.created_at),
        )

    def create_merchant(self, payload: NewMerchant) -> MerchantRecord:
        token = self._vault.encrypt(payload.access_token)
        row = _MerchantRow(
            merchant_id=payload.merchant_id or _new_id("mer"),
            platform_account_id=payload.platform_account_id,
            access_token_ciphertext=token.ciphertext,
            access_token_iv=token.iv,
            access_token_tag=token.tag,
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
        with self._session() as session:
            with session.begin():
                session.add(row)
            return self._merchant_record(row)

    def get_merchant(self, merchant_id: str) -> MerchantRecord | None:
        with self._session() as session:
            row = session.get(_MerchantRow, merchant_id)
            return self._merchant_record(row) if row is not None else None

    def list_merchants(self) -> list[MerchantRecord]:
        with self._session() as session:
            rows = session.execute(select(_MerchantRow).order_by(_MerchantRow.created_at.asc())).scalars().all()
            return [self._merchant_record(row) for row in rows]

    def _update_merchant(self, merchant_id: str, **values: object) -> None:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_MerchantRow)
                    .where(_MerchantRow.merchant_id == merchant_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise MerchantNotFoundError(merchant_id)

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
        self._update_merchant(
            merchant_id,
            last_audit_at=_coerce_utc(audited_at),
            default_currency=currency,
            gross_invoiced=gross_invoiced,
            total_vetted_count=_MerchantRow.total_vetted_count + vetted_increment,
        )

    def increment_recovered(self, merchant_id: str, amount: int) -> None:
        self._update_merchant(merchant_id, total_recovered=_MerchantRow.total_recovered + amount)

    def increment_protected(self, merchant_id: str, amount: int) -> None:
        self._update_merchant(merchant_id, total_protected=_MerchantRow.total_protected + amount)

    # Targets

    def _target_record(self, row: _TargetRow) -> TargetRecord:
        return TargetRecord(
            target_id=row.target_id,
            merchant_id=row.merchant_id,
            natural_key=row.natural_key,
            email=self._vault.decrypt_or_placeholder(
                row.email_ciphertext, row.email_iv, row.email_tag, field="email"
            ),
            customer_name=self._vault.decrypt_or_placeholder(
                row.name_ciphertext, row.name_iv, row.name_tag, field="customer_name"
            ),
            amount=row.amount,
            status=row.status,
            discovered_at=_coerce_utc(row.discovered_at),
            purge_at=_coerce_utc(row.purge_at),
            email_count=row.email_count,
            last_emailed_at=_optional_utc(row.last_emailed_at),
            click_count=row.click_count,
            last_clicked_at=_optional_utc(row.last_clicked_at),
            attribution_expires_at=_optional_utc(row.attribution_expires_at),
            recovered_at=_optional_utc(row.recovered_at),
            recovery_type=row.recovery_type,
            customer_id=row.customer_id,
            decline_type=row.decline_type,
            failure_reason=row.failure_reason,
            failure_code=row.failure_code,
            failure_message=row.failure_message,
            recovery_strategy=row.recovery_strategy,
            card_brand=row.card_brand,
            card_funding=row.card_funding,
            country_code=row.country_code,
            requires_3ds=row.requires_3ds,
            provider_error_code=row.provider_error_code,
            original_invoice_date=_optional_utc(row.original_invoice_date),
            updated_at=_coerce_utc(row.updated_at),
        )

    def get_target(self, target_id: str) -> TargetRecord | None:
        with self._session() as session:
            row = session.get(_TargetRow, target_id)
            return self._target_record(row) if row is not None else None

    def get_target_by_natural_key(self, natural_key: str) -> TargetRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_TargetRow).where(_TargetRow.natural_key == natural_key)
            ).scalar_one_or_none()
            return self._target_record(row) if row is not None else None

    def list_targets(self, merchant_id: str) -> list[TargetRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_TargetRow)
                .where(_TargetRow.merchant_id == merchant_id)
                .order_by(_TargetRow.discovered_at.asc())
            ).scalars().all()
            return [self._target_record(row) for row in rows]

    def _upsert_in_session(self, session: Session, item: TargetUpsert, now: datetime) -> UpsertOutcome:
        _validate_upsert(item)
        email = self._vault.encrypt(item.email)
        customer_name = self._vault.encrypt(item.customer_name)
        discovered_at = _coerce_utc(item.discovered_at) if item.discovered_at else now
        candidate_id = _new_id("tgt")
        mutable = {
            "email_ciphertext": email.ciphertext,
            "email_iv": email.iv,
            "email_tag": email.tag,
            "name_ciphertext": customer_name.ciphertext,
            "name_iv": customer_name.iv,
            "name_tag": customer_name.tag,
            "amount": item.amount,
            "customer_id": item.customer_id,
            "decline_type": item.decline_type,
            "failure_reason": item.failure_reason,
            "failure_code": item.failure_code,
            "failure_message": item.failure_message,
            "recovery_strategy": item.recovery_strategy,
            "card_brand": item.card_brand,
            "card_funding": item.card_funding,
            "country_code": item.country_code,
            "requires_3ds": item.requires_3ds,
            "provider_error_code": item.provider_error_code,
            "original_invoice_date": _optional_utc(item.original_invoice_date),
            "updated_at": now,
        }
        stmt = _dialect_insert(session, _TargetRow).values(
            target_id=candidate_id,
            merchant_id=item.merchant_id,
            natural_key=item.natural_key,
            status=item.status,
            discovered_at=discovered_at,
            purge_at=discovered_at + PURGE_AFTER,
            email_count=0,
            click_count=0,
            **mutable,
        )
        stmt = stmt.on_conflict_do_update(index_elements=["natural_key"], set_=mutable)
        session.execute(stmt)
        target_id = session.execute(
            select(_TargetRow.target_id).where(_TargetRow.natural_key == item.natural_key)
        ).scalar_one()
        return UpsertOutcome(target_id=target_id, natural_key=item.natural_key, created=target_id == candidate_id)

    def upsert_by_natural_key(self, item: TargetUpsert, *, now: datetime | None = None) -> UpsertOutcome:
        with self._session() as session:
            with session.begin():
                return self._upsert_in_session(session, item, _coerce_utc(now or _now_utc()))

    def batch_upsert(self, items: list[TargetUpsert], *, now: datetime | None = None) -> list[UpsertOutcome]:
        normalized_now = _coerce_utc(now or _now_utc())
        try:
            with self._session() as session:
                with session.begin():
                    return [self._upsert_in_session(session, item, normalized_now) for item in items]
        except (ValueError, SQLAlchemyError) as exc:
            raise BatchCommitError(f"batch of {len(items)} targets rolled back: {exc}") from exc

    def count_active_by_merchant(self, merchant_id: str, *, now: datetime | None = None) -> int:
        normalized_now = _coerce_utc(now or _now_utc())
        with self._session() as session:
            return session.execute(
                select(func.count())
                .select_from(_TargetRow)
                .where(_TargetRow.merchant_id == merchant_id)
                .where(_TargetRow.status.in_(OUTREACH_STATUSES))
                .where(_TargetRow.purge_at > normalized_now)
            ).scalar_one()

    def list_outreach_eligible(self, *, now: datetime, grace: timedelta) -> list[TargetRecord]:
        normalized_now = _coerce_utc(now)
        with self._session() as session:
            rows = session.execute(
                select(_TargetRow)
                .where(_TargetRow.status.in_(OUTREACH_STATUSES))
                .where(_TargetRow.email_count < MAX_CONTACTS)
                .where(_TargetRow.discovered_at < normalized_now - grace)
                .where(_TargetRow.purge_at > normalized_now)
                .order_by(_TargetRow.discovered_at.asc())
            ).scalars().all()
            return [self._target_record(row) for row in rows]

    def record_contact(self, target_id: str, *, now: datetime) -> int:
        normalized_now = _coerce_utc(now)
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_TargetRow)
                    .where(_TargetRow.target_id == target_id)
                    .values(
                        email_count=_TargetRow.email_count + 1,
                        last_emailed_at=normalized_now,
                        updated_at=normalized_now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise TargetNotFoundError(target_id)
                return session.execute(
                    select(_TargetRow.email_count).where(_TargetRow.target_id == target_id)
                ).scalar_one()

    def _transition(self, target_id: str, *, allowed_from: frozenset[str], **values: object) -> bool:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_TargetRow)
                    .where(_TargetRow.target_id == target_id)
                    .where(_TargetRow.status.in_(allowed_from))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return True
                if session.get(_TargetRow, target_id) is None:
                    raise TargetNotFoundError(target_id)
                return False

    def mark_exhausted(self, target_id: str) -> bool:
        return self._transition(
            target_id,
            allowed_from=OUTREACH_STATUSES,
            status="exhausted",
            updated_at=_now_utc(),
        )

    def mark_recovered(self, target_id: str, *, recovery_type: str, now: datetime) -> bool:
        normalized_now = _coerce_utc(now)
        return self._transition(
            target_id,
            allowed_from=frozenset({"pending", "impending", "exhausted"}),
            status="recovered",
            recovery_type=recovery_type,
            recovered_at=normalized_now,
            updated_at=normalized_now,
        )

    def mark_protected(self, target_id: str, *, now: datetime) -> bool:
        normalized_now = _coerce_utc(now)
        return self._transition(
            target_id,
            allowed_from=frozenset({"impending"}),
            status="protected",
            recovered_at=normalized_now,
            updated_at=normalized_now,
        )

    def record_click(self, target_id: str, *, now: datetime) -> TargetRecord:
        normalized_now = _coerce_utc(now)
        with self._session() as session:
            with session.begin():
                row = session.get(_TargetRow, target_id)
                if row is None:
                    raise TargetNotFoundError(target_id)
                row.click_count += 1
                row.last_clicked_at = normalized_now
                row.attribution_expires_at = normalized_now + ATTRIBUTION_WINDOW
                row.updated_at = normalized_now
            return self._target_record(row)

    # Hourly send counter

    def increment_hourly_counter(self, merchant_id: str, *, now: datetime) -> int:
        bucket = _hour_bucket(now)
        with self._session() as session:
            with session.begin():
                stmt = _dialect_insert(session, _SendCounterRow).values(
                    merchant_id=merchant_id,
                    window_start=bucket,
                    send_count=1,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["merchant_id", "window_start"],
                    set_={"send_count": _SendCounterRow.send_count + 1},
                )
                session.execute(stmt)
                return session.execute(
                    select(_SendCounterRow.send_count)
                    .where(_SendCounterRow.merchant_id == merchant_id)
                    .where(_SendCounterRow.window_start == bucket)
                ).scalar_one()

    def read_hourly_counter(self, merchant_id: str, *, now: datetime) -> int:
        with self._session() as session:
            value = session.execute(
                select(_SendCounterRow.send_count)
                .where(_SendCounterRow.merchant_id == merchant_id)
                .where(_SendCounterRow.window_start == _hour_bucket(now))
            ).scalar_one_or_none()
            return value or 0

    # Job locks

    def acquire_lock(self, job_name: str, *, ttl: timedelta, now: datetime | None = None) -> LockGrant | None:
        normalized_now = _coerce_utc(now or _now_utc())
        holder_id = uuid.uuid4().hex
        holder_query = select(_JobLockRow.holder_id).where(_JobLockRow.job_name == job_name)
        stale_before = normalized_now - ttl
        with self._session() as session:
            with session.begin():
                previous_created_at = session.execute(
                    select(_JobLockRow.created_at).where(_JobLockRow.job_name == job_name)
                ).scalar_one_or_none()
                stmt = _dialect_insert(session, _JobLockRow).values(
                    job_name=job_name,
                    holder_id=holder_id,
                    created_at=normalized_now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["job_name"],
                    set_={"holder_id": holder_id, "created_at": normalized_now},
                    where=_JobLockRow.created_at < stale_before,
                )
                session.execute(stmt)
                current = session.execute(holder_query).scalar_one_or_none()
        if current != holder_id:
            return None
        was_stolen = previous_created_at is not None and _coerce_utc(previous_created_at) < stale_before
        return LockGrant(job_name=job_name, holder_id=holder_id, was_stolen=was_stolen)

    def release_lock(self, job_name: str, holder_id: str) -> bool:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    delete(_JobLockRow)
                    .where(_JobLockRow.job_name == job_name)
                    .where(_JobLockRow.holder_id == holder_id)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1

    # System logs

    def create_log(
        self,
        job_name: str,
        status: str,
        *,
        details: str | None = None,
        error_message: str | None = None,
    ) -> SystemLogRecord:
        row = _SystemLogRow(
            job_name=job_name,
            status=status,
            details=details,
            error_message=error_message,
            created_at=_now_utc(),
        )
        with self._session() as session:
            with session.begin():
                session.add(row)
                session.flush()
            return _log_record(row)

    def list_recent_logs(self, limit: int = 20) -> list[SystemLogRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_SystemLogRow).order_by(_SystemLogRow.log_id.desc()).limit(limit)
            ).scalars().all()
            return [_log_record(row) for row in rows]

    def latest_log_for_job(self, job_name: str) -> SystemLogRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_SystemLogRow)
                .where(_SystemLogRow.job_name == job_name)
                .order_by(_SystemLogRow.log_id.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _log_record(row) if row is not None else None

    # Timing samples

    def add_timing_sample(
        self,
        merchant_id: str,
        *,
        day_of_week: int,
        hour: int,
        source_key: str | None = None,
    ) -> bool:
        with self._session() as session:
            with session.begin():
                stmt = _dialect_insert(session, _TimingSampleRow).values(
                    merchant_id=merchant_id,
                    source_key=source_key,
                    day_of_week=day_of_week,
                    hour=hour,
                    created_at=_now_utc(),
                )
                result = session.execute(
                    stmt.on_conflict_do_nothing(index_elements=["merchant_id", "source_key"])
                )
                return result.rowcount == 1

    def get_golden_hour(self, merchant_id: str) -> GoldenHour | None:
        samples = func.count(_TimingSampleRow.sample_id)
        with self._session() as session:
            row = session.execute(
                select(_TimingSampleRow.day_of_week, _TimingSampleRow.hour, samples)
                .where(_TimingSampleRow.merchant_id == merchant_id)
                .group_by(_TimingSampleRow.day_of_week, _TimingSampleRow.hour)
                .order_by(samples.desc(), _TimingSampleRow.day_of_week.asc(), _TimingSampleRow.hour.asc())
                .limit(1)
            ).first()
        if row is None:
            return None
        return GoldenHour(day_of_week=row[0], hour=row[1], sample_count=row[2])

    # Scan jobs

    def enqueue_scan_job(self, merchant_id: str) -> tuple[ScanJobRecord, bool]:
        with self._session() as session:
            with session.begin():
                if session.get(_MerchantRow, merchant_id) is None:
                    raise MerchantNotFoundError(merchant_id)
                existing = session.execute(
                    select(_ScanJobRow)
                    .where(_ScanJobRow.merchant_id == merchant_id)
                    .where(_ScanJobRow.status.in_(OUTSTANDING_JOB_STATUSES))
                    .order_by(_ScanJobRow.created_at.asc())
                    .limit(1)
                ).scalar_one_or_none()
                if existing is not None:
                    return _scan_job_record(existing), False
                now = _now_utc()
                row = _ScanJobRow(
                    job_id=_new_id("scan"),
                    merchant_id=merchant_id,
                    status="pending",
                    progress=0,
                    error=None,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
            return _scan_job_record(row), True

    def get_scan_job(self, job_id: str) -> ScanJobRecord | None:
        with self._session() as session:
            row = session.get(_ScanJobRow, job_id)
            return _scan_job_record(row) if row is not None else None

    def claim_next_scan_job(self) -> ScanJobRecord | None:
        while True:
            with self._session() as session:
                with session.begin():
                    job_id = session.execute(
                        select(_ScanJobRow.job_id)
                        .where(_ScanJobRow.status == "pending")
                        .order_by(_ScanJobRow.created_at.asc())
                        .limit(1)
                    ).scalar_one_or_none()
                    if job_id is None:
                        return None
                    now = _now_utc()
                    result = session.execute(
                        update(_ScanJobRow)
                        .where(_ScanJobRow.job_id == job_id)
                        .where(_ScanJobRow.status == "pending")
                        .values(status="processing", started_at=now, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        continue
                    row = session.get(_ScanJobRow, job_id)
                    return _scan_job_record(row)

    def fail_stale_scan_jobs(self, *, stale_after: timedelta, now: datetime | None = None) -> list[ScanJobRecord]:
        cutoff = _coerce_utc(now or _now_utc()) - stale_after
        with self._session() as session:
            with session.begin():
                rows = session.execute(
                    select(_ScanJobRow)
                    .where(_ScanJobRow.status == "processing")
                    .where(_ScanJobRow.updated_at < cutoff)
                    .order_by(_ScanJobRow.created_at.asc())
                ).scalars().all()
                stamp = _now_utc()
                for row in rows:
                    row.status = "failed"
                    row.error = STALE_JOB_ERROR
                    row.updated_at = stamp
                    row.completed_at = stamp
            return [_scan_job_record(row) for row in rows]

    def update_scan_job(
        self,
        job_id: str,
        *,
        status: str | None = None,
        progress: int | None = None,
        error: str | None = None,
    ) -> ScanJobRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_ScanJobRow, job_id)
                if row is None:
                    raise ScanJobNotFoundError(job_id)
                now = _now_utc()
                if status is not None:
                    row.status = status
                    if status in {"completed", "failed"}:
                        row.completed_at = now
                if progress is not None:
                    row.progress = progress
                if error is not None:
                    row.error = error
                row.updated_at = now
            return _scan_job_record(row)


def create_ledger_store(*, backend: str, database_url: str, vault: Vault) -> LedgerStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyLedgerStore(database_url, vault)
    if normalized == "inmemory":
        return InMemoryLedgerStore(vault)
    raise RuntimeError(f"unsupported LEDGER_STORE_BACKEND: {backend}")
