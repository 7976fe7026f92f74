"""Create recovery ledger tables for merchants, targets, counters, locks, logs, and scan jobs."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "merchants",
        sa.Column("merchant_id", sa.String(length=64), nullable=False),
        sa.Column("platform_account_id", sa.String(length=128), nullable=False),
        sa.Column("access_token_ciphertext", sa.Text(), nullable=False),
        sa.Column("access_token_iv", sa.String(length=24), nullable=False),
        sa.Column("access_token_tag", sa.String(length=32), nullable=False),
        sa.Column("business_name", sa.String(length=256), nullable=True),
        sa.Column("support_email", sa.String(length=256), nullable=True),
        sa.Column("brand_color", sa.String(length=16), nullable=False),
        sa.Column("tier_limit", sa.Integer(), nullable=False),
        sa.Column("default_currency", sa.String(length=8), nullable=False),
        sa.Column("gross_invoiced", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_recovered", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_protected", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_vetted_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_audit_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_audit_status", sa.String(length=16), nullable=False, server_default="idle"),
        sa.Column("auto_pilot_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("recovery_strategy", sa.String(length=16), nullable=False, server_default="oracle"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("merchant_id"),
        sa.UniqueConstraint("platform_account_id"),
    )

    op.create_table(
        "recovery_targets",
        sa.Column("target_id", sa.String(length=64), nullable=False),
        sa.Column("merchant_id", sa.String(length=64), nullable=False),
        sa.Column("natural_key", sa.String(length=160), nullable=False),
        sa.Column("email_ciphertext", sa.Text(), nullable=False),
        sa.Column("email_iv", sa.String(length=24), nullable=False),
        sa.Column("email_tag", sa.String(length=32), nullable=False),
        sa.Column("name_ciphertext", sa.Text(), nullable=False),
        sa.Column("name_iv", sa.String(length=24), nullable=False),
        sa.Column("name_tag", sa.String(length=32), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("discovered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("purge_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("email_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_emailed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("click_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_clicked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attribution_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recovered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recovery_type", sa.String(length=16), nullable=True),
        sa.Column("customer_id", sa.String(length=128), nullable=True),
        sa.Column("decline_type", sa.String(length=8), nullable=True),
        sa.Column("failure_reason", sa.String(length=128), nullable=True),
        sa.Column("failure_code", sa.String(length=128), nullable=True),
        sa.Column("failure_message", sa.Text(), nullable=True),
        sa.Column("recovery_strategy", sa.String(length=32), nullable=True),
        sa.Column("card_brand", sa.String(length=32), nullable=True),
        sa.Column("card_funding", sa.String(length=32), nullable=True),
        sa.Column("country_code", sa.String(length=8), nullable=True),
        sa.Column("requires_3ds", sa.Boolean(), nullable=True),
        sa.Column("provider_error_code", sa.String(length=128), nullable=True),
        sa.Column("original_invoice_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["merchant_id"], ["merchants.merchant_id"]),
        sa.PrimaryKeyConstraint("target_id"),
        sa.UniqueConstraint("natural_key"),
    )
    op.create_index("ix_recovery_targets_merchant_id", "recovery_targets", ["merchant_id"], unique=False)
    op.create_index("ix_recovery_targets_status", "recovery_targets", ["status"], unique=False)
    op.create_index("ix_recovery_targets_discovered_at", "recovery_targets", ["discovered_at"], unique=False)

    op.create_table(
        "merchant_send_counters",
        sa.Column("merchant_id", sa.String(length=64), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("send_count", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("merchant_id", "window_start"),
    )

    op.create_table(
        "job_locks",
        sa.Column("job_name", sa.String(length=64), nullable=False),
        sa.Column("holder_id", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_name"),
    )

    op.create_table(
        "system_logs",
        sa.Column("log_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_name", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("log_id"),
    )
    op.create_index("ix_system_logs_job_name", "system_logs", ["job_name"], unique=False)
    op.create_index("ix_system_logs_created_at", "system_logs", ["created_at"], unique=False)

    op.create_table(
        "timing_samples",
        sa.Column("sample_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("merchant_id", sa.String(length=64), nullable=False),
        sa.Column("source_key", sa.String(length=128), nullable=True),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("hour", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("sample_id"),
        sa.UniqueConstraint("merchant_id", "source_key", name="uq_timing_samples_merchant_source"),
    )
    op.create_index("ix_timing_samples_merchant_id", "timing_samples", ["merchant_id"], unique=False)

    op.create_table(
        "scan_jobs",
        sa.Column("job_id", sa.String(length=64), nullable=False),
        sa.Column("merchant_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_scan_jobs_merchant_id", "scan_jobs", ["merchant_id"], unique=False)
    op.create_index("ix_scan_jobs_status", "scan_jobs", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_scan_jobs_status", table_name="scan_jobs")
    op.drop_index("ix_scan_jobs_merchant_id", table_name="scan_jobs")
    op.drop_table("scan_jobs")

    op.drop_index("ix_timing_samples_merchant_id", table_name="timing_samples")
    op.drop_table("timing_samples")

    op.drop_index("ix_system_logs_created_at", table_name="system_logs")
    op.drop_index("ix_system_logs_job_name", table_name="system_logs")
    op.drop_table("system_logs")

    op.drop_table("job_locks")
    op.drop_table("merchant_send_counters")

    op.drop_index("ix_recovery_targets_discovered_at", table_name="recovery_targets")
    op.drop_index("ix_recovery_targets_status", table_name="recovery_targets")
    op.drop_index("ix_recovery_targets_merchant_id", table_name="recovery_targets")
    op.drop_table("recovery_targets")

    op.drop_table("merchants")
