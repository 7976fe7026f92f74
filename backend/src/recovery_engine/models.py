from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal
from typing import Iterable, Literal

from pydantic import BaseModel, Field, field_validator

TargetStatus = Literal["pending", "impending", "recovered", "protected", "exhausted"]
RecoveryType = Literal["organic", "direct"]
ScanJobStatus = Literal["pending", "processing", "completed", "failed"]
AuditStatus = Literal["idle", "in_progress", "completed", "failed"]
LogStatus = Literal["success", "skipped", "failure"]
MerchantRecoveryMode = Literal["oracle", "immediate"]
BillingInterval = Literal["day", "week", "month", "year"]

OUTREACH_STATUSES: frozenset[str] = frozenset({"pending", "impending"})
OUTSTANDING_JOB_STATUSES: frozenset[str] = frozenset({"pending", "processing"})
LEAKAGE_STATUSES: frozenset[str] = frozenset({"pending", "exhausted"})

WEEKS_PER_MONTH = Decimal("4.33")
DAYS_PER_MONTH = Decimal("30")
MONTHS_PER_YEAR = Decimal("12")


@dataclass(frozen=True)
class RecurringItem:
    unit_amount: int
    quantity: int
    interval: BillingInterval


def _floor_minor_units(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def monthly_equivalent(amount: int, interval: str) -> int:
    base = Decimal(amount)
    if interval == "week":
        return _floor_minor_units(base * WEEKS_PER_MONTH)
    if interval == "year":
        return _floor_minor_units(base / MONTHS_PER_YEAR)
    if interval == "day":
        return _floor_minor_units(base * DAYS_PER_MONTH)
    return amount


def monthly_normalized_amount(items: Iterable[RecurringItem]) -> int:
    """Sum a subscription's items as monthly minor units, flooring each item."""
    total = MinorUnitTotal()
    for item in items:
        total.add(monthly_equivalent(item.unit_amount * max(item.quantity, 1), item.interval))
    return total.value


class MinorUnitTotal:
    """Integer accumulator for minor currency units."""

    def __init__(self, start: int = 0) -> None:
        self._value = 0
        self.add(start)

    def add(self, amount: int | None) -> None:
        if amount is None:
            return
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise TypeError(f"minor-unit amounts must be int, got {type(amount).__name__}")
        self._value += amount

    @property
    def value(self) -> int:
        return self._value


class ScanJobResponse(BaseModel):
    job_id: str
    merchant_id: str
    status: ScanJobStatus
    progress: int = Field(ge=0, le=100)
    error: str | None = None
    created: bool = False
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class ClickResponse(BaseModel):
    target_id: str
    click_count: int
    attribution_expires_at: datetime


class InvoicePaidEventRequest(BaseModel):
    invoice_id: str = Field(min_length=1)
    paid_at: datetime | None = None


class PaymentMethodUpdatedEventRequest(BaseModel):
    subscription_id: str = Field(min_length=1)

    @field_validator("subscription_id")
    @classmethod
    def _strip_synthetic_prefix(cls, value: str) -> str:
        return value.strip().removeprefix("impending_")


class ReconcileResponse(BaseModel):
    applied: bool
    target_id: str | None = None
    status: TargetStatus | None = None
    recovery_type: RecoveryType | None = None
    reason: str | None = None


class SystemLogItem(BaseModel):
    log_id: int
    job_name: str
    status: LogStatus
    details: str | None = None
    error_message: str | None = None
    created_at: datetime


class SystemHealthResponse(BaseModel):
    recent_logs: list[SystemLogItem]
    last_runs: dict[str, SystemLogItem]


class LeakageCategoryItem(BaseModel):
    category: str
    description: str
    recoverability: int = Field(ge=0, le=100)
    value: int
    count: int
    percentage: int = Field(ge=0, le=100)


class LeakageBreakdownResponse(BaseModel):
    merchant_id: str
    currency: str
    total_at_risk: int
    categories: list[LeakageCategoryItem]
