from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable

HIGH_VALUE_THRESHOLD = 50000


class DeclineType(str, Enum):
    SOFT = "soft"
    HARD = "hard"


class RecoveryStrategy(str, Enum):
    TECHNICAL_BRIDGE = "technical_bridge"
    HIGH_VALUE_MANUAL = "high_value_manual"
    CARD_REFRESH = "card_refresh"
    SMART_RETRY = "smart_retry"


_DECLINE_TABLE: dict[str, DeclineType] = {
    "insufficient_funds": DeclineType.SOFT,
    "card_velocity_exceeded": DeclineType.SOFT,
    "try_again_later": DeclineType.SOFT,
    "processing_error": DeclineType.SOFT,
    "reenter_transaction": DeclineType.SOFT,
    "do_not_honor": DeclineType.SOFT,
    "expired_card": DeclineType.HARD,
    "lost_card": DeclineType.HARD,
    "stolen_card": DeclineType.HARD,
    "incorrect_number": DeclineType.HARD,
    "invalid_cvc": DeclineType.HARD,
    "card_not_supported": DeclineType.HARD,
    "card_declined": DeclineType.HARD,
    "pickup_card": DeclineType.HARD,
}


def classify_decline_code(code: str | None) -> DeclineType | None:
    """Map a provider decline code to soft or hard; unknown codes are retryable."""
    if not code:
        return None
    return _DECLINE_TABLE.get(code.strip().lower(), DeclineType.SOFT)


def determine_recovery_strategy(
    *,
    requires_3ds: bool | None,
    decline_type: DeclineType | None,
    amount: int,
) -> RecoveryStrategy:
    if requires_3ds:
        return RecoveryStrategy.TECHNICAL_BRIDGE
    if amount > HIGH_VALUE_THRESHOLD:
        return RecoveryStrategy.HIGH_VALUE_MANUAL
    if decline_type is DeclineType.HARD:
        return RecoveryStrategy.CARD_REFRESH
    return RecoveryStrategy.SMART_RETRY


@dataclass(frozen=True)
class LeakageCategory:
    name: str
    description: str
    recoverability: int


WALLET_FRICTION = LeakageCategory(
    name="Wallet Friction",
    description="Temporary lack of funds. High recovery probability with timing-optimized retries.",
    recoverability=85,
)
EXPIRED_ACCESS = LeakageCategory(
    name="Expired Access",
    description="Card expired. Customer needs to update payment method.",
    recoverability=70,
)
HARD_DECLINE = LeakageCategory(
    name="Security / Hard Decline",
    description="Blocked by issuer security. Requires customer intervention.",
    recoverability=15,
)
BANK_BOTTLENECK = LeakageCategory(
    name="Bank Bottleneck",
    description="Bank-side processing issue. Often resolves on retry.",
    recoverability=60,
)
UNKNOWN_CATEGORY = LeakageCategory(
    name="Unknown",
    description="Unclassified decline reason.",
    recoverability=50,
)

_CATEGORY_BY_CODE: dict[str, LeakageCategory] = {
    "insufficient_funds": WALLET_FRICTION,
    "expired_card": EXPIRED_ACCESS,
    "stolen_card": HARD_DECLINE,
    "fraudulent": HARD_DECLINE,
    "incorrect_cvc": HARD_DECLINE,
    "card_declined": HARD_DECLINE,
    "generic_decline": BANK_BOTTLENECK,
    "transaction_not_allowed": BANK_BOTTLENECK,
    "processing_error": BANK_BOTTLENECK,
    "do_not_honor": BANK_BOTTLENECK,
}


def leakage_category_for(code: str | None) -> LeakageCategory:
    if not code:
        return UNKNOWN_CATEGORY
    return _CATEGORY_BY_CODE.get(code.strip().lower(), UNKNOWN_CATEGORY)


@dataclass(frozen=True)
class CategoryTotal:
    category: LeakageCategory
    value: int
    count: int
    percentage: int


def aggregate_by_category(entries: Iterable[tuple[str | None, int]]) -> list[CategoryTotal]:
    """Group (failure code, amount) pairs by leakage category, largest value first."""
    totals: dict[str, list[int]] = {}
    categories: dict[str, LeakageCategory] = {}
    grand_total = 0
    for code, amount in entries:
        category = leakage_category_for(code)
        categories[category.name] = category
        bucket = totals.setdefault(category.name, [0, 0])
        bucket[0] += amount
        bucket[1] += 1
        grand_total += amount

    result = [
        CategoryTotal(
            category=categories[name],
            value=value,
            count=count,
            percentage=round(value * 100 / grand_total) if grand_total > 0 else 0,
        )
        for name, (value, count) in totals.items()
    ]
    result.sort(key=lambda item: item.value, reverse=True)
    return result
