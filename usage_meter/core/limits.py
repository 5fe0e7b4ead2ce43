"""
Spending limit checks.

Compares the day, week and month totals of a summary bundle against
configured cost limits.

Check Order:
1. Daily limit - against the reference day's cost
2. Weekly limit - against the current calendar week
3. Monthly limit - against the current calendar month
"""

from dataclasses import dataclass
from enum import Enum, auto
from typing import List, Optional

from usage_meter.storage.models import UsageData


class LimitPeriod(Enum):
    """Periods a spending limit can apply to."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class LimitSeverity(Enum):
    """Severity of a limit check result, in increasing order."""
    WARNING = auto()   # Spend is approaching the limit
    EXCEEDED = auto()  # Spend is above the limit


@dataclass(frozen=True)
class SpendingLimits:
    """Optional cost limits per period."""
    daily: Optional[float] = None
    weekly: Optional[float] = None
    monthly: Optional[float] = None
    warn_ratio: float = 0.8

    def __post_init__(self):
        """Validate limits are positive and the warning ratio is a fraction."""
        for name in ("daily", "weekly", "monthly"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} limit must be > 0")
        if not 0 < self.warn_ratio <= 1:
            raise ValueError("warn_ratio must be in (0, 1]")

    @property
    def enabled(self) -> bool:
        """True if any limit is set."""
        return any(v is not None for v in (self.daily, self.weekly, self.monthly))


@dataclass(frozen=True)
class LimitBreach:
    """A limit that has been approached or exceeded."""
    period: LimitPeriod
    severity: LimitSeverity
    spent: float
    limit: float
    message: str

    @property
    def ratio(self) -> float:
        """Spend as a fraction of the limit."""
        return self.spent / self.limit


def _check(
    period: LimitPeriod,
    spent: float,
    limit: Optional[float],
    warn_ratio: float,
) -> Optional[LimitBreach]:
    if limit is None:
        return None
    if spent > limit:
        return LimitBreach(
            period=period,
            severity=LimitSeverity.EXCEEDED,
            spent=spent,
            limit=limit,
            message=f"{period.value.capitalize()} spend ${spent:.2f} exceeds limit ${limit:.2f}",
        )
    if spent >= limit * warn_ratio:
        return LimitBreach(
            period=period,
            severity=LimitSeverity.WARNING,
            spent=spent,
            limit=limit,
            message=(
                f"{period.value.capitalize()} spend ${spent:.2f} is "
                f"{spent / limit * 100:.0f}% of limit ${limit:.2f}"
            ),
        )
    return None


def check_limits(data: UsageData, limits: SpendingLimits) -> List[LimitBreach]:
    """Check a summary bundle against spending limits.

    Args:
        data: Aggregated usage bundle
        limits: Configured limits

    Returns:
        Breaches in check order (daily, weekly, monthly); empty if none
    """
    today_cost = data.today.cost if data.today is not None else 0.0
    results = [
        _check(LimitPeriod.DAILY, today_cost, limits.daily, limits.warn_ratio),
        _check(LimitPeriod.WEEKLY, data.this_week.total_cost, limits.weekly, limits.warn_ratio),
        _check(LimitPeriod.MONTHLY, data.this_month.total_cost, limits.monthly, limits.warn_ratio),
    ]
    return [r for r in results if r is not None]


def most_severe(breaches: List[LimitBreach]) -> Optional[LimitSeverity]:
    """Highest severity among breaches, or None when there are none."""
    if not breaches:
        return None
    return max((b.severity for b in breaches), key=lambda s: s.value)
