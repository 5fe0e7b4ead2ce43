"""
Unit tests for spending limit checks.
"""

import pytest

from usage_meter.core.limits import (
    LimitPeriod,
    LimitSeverity,
    SpendingLimits,
    check_limits,
    most_severe,
)
from usage_meter.core.token_counter import TokenCounts
from usage_meter.storage.models import DailySummary, TokenTotals, UsageData, empty_usage_data


def _data(today=0.0, week=0.0, month=0.0):
    return UsageData(
        daily=[],
        sessions=[],
        projects=[],
        hourly=[],
        today_hourly=[],
        today=DailySummary(date="2024-01-10", tokens=TokenCounts(), cost=today, entry_count=1),
        this_week=TokenTotals(total_cost=week),
        this_month=TokenTotals(total_cost=month),
    )


class TestSpendingLimits:
    """Test limit validation."""

    def test_defaults_disabled(self):
        assert SpendingLimits().enabled is False

    def test_any_limit_enables(self):
        assert SpendingLimits(monthly=100.0).enabled is True

    @pytest.mark.parametrize("kwargs", [
        {"daily": 0},
        {"weekly": -5.0},
        {"warn_ratio": 0},
        {"warn_ratio": 1.5},
    ])
    def test_invalid_limits(self, kwargs):
        """Test invalid values are rejected."""
        with pytest.raises(ValueError):
            SpendingLimits(**kwargs)


class TestCheckLimits:
    """Test checking a bundle against limits."""

    def test_no_limits_no_breaches(self):
        assert check_limits(_data(today=100.0), SpendingLimits()) == []

    def test_exceeded_daily(self):
        """Test spend above the limit is EXCEEDED."""
        breaches = check_limits(_data(today=12.0), SpendingLimits(daily=10.0))

        assert len(breaches) == 1
        assert breaches[0].period == LimitPeriod.DAILY
        assert breaches[0].severity == LimitSeverity.EXCEEDED
        assert breaches[0].ratio == pytest.approx(1.2)
        assert "exceeds limit $10.00" in breaches[0].message

    def test_warning_threshold(self):
        """Test spend at the warning ratio is a WARNING."""
        breaches = check_limits(_data(week=80.0), SpendingLimits(weekly=100.0))

        assert breaches[0].severity == LimitSeverity.WARNING
        assert "80% of limit" in breaches[0].message

    def test_below_warning(self):
        assert check_limits(_data(month=10.0), SpendingLimits(monthly=100.0)) == []

    def test_check_order(self):
        """Test breaches come back daily, weekly, monthly."""
        limits = SpendingLimits(daily=1.0, weekly=1.0, monthly=1.0)

        breaches = check_limits(_data(today=2.0, week=2.0, month=2.0), limits)

        assert [b.period for b in breaches] == [
            LimitPeriod.DAILY, LimitPeriod.WEEKLY, LimitPeriod.MONTHLY,
        ]

    def test_no_today_counts_as_zero(self):
        """Test a bundle without a reference day has zero daily spend."""
        assert check_limits(empty_usage_data(), SpendingLimits(daily=1.0)) == []

    def test_most_severe(self):
        limits = SpendingLimits(daily=10.0, monthly=100.0)
        breaches = check_limits(_data(today=9.0, month=150.0), limits)

        assert most_severe(breaches) == LimitSeverity.EXCEEDED
        assert most_severe([]) is None
