"""
Unit tests for per-run allowance calculation.

Tests daily and weekly formulas, reserves, end-of-week acceleration,
budget source fallback, trend prediction and failure handling.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

import pytest

from quota_guard.config.loader import BudgetMode, BudgetSettings, WeekStartDay
from quota_guard.core.allowance import (
    AllowanceManager,
    AllowanceResult,
    BudgetEstimate,
    BudgetSourceKind,
    Confidence,
)
from quota_guard.core.errors import (
    InvalidBudget,
    InvalidMode,
    ProviderUnavailable,
    UpstreamQueryFailed,
)
from quota_guard.core.usage import UsageSource

FIXED_NOW = datetime(2026, 2, 5, 10, 0)  # Thursday


def _settings(**overrides) -> BudgetSettings:
    values = {
        "mode": BudgetMode.DAILY,
        "max_percent": 10,
        "reserve_percent": 5,
        "weekly_tokens": 700000,
    }
    values.update(overrides)
    return BudgetSettings(**values)


def _source(used: float = 0.0, reset_at=None, reset_error=None) -> UsageSource:
    def reset_time(mode):
        if reset_error is not None:
            raise reset_error
        return reset_at

    has_reset = reset_at is not None or reset_error is not None
    return UsageSource(used_percent=lambda mode: used, reset_time=reset_time if has_reset else None)


def _manager(settings: BudgetSettings, used: float = 0.0, now: datetime = FIXED_NOW, **kwargs) -> AllowanceManager:
    source = kwargs.pop("source", None) or _source(used)
    return AllowanceManager(settings, {"claude": source}, clock=lambda: now, **kwargs)


class TestDailyAllowance:
    """Test the daily mode formula."""

    @pytest.mark.parametrize("used, expected", [
        (0.0, 5000),
        (20.0, 3000),
        (50.0, 0),
    ])
    def test_daily_examples(self, used, expected):
        """Test 700k weekly, 10% max, 5% reserve."""
        result = _manager(_settings(), used).compute_allowance("claude")

        assert result.allowance == expected
        assert result.budget_base == 100000
        assert result.reserve_amount == 5000

    def test_daily_without_reserve(self):
        """Test the full capped share is allowed with no reserve."""
        result = _manager(_settings(reserve_percent=0)).compute_allowance("claude")

        assert result.allowance == 10000
        assert result.reserve_amount == 0

    def test_daily_higher_max_percent(self):
        """Test max_percent scales the allowance."""
        result = _manager(_settings(max_percent=50, reserve_percent=0)).compute_allowance("claude")

        assert result.allowance == 50000

    def test_daily_result_fields(self):
        """Test daily mode leaves remaining days unset."""
        result = _manager(_settings(), 10.0).compute_allowance("claude")

        assert result.mode == BudgetMode.DAILY
        assert result.remaining_days is None
        assert result.multiplier == 1.0
        assert result.used_percent == 10.0
        assert result.weekly_budget == 700000
        assert result.budget_source == BudgetSourceKind.CONFIG
        assert result.budget_confidence == Confidence.NONE

    def test_per_provider_budget(self):
        """Test per-provider overrides replace the global budget."""
        settings = _settings(per_provider={"claude": 350000})

        result = _manager(settings).compute_allowance("claude")

        assert result.weekly_budget == 350000
        assert result.budget_base == 50000

    def test_reserve_larger_than_share(self):
        """Test a reserve above max_percent clamps to zero."""
        result = _manager(_settings(reserve_percent=20)).compute_allowance("claude")

        assert result.allowance == 0

    def test_provider_name_case_insensitive(self):
        """Test provider lookup ignores case."""
        assert _manager(_settings()).compute_allowance("Claude").allowance == 5000

    def test_mode_string_accepted(self):
        """Test a mode given as its string value works."""
        result = _manager(_settings(mode="daily")).compute_allowance("claude")

        assert result.mode == BudgetMode.DAILY


class TestWeeklyAllowance:
    """Test the weekly mode formula and reset day resolution."""

    def _weekly(self, days_until_reset: float, used: float = 0.0, **overrides) -> AllowanceResult:
        settings = _settings(mode=BudgetMode.WEEKLY, reserve_percent=0, **overrides)
        source = _source(used, reset_at=FIXED_NOW + timedelta(days=days_until_reset))
        return _manager(settings, source=source).compute_allowance("claude")

    def test_weekly_spreads_remaining_budget(self):
        """Test the remaining week is divided across the days left."""
        result = self._weekly(7)

        assert result.remaining_days == 7
        assert result.allowance == 10000
        assert result.budget_base == 700000
        assert result.multiplier == 1.0

    def test_weekly_accounts_for_usage(self):
        """Test used percentage shrinks the remaining week."""
        result = self._weekly(7, used=50.0)

        assert result.budget_base == 350000
        assert result.allowance == 5000

    def test_weekly_reserve_applies_to_remaining(self):
        """Test the reserve is a share of the remaining weekly budget."""
        settings = _settings(mode=BudgetMode.WEEKLY, max_percent=100, reserve_percent=5)
        source = _source(0.0, reset_at=FIXED_NOW + timedelta(days=1))

        result = _manager(settings, source=source).compute_allowance("claude")

        assert result.reserve_amount == 35000
        assert result.allowance == 665000

    @pytest.mark.parametrize("days, multiplier, expected", [
        (1, 2.0, 140000),
        (2, 1.0, 35000),
        (3, 1.0, 23333),
    ])
    def test_aggressive_end_of_week(self, days, multiplier, expected):
        """Test the multiplier ramps up as the reset approaches."""
        result = self._weekly(days, aggressive_end_of_week=True)

        assert result.multiplier == multiplier
        assert result.allowance == expected

    def test_not_aggressive_keeps_multiplier(self):
        """Test the multiplier stays at 1 when acceleration is off."""
        assert self._weekly(1).multiplier == 1.0

    def test_partial_days_round_up(self):
        """Test a fractional day until reset counts as a whole day."""
        assert self._weekly(1.5).remaining_days == 2

    def test_past_reset_counts_as_one_day(self):
        """Test a stale reset time never divides by zero."""
        assert self._weekly(-1).remaining_days == 1

    def test_weekly_summary(self):
        """Test the weekly summary line."""
        settings = _settings(mode=BudgetMode.WEEKLY, reserve_percent=0)
        source = _source(50.0, reset_at=FIXED_NOW + timedelta(days=7))

        summary = _manager(settings, source=source).summary("claude")

        assert summary == (
            "claude: 50.0% used this week (7 days left), 5000 tokens allowed "
            "(weekly: 700000, remaining: 350000, reserve: 0, multiplier: 1.0x)"
        )


class TestDaysUntilWeeklyReset:
    """Test reset day resolution."""

    def test_falls_back_to_monday_boundary(self):
        """Test Thursday is four days from a Monday week start."""
        assert _manager(_settings()).days_until_weekly_reset("claude") == 4

    def test_falls_back_to_sunday_boundary(self):
        """Test Thursday is three days from a Sunday week start."""
        settings = _settings(week_start_day=WeekStartDay.SUNDAY)

        assert _manager(settings).days_until_weekly_reset("claude") == 3

    def test_boundary_day_is_full_week(self):
        """Test the week start day itself has seven days left."""
        monday = datetime(2026, 2, 2, 8, 0)

        assert _manager(_settings(), now=monday).days_until_weekly_reset("claude") == 7

    def test_day_before_boundary(self):
        """Test the last day of the week has one day left."""
        sunday = datetime(2026, 2, 8, 8, 0)

        assert _manager(_settings(), now=sunday).days_until_weekly_reset("claude") == 1

    def test_unknown_reset_time_falls_back(self):
        """Test a source that reports no reset time uses the boundary."""
        source = UsageSource(used_percent=lambda mode: 0.0, reset_time=lambda mode: None)

        assert _manager(_settings(), source=source).days_until_weekly_reset("claude") == 4

    def test_reset_time_in_other_timezone(self):
        """Test aware reset times in another zone are compared correctly."""
        now = datetime(2026, 2, 5, 10, 0, tzinfo=timezone.utc)
        reset_at = datetime(2026, 2, 7, 2, 0, tzinfo=ZoneInfo("America/Los_Angeles"))
        source = _source(reset_at=reset_at)

        assert _manager(_settings(), now=now, source=source).days_until_weekly_reset("claude") == 2

    def test_reset_time_failure_raises(self):
        """Test a failing reset time lookup is surfaced."""
        source = _source(reset_error=RuntimeError("usage page unreachable"))

        with pytest.raises(UpstreamQueryFailed) as exc_info:
            _manager(_settings(), source=source).days_until_weekly_reset("claude")

        assert exc_info.value.operation == "reset_time"
        assert isinstance(exc_info.value.__cause__, RuntimeError)


class TestAllowanceProperties:
    """Test invariants that hold for any input."""

    @pytest.mark.parametrize("mode", [BudgetMode.DAILY, BudgetMode.WEEKLY])
    def test_monotonic_and_non_negative(self, mode):
        """Test more usage never means more allowance."""
        settings = _settings(mode=mode, reserve_percent=1, aggressive_end_of_week=True)
        previous = None

        for used in [0, 5, 10, 25, 50, 75, 90, 99, 100, 120]:
            source = _source(float(used), reset_at=FIXED_NOW + timedelta(days=2))
            allowance = _manager(settings, source=source).compute_allowance("claude").allowance
            assert allowance >= 0
            if previous is not None:
                assert allowance <= previous
            previous = allowance

        assert previous == 0

    def test_idempotent_with_fixed_clock(self):
        """Test repeated calls give identical results."""
        manager = _manager(_settings(mode=BudgetMode.WEEKLY), 33.3)

        assert manager.compute_allowance("claude") == manager.compute_allowance("claude")

    def test_negative_allowance_rejected(self):
        """Test results cannot carry a negative allowance."""
        with pytest.raises(ValueError, match="allowance cannot be negative"):
            AllowanceResult(
                allowance=-1,
                weekly_budget=700000,
                budget_base=100000,
                used_percent=0.0,
                reserve_amount=0,
                mode=BudgetMode.DAILY,
                multiplier=1.0,
            )


class TestBudgetResolution:
    """Test budget source precedence and fallback."""

    def test_budget_source_overrides_config(self):
        """Test a positive estimate replaces the configured budget."""
        budget_source = MagicMock()
        budget_source.get_budget.return_value = BudgetEstimate(
            weekly_tokens=1400000,
            source=BudgetSourceKind.CALIBRATED,
            confidence=Confidence.HIGH,
            sample_count=6,
        )

        result = _manager(_settings(), budget_source=budget_source).compute_allowance("claude")

        assert result.weekly_budget == 1400000
        assert result.budget_base == 200000
        assert result.budget_source == BudgetSourceKind.CALIBRATED
        assert result.budget_confidence == Confidence.HIGH
        assert result.budget_sample_count == 6
        budget_source.get_budget.assert_called_once_with("claude")

    def test_estimate_defaults_to_calibrated(self):
        """Test an estimate without a source label counts as calibrated."""
        budget_source = MagicMock()
        budget_source.get_budget.return_value = BudgetEstimate(weekly_tokens=1400000)

        result = _manager(_settings(), budget_source=budget_source).compute_allowance("claude")

        assert result.budget_source == BudgetSourceKind.CALIBRATED

    def test_zero_estimate_falls_back_to_config(self):
        """Test a non-positive estimate is ignored."""
        budget_source = MagicMock()
        budget_source.get_budget.return_value = BudgetEstimate(weekly_tokens=0)

        result = _manager(_settings(), budget_source=budget_source).compute_allowance("claude")

        assert result.weekly_budget == 700000
        assert result.budget_source == BudgetSourceKind.CONFIG

    def test_budget_source_failure_raises(self):
        """Test a failing budget source is surfaced with context."""
        budget_source = MagicMock()
        budget_source.get_budget.side_effect = RuntimeError("database locked")

        with pytest.raises(UpstreamQueryFailed, match="get_budget failed for claude"):
            _manager(_settings(), budget_source=budget_source).compute_allowance("claude")

    def test_invalid_budget_raises(self):
        """Test a non-positive resolved budget is fatal."""
        settings = MagicMock()
        settings.mode = BudgetMode.DAILY
        settings.get_provider_budget.return_value = 0

        with pytest.raises(InvalidBudget) as exc_info:
            _manager(settings).compute_allowance("claude")

        assert exc_info.value.weekly_tokens == 0


class TestTrendPrediction:
    """Test predicted daytime usage is held back."""

    def test_prediction_subtracted(self):
        """Test a positive prediction reduces the allowance."""
        predictor = MagicMock()
        predictor.predict_daytime_usage.return_value = 2000

        result = _manager(_settings(reserve_percent=0), trend_predictor=predictor).compute_allowance("claude")

        assert result.allowance == 8000
        assert result.allowance_before_prediction == 10000
        assert result.predicted_usage == 2000
        predictor.predict_daytime_usage.assert_called_once_with("claude", FIXED_NOW, 700000)

    def test_prediction_clamped_at_zero(self):
        """Test a prediction above the allowance leaves nothing."""
        predictor = MagicMock()
        predictor.predict_daytime_usage.return_value = 50000

        result = _manager(_settings(reserve_percent=0), trend_predictor=predictor).compute_allowance("claude")

        assert result.allowance == 0
        assert result.allowance_before_prediction == 10000

    def test_non_positive_prediction_ignored(self):
        """Test a zero or negative prediction changes nothing."""
        predictor = MagicMock()
        predictor.predict_daytime_usage.return_value = -5

        result = _manager(_settings(reserve_percent=0), trend_predictor=predictor).compute_allowance("claude")

        assert result.allowance == 10000
        assert result.predicted_usage == 0

    def test_prediction_failure_raises(self):
        """Test a failing predictor is surfaced."""
        predictor = MagicMock()
        predictor.predict_daytime_usage.side_effect = RuntimeError("boom")

        with pytest.raises(UpstreamQueryFailed, match="predict_daytime_usage"):
            _manager(_settings(), trend_predictor=predictor).compute_allowance("claude")


class TestFailures:
    """Test fail-closed error handling."""

    def test_unknown_provider_raises(self):
        """Test a provider without a usage source is unavailable."""
        with pytest.raises(ProviderUnavailable, match="gemini"):
            _manager(_settings()).compute_allowance("gemini")

    def test_invalid_mode_raises(self):
        """Test an unknown mode is a configuration error."""
        with pytest.raises(InvalidMode, match="hourly"):
            _manager(_settings(mode="hourly")).compute_allowance("claude")

    def test_usage_failure_raises(self):
        """Test a failing usage query is wrapped with its cause."""
        def broken(mode):
            raise LookupError("no snapshots")

        manager = AllowanceManager(_settings(), {"claude": UsageSource(used_percent=broken)}, clock=lambda: FIXED_NOW)

        with pytest.raises(UpstreamQueryFailed) as exc_info:
            manager.compute_allowance("claude")

        assert exc_info.value.provider == "claude"
        assert exc_info.value.operation == "used_percent"
        assert isinstance(exc_info.value.__cause__, LookupError)


class TestRunChecks:
    """Test can_run and summary helpers."""

    def test_can_run_boundary(self):
        """Test a task exactly the allowance fits, one more does not."""
        manager = _manager(_settings(reserve_percent=0))

        assert manager.can_run("claude", 10000) is True
        assert manager.can_run("claude", 10001) is False

    def test_daily_summary(self):
        """Test the daily summary line."""
        summary = _manager(_settings(), 25.0).summary("claude")

        assert summary == "claude: 25.0% used today, 2500 tokens allowed (daily budget: 100000, reserve: 5000)"
