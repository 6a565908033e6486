"""
Unit tests for weekly budget calibration.

Tests sample filtering, MAD outlier rejection, confidence scoring and the
fallbacks to the configured budget.
"""

import os
from datetime import date, datetime
from unittest.mock import MagicMock

import pytest

from quota_guard.config.loader import BillingMode, BudgetSettings, WeekStartDay
from quota_guard.core.allowance import BudgetSourceKind, Confidence
from quota_guard.core.calibrator import Calibrator, score_confidence
from quota_guard.core.errors import UpstreamQueryFailed
from quota_guard.storage.models import UsageSnapshot
from quota_guard.storage.repository import SnapshotRepository

FIXED_NOW = datetime(2026, 2, 5, 10, 0)  # Thursday


def _sample(local_tokens: int, pct, provider: str = "claude") -> UsageSnapshot:
    return UsageSnapshot(
        provider=provider,
        timestamp=FIXED_NOW,
        week_start=date(2026, 2, 2),
        local_tokens=local_tokens,
        scraped_used_percent=pct,
    )


def _calibrator(snapshots, **overrides) -> Calibrator:
    repository = MagicMock()
    repository.get_week.return_value = snapshots
    settings = BudgetSettings(weekly_tokens=700000, **overrides)
    return Calibrator(settings, repository, clock=lambda: FIXED_NOW)


def _budgets(*budgets):
    """Snapshots at 50% usage implying the given budgets."""
    return [_sample(b // 2, 50.0) for b in budgets]


class TestCalibrationShortCircuits:
    """Test billing mode and disabled calibration."""

    def test_api_billing_uses_configured_budget(self):
        """Test metered billing trusts the configured figure."""
        calibrator = _calibrator(_budgets(500000), billing_mode=BillingMode.API)

        result = calibrator.calibrate("claude")

        assert result.inferred_budget == 700000
        assert result.confidence == Confidence.HIGH
        assert result.source == BudgetSourceKind.API
        calibrator.repository.get_week.assert_not_called()

    def test_disabled_calibration_uses_configured_budget(self):
        """Test disabled calibration reports the configured budget."""
        calibrator = _calibrator(_budgets(500000), calibrate_enabled=False)

        result = calibrator.calibrate("claude")

        assert result.inferred_budget == 700000
        assert result.confidence == Confidence.NONE
        assert result.source == BudgetSourceKind.CONFIG
        assert result.sample_count == 0

    def test_no_samples_uses_configured_budget(self):
        """Test an empty week falls back without error."""
        result = _calibrator([]).calibrate("claude")

        assert result.inferred_budget == 700000
        assert result.confidence == Confidence.NONE
        assert result.source == BudgetSourceKind.CONFIG

    def test_per_provider_fallback(self):
        """Test the fallback uses the provider's configured budget."""
        result = _calibrator([], per_provider={"claude": 350000}).calibrate("claude")

        assert result.inferred_budget == 350000


class TestSampleSelection:
    """Test which snapshots count as calibration samples."""

    def test_out_of_range_percentages_ignored(self):
        """Test usage below 10% or above 95% is too noisy to use."""
        snapshots = [
            _sample(5000, 5.0),
            _sample(480000, 96.0),
            _sample(100000, None),
            _sample(0, 50.0),
            _sample(250000, 50.0),
        ]

        result = _calibrator(snapshots).calibrate("claude")

        assert result.sample_count == 1
        assert result.inferred_budget == 500000

    def test_boundary_percentages_included(self):
        """Test exactly 10% and 95% are accepted."""
        snapshots = [_sample(50000, 10.0), _sample(475000, 95.0)]

        result = _calibrator(snapshots).calibrate("claude")

        assert result.sample_count == 2
        assert result.inferred_budget == 500000

    @pytest.mark.parametrize("week_start_day, expected", [
        (WeekStartDay.MONDAY, date(2026, 2, 2)),
        (WeekStartDay.SUNDAY, date(2026, 2, 1)),
    ])
    def test_loads_current_week(self, week_start_day, expected):
        """Test samples come from the current billing week."""
        calibrator = _calibrator([], week_start_day=week_start_day)

        calibrator.calibrate("Claude")

        calibrator.repository.get_week.assert_called_once_with("claude", expected)

    def test_repository_failure_raises(self):
        """Test an unreadable snapshot store is surfaced."""
        calibrator = _calibrator([])
        calibrator.repository.get_week.side_effect = RuntimeError("disk I/O error")

        with pytest.raises(UpstreamQueryFailed, match="load calibration samples failed for claude"):
            calibrator.calibrate("claude")


class TestRobustEstimate:
    """Test outlier rejection, rounding and confidence."""

    def test_mad_rejects_outlier(self):
        """Test one wild sample does not move the estimate."""
        result = _calibrator(_budgets(100000, 100000, 1000000)).calibrate("claude")

        assert result.sample_count == 2
        assert result.inferred_budget == 100000
        assert result.confidence == Confidence.LOW

    def test_two_samples_not_filtered(self):
        """Test two samples are both kept however far apart."""
        result = _calibrator(_budgets(100000, 1000000)).calibrate("claude")

        assert result.sample_count == 2
        assert result.inferred_budget == 550000

    def test_rounds_to_nearest_thousand(self):
        """Test the median is rounded to 1000 tokens."""
        result = _calibrator(_budgets(123456)).calibrate("claude")

        assert result.inferred_budget == 123000

    def test_budget_rounding_to_zero_uses_configured(self):
        """Test a median that rounds to zero falls back to the configured budget."""
        estimate = _calibrator([_sample(100, 50.0)] * 3).get_budget("claude")

        assert estimate.weekly_tokens == 700000
        assert estimate.source == BudgetSourceKind.CONFIG
        assert estimate.confidence == Confidence.NONE
        assert estimate.sample_count == 0

    def test_consistent_samples_high_confidence(self):
        """Test six identical samples are high confidence."""
        result = _calibrator(_budgets(*[500000] * 6)).calibrate("claude")

        assert result.sample_count == 6
        assert result.inferred_budget == 500000
        assert result.variance == 0.0
        assert result.confidence == Confidence.HIGH

    @pytest.mark.parametrize("low, high, count, expected", [
        (475000, 525000, 6, Confidence.HIGH),     # cv 0.05
        (440000, 560000, 6, Confidence.MEDIUM),   # cv 0.12
        (400000, 600000, 6, Confidence.LOW),      # cv 0.20
        (440000, 560000, 4, Confidence.MEDIUM),   # cv 0.12
        (400000, 600000, 4, Confidence.LOW),      # cv 0.20
    ])
    def test_confidence_from_spread(self, low, high, count, expected):
        """Test confidence follows the coefficient of variation."""
        budgets = [low, high] * (count // 2)

        result = _calibrator(_budgets(*budgets)).calibrate("claude")

        assert result.sample_count == count
        assert result.inferred_budget == 500000
        assert result.confidence == expected

    def test_source_for_scraped_provider(self):
        """Test page-scraped providers are labelled as such."""
        calibrator = _calibrator([_sample(250000, 50.0, provider="codex")])

        assert calibrator.calibrate("codex").source == BudgetSourceKind.SCRAPED
        assert calibrator.calibrate("claude").source == BudgetSourceKind.CALIBRATED

    def test_get_budget_matches_calibration(self):
        """Test the BudgetSource view carries the calibration fields."""
        estimate = _calibrator(_budgets(*[500000] * 6)).get_budget("claude")

        assert estimate.weekly_tokens == 500000
        assert estimate.source == BudgetSourceKind.CALIBRATED
        assert estimate.confidence == Confidence.HIGH
        assert estimate.sample_count == 6


class TestConfidenceScore:
    """Test confidence thresholds directly."""

    @pytest.mark.parametrize("count, cv, expected", [
        (0, 0.0, Confidence.NONE),
        (1, 0.0, Confidence.LOW),
        (2, 0.0, Confidence.LOW),
        (3, 0.15, Confidence.MEDIUM),
        (5, 0.16, Confidence.LOW),
        (6, 0.10, Confidence.HIGH),
        (6, 0.15, Confidence.MEDIUM),
        (6, 0.151, Confidence.LOW),
        (6, float("inf"), Confidence.LOW),
    ])
    def test_thresholds(self, count, cv, expected):
        """Test sample count and cv combine into the expected grade."""
        assert score_confidence(count, cv) == expected


class TestCalibratorWithDatabase:
    """Test calibration against a real snapshot store."""

    def test_calibrates_from_recorded_snapshots(self, tmp_path):
        """Test snapshots recorded this week drive the estimate."""
        repository = SnapshotRepository(os.path.join(tmp_path, "test.db"))
        repository.initialize_schema()
        repository.insert_snapshots([
            UsageSnapshot.observe("claude", datetime(2026, 1, 28, 10, 0), 900000, scraped_used_percent=90.0),
            UsageSnapshot.observe("claude", datetime(2026, 2, 2, 10, 0), 100000, scraped_used_percent=20.0),
            UsageSnapshot.observe("claude", datetime(2026, 2, 3, 10, 0), 200000, scraped_used_percent=40.0),
            UsageSnapshot.observe("claude", datetime(2026, 2, 4, 10, 0), 300000, scraped_used_percent=60.0),
        ])

        calibrator = Calibrator(BudgetSettings(), repository, clock=lambda: FIXED_NOW)
        result = calibrator.calibrate("claude")

        assert result.sample_count == 3
        assert result.inferred_budget == 500000
        assert result.confidence == Confidence.MEDIUM
