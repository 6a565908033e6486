"""
Weekly budget calibration.

Subscription providers do not publish their token budgets. Each snapshot
pairs locally counted tokens with the provider's reported used percentage,
which implies a total budget; the calibrator pools those implied budgets
for the current week into a single robust estimate.

Algorithm:
1. Keep samples with a used percentage in [10, 95] and local tokens > 0
2. Reject outliers by median absolute deviation (3+ samples only)
3. Take the median, rounded to the nearest 1000 tokens
4. Score confidence from sample count and coefficient of variation
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List

from loguru import logger

from quota_guard.config.loader import BillingMode, BudgetSettings
from quota_guard.storage.models import start_of_week
from quota_guard.storage.repository import SnapshotRepository
from .allowance import BudgetEstimate, BudgetSourceKind, Confidence
from .errors import UpstreamQueryFailed
from .statistics import (
    coefficient_of_variation,
    filter_outliers_mad,
    median,
    round_to_nearest,
    variance,
)

MIN_USED_PERCENT = 10.0
MAX_USED_PERCENT = 95.0
OUTLIER_MAD_THRESHOLD = 3.0
ROUNDING_STEP = 1000

# (max coefficient of variation, confidence) pairs, checked in order
_SMALL_SAMPLE_THRESHOLDS = ((0.15, Confidence.MEDIUM),)
_LARGE_SAMPLE_THRESHOLDS = ((0.10, Confidence.HIGH), (0.15, Confidence.MEDIUM))


@dataclass(frozen=True)
class CalibrationResult:
    """Outcome of one calibration pass."""
    inferred_budget: int
    confidence: Confidence
    sample_count: int
    variance: float
    source: BudgetSourceKind

    def to_estimate(self) -> BudgetEstimate:
        return BudgetEstimate(
            weekly_tokens=self.inferred_budget,
            source=self.source,
            confidence=self.confidence,
            sample_count=self.sample_count,
            variance=self.variance,
        )


def score_confidence(sample_count: int, cv: float) -> Confidence:
    """Grade an estimate by how many samples back it and how tightly they agree.

    Args:
        sample_count: Samples remaining after outlier rejection
        cv: Coefficient of variation of those samples

    Returns:
        NONE without samples, LOW for one or two, otherwise by cv
    """
    if sample_count == 0:
        return Confidence.NONE
    if sample_count <= 2:
        return Confidence.LOW

    thresholds = _SMALL_SAMPLE_THRESHOLDS if sample_count <= 5 else _LARGE_SAMPLE_THRESHOLDS
    for limit, confidence in thresholds:
        if cv <= limit:
            return confidence
    return Confidence.LOW


class Calibrator:
    """Infers weekly budgets from stored snapshots.

    Also serves as the BudgetSource for the allowance manager and the
    projection engine.
    """

    def __init__(
        self,
        settings: BudgetSettings,
        repository: SnapshotRepository,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.settings = settings
        self.repository = repository
        self.clock = clock

    def calibrate(self, provider: str) -> CalibrationResult:
        """Estimate the provider's weekly budget from this week's snapshots.

        Args:
            provider: Provider name

        Returns:
            CalibrationResult; the configured budget with NONE confidence
            when there is nothing to calibrate from

        Raises:
            UpstreamQueryFailed: If the snapshot store cannot be read
        """
        provider = provider.lower()
        configured = self.settings.get_provider_budget(provider)

        if self.settings.billing_mode is BillingMode.API:
            return CalibrationResult(
                inferred_budget=configured,
                confidence=Confidence.HIGH,
                sample_count=0,
                variance=0.0,
                source=BudgetSourceKind.API,
            )

        if not self.settings.calibrate_enabled:
            return self._configured(configured)

        samples = self._load_samples(provider)
        if len(samples) >= 3:
            filtered = filter_outliers_mad(samples, OUTLIER_MAD_THRESHOLD)
            if len(filtered) < len(samples):
                logger.debug(f"Rejected {len(samples) - len(filtered)} outlier samples for {provider}")
            samples = filtered

        if not samples:
            logger.debug(f"No calibration samples for {provider}, using configured budget")
            return self._configured(configured)

        center = median(samples)
        inferred = int(round_to_nearest(center, ROUNDING_STEP))
        if inferred <= 0:
            logger.debug(f"Calibrated {provider} budget rounds to {inferred}, using configured budget")
            return self._configured(configured)

        spread = variance(samples)
        cv = coefficient_of_variation(center, spread)

        source = BudgetSourceKind.SCRAPED if self.settings.is_scraped(provider) else BudgetSourceKind.CALIBRATED
        return CalibrationResult(
            inferred_budget=inferred,
            confidence=score_confidence(len(samples), cv),
            sample_count=len(samples),
            variance=spread,
            source=source,
        )

    def get_budget(self, provider: str) -> BudgetEstimate:
        """Calibrated budget for the provider, in the BudgetSource shape."""
        return self.calibrate(provider).to_estimate()

    def _configured(self, budget: int) -> CalibrationResult:
        return CalibrationResult(
            inferred_budget=budget,
            confidence=Confidence.NONE,
            sample_count=0,
            variance=0.0,
            source=BudgetSourceKind.CONFIG,
        )

    def _load_samples(self, provider: str) -> List[float]:
        week_start = start_of_week(self.clock(), self.settings.week_start_day.weekday)
        try:
            snapshots = self.repository.get_week(provider, week_start)
        except Exception as e:
            raise UpstreamQueryFailed(provider, "load calibration samples", e) from e

        samples = []
        for snapshot in snapshots:
            pct = snapshot.scraped_used_percent
            if pct is None or not MIN_USED_PERCENT <= pct <= MAX_USED_PERCENT:
                continue
            if snapshot.local_tokens <= 0:
                continue
            samples.append(snapshot.local_tokens / (pct / 100))
        return samples
