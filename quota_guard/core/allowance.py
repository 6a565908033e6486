"""
Token allowance calculation.

Turns a provider's reported usage percentage into the number of tokens a
single scheduled run may spend.

Calculation Order:
1. Resolve the weekly budget (budget source, then per-provider config, then global default)
2. Query the provider's used percentage
3. Apply the daily or weekly mode formula, capped by max_percent
4. Subtract the safety reserve
5. Subtract predicted daytime usage, when a trend predictor is configured
"""

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Mapping, Optional, Protocol

from loguru import logger

from quota_guard.config.loader import BudgetMode, BudgetSettings
from .errors import (
    InvalidBudget,
    InvalidMode,
    ProviderUnavailable,
    QuotaGuardError,
    UpstreamQueryFailed,
)
from .reset_time import align_to
from .usage import UsageSource

SECONDS_PER_DAY = 24 * 60 * 60


class BudgetSourceKind(Enum):
    """Where a weekly budget figure came from."""
    CONFIG = "config"          # Declared in configuration
    API = "api"                # Metered billing, configured figure is authoritative
    CALIBRATED = "calibrated"  # Inferred from snapshots
    SCRAPED = "scraped"        # Inferred from snapshots with scraped percentages


class Confidence(Enum):
    """How much an inferred budget can be trusted."""
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class BudgetEstimate:
    """A resolved weekly budget with its provenance."""
    weekly_tokens: int
    source: BudgetSourceKind = BudgetSourceKind.CALIBRATED
    confidence: Confidence = Confidence.NONE
    sample_count: int = 0
    variance: float = 0.0


class BudgetSource(Protocol):
    """Provides calibrated or external weekly budget estimates."""

    def get_budget(self, provider: str) -> BudgetEstimate:
        ...


class TrendPredictor(Protocol):
    """Predicts near-term interactive usage so a run does not consume it."""

    def predict_daytime_usage(self, provider: str, now: datetime, weekly_budget: int) -> int:
        ...


@dataclass(frozen=True)
class AllowanceResult:
    """Calculated allowance for one run, with the figures it was derived from."""
    allowance: int
    weekly_budget: int
    budget_base: int
    used_percent: float
    reserve_amount: int
    mode: BudgetMode
    multiplier: float
    predicted_usage: int = 0
    allowance_before_prediction: int = 0
    remaining_days: Optional[int] = None
    budget_source: BudgetSourceKind = BudgetSourceKind.CONFIG
    budget_confidence: Confidence = Confidence.NONE
    budget_sample_count: int = 0

    def __post_init__(self):
        """Validate the allowance was clamped."""
        if self.allowance < 0:
            raise ValueError("allowance cannot be negative")


@dataclass(frozen=True)
class _ModeAllowance:
    allowance: int
    budget_base: int
    multiplier: float
    remaining_days: Optional[int] = None


class AllowanceManager:
    """Calculates per-run token allowances across providers.

    The manager holds no mutable state. The clock is fixed at construction
    so tests can pin "now".
    """

    def __init__(
        self,
        settings: BudgetSettings,
        usage_sources: Mapping[str, UsageSource],
        budget_source: Optional[BudgetSource] = None,
        trend_predictor: Optional[TrendPredictor] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the manager.

        Args:
            settings: Budget policy
            usage_sources: Usage source per provider name
            budget_source: Optional calibrated budget provider
            trend_predictor: Optional daytime usage predictor
            clock: Returns the current time
        """
        self.settings = settings
        self.usage_sources = {name.lower(): source for name, source in usage_sources.items()}
        self.budget_source = budget_source
        self.trend_predictor = trend_predictor
        self.clock = clock

    def compute_allowance(self, provider: str) -> AllowanceResult:
        """Determine how many tokens a run may use for this provider.

        Args:
            provider: Provider name, e.g. "claude" or "codex"

        Returns:
            AllowanceResult with a non-negative allowance

        Raises:
            InvalidBudget: If the resolved weekly budget is not positive
            ProviderUnavailable: If no usage source is registered
            InvalidMode: If the configured mode is not daily or weekly
            UpstreamQueryFailed: If a collaborator call fails
        """
        provider = provider.lower()
        mode = self._resolve_mode()
        estimate = self.resolve_budget(provider)
        weekly_budget = estimate.weekly_tokens
        used_percent = self.used_percent(provider)

        if mode is BudgetMode.DAILY:
            computed = self._daily_allowance(weekly_budget, used_percent)
        else:
            remaining_days = self.days_until_weekly_reset(provider)
            computed = self._weekly_allowance(weekly_budget, used_percent, remaining_days)

        # A negative base (usage over 100%) must not turn into a negative reserve
        reserve = max(0.0, computed.budget_base * self.settings.reserve_percent / 100)
        allowance = int(max(0.0, computed.allowance - reserve))
        before_prediction = allowance

        predicted = 0
        if self.trend_predictor is not None:
            now = self.clock()
            try:
                predicted = self.trend_predictor.predict_daytime_usage(provider, now, weekly_budget)
            except Exception as e:
                raise UpstreamQueryFailed(provider, "predict_daytime_usage", e) from e
            if predicted > 0:
                allowance = max(0, allowance - predicted)
            else:
                predicted = 0

        result = AllowanceResult(
            allowance=allowance,
            weekly_budget=weekly_budget,
            budget_base=computed.budget_base,
            used_percent=used_percent,
            reserve_amount=int(reserve),
            mode=mode,
            multiplier=computed.multiplier,
            predicted_usage=predicted,
            allowance_before_prediction=before_prediction,
            remaining_days=computed.remaining_days,
            budget_source=estimate.source,
            budget_confidence=estimate.confidence,
            budget_sample_count=estimate.sample_count,
        )
        logger.debug(
            f"{provider} allowance={result.allowance} mode={mode.value} "
            f"used={used_percent:.1f}% budget={weekly_budget} ({estimate.source.value})"
        )
        return result

    def resolve_budget(self, provider: str) -> BudgetEstimate:
        """Resolve the weekly budget, preferring a positive budget source estimate.

        Raises:
            InvalidBudget: If the resolved budget is not positive
            UpstreamQueryFailed: If the budget source call fails
        """
        provider = provider.lower()
        estimate = BudgetEstimate(
            weekly_tokens=int(self.settings.get_provider_budget(provider)),
            source=BudgetSourceKind.CONFIG,
        )

        if self.budget_source is not None:
            try:
                loaded = self.budget_source.get_budget(provider)
            except QuotaGuardError:
                raise
            except Exception as e:
                raise UpstreamQueryFailed(provider, "get_budget", e) from e

            if loaded.weekly_tokens > 0:
                estimate = loaded
            else:
                logger.debug(f"Budget source returned {loaded.weekly_tokens} for {provider}, using config")

        if estimate.weekly_tokens <= 0:
            raise InvalidBudget(provider, estimate.weekly_tokens)

        return estimate

    def used_percent(self, provider: str) -> float:
        """Query the provider's used percentage for the configured mode.

        Raises:
            ProviderUnavailable: If no usage source is registered
            UpstreamQueryFailed: If the usage source call fails
        """
        provider = provider.lower()
        source = self.usage_sources.get(provider)
        if source is None:
            raise ProviderUnavailable(provider)

        mode = self._resolve_mode()
        try:
            return float(source.used_percent(mode.value))
        except Exception as e:
            raise UpstreamQueryFailed(provider, "used_percent", e) from e

    def days_until_weekly_reset(self, provider: str) -> int:
        """Days remaining until the provider's weekly budget resets, at least 1.

        Uses the provider's own reset time when it reports one, otherwise
        the next configured week-start boundary (7 on the boundary day).

        Raises:
            UpstreamQueryFailed: If the reset time lookup fails
        """
        provider = provider.lower()
        now = self.clock()

        source = self.usage_sources.get(provider)
        if source is not None and source.reset_time is not None:
            try:
                reset_at = source.reset_time(BudgetMode.WEEKLY.value)
            except Exception as e:
                raise UpstreamQueryFailed(provider, "reset_time", e) from e

            if reset_at is not None:
                seconds = (align_to(reset_at, now) - now).total_seconds()
                return max(1, math.ceil(seconds / SECONDS_PER_DAY))

        week_start = self.settings.week_start_day.weekday
        return 7 - (now.weekday() - week_start) % 7

    def can_run(self, provider: str, estimated_tokens: int) -> bool:
        """Check whether a task of the given estimated size fits in this run's allowance."""
        return self.compute_allowance(provider).allowance >= estimated_tokens

    def summary(self, provider: str) -> str:
        """Human-readable one-line budget state for a provider."""
        result = self.compute_allowance(provider)

        if result.mode is BudgetMode.DAILY:
            return (
                f"{provider}: {result.used_percent:.1f}% used today, "
                f"{result.allowance} tokens allowed "
                f"(daily budget: {result.budget_base}, reserve: {result.reserve_amount})"
            )

        return (
            f"{provider}: {result.used_percent:.1f}% used this week "
            f"({result.remaining_days} days left), {result.allowance} tokens allowed "
            f"(weekly: {result.weekly_budget}, remaining: {result.budget_base}, "
            f"reserve: {result.reserve_amount}, multiplier: {result.multiplier:.1f}x)"
        )

    def _resolve_mode(self) -> BudgetMode:
        try:
            return BudgetMode(self.settings.mode)
        except ValueError:
            raise InvalidMode(self.settings.mode) from None

    def _daily_allowance(self, weekly_budget: int, used_percent: float) -> _ModeAllowance:
        """Each run uses up to max_percent of what is left of today's share (weekly/7)."""
        daily_budget = weekly_budget // 7
        available = daily_budget * (1 - used_percent / 100)
        raw = available * self.settings.max_percent / 100
        if raw > available:
            raw = available

        return _ModeAllowance(
            allowance=int(max(0.0, raw)),
            budget_base=daily_budget,
            multiplier=1.0,
        )

    def _weekly_allowance(self, weekly_budget: int, used_percent: float, remaining_days: int) -> _ModeAllowance:
        """Each run uses up to max_percent of the remaining week spread over the days left."""
        remaining_days = max(1, remaining_days)
        remaining_weekly = weekly_budget * (1 - used_percent / 100)

        multiplier = 1.0
        if self.settings.aggressive_end_of_week and remaining_days <= 2:
            # 1x with two days left, 2x on the last day
            multiplier = float(3 - remaining_days)

        raw = (remaining_weekly / remaining_days) * self.settings.max_percent / 100 * multiplier

        return _ModeAllowance(
            allowance=int(max(0.0, raw)),
            budget_base=int(remaining_weekly),
            multiplier=multiplier,
            remaining_days=remaining_days,
        )
