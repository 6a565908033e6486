"""
Hourly usage trends.

Builds a profile of how much of the day's usage has typically happened by
each hour, and predicts how much interactive use is still to come today.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from loguru import logger

from quota_guard.storage.repository import SnapshotRepository

DEFAULT_LOOKBACK_DAYS = 14
MAX_LOOKBACK_DAYS = 30


@dataclass(frozen=True)
class UsageProfile:
    """Average tokens used by each hour of the day.

    Attributes:
        provider: Provider name
        hourly_averages: Hour (0-23) to average ``local_daily`` at that hour
        daily_total: Largest hourly average, the typical full-day usage
    """
    provider: str
    hourly_averages: Dict[int, float] = field(default_factory=dict)
    daily_total: float = 0.0

    @property
    def is_empty(self) -> bool:
        return not self.hourly_averages

    def usage_by_hour(self, hour: int) -> Optional[float]:
        """Average usage at ``hour``, or at the closest earlier hour with data."""
        for h in range(hour, -1, -1):
            if h in self.hourly_averages:
                return self.hourly_averages[h]
        return None


class TrendAnalyzer:
    """Predicts daytime usage from the provider's recent snapshot history."""

    def __init__(
        self,
        repository: SnapshotRepository,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repository = repository
        self.lookback_days = _bound_lookback(lookback_days)
        self.clock = clock

    def build_profile(self, provider: str, lookback_days: Optional[int] = None) -> UsageProfile:
        """Average the provider's daily usage per hour of day over the lookback window."""
        days = self.lookback_days if lookback_days is None else _bound_lookback(lookback_days)
        since = self.clock() - timedelta(days=days)

        averages = self.repository.get_hourly_averages(provider, since)
        daily_total = max(averages.values()) if averages else 0.0

        return UsageProfile(provider=provider.lower(), hourly_averages=averages, daily_total=daily_total)

    def predict_daytime_usage(self, provider: str, now: datetime, weekly_budget: int) -> int:
        """Tokens expected to be used during the rest of today.

        Args:
            provider: Provider name
            now: Current time, its hour selects the profile position
            weekly_budget: Weekly budget; the prediction never exceeds a day's share

        Returns:
            Predicted tokens, 0 without history
        """
        profile = self.build_profile(provider)
        if profile.is_empty:
            return 0

        used_so_far = profile.usage_by_hour(now.hour) or 0.0
        predicted = max(0.0, profile.daily_total - used_so_far)

        if weekly_budget > 0:
            predicted = min(predicted, weekly_budget / 7)

        logger.debug(f"{provider} predicted daytime usage at hour {now.hour}: {predicted:.0f}")
        return int(round(predicted))


def _bound_lookback(days: int) -> int:
    if days <= 0:
        return DEFAULT_LOOKBACK_DAYS
    return min(days, MAX_LOOKBACK_DAYS)
