"""
Data models for storage layer.

Defines the usage snapshot record and the calendar helpers used to file it.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional


def start_of_week(moment: datetime, week_start_weekday: int = 0) -> date:
    """Return the calendar date on which the billing week containing ``moment`` began.

    Args:
        moment: Any instant within the week
        week_start_weekday: First day of the week as a ``datetime.weekday()``
            index (Monday=0, Sunday=6)

    Returns:
        Date of the most recent week start on or before ``moment``
    """
    if not 0 <= week_start_weekday <= 6:
        week_start_weekday = 0
    delta = (moment.weekday() - week_start_weekday) % 7
    return moment.date() - timedelta(days=delta)


def infer_budget(local_tokens: int, used_percent: Optional[float]) -> Optional[int]:
    """Infer a total budget from locally counted tokens and the provider's used percentage."""
    if used_percent is None or used_percent <= 0 or local_tokens <= 0:
        return None
    return int(round(local_tokens / (used_percent / 100)))


@dataclass(frozen=True)
class UsageSnapshot:
    """One time-stamped usage observation for a provider.

    Snapshots form an append-only time series. The budget core only reads
    them; collection and retention happen elsewhere.
    """
    provider: str
    timestamp: datetime
    week_start: date
    local_tokens: int
    local_daily: int = 0
    scraped_used_percent: Optional[float] = None
    inferred_budget: Optional[int] = None
    reset_hint: Optional[str] = None
    id: Optional[int] = None

    def __post_init__(self):
        """Validate the observation is well-formed."""
        if not self.provider or not self.provider.strip():
            raise ValueError("provider cannot be empty")
        if self.local_tokens < 0:
            raise ValueError("local_tokens cannot be negative")
        if self.local_daily < 0:
            raise ValueError("local_daily cannot be negative")

    @property
    def day_of_week(self) -> int:
        return self.timestamp.weekday()

    @property
    def hour_of_day(self) -> int:
        return self.timestamp.hour

    @property
    def week_number(self) -> int:
        return self.week_start.isocalendar()[1]

    @property
    def year(self) -> int:
        return self.week_start.isocalendar()[0]

    @classmethod
    def observe(
        cls,
        provider: str,
        timestamp: datetime,
        local_tokens: int,
        local_daily: int = 0,
        scraped_used_percent: Optional[float] = None,
        reset_hint: Optional[str] = None,
        week_start_weekday: int = 0,
    ) -> "UsageSnapshot":
        """Build a snapshot, deriving its week and inferred budget from the raw reading.

        Percentages outside 0-100 are dropped rather than stored, since the
        provider reported something that cannot be a share of a budget.
        """
        if scraped_used_percent is not None and not 0 <= scraped_used_percent <= 100:
            scraped_used_percent = None

        return cls(
            provider=provider.strip().lower(),
            timestamp=timestamp,
            week_start=start_of_week(timestamp, week_start_weekday),
            local_tokens=local_tokens,
            local_daily=local_daily,
            scraped_used_percent=scraped_used_percent,
            inferred_budget=infer_budget(local_tokens, scraped_used_percent),
            reset_hint=(reset_hint or "").strip() or None,
        )
