"""
Budget exhaustion projection.

Projects, from the latest calibrated snapshot and recent daily usage,
how long the remaining weekly budget will last and whether it runs out
before the next reset.
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from quota_guard.storage.models import UsageSnapshot
from quota_guard.storage.repository import SnapshotRepository
from .allowance import BudgetSource, BudgetSourceKind
from .errors import UpstreamQueryFailed
from .reset_time import align_to, parse_reset_hint, reset_from_week_start

ROLLING_WINDOW = timedelta(days=7)
MIN_WEEK_WINDOW_DAYS = 2


@dataclass(frozen=True)
class BudgetProjection:
    """Forward estimate of a provider's remaining weekly budget."""
    provider: str
    weekly_budget: int
    current_used_pct: float
    avg_daily_usage: int
    avg_hourly_usage: float
    remaining_tokens: int
    source: BudgetSourceKind
    est_days_remaining: int = 0
    est_hours_remaining: float = 0.0
    est_exhaust_at: Optional[datetime] = None
    reset_at: Optional[datetime] = None
    time_until_reset_sec: Optional[int] = None
    reset_hint: Optional[str] = None
    will_exhaust_before_reset: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready mapping; datetimes as ISO 8601, unset fields omitted."""
        data = {
            "provider": self.provider,
            "weekly_budget": self.weekly_budget,
            "current_used_pct": self.current_used_pct,
            "avg_daily_usage": self.avg_daily_usage,
            "avg_hourly_usage": self.avg_hourly_usage,
            "remaining_tokens": self.remaining_tokens,
            "est_days_remaining": self.est_days_remaining,
            "est_hours_remaining": self.est_hours_remaining,
            "source": self.source.value,
        }
        optional = {
            "est_exhaust_at": self.est_exhaust_at,
            "reset_at": self.reset_at,
            "time_until_reset_sec": self.time_until_reset_sec,
            "reset_hint": self.reset_hint,
            "will_exhaust_before_reset": self.will_exhaust_before_reset,
        }
        for key, value in optional.items():
            if value is None:
                continue
            data[key] = value.isoformat() if isinstance(value, datetime) else value
        return data


@dataclass(frozen=True)
class ProjectionSummary:
    """Projections for several providers.

    ``primary`` is the first computed projection, kept for callers that
    only track one provider.
    """
    projections: List[BudgetProjection] = field(default_factory=list)

    @property
    def primary(self) -> Optional[BudgetProjection]:
        return self.projections[0] if self.projections else None

    def get(self, provider: str) -> Optional[BudgetProjection]:
        for projection in self.projections:
            if projection.provider == provider.lower():
                return projection
        return None


class ProjectionEngine:
    """Computes budget projections from the snapshot store."""

    def __init__(self, repository: SnapshotRepository, budget_source: Optional[BudgetSource] = None):
        """Initialize the engine.

        Args:
            repository: Snapshot store
            budget_source: Optional live budget estimate, preferred over the
                budget inferred from the latest snapshot
        """
        self.repository = repository
        self.budget_source = budget_source

    def compute_projection(self, provider: str, now: datetime) -> Optional[BudgetProjection]:
        """Project the provider's budget from its latest calibrated snapshot.

        Args:
            provider: Provider name
            now: Reference instant

        Returns:
            BudgetProjection, or None when there is not enough data yet

        Raises:
            UpstreamQueryFailed: If the snapshot store cannot be read
        """
        provider = provider.lower()
        try:
            latest = self.repository.get_latest_calibrated(provider)
        except Exception as e:
            raise UpstreamQueryFailed(provider, "load latest snapshot", e) from e

        if latest is None or not latest.inferred_budget:
            return None

        weekly_budget, source = self._resolve_budget(provider, latest)

        avg_daily = self._average_daily_usage(provider, latest, now)
        if avg_daily <= 0:
            logger.debug(f"No daily usage recorded for {provider}, skipping projection")
            return None

        if latest.scraped_used_percent is not None:
            used_pct = latest.scraped_used_percent
        else:
            used_pct = latest.local_tokens / weekly_budget * 100
        used_pct = min(100.0, max(0.0, used_pct))

        remaining = max(0, int(round(weekly_budget * (1 - used_pct / 100))))
        avg_daily_rounded = int(round(avg_daily))

        est_days = 0
        est_hours = 0.0
        exhaust_at = None
        if avg_daily_rounded > 0 and remaining > 0:
            est_days = math.floor(remaining / avg_daily_rounded)
            est_hours = remaining / avg_daily_rounded * 24
            exhaust_at = now + timedelta(hours=est_hours)

        reset_hint = None
        reset_at = parse_reset_hint(latest.reset_hint, latest.timestamp, now)
        if reset_at is None:
            if latest.reset_hint:
                logger.debug(f"Could not parse reset hint for {provider}: {latest.reset_hint!r}")
                reset_hint = latest.reset_hint
            reset_at = reset_from_week_start(latest.week_start, latest.timestamp, now)

        time_until_reset = None
        will_exhaust = None
        if reset_at is not None:
            time_until_reset = int((reset_at - now).total_seconds())
            if exhaust_at is not None:
                will_exhaust = exhaust_at < reset_at

        return BudgetProjection(
            provider=provider,
            weekly_budget=weekly_budget,
            current_used_pct=used_pct,
            avg_daily_usage=avg_daily_rounded,
            avg_hourly_usage=avg_daily / 24,
            remaining_tokens=remaining,
            source=source,
            est_days_remaining=est_days,
            est_hours_remaining=est_hours,
            est_exhaust_at=exhaust_at,
            reset_at=reset_at,
            time_until_reset_sec=time_until_reset,
            reset_hint=reset_hint,
            will_exhaust_before_reset=will_exhaust,
        )

    def compute_projections(self, providers: Iterable[str], now: datetime) -> ProjectionSummary:
        """Compute independent projections, skipping providers without enough data."""
        projections = []
        for provider in providers:
            projection = self.compute_projection(provider, now)
            if projection is not None:
                projections.append(projection)
        return ProjectionSummary(projections=projections)

    def _resolve_budget(self, provider: str, latest: UsageSnapshot) -> Tuple[int, BudgetSourceKind]:
        if self.budget_source is not None:
            try:
                estimate = self.budget_source.get_budget(provider)
            except Exception as e:
                logger.warning(f"Budget source failed for {provider}, using snapshot budget: {e}")
            else:
                if estimate.weekly_tokens > 0:
                    return estimate.weekly_tokens, estimate.source

        return latest.inferred_budget, BudgetSourceKind.CALIBRATED

    def _average_daily_usage(self, provider: str, latest: UsageSnapshot, now: datetime) -> float:
        """Mean of each day's peak ``local_daily``.

        Prefers the snapshot's billing week once it spans two or more days,
        otherwise the seven days before ``now``.
        """
        week_start = datetime.combine(latest.week_start, time(), tzinfo=latest.timestamp.tzinfo)
        week_peaks = self._daily_peaks(provider, week_start)
        if len(week_peaks) >= MIN_WEEK_WINDOW_DAYS:
            return sum(week_peaks.values()) / len(week_peaks)

        logger.debug(f"Billing week for {provider} has {len(week_peaks)} day(s) of usage, using rolling window")
        rolling_start = align_to(now, latest.timestamp) - ROLLING_WINDOW
        rolling_peaks = self._daily_peaks(provider, rolling_start)
        if not rolling_peaks:
            return 0.0
        return sum(rolling_peaks.values()) / len(rolling_peaks)

    def _daily_peaks(self, provider: str, since: datetime) -> Dict[date, int]:
        try:
            snapshots = self.repository.get_since(provider, since)
        except Exception as e:
            raise UpstreamQueryFailed(provider, "load usage history", e) from e

        peaks: Dict[date, int] = {}
        for snapshot in snapshots:
            if snapshot.local_daily <= 0:
                continue
            day = snapshot.timestamp.date()
            peaks[day] = max(peaks.get(day, 0), snapshot.local_daily)
        return peaks
