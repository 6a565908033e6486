"""
Usage sources: where a provider's used percentage and reset time come from.

A provider is just two functions. Readers for each vendor's session logs
live outside this package; they are registered here as plain callables.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from loguru import logger

from quota_guard.storage.repository import SnapshotRepository

UsedPercentFn = Callable[[str], float]
ResetTimeFn = Callable[[str], Optional[datetime]]


@dataclass(frozen=True)
class UsageSource:
    """Query surface for one provider's usage.

    Attributes:
        used_percent: Returns the percentage (0-100, may exceed 100 when
            over budget) used in the given mode ("daily" or "weekly")
        reset_time: Optional; returns when the given mode's window resets,
            or None when unknown
    """
    used_percent: UsedPercentFn
    reset_time: Optional[ResetTimeFn] = None


def snapshot_usage_source(
    repository: SnapshotRepository,
    provider: str,
    fallback_budget: int,
) -> UsageSource:
    """Build a usage source that answers from the provider's latest stored snapshot.

    Weekly usage is the latest scraped percentage. Daily usage is the
    snapshot's locally counted tokens for today against a seventh of the
    weekly budget, taken from the snapshot's inferred budget or
    ``fallback_budget`` when none was inferred. Reset times are not
    tracked by snapshots, so the allowance manager falls back to the
    configured week boundary.

    Raises:
        LookupError: From ``used_percent`` when there is no snapshot, or
            weekly usage is requested from one without a scraped
            percentage, so callers fail closed instead of assuming 0%
    """

    def used_percent(mode: str) -> float:
        latest = repository.get_latest(provider, 1)
        if not latest:
            raise LookupError(f"No usage snapshots recorded for {provider}")
        snapshot = latest[0]

        if mode == "daily":
            daily_budget = (snapshot.inferred_budget or fallback_budget) / 7
            if daily_budget <= 0:
                raise LookupError(f"No weekly budget known for {provider}")
            percent = snapshot.local_daily / daily_budget * 100
        else:
            if snapshot.scraped_used_percent is None:
                raise LookupError(f"Latest {provider} snapshot has no scraped usage percentage")
            percent = snapshot.scraped_used_percent

        logger.debug(f"{provider} {mode} usage from snapshot {snapshot.id}: {percent:.1f}%")
        return percent

    return UsageSource(used_percent=used_percent)
