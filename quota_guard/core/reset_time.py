"""
Weekly reset time resolution.

Providers describe their next weekly reset as free text scraped from their
usage pages, e.g. "Feb 8 at 10am (America/Los_Angeles)" or
"20:08 on 9 Feb". These helpers turn such hints into a concrete instant,
falling back to the stored billing week when the hint cannot be read.

Naive datetimes are treated as local time throughout.
"""

import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger

WEEK = timedelta(days=7)
ROLLOVER_WINDOW = timedelta(days=31)

_ZONE_SUFFIX = re.compile(r"\s+\(([^)]+)\)\s*$")

# The reference year is prepended so dates like Feb 29 parse correctly
_HINT_FORMATS = (
    "%Y %b %d at %I:%M%p",  # Feb 8 at 9:59am
    "%Y %b %d at %I%p",     # Feb 8 at 10am
    "%Y %H:%M on %d %b",    # 20:08 on 9 Feb
)

_ABBREVIATIONS = {
    "UTC": "UTC",
    "GMT": "UTC",
    "Z": "UTC",
    "PST": "America/Los_Angeles",
    "PDT": "America/Los_Angeles",
    "PT": "America/Los_Angeles",
    "MST": "America/Denver",
    "MDT": "America/Denver",
    "MT": "America/Denver",
    "CST": "America/Chicago",
    "CDT": "America/Chicago",
    "CT": "America/Chicago",
    "EST": "America/New_York",
    "EDT": "America/New_York",
    "ET": "America/New_York",
    "BST": "Europe/London",
    "CET": "Europe/Berlin",
    "CEST": "Europe/Berlin",
    "IST": "Asia/Kolkata",
    "JST": "Asia/Tokyo",
    "AEST": "Australia/Sydney",
    "AEDT": "Australia/Sydney",
}


def align_to(moment: datetime, reference: datetime) -> datetime:
    """Return ``moment`` with the same tz-awareness as ``reference`` so the two compare.

    An aware value is converted to naive local time for a naive reference;
    a naive value is read as local time and converted to the reference's
    zone for an aware reference.
    """
    if reference.tzinfo is None and moment.tzinfo is not None:
        return moment.astimezone().replace(tzinfo=None)
    if reference.tzinfo is not None and moment.tzinfo is None:
        return moment.astimezone(reference.tzinfo)
    return moment


def resolve_timezone(name: str) -> Optional[tzinfo]:
    """Resolve an IANA zone name or a common abbreviation (PST, EDT, UTC, ...).

    Returns:
        The zone, or None if the name is not recognized
    """
    name = name.strip()
    if not name:
        return None

    key = _ABBREVIATIONS.get(name.upper(), name)
    if key == "UTC":
        return timezone.utc

    try:
        return ZoneInfo(key)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def add_week(moment: datetime) -> datetime:
    """Add 168 elapsed hours to an aware moment; naive moments step in wall-clock time."""
    if moment.tzinfo is None:
        return moment + WEEK
    return (moment.astimezone(timezone.utc) + WEEK).astimezone(moment.tzinfo)


def advance_weekly(candidate: datetime, now: datetime) -> datetime:
    """Step ``candidate`` forward a week at a time until it is no longer before ``now``."""
    current = align_to(now, candidate)
    while candidate < current:
        candidate = add_week(candidate)
    return candidate


def parse_reset_hint(raw: Optional[str], snapshot_at: datetime, now: datetime) -> Optional[datetime]:
    """Parse a free-text weekly reset hint into the next reset instant.

    The hint's month, day and time are anchored to the snapshot's year,
    rolled into the next year when that lands more than 31 days before the
    snapshot, then advanced in whole weeks until not before ``now``.

    Args:
        raw: Hint text, optionally ending with a "(Zone)" suffix
        snapshot_at: When the hint was observed
        now: Reference instant

    Returns:
        Reset instant aligned to ``now``, or None if the hint is not recognized
    """
    raw = (raw or "").strip()
    if not raw:
        return None

    zone = snapshot_at.tzinfo
    match = _ZONE_SUFFIX.search(raw)
    if match:
        resolved = resolve_timezone(match.group(1))
        if resolved is not None:
            zone = resolved
        else:
            logger.debug(f"Unknown timezone in reset hint, using snapshot zone: {match.group(1)}")
        raw = _ZONE_SUFFIX.sub("", raw).strip()

    reference = snapshot_at.astimezone(zone) if zone is not None else snapshot_at

    for fmt in _HINT_FORMATS:
        try:
            parsed = datetime.strptime(f"{reference.year} {raw}", fmt)
        except ValueError:
            continue

        candidate = parsed.replace(tzinfo=zone)
        if candidate < reference - ROLLOVER_WINDOW:
            candidate = _next_year(candidate)
        return align_to(advance_weekly(candidate, now), now)

    parsed = _parse_timestamp(raw)
    if parsed is not None:
        if parsed.tzinfo is None and zone is not None:
            parsed = parsed.replace(tzinfo=zone)
        return align_to(advance_weekly(parsed, now), now)

    return None


def reset_from_week_start(week_start: Optional[date], snapshot_at: datetime, now: datetime) -> Optional[datetime]:
    """Next reset as the end of the billing week, advanced in whole weeks past ``now``.

    Args:
        week_start: Start date of the snapshot's billing week
        snapshot_at: When the snapshot was taken; supplies the timezone
        now: Reference instant

    Returns:
        Reset instant aligned to ``now``, or None without a week start
    """
    if week_start is None:
        return None

    boundary = add_week(datetime.combine(week_start, time(), tzinfo=snapshot_at.tzinfo))
    return align_to(advance_weekly(boundary, now), now)


def _next_year(moment: datetime) -> datetime:
    try:
        return moment.replace(year=moment.year + 1)
    except ValueError:
        # Feb 29 has no counterpart next year
        return moment + timedelta(days=365)


def _parse_timestamp(raw: str) -> Optional[datetime]:
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None
