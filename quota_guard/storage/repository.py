"""
Repository pattern for snapshot access.

Handles the append-only snapshot table that calibration, projection and
trend analysis read from.
"""

from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from loguru import logger

from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageSnapshot

_SNAPSHOT_COLUMNS = """
    id, provider, timestamp, week_start, local_tokens, local_daily,
    scraped_pct, inferred_budget, reset_hint
"""

_INSERT_SNAPSHOT = """
    INSERT INTO snapshots
    (provider, timestamp, week_start, local_tokens, local_daily, scraped_pct,
     inferred_budget, reset_hint, day_of_week, hour_of_day, week_number, year)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


class SnapshotRepository:
    """Read access to stored usage snapshots.

    Every call opens and closes its own connection, so one repository can
    be shared by callers working on different providers at the same time.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        initialize_schema(self.db_path)

    def insert_snapshot(self, snapshot: UsageSnapshot) -> int:
        return insert_snapshot(snapshot, self.db_path)

    def insert_snapshots(self, snapshots: List[UsageSnapshot]) -> None:
        insert_snapshots(snapshots, self.db_path)

    def get_latest(self, provider: str, limit: int = 1) -> List[UsageSnapshot]:
        """Get the most recent snapshots for a provider, newest first."""
        if limit <= 0:
            return []
        return self._query(
            f"SELECT {_SNAPSHOT_COLUMNS} FROM snapshots "
            "WHERE provider = ? ORDER BY timestamp DESC LIMIT ?",
            (provider.lower(), limit),
        )

    def get_latest_calibrated(self, provider: str) -> Optional[UsageSnapshot]:
        """Get the newest snapshot for a provider that carries a positive inferred budget.

        Corrupt rows are skipped, so an older valid snapshot is returned in
        place of a newer unreadable one.
        """
        snapshots = self._query(
            f"SELECT {_SNAPSHOT_COLUMNS} FROM snapshots "
            "WHERE provider = ? AND inferred_budget IS NOT NULL AND inferred_budget > 0 "
            "ORDER BY timestamp DESC LIMIT 20",
            (provider.lower(),),
        )
        return snapshots[0] if snapshots else None

    def get_week(self, provider: str, week_start: date) -> List[UsageSnapshot]:
        """Get all snapshots filed under a billing week, oldest first."""
        return self._query(
            f"SELECT {_SNAPSHOT_COLUMNS} FROM snapshots "
            "WHERE provider = ? AND week_start = ? ORDER BY timestamp ASC",
            (provider.lower(), week_start.isoformat()),
        )

    def get_since(self, provider: str, since: datetime) -> List[UsageSnapshot]:
        """Get snapshots taken at or after ``since``, oldest first."""
        return self._query(
            f"SELECT {_SNAPSHOT_COLUMNS} FROM snapshots "
            "WHERE provider = ? AND timestamp >= ? ORDER BY timestamp ASC",
            (provider.lower(), since.isoformat()),
        )

    def get_hourly_averages(self, provider: str, since: datetime) -> Dict[int, float]:
        """Average ``local_daily`` per hour of day over snapshots taken since ``since``.

        Returns:
            Mapping of hour (0-23) to average daily tokens seen at that hour
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                SELECT hour_of_day, AVG(local_daily)
                FROM snapshots
                WHERE provider = ? AND timestamp >= ?
                GROUP BY hour_of_day
                ORDER BY hour_of_day ASC
                """,
                (provider.lower(), since.isoformat()),
            )
            return {int(hour): float(avg) for hour, avg in cursor.fetchall() if avg is not None}
        finally:
            conn.close()

    def prune(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """Delete snapshots older than the retention window.

        Args:
            retention_days: Days of history to keep; zero or less keeps everything
            now: Reference instant (defaults to current time)

        Returns:
            Number of deleted snapshots
        """
        if retention_days <= 0:
            return 0
        cutoff = (now or datetime.now()) - timedelta(days=retention_days)
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM snapshots WHERE timestamp < ?", (cutoff.isoformat(),)
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def _query(self, query: str, params: Sequence) -> List[UsageSnapshot]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(query, params)
            return list(_decode_rows(cursor.fetchall()))
        finally:
            conn.close()


def get_repository(db_path: str = DEFAULT_DB_PATH) -> SnapshotRepository:
    """Get a repository instance for the given database.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of SnapshotRepository
    """
    return SnapshotRepository(db_path)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the snapshots table and its indexes if they don't exist.

    The table is an append-only series; the only deletion is retention
    pruning of whole rows.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                provider TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                week_start TEXT NOT NULL,
                local_tokens INTEGER NOT NULL,
                local_daily INTEGER NOT NULL DEFAULT 0,
                scraped_pct REAL,
                inferred_budget INTEGER,
                reset_hint TEXT,
                day_of_week INTEGER NOT NULL,
                hour_of_day INTEGER NOT NULL,
                week_number INTEGER NOT NULL,
                year INTEGER NOT NULL
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_snapshots_provider_time "
            "ON snapshots(provider, timestamp DESC)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_snapshots_provider_week "
            "ON snapshots(provider, week_start)"
        )
        conn.commit()
    finally:
        conn.close()


def insert_snapshot(snapshot: UsageSnapshot, db_path: str = DEFAULT_DB_PATH) -> int:
    """Append a single snapshot.

    Args:
        snapshot: The observation to record
        db_path: Path to SQLite database file

    Returns:
        Row id of the stored snapshot
    """
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(_INSERT_SNAPSHOT, _snapshot_params(snapshot))
        conn.commit()
        return cursor.lastrowid
    finally:
        conn.close()


def insert_snapshots(snapshots: List[UsageSnapshot], db_path: str = DEFAULT_DB_PATH) -> None:
    """Append multiple snapshots atomically.

    Args:
        snapshots: Observations to record
        db_path: Path to SQLite database file
    """
    if not snapshots:
        return

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN TRANSACTION")
        for snapshot in snapshots:
            conn.execute(_INSERT_SNAPSHOT, _snapshot_params(snapshot))
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _snapshot_params(snapshot: UsageSnapshot) -> tuple:
    return (
        snapshot.provider.lower(),
        snapshot.timestamp.isoformat(),
        snapshot.week_start.isoformat(),
        snapshot.local_tokens,
        snapshot.local_daily,
        snapshot.scraped_used_percent,
        snapshot.inferred_budget,
        snapshot.reset_hint,
        snapshot.day_of_week,
        snapshot.hour_of_day,
        snapshot.week_number,
        snapshot.year,
    )


def _decode_rows(rows: Iterable[tuple]) -> Iterable[UsageSnapshot]:
    """Decode rows into snapshots, skipping any row that cannot be read."""
    for row in rows:
        try:
            yield _row_to_snapshot(row)
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping unreadable snapshot row id={row[0]}: {e}")


def _row_to_snapshot(row: tuple) -> UsageSnapshot:
    week_start = row[3]
    if "T" in week_start or " " in week_start:
        week_start = datetime.fromisoformat(week_start).date().isoformat()

    return UsageSnapshot(
        id=row[0],
        provider=row[1],
        timestamp=datetime.fromisoformat(row[2]),
        week_start=date.fromisoformat(week_start),
        local_tokens=int(row[4]),
        local_daily=int(row[5] or 0),
        scraped_used_percent=float(row[6]) if row[6] is not None else None,
        inferred_budget=int(row[7]) if row[7] is not None else None,
        reset_hint=row[8],
    )
