"""Per-account, per-day activity cache backed by SQLite.

Each (account, date) slot holds the activities fetched for that UTC
day, when they were fetched and how many there were. A slot's presence
means the day was fetched at least once, even if it had no activity.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterator, Optional, Protocol, runtime_checkable

from ..config import Config, DEFAULT_TODAY_TTL_MINUTES
from ..dates import format_timestamp, parse_timestamp, today_key, utc_now
from ..models import DayIndexEntry, UnifiedActivity

__all__ = ["DayCacheStore", "SQLiteDayCache"]

logger = logging.getLogger(__name__)


@runtime_checkable
class DayCacheStore(Protocol):
    """Interface the coordinator and orchestrator need from a day cache."""

    def load_day_index(self) -> dict[str, dict[str, DayIndexEntry]]: ...

    def load_activities_for_day(
        self, account_id: str, day: str
    ) -> Optional[list[UnifiedActivity]]: ...

    def save_activities_for_day(
        self, activities: list[UnifiedActivity], account_id: str, day: str
    ) -> None: ...

    def is_today_cache_stale(self, account_id: str) -> bool: ...


class SQLiteDayCache:
    """SQLite-based day cache."""

    def __init__(
        self,
        db_path: Optional[Path] = None,
        today_ttl: timedelta = timedelta(minutes=DEFAULT_TODAY_TTL_MINUTES),
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the day cache.

        Args:
            db_path: Path to SQLite database file
            today_ttl: How long today's slot counts as fresh
            clock: Source of the current UTC time
        """
        if db_path is None:
            db_path = Config.get_data_dir() / "day_cache.db"

        self.db_path = db_path
        self.today_ttl = today_ttl
        self._clock = clock
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection"):
            connection = sqlite3.connect(str(self.db_path), check_same_thread=False)
            connection.row_factory = sqlite3.Row
            self._local.connection = connection
            with self._connections_lock:
                self._connections.append(connection)
        return self._local.connection

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        """Context manager for database cursor."""
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._cursor() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS day_slots (
                    account_id TEXT NOT NULL,
                    date TEXT NOT NULL,
                    fetched_at TEXT NOT NULL,
                    activity_count INTEGER NOT NULL,
                    activities_json TEXT NOT NULL,
                    PRIMARY KEY (account_id, date)
                )
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_day_slots_date ON day_slots(date)
                """
            )

    def load_day_index(self) -> dict[str, dict[str, DayIndexEntry]]:
        """Map of account id -> date -> slot metadata, without activities."""
        index: dict[str, dict[str, DayIndexEntry]] = {}
        with self._cursor() as cursor:
            cursor.execute("SELECT account_id, date, fetched_at, activity_count FROM day_slots")
            for row in cursor.fetchall():
                index.setdefault(row["account_id"], {})[row["date"]] = DayIndexEntry(
                    fetched_at=parse_timestamp(row["fetched_at"]),
                    count=row["activity_count"],
                )
        return index

    def get_entry(self, account_id: str, day: str) -> Optional[DayIndexEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT fetched_at, activity_count FROM day_slots WHERE account_id = ? AND date = ?",
                (account_id, day),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return DayIndexEntry(fetched_at=parse_timestamp(row["fetched_at"]), count=row["activity_count"])

    def load_activities_for_day(
        self, account_id: str, day: str
    ) -> Optional[list[UnifiedActivity]]:
        """Cached activities for a slot, or None if the day was never fetched.

        An unreadable slot is dropped so the day becomes eligible for
        fetching again.
        """
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT activities_json FROM day_slots WHERE account_id = ? AND date = ?",
                (account_id, day),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        try:
            return [UnifiedActivity.from_dict(item) for item in json.loads(row["activities_json"])]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Dropping unreadable cache slot {account_id}/{day}: {e}")
            self._delete_slot(account_id, day)
            return None

    def save_activities_for_day(
        self, activities: list[UnifiedActivity], account_id: str, day: str
    ) -> None:
        """Overwrite one slot; an empty list is recorded as a fetched, empty day."""
        payload = json.dumps([a.to_dict() for a in activities])
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO day_slots (account_id, date, fetched_at, activity_count, activities_json)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(account_id, date) DO UPDATE SET
                    fetched_at = excluded.fetched_at,
                    activity_count = excluded.activity_count,
                    activities_json = excluded.activities_json
                """,
                (account_id, day, format_timestamp(self._clock()), len(activities), payload),
            )
        logger.debug(f"Cached {len(activities)} activities for {account_id}/{day}")

    def is_today_cache_stale(self, account_id: str) -> bool:
        """True if today's slot is missing or older than the today TTL."""
        entry = self.get_entry(account_id, today_key(self._clock()))
        if entry is None or entry.fetched_at is None:
            return True
        return self._clock() - entry.fetched_at > self.today_ttl

    def _delete_slot(self, account_id: str, day: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "DELETE FROM day_slots WHERE account_id = ? AND date = ?", (account_id, day)
            )

    def clear_account(self, account_id: str) -> int:
        """Remove every slot of an account. Returns number removed."""
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM day_slots WHERE account_id = ?", (account_id,))
            removed = cursor.rowcount
        logger.info(f"Cleared {removed} cached days for {account_id}")
        return removed

    def prune_before(self, day: str) -> int:
        """Remove slots older than ``day``. Returns number removed."""
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM day_slots WHERE date < ?", (day,))
            removed = cursor.rowcount
        if removed:
            logger.info(f"Pruned {removed} cached days before {day}")
        return removed

    def clear(self) -> None:
        """Remove all slots."""
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM day_slots")
        logger.info("Day cache cleared")

    def close(self) -> None:
        """Close all database connections."""
        with self._connections_lock:
            for connection in self._connections:
                connection.close()
            self._connections.clear()
        if hasattr(self._local, "connection"):
            del self._local.connection
