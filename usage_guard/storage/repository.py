"""
Repository pattern for data access.

Persists threshold notification state per (period, metric) and the last
known view state across process restarts.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Optional

from usage_guard.core.thresholds import Level, MetricKind, ThresholdState
from usage_guard.core.usage import Health, Phase, ViewState
from .db import DEFAULT_DB_PATH, get_connection
from .models import Period

logger = logging.getLogger(__name__)


class UsageStateRepository:
    """Repository for threshold state and the last computed view state.

    Stored rows are replaced wholesale, never partially updated. A row
    that cannot be read back is reported as absent so callers start over
    from a fresh baseline instead of failing.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def load(self, key: str) -> Optional[ThresholdState]:
        """Load the threshold state stored under ``key``.

        Args:
            key: Stable (period, metric) key

        Returns:
            The stored state, or None if absent or unreadable
        """
        try:
            conn = get_connection(self.db_path)
            try:
                row = conn.execute("""
                    SELECT year, month, metric_kind, last_level,
                           last_notify_at, last_percent
                    FROM threshold_state WHERE key = ?
                """, (key,)).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.warning("Threshold state for %s unreadable, resetting: %s", key, e)
            return None

        if row is None:
            return None

        try:
            return ThresholdState(
                period=Period(year=int(row[0]), month=int(row[1])),
                metric_kind=MetricKind(row[2]),
                last_level=Level(row[3]),
                last_notify_at=_parse_datetime(row[4]),
                last_percent=float(row[5]) if row[5] is not None else None,
            )
        except (TypeError, ValueError) as e:
            logger.warning("Threshold state for %s is corrupt, resetting: %s", key, e)
            return None

    def save(self, key: str, state: ThresholdState) -> None:
        """Replace the threshold state stored under ``key``.

        Args:
            key: Stable (period, metric) key
            state: State to persist
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT OR REPLACE INTO threshold_state
                (key, year, month, metric_kind, last_level, last_notify_at, last_percent)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                key,
                state.period.year,
                state.period.month,
                state.metric_kind.value,
                state.last_level.value,
                state.last_notify_at.isoformat() if state.last_notify_at else None,
                state.last_percent,
            ))
            conn.commit()
        finally:
            conn.close()

    def load_view_state(self) -> Optional[ViewState]:
        """Load the last saved view state, or None if absent or unreadable."""
        try:
            conn = get_connection(self.db_path)
            try:
                row = conn.execute("""
                    SELECT year, month, spend_usd, budget_usd, budget_percent,
                           included_total, included_used, included_percent,
                           phase, health, last_refresh_at, last_error_message
                    FROM view_state WHERE id = 1
                """).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.warning("Last view state unreadable: %s", e)
            return None

        if row is None:
            return None

        try:
            return ViewState(
                period=Period(year=int(row[0]), month=int(row[1])),
                spend_usd=float(row[2]),
                budget_usd=float(row[3]),
                budget_percent=float(row[4]),
                included_total=int(row[5]),
                included_used=int(row[6]),
                included_percent=float(row[7]),
                phase=Phase(row[8]),
                health=Health(row[9]),
                last_refresh_at=_parse_datetime(row[10]),
                last_error_message=row[11],
            )
        except (TypeError, ValueError) as e:
            logger.warning("Last view state is corrupt, ignoring: %s", e)
            return None

    def save_view_state(self, view: ViewState) -> None:
        """Replace the stored view state."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT OR REPLACE INTO view_state
                (id, year, month, spend_usd, budget_usd, budget_percent,
                 included_total, included_used, included_percent,
                 phase, health, last_refresh_at, last_error_message)
                VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                view.period.year,
                view.period.month,
                view.spend_usd,
                view.budget_usd,
                view.budget_percent,
                view.included_total,
                view.included_used,
                view.included_percent,
                view.phase.value,
                view.health.value,
                view.last_refresh_at.isoformat() if view.last_refresh_at else None,
                view.last_error_message,
            ))
            conn.commit()
        finally:
            conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the state tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS threshold_state (
                key TEXT PRIMARY KEY,
                year INTEGER NOT NULL,
                month INTEGER NOT NULL,
                metric_kind TEXT NOT NULL,
                last_level TEXT NOT NULL,
                last_notify_at TEXT,
                last_percent REAL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS view_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                year INTEGER NOT NULL,
                month INTEGER NOT NULL,
                spend_usd REAL NOT NULL,
                budget_usd REAL NOT NULL,
                budget_percent REAL NOT NULL,
                included_total INTEGER NOT NULL,
                included_used INTEGER NOT NULL,
                included_percent REAL NOT NULL,
                phase TEXT NOT NULL,
                health TEXT NOT NULL,
                last_refresh_at TEXT,
                last_error_message TEXT
            )
        """)
        conn.commit()
    finally:
        conn.close()


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)
