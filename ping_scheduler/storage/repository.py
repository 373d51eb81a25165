"""
Repository pattern for data access.

Handles schema management, the usage sample store and the ping history sink.
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import ModelSnapshot, PingRecord, Sample
from ping_scheduler.core.outcome import PingAttemptOutcome

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 5000

# Column definitions per table. Columns added after the first release must be
# nullable or carry a default so they can be appended with ALTER TABLE.
_SAMPLE_COLUMNS: List[Tuple[str, str]] = [
    ("id", "INTEGER PRIMARY KEY AUTOINCREMENT"),
    ("timestamp", "TEXT NOT NULL"),
    ("session_utilization", "REAL NOT NULL"),
    ("session_resets_at", "TEXT"),
    ("model_snapshots", "TEXT NOT NULL DEFAULT '[]'"),
    ("detected_model", "TEXT"),
]

_HISTORY_COLUMNS: List[Tuple[str, str]] = [
    ("id", "INTEGER PRIMARY KEY AUTOINCREMENT"),
    ("timestamp", "TEXT NOT NULL"),
    ("kind", "TEXT NOT NULL"),
    ("status", "TEXT NOT NULL"),
    ("duration_seconds", "REAL NOT NULL DEFAULT 0"),
    ("trigger_label", "TEXT"),
    ("model", "TEXT"),
    ("response", "TEXT NOT NULL DEFAULT ''"),
    ("error_text", "TEXT"),
    ("usage_session_pct", "REAL"),
    ("usage_weekly_pct", "REAL"),
]

_TABLES = {
    "usage_sample": _SAMPLE_COLUMNS,
    "ping_history": _HISTORY_COLUMNS,
}


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the sample and history tables, upgrading older layouts.

    Existing tables keep their data; any column missing from an older
    database is appended so the schema only ever grows.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        for table, columns in _TABLES.items():
            column_sql = ",\n                ".join(f"{name} {ddl}" for name, ddl in columns)
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                {column_sql}
                )
            """)
            existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
            for name, ddl in columns:
                if name not in existing:
                    logger.info("Adding column %s.%s", table, name)
                    conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")
        conn.commit()
    finally:
        conn.close()


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _column(row: sqlite3.Row, name: str, default=None):
    """Read a column that may not exist in databases written by older versions."""
    if name in row.keys():
        value = row[name]
        return default if value is None else value
    return default


def _encode_snapshots(snapshots: Iterable[ModelSnapshot]) -> str:
    return json.dumps([{"model": s.model, "utilization": s.utilization} for s in snapshots])


def _decode_snapshots(raw: Optional[str]) -> Tuple[ModelSnapshot, ...]:
    if not raw:
        return ()
    try:
        items = json.loads(raw)
        return tuple(
            ModelSnapshot(model=str(item["model"]), utilization=float(item["utilization"]))
            for item in items
            if isinstance(item, dict) and "model" in item and "utilization" in item
        )
    except (ValueError, TypeError):
        logger.warning("Ignoring unreadable model breakdown: %.60s", raw)
        return ()


class SampleRepository:
    """Durable store for the velocity tracker's sample series.

    Reads the whole list once at startup and rewrites it in full after every
    accepted sample.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def load(self) -> List[Sample]:
        """Load all samples ordered by timestamp (oldest first).

        Returns:
            List of samples; fields absent from the stored rows take defaults

        Raises:
            sqlite3.Error: If the database cannot be read
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("SELECT * FROM usage_sample ORDER BY timestamp ASC, id ASC")
            samples = []
            for row in cursor.fetchall():
                samples.append(Sample(
                    timestamp=datetime.fromisoformat(row["timestamp"]),
                    session_utilization=float(row["session_utilization"]),
                    session_resets_at=_parse_ts(_column(row, "session_resets_at")),
                    model_snapshots=_decode_snapshots(_column(row, "model_snapshots")),
                    detected_model=_column(row, "detected_model"),
                ))
            return samples
        finally:
            conn.close()

    def save(self, samples: Sequence[Sample]) -> None:
        """Replace the stored series with ``samples`` in one transaction.

        Raises:
            sqlite3.Error: If the write fails; the previous contents are kept
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.execute("DELETE FROM usage_sample")
            conn.executemany("""
                INSERT INTO usage_sample
                (timestamp, session_utilization, session_resets_at,
                 model_snapshots, detected_model)
                VALUES (?, ?, ?, ?, ?)
            """, [
                (
                    sample.timestamp.isoformat(),
                    sample.session_utilization,
                    _format_ts(sample.session_resets_at),
                    _encode_snapshots(sample.model_snapshots),
                    sample.detected_model,
                )
                for sample in samples
            ])
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


class PingHistoryRepository:
    """Append-only ping history, newest entries kept when pruning.

    Implements the history sink the scheduler forwards every outcome to.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, max_records: int = DEFAULT_HISTORY_LIMIT):
        if max_records <= 0:
            raise ValueError("max_records must be > 0")
        self.db_path = db_path
        self.max_records = max_records

    def record(self, outcome: PingAttemptOutcome) -> None:
        """Append the outcome of an executed ping, then prune old entries."""
        self._insert(PingRecord.from_outcome(outcome))
        self.prune(self.max_records)

    def record_event(self, text: str) -> None:
        """Append a free-text system event."""
        self._insert(PingRecord.system_event(text))

    def _insert(self, record: PingRecord) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO ping_history
                (timestamp, kind, status, duration_seconds, trigger_label, model,
                 response, error_text, usage_session_pct, usage_weekly_pct)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.timestamp.isoformat(),
                record.kind,
                record.status,
                record.duration_seconds,
                record.trigger,
                record.model,
                record.response,
                record.error_text,
                record.usage_session_pct,
                record.usage_weekly_pct,
            ))
            conn.commit()
        finally:
            conn.close()

    def fetch_recent(self, limit: int = 100, include_system: bool = True) -> List[PingRecord]:
        """Fetch recent history entries, newest first.

        Args:
            limit: Maximum number of records to return
            include_system: Whether to include system events

        Returns:
            List of records ordered by timestamp (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = "SELECT * FROM ping_history"
            params: list = []
            if not include_system:
                query += " WHERE kind = ?"
                params.append("ping")
            query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
            params.append(limit)

            records = []
            for row in conn.execute(query, params).fetchall():
                records.append(PingRecord(
                    id=row["id"],
                    timestamp=datetime.fromisoformat(row["timestamp"]),
                    kind=row["kind"],
                    status=row["status"],
                    duration_seconds=float(_column(row, "duration_seconds", 0.0)),
                    trigger=_column(row, "trigger_label"),
                    model=_column(row, "model"),
                    response=_column(row, "response", ""),
                    error_text=_column(row, "error_text"),
                    usage_session_pct=_column(row, "usage_session_pct"),
                    usage_weekly_pct=_column(row, "usage_weekly_pct"),
                ))
            return records
        finally:
            conn.close()

    def prune(self, keep: int) -> int:
        """Delete all but the newest ``keep`` records. Returns rows removed."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                DELETE FROM ping_history
                WHERE id NOT IN (
                    SELECT id FROM ping_history
                    ORDER BY timestamp DESC, id DESC
                    LIMIT ?
                )
            """, (keep,))
            conn.commit()
            if cursor.rowcount:
                logger.info("Pruned %d old history records", cursor.rowcount)
            return cursor.rowcount
        finally:
            conn.close()

    def clear(self) -> None:
        """Remove every history record."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM ping_history")
            conn.commit()
        finally:
            conn.close()
