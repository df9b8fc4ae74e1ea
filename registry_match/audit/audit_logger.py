"""
Validation audit trail for RegistryMatch.

Records one append-only entry per resolution with the full signal breakdown
of the top candidate, supports later manual-review annotation, and stores
the daily metrics snapshots.
"""

import sqlite3
import logging
import json
import pandas as pd
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from pathlib import Path

from ..errors import InputValidationError

logger = logging.getLogger(__name__)

REVIEW_STATUSES = ("pending", "approved", "rejected")
MAX_PAGE_SIZE = 100


@dataclass
class ValidationLogEntry:
    """One resolution outcome; signal data is immutable once written."""

    run_id: str
    source_name: str
    success: bool
    run_type: str = "interactive"
    source_table: str = "unknown"
    normalized_name: Optional[str] = None
    matched_standard_code: Optional[str] = None
    match_confidence: Optional[int] = None
    recommendation: Optional[str] = None
    candidate_count: int = 0
    failure_reason: Optional[str] = None
    signals: List[Dict[str, Any]] = field(default_factory=list)
    created_at: Optional[datetime] = None


def _day_bounds(day: date) -> Tuple[str, str]:
    start = datetime(day.year, day.month, day.day)
    return start.isoformat(), (start + timedelta(days=1)).isoformat()


class AuditLogger:
    """
    Manages the validation log and metrics snapshots for RegistryMatch.

    Each operation opens its own SQLite connection, so a logger instance can
    be shared between callers.
    """

    def __init__(self, db_path: str = "data/audit.db", write_timeout: float = 0.0):
        """
        Initialize audit logger.

        Args:
            db_path: Path to the audit database
            write_timeout: Seconds a validation log write waits on a locked
                           database before giving up
        """
        self.db_path = db_path
        self.write_timeout = write_timeout
        self.export_path = str(Path(db_path).parent / "exports")

        # Ensure directories exist
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        # Initialize database
        self._init_database()

        logger.info("Initialized AuditLogger")

    def _init_database(self):
        """Initialize audit database with required tables."""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        # Validation log table
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS validation_log (
                log_id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                run_type TEXT NOT NULL,
                source_table TEXT,
                source_name TEXT NOT NULL,
                normalized_name TEXT,
                matched_standard_code TEXT,
                match_confidence INTEGER,
                recommendation TEXT,
                candidate_count INTEGER DEFAULT 0,
                success INTEGER NOT NULL,
                failure_reason TEXT,
                signal_breakdown TEXT,
                manual_review_status TEXT DEFAULT 'pending',
                manual_review_notes TEXT,
                reviewed_by TEXT,
                reviewed_at DATETIME,
                created_at DATETIME NOT NULL
            )
        ''')

        # Daily metrics snapshots
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS metrics_snapshot (
                metric_date TEXT PRIMARY KEY,
                total_registry_entries INTEGER,
                total_aliases INTEGER,
                matched_count INTEGER,
                unmatched_count INTEGER,
                match_success_rate REAL,
                auto_recommend_success_rate REAL,
                search_hit_rate REAL,
                address_match_rate REAL,
                validation_runs INTEGER,
                computed_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_validation_created ON validation_log(created_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_validation_run ON validation_log(run_id)')

        conn.commit()
        conn.close()

    def log_validation(self, entry: ValidationLogEntry) -> int:
        """
        Append a validation log entry.

        Args:
            entry: Resolution outcome

        Returns:
            Log id

        Raises:
            sqlite3.OperationalError: Database still locked after write_timeout
        """
        created_at = entry.created_at or datetime.now()

        conn = sqlite3.connect(self.db_path, timeout=self.write_timeout)
        cursor = conn.cursor()

        try:
            cursor.execute('''
                INSERT INTO validation_log
                (run_id, run_type, source_table, source_name, normalized_name, matched_standard_code,
                 match_confidence, recommendation, candidate_count, success, failure_reason,
                 signal_breakdown, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', [
                entry.run_id, entry.run_type, entry.source_table, entry.source_name,
                entry.normalized_name, entry.matched_standard_code, entry.match_confidence,
                entry.recommendation, entry.candidate_count, int(entry.success),
                entry.failure_reason, json.dumps(entry.signals, ensure_ascii=False),
                created_at.isoformat()
            ])
            conn.commit()
            log_id = cursor.lastrowid
        finally:
            conn.close()

        logger.debug(f"Logged validation {log_id} for '{entry.source_name}' (success={entry.success})")
        return log_id

    def annotate_review(self, log_id: int, status: str, notes: Optional[str] = None,
                        reviewed_by: Optional[str] = None):
        """
        Record a manual review decision on a log entry.

        Args:
            log_id: Log entry id
            status: pending, approved or rejected
            notes: Reviewer notes
            reviewed_by: Reviewer identifier

        Raises:
            InputValidationError: Unknown status or log id
        """
        if status not in REVIEW_STATUSES:
            raise InputValidationError(f"Review status must be one of {REVIEW_STATUSES}, got '{status}'")

        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        try:
            cursor.execute('''
                UPDATE validation_log
                SET manual_review_status = ?, manual_review_notes = ?, reviewed_by = ?, reviewed_at = ?
                WHERE log_id = ?
            ''', [status, notes, reviewed_by, datetime.now().isoformat(), log_id])

            if cursor.rowcount == 0:
                conn.rollback()
                raise InputValidationError(f"Validation log {log_id} not found")

            conn.commit()
        finally:
            conn.close()

        logger.info(f"Recorded review for validation log {log_id}: {status}")

    def get_validation_logs(self, run_id: Optional[str] = None,
                            source_name: Optional[str] = None,
                            matched_standard_code: Optional[str] = None,
                            limit: int = 20, offset: int = 0) -> Tuple[pd.DataFrame, int]:
        """
        Query validation logs, newest first.

        Args:
            run_id: Exact run id
            source_name: Substring of the source name
            matched_standard_code: Exact matched standard code
            limit: Page size, capped at 100
            offset: Rows to skip

        Returns:
            Tuple of (page DataFrame, total matching rows)

        Raises:
            InputValidationError: No filter given or invalid paging
        """
        if not (run_id or source_name or matched_standard_code):
            raise InputValidationError("At least one of run_id, source_name or matched_standard_code is required")
        if limit < 1 or offset < 0:
            raise InputValidationError("limit must be positive and offset non-negative")

        limit = min(limit, MAX_PAGE_SIZE)

        where = " WHERE 1=1"
        params: List[Any] = []

        if run_id:
            where += " AND run_id = ?"
            params.append(run_id)

        if source_name:
            where += " AND source_name LIKE ?"
            params.append(f"%{source_name}%")

        if matched_standard_code:
            where += " AND matched_standard_code = ?"
            params.append(matched_standard_code)

        conn = sqlite3.connect(self.db_path)

        total = conn.execute("SELECT COUNT(*) FROM validation_log" + where, params).fetchone()[0]
        df = pd.read_sql_query(
            "SELECT * FROM validation_log" + where + " ORDER BY created_at DESC, log_id DESC LIMIT ? OFFSET ?",
            conn, params=params + [limit, offset]
        )
        conn.close()

        return df, total

    def get_logs_for_date(self, day: date) -> pd.DataFrame:
        """
        All validation logs created on a calendar day.

        Args:
            day: Calendar day

        Returns:
            DataFrame of log rows in log id order
        """
        start, end = _day_bounds(day)

        conn = sqlite3.connect(self.db_path)
        df = pd.read_sql_query('''
            SELECT * FROM validation_log
            WHERE created_at >= ? AND created_at < ?
            ORDER BY log_id
        ''', conn, params=[start, end])
        conn.close()

        return df

    def get_logs_between(self, start_date: date, end_date: date) -> pd.DataFrame:
        """Validation logs created from start_date through end_date inclusive."""
        start, _ = _day_bounds(start_date)
        _, end = _day_bounds(end_date)

        conn = sqlite3.connect(self.db_path)
        df = pd.read_sql_query('''
            SELECT * FROM validation_log
            WHERE created_at >= ? AND created_at < ?
            ORDER BY log_id
        ''', conn, params=[start, end])
        conn.close()

        return df

    def save_metrics_snapshot(self, snapshot):
        """
        Write or overwrite the metrics snapshot for its date.

        Args:
            snapshot: MetricsSnapshot
        """
        values = snapshot.to_dict()

        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        try:
            cursor.execute('''
                INSERT OR REPLACE INTO metrics_snapshot
                (metric_date, total_registry_entries, total_aliases, matched_count, unmatched_count,
                 match_success_rate, auto_recommend_success_rate, search_hit_rate, address_match_rate,
                 validation_runs)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', [
                values["metric_date"],
                values["total_registry_entries"],
                values["total_aliases"],
                values["matched_count"],
                values["unmatched_count"],
                values["match_success_rate"],
                values["auto_recommend_success_rate"],
                values["search_hit_rate"],
                values["address_match_rate"],
                values["validation_runs"]
            ])
            conn.commit()
        finally:
            conn.close()

        logger.info(f"Saved metrics snapshot for {values['metric_date']}")

    def get_metrics_snapshots(self, start_date: Optional[date] = None,
                              end_date: Optional[date] = None) -> pd.DataFrame:
        """
        Get metrics snapshots within date range.

        Args:
            start_date: Start date filter
            end_date: End date filter

        Returns:
            DataFrame with one row per day, oldest first
        """
        conn = sqlite3.connect(self.db_path)

        query = "SELECT * FROM metrics_snapshot WHERE 1=1"
        params = []

        if start_date:
            query += " AND metric_date >= ?"
            params.append(start_date.isoformat())

        if end_date:
            query += " AND metric_date <= ?"
            params.append(end_date.isoformat())

        query += " ORDER BY metric_date"

        df = pd.read_sql_query(query, conn, params=params)
        conn.close()

        return df

    def export_logs(self, output_path: Optional[str] = None) -> str:
        """
        Export the full validation log for external analysis.

        Args:
            output_path: Output file path (optional)

        Returns:
            Path to exported file
        """
        if output_path is None:
            Path(self.export_path).mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            output_path = f"{self.export_path}/validation_log_{timestamp}.csv"

        conn = sqlite3.connect(self.db_path)
        df = pd.read_sql_query("SELECT * FROM validation_log ORDER BY log_id", conn)
        conn.close()

        df.to_csv(output_path, index=False)

        logger.info(f"Exported {len(df)} validation logs to {output_path}")
        return output_path


def create_audit_logger(config: Dict[str, Any]) -> AuditLogger:
    """
    Convenience function to create audit logger.

    Args:
        config: Configuration dictionary with a storage section

    Returns:
        Initialized audit logger
    """
    storage = config.get("storage", {})
    return AuditLogger(
        storage.get("audit_db", "data/audit.db"),
        write_timeout=storage.get("audit_write_timeout_seconds", 0.0)
    )
