"""SQLite-backed idempotency store for import records, poll runs and settings."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from booking_ingestor.core.models import (
    ArtifactKind,
    ArtifactMetadata,
    CycleProgress,
    ImportRecord,
    ImportStatus,
    SkippedCandidate,
    SkipReason,
)

logger = logging.getLogger(__name__)

# Lifecycle: PENDING → PROCESSING → SUCCESS
#                               ↘ FAILED → PROCESSING (retry) ... → MANUAL_REVIEW
CLAIMABLE_STATUSES = (ImportStatus.PENDING.value, ImportStatus.FAILED.value)
RESETTABLE_STATUSES = (ImportStatus.FAILED.value, ImportStatus.MANUAL_REVIEW.value)

ALLOWLIST_SETTING = "sender_allowlist"


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_record(row: sqlite3.Row) -> ImportRecord:
    skipped = tuple(
        SkippedCandidate(key=item["key"], reason=SkipReason(item["reason"]))
        for item in json.loads(row["skipped"] or "[]")
    )
    return ImportRecord(
        discriminator=row["discriminator"],
        source_subject=row["source_subject"],
        source_sender=row["source_sender"],
        source_date=datetime.fromisoformat(row["source_date"]),
        artifact_kind=ArtifactKind(row["artifact_kind"]),
        artifact_name=row["artifact_name"],
        artifact_location=row["artifact_location"],
        mime_type=row["mime_type"],
        status=ImportStatus(row["status"]),
        retry_count=row["retry_count"],
        error_message=row["error_message"],
        result_refs=tuple(json.loads(row["result_refs"] or "[]")),
        skipped=skipped,
        candidate_count=row["candidate_count"],
        processed_at=_parse_ts(row["processed_at"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


class ImportTracker:
    """Tracks every artifact ever seen, keyed by its discriminator.

    Tables:
    - imports: one row per discriminator with status, retries and results
    - poll_runs: audit log of poll cycles
    - system_settings: key/value JSON (sender allowlist)

    Every state transition is a conditional write; callers learn whether
    they won from the affected row count, so several workers (or several
    processes on the same file) can race safely.
    """

    def __init__(self, db_path: Path, timeout: float = 30.0) -> None:
        self._db_path = db_path
        self._timeout = timeout
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(self._db_path), timeout=self._timeout, check_same_thread=False
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> ImportTracker:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def _create_tables(self) -> None:
        """Create tables if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS imports (
                discriminator TEXT PRIMARY KEY,
                source_subject TEXT NOT NULL DEFAULT '',
                source_sender TEXT NOT NULL DEFAULT '',
                source_date TEXT NOT NULL,
                artifact_kind TEXT NOT NULL,
                artifact_name TEXT NOT NULL DEFAULT '',
                artifact_location TEXT NOT NULL DEFAULT '',
                mime_type TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL DEFAULT 'PENDING',
                retry_count INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                result_refs TEXT NOT NULL DEFAULT '[]',
                skipped TEXT NOT NULL DEFAULT '[]',
                candidate_count INTEGER NOT NULL DEFAULT 0,
                processed_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_imports_status ON imports(status);
            CREATE INDEX IF NOT EXISTS idx_imports_created ON imports(created_at);

            CREATE TABLE IF NOT EXISTS poll_runs (
                run_id INTEGER PRIMARY KEY AUTOINCREMENT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                messages_seen INTEGER DEFAULT 0,
                messages_skipped INTEGER DEFAULT 0,
                artifacts_created INTEGER DEFAULT 0,
                artifacts_dispatched INTEGER DEFAULT 0,
                error TEXT
            );

            CREATE TABLE IF NOT EXISTS system_settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
        """)

    # -- import records -------------------------------------------------

    def create_if_absent(self, discriminator: str, metadata: ArtifactMetadata) -> bool:
        """Insert a PENDING record unless one already exists.

        Returns True if this call created the record.
        """
        now = _now()
        with self._lock:
            cursor = self.conn.execute(
                """INSERT OR IGNORE INTO imports
                   (discriminator, source_subject, source_sender, source_date,
                    artifact_kind, artifact_name, artifact_location, mime_type,
                    status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'PENDING', ?, ?)""",
                (
                    discriminator,
                    metadata.source_subject,
                    metadata.source_sender,
                    metadata.source_date.isoformat(),
                    metadata.artifact_kind.value,
                    metadata.artifact_name,
                    metadata.artifact_location,
                    metadata.mime_type,
                    now,
                    now,
                ),
            )
            self.conn.commit()
            return cursor.rowcount == 1

    def get(self, discriminator: str) -> ImportRecord | None:
        """Get the record for a discriminator, if any."""
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM imports WHERE discriminator = ?", (discriminator,)
            ).fetchone()
        return _row_to_record(row) if row else None

    def exists(self, discriminator: str) -> bool:
        with self._lock:
            row = self.conn.execute(
                "SELECT 1 FROM imports WHERE discriminator = ?", (discriminator,)
            ).fetchone()
        return row is not None

    def claim(self, discriminator: str) -> bool:
        """Move PENDING/FAILED to PROCESSING. Returns False if someone else holds it."""
        with self._lock:
            cursor = self.conn.execute(
                "UPDATE imports SET status = 'PROCESSING', updated_at = ? "
                "WHERE discriminator = ? AND status IN (?, ?)",
                (_now(), discriminator, *CLAIMABLE_STATUSES),
            )
            self.conn.commit()
            return cursor.rowcount == 1

    def mark_success(
        self,
        discriminator: str,
        result_refs: list[str] | tuple[str, ...],
        skipped: list[SkippedCandidate] | tuple[SkippedCandidate, ...] = (),
        candidate_count: int = 0,
    ) -> bool:
        """Record a successful attempt on a claimed record."""
        now = _now()
        skipped_json = json.dumps([{"key": s.key, "reason": s.reason.value} for s in skipped])
        with self._lock:
            cursor = self.conn.execute(
                """UPDATE imports SET
                   status = 'SUCCESS', error_message = NULL, result_refs = ?,
                   skipped = ?, candidate_count = ?, processed_at = ?, updated_at = ?
                   WHERE discriminator = ? AND status = 'PROCESSING'""",
                (json.dumps(list(result_refs)), skipped_json, candidate_count, now, now, discriminator),
            )
            self.conn.commit()
            return cursor.rowcount == 1

    def mark_failure(
        self,
        discriminator: str,
        error_message: str,
        retry_threshold: int,
        *,
        terminal: bool = False,
        skipped: list[SkippedCandidate] | tuple[SkippedCandidate, ...] = (),
        candidate_count: int = 0,
    ) -> ImportStatus | None:
        """Record a failed attempt on a claimed record.

        ``retry_count`` is incremented; the record becomes MANUAL_REVIEW when
        the new count reaches ``retry_threshold`` (or immediately when
        ``terminal``), FAILED otherwise. The threshold check happens inside
        the UPDATE so concurrent writers cannot overshoot it.

        Returns the new status, or None if the record was not PROCESSING.
        """
        now = _now()
        skipped_json = json.dumps([{"key": s.key, "reason": s.reason.value} for s in skipped])
        with self._lock:
            cursor = self.conn.execute(
                """UPDATE imports SET
                   retry_count = retry_count + 1,
                   status = CASE WHEN ? OR retry_count + 1 >= ?
                                 THEN 'MANUAL_REVIEW' ELSE 'FAILED' END,
                   processed_at = CASE WHEN ? OR retry_count + 1 >= ?
                                       THEN ? ELSE processed_at END,
                   error_message = ?, skipped = ?, candidate_count = ?, updated_at = ?
                   WHERE discriminator = ? AND status = 'PROCESSING'""",
                (
                    int(terminal), retry_threshold,
                    int(terminal), retry_threshold, now,
                    error_message, skipped_json, candidate_count, now,
                    discriminator,
                ),
            )
            self.conn.commit()
            if cursor.rowcount != 1:
                return None
            row = self.conn.execute(
                "SELECT status FROM imports WHERE discriminator = ?", (discriminator,)
            ).fetchone()
        return ImportStatus(row["status"])

    def reset(self, discriminator: str) -> bool:
        """Put a FAILED/MANUAL_REVIEW record back to PENDING with a fresh retry budget."""
        with self._lock:
            cursor = self.conn.execute(
                """UPDATE imports SET status = 'PENDING', retry_count = 0,
                   error_message = NULL, processed_at = NULL, updated_at = ?
                   WHERE discriminator = ? AND status IN (?, ?)""",
                (_now(), discriminator, *RESETTABLE_STATUSES),
            )
            self.conn.commit()
            return cursor.rowcount == 1

    def list_records(
        self, status: ImportStatus | None = None, limit: int = 50, offset: int = 0
    ) -> list[ImportRecord]:
        """List records newest first, optionally filtered by status."""
        query = "SELECT * FROM imports"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC, discriminator LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [_row_to_record(row) for row in rows]

    def list_retryable(self, stale_before: datetime, limit: int = 50) -> list[ImportRecord]:
        """FAILED records, plus PENDING records not touched since ``stale_before``."""
        with self._lock:
            rows = self.conn.execute(
                """SELECT * FROM imports
                   WHERE status = 'FAILED'
                      OR (status = 'PENDING' AND updated_at < ?)
                   ORDER BY created_at LIMIT ?""",
                (stale_before.isoformat(), limit),
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def count_by_status(self) -> dict[str, int]:
        """Get count of records grouped by status."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT status, COUNT(*) as cnt FROM imports GROUP BY status"
            ).fetchall()
        return {row["status"]: row["cnt"] for row in rows}

    # -- poll runs --------------------------------------------------------

    def start_run(self) -> int:
        """Record the start of a poll cycle. Returns the run_id."""
        with self._lock:
            cursor = self.conn.execute(
                "INSERT INTO poll_runs (started_at) VALUES (?)", (_now(),)
            )
            self.conn.commit()
            return cursor.lastrowid or 0

    def complete_run(self, run_id: int, progress: CycleProgress) -> None:
        """Record the completion of a poll cycle."""
        with self._lock:
            self.conn.execute(
                """UPDATE poll_runs SET
                   completed_at = ?, messages_seen = ?, messages_skipped = ?,
                   artifacts_created = ?, artifacts_dispatched = ?, error = ?
                   WHERE run_id = ?""",
                (
                    _now(),
                    progress.messages_seen,
                    progress.messages_skipped,
                    progress.artifacts_created,
                    progress.artifacts_dispatched,
                    progress.error,
                    run_id,
                ),
            )
            self.conn.commit()

    def last_run(self) -> dict | None:
        """Get the most recent poll run."""
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM poll_runs ORDER BY run_id DESC LIMIT 1"
            ).fetchone()
        return dict(row) if row else None

    # -- settings ---------------------------------------------------------

    def get_setting(self, key: str) -> Any | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT value FROM system_settings WHERE key = ?", (key,)
            ).fetchone()
        return json.loads(row["value"]) if row else None

    def set_setting(self, key: str, value: Any) -> None:
        with self._lock:
            self.conn.execute(
                """INSERT INTO system_settings (key, value, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                       value = excluded.value,
                       updated_at = excluded.updated_at""",
                (key, json.dumps(value), _now()),
            )
            self.conn.commit()
