"""SQLite-backed job history and crash-safe queue mirror."""

import contextlib
import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any

from relaybot.errors import PersistenceError
from relaybot.models import Job, JobStatus

logger = logging.getLogger(__name__)

PENDING_STATES = (JobStatus.QUEUED.value, JobStatus.DOWNLOADING.value)
TERMINAL_STATES = tuple(status.value for status in JobStatus if status.is_terminal)


def empty_stats() -> dict[str, Any]:
    return {
        "total_downloads": 0,
        "successful_downloads": 0,
        "failed_downloads": 0,
        "total_bytes": 0,
        "by_platform": {},
    }


class JobStore:
    """Durable mirror of job state.

    Every public method is a no-op once the store is unavailable, and write
    failures are logged rather than raised: the queue keeps running in memory
    when durability is lost.
    """

    # Columns added after the first release; ALTER TABLE cannot add constraints.
    _SCHEMA_COLUMNS: dict[str, str] = {
        "url": "TEXT",
        "platform": "TEXT",
        "status": "TEXT DEFAULT 'queued'",
        "caller_context": "TEXT",
        "size": "INTEGER",
        "error": "TEXT",
        "added_at": "REAL",
        "started_at": "REAL",
        "completed_at": "REAL",
        "retries": "INTEGER NOT NULL DEFAULT 0",
    }

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        try:
            self._initialize()
        except PersistenceError as err:
            logger.error("Persistence disabled, running in memory only: %s", err)
            self._conn = None

    @property
    def ready(self) -> bool:
        return self._conn is not None

    def _initialize(self) -> None:
        try:
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), timeout=30)
            conn.row_factory = sqlite3.Row
            with conn:
                conn.execute("PRAGMA journal_mode = WAL")
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS downloads (
                        tag TEXT PRIMARY KEY,
                        url TEXT,
                        platform TEXT,
                        status TEXT,
                        caller_context TEXT,
                        size INTEGER,
                        error TEXT,
                        added_at REAL,
                        started_at REAL,
                        completed_at REAL,
                        retries INTEGER NOT NULL DEFAULT 0
                    )
                    """
                )
                self._migrate_schema(conn)
                conn.execute("CREATE INDEX IF NOT EXISTS idx_downloads_status ON downloads(status)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_downloads_platform ON downloads(platform)")
        except (OSError, sqlite3.Error) as err:
            raise PersistenceError(f"cannot open job store at {self.db_path}: {err}") from err
        self._conn = conn

    def _migrate_schema(self, conn: sqlite3.Connection) -> None:
        rows = conn.execute("PRAGMA table_info(downloads)").fetchall()
        existing_columns = {str(row["name"]) for row in rows}
        for column, definition in self._SCHEMA_COLUMNS.items():
            if column not in existing_columns:
                conn.execute(f"ALTER TABLE downloads ADD COLUMN {column} {definition}")
        conn.execute("UPDATE downloads SET status = 'queued' WHERE status IS NULL OR status = ''")
        conn.execute("UPDATE downloads SET retries = 0 WHERE retries IS NULL")

    def close(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.close()
        except sqlite3.Error as err:
            logger.error("Failed to close job store: %s", err)
        finally:
            self._conn = None

    @contextlib.contextmanager
    def _writing(self, action: str, tag: str | None = None):
        try:
            with self._conn:
                yield self._conn
        except sqlite3.Error as err:
            logger.error("Failed to %s%s: %s", action, f" [{tag}]" if tag else "", err)

    def save(self, job: Job) -> None:
        if not self.ready:
            return
        with self._writing("save job", job.tag) as conn:
            conn.execute(
                """
                INSERT INTO downloads (
                    tag, url, platform, status, caller_context, added_at, started_at, retries
                )
                VALUES (:tag, :url, :platform, :status, :caller_context, :added_at, :started_at, :retries)
                ON CONFLICT(tag) DO UPDATE SET
                    url=excluded.url,
                    platform=excluded.platform,
                    status=excluded.status,
                    caller_context=excluded.caller_context,
                    added_at=excluded.added_at,
                    started_at=excluded.started_at,
                    retries=excluded.retries
                """,
                {
                    "tag": job.tag,
                    "url": job.url,
                    "platform": job.platform,
                    "status": job.status.value,
                    "caller_context": json.dumps(job.caller_context, default=str),
                    "added_at": job.created_at,
                    "started_at": job.started_at,
                    "retries": job.retry_count,
                },
            )

    def mark_active(self, tag: str, started_at: float | None = None) -> None:
        if not self.ready:
            return
        with self._writing("mark job active", tag) as conn:
            conn.execute(
                "UPDATE downloads SET status='downloading', started_at=:started_at WHERE tag=:tag",
                {"tag": tag, "started_at": started_at or time.time()},
            )

    def mark_completed(self, tag: str, size: int, completed_at: float | None = None) -> None:
        if not self.ready:
            return
        with self._writing("mark job completed", tag) as conn:
            conn.execute(
                """
                UPDATE downloads
                SET status='completed', size=:size, error=NULL, completed_at=:completed_at
                WHERE tag=:tag
                """,
                {"tag": tag, "size": size or 0, "completed_at": completed_at or time.time()},
            )

    def mark_failed(self, tag: str, error_message: str, completed_at: float | None = None) -> None:
        if not self.ready:
            return
        with self._writing("mark job failed", tag) as conn:
            conn.execute(
                """
                UPDATE downloads
                SET status='failed', error=:error, completed_at=:completed_at
                WHERE tag=:tag
                """,
                {"tag": tag, "error": error_message, "completed_at": completed_at or time.time()},
            )

    def update_retry_count(self, tag: str, retries: int) -> None:
        if not self.ready:
            return
        with self._writing("update retry count", tag) as conn:
            conn.execute(
                "UPDATE downloads SET retries=:retries, status='queued' WHERE tag=:tag",
                {"tag": tag, "retries": retries},
            )

    def load_pending(self) -> list[Job]:
        """Return every non-terminal job, oldest admission first, as ``queued``."""
        if not self.ready:
            return []
        try:
            rows = self._conn.execute(
                f"""
                SELECT * FROM downloads
                WHERE status IN ({",".join("?" * len(PENDING_STATES))})
                ORDER BY added_at ASC, rowid ASC
                """,
                PENDING_STATES,
            ).fetchall()
        except sqlite3.Error as err:
            logger.error("Failed to load pending jobs: %s", err)
            return []
        return [self._row_to_job(row) for row in rows]

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        try:
            caller_context = json.loads(row["caller_context"]) if row["caller_context"] else {}
        except ValueError:
            logger.warning("[%s] Unreadable caller context in job store", row["tag"])
            caller_context = {}
        return Job(
            tag=row["tag"],
            url=row["url"] or "",
            platform=row["platform"] or "default",
            status=JobStatus.QUEUED,
            retry_count=row["retries"] or 0,
            created_at=row["added_at"] or time.time(),
            caller_context=caller_context if isinstance(caller_context, dict) else {},
        )

    def get(self, tag: str) -> dict[str, Any] | None:
        if not self.ready:
            return None
        try:
            row = self._conn.execute("SELECT * FROM downloads WHERE tag=?", (tag,)).fetchone()
        except sqlite3.Error as err:
            logger.error("Failed to read job [%s]: %s", tag, err)
            return None
        return dict(row) if row else None

    def stats_summary(self) -> dict[str, Any]:
        summary = empty_stats()
        if not self.ready:
            return summary
        try:
            totals = self._conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN status='completed' THEN 1 ELSE 0 END) AS success,
                    SUM(CASE WHEN status='failed' THEN 1 ELSE 0 END) AS failed,
                    SUM(CASE WHEN status='completed' THEN COALESCE(size, 0) ELSE 0 END) AS bytes
                FROM downloads
                """
            ).fetchone()
            platform_rows = self._conn.execute(
                """
                SELECT
                    platform,
                    COUNT(*) AS total,
                    SUM(CASE WHEN status='completed' THEN 1 ELSE 0 END) AS success,
                    SUM(CASE WHEN status='failed' THEN 1 ELSE 0 END) AS failed
                FROM downloads
                GROUP BY platform
                """
            ).fetchall()
        except sqlite3.Error as err:
            logger.error("Failed to read job statistics: %s", err)
            return summary

        summary["total_downloads"] = totals["total"] or 0
        summary["successful_downloads"] = totals["success"] or 0
        summary["failed_downloads"] = totals["failed"] or 0
        summary["total_bytes"] = totals["bytes"] or 0
        for row in platform_rows:
            summary["by_platform"][row["platform"] or "unknown"] = {
                "total": row["total"] or 0,
                "success": row["success"] or 0,
                "failed": row["failed"] or 0,
            }
        return summary

    def purge_older_than(self, max_age_days: float = 30) -> int:
        if not self.ready:
            return 0
        cutoff = time.time() - max_age_days * 24 * 3600
        removed = 0
        with self._writing("purge old records") as conn:
            cursor = conn.execute(
                f"""
                DELETE FROM downloads
                WHERE status IN ({",".join("?" * len(TERMINAL_STATES))})
                  AND completed_at IS NOT NULL
                  AND completed_at < ?
                """,
                (*TERMINAL_STATES, cutoff),
            )
            removed = cursor.rowcount
        if removed > 0:
            logger.info("Cleaned up %s old download record(s) (older than %s days)", removed, max_age_days)
        return removed
