"""
Database module for the JMA warning watcher.

Handles SQLite persistence with:
- feed_cursor: conditional-request token per polled endpoint
- report_archive: append-only history of downloaded report documents
- city_warning: warning state per (region, city, kind), soft-deleted
- Transactions spanning the full write set of one cycle
"""

import sqlite3
import threading
import logging
from contextlib import contextmanager
from typing import List, Dict, Any, Iterator, Optional, Tuple
from pathlib import Path

from .errors import PersistenceError

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("data") / "weather.sqlite3"


class Database:
    """
    SQLite database wrapper with thread-safe operations.

    Dependability features:
    - WAL mode for concurrent reads during writes
    - Automatic schema initialization
    - One live row per (region, city, kind) enforced by a partial unique index
    - Explicit transactions so a cycle commits all of its writes or none
    """

    def __init__(self, db_path: str = None) -> None:
        self._db_path = db_path or str(DEFAULT_DB_PATH)
        self._lock = threading.RLock()
        self._conn = None
        self._in_transaction = False
        self._connect()
        self._init_schema()
        logger.info(f"Database initialized at {self._db_path}")

    def _connect(self) -> None:
        """Establish database connection with WAL mode."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(
                self._db_path,
                check_same_thread=False,
                isolation_level=None
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database {self._db_path}: {e}")

    def _init_schema(self) -> None:
        """Initialize database schema."""
        with self._lock:
            self._execute("""
                CREATE TABLE IF NOT EXISTS feed_cursor (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    endpoint TEXT NOT NULL UNIQUE,
                    token TEXT,
                    fetched_at TEXT NOT NULL
                )
            """)

            self._execute("""
                CREATE TABLE IF NOT EXISTS report_archive (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    region TEXT NOT NULL,
                    filename TEXT NOT NULL,
                    report_url TEXT,
                    content BLOB NOT NULL,
                    content_hash TEXT NOT NULL,
                    retrieved_at TEXT NOT NULL,
                    checked_at TEXT NOT NULL,
                    parse_ok INTEGER NOT NULL DEFAULT 1,
                    error TEXT,
                    UNIQUE(region, filename, retrieved_at)
                )
            """)

            self._execute("""
                CREATE TABLE IF NOT EXISTS city_warning (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    region TEXT NOT NULL,
                    city TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    kind_code TEXT,
                    status TEXT NOT NULL CHECK (status IN ('issued', 'continued', 'cleared')),
                    raw_text TEXT NOT NULL,
                    report_file TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    is_deleted INTEGER NOT NULL DEFAULT 0
                )
            """)

            self._execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_city_warning_live
                ON city_warning(region, city, kind) WHERE is_deleted = 0
            """)
            self._execute("""
                CREATE INDEX IF NOT EXISTS idx_city_warning_region
                ON city_warning(region, is_deleted)
            """)
            self._execute("""
                CREATE INDEX IF NOT EXISTS idx_archive_region
                ON report_archive(region, retrieved_at)
            """)

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise PersistenceError(f"Database error: {e}")

    # =========================================================================
    # Transactions
    # =========================================================================

    @contextmanager
    def transaction(self) -> Iterator["Database"]:
        """
        Run a block of writes as one atomic unit.

        Any exception inside the block rolls everything back and is re-raised.
        """
        with self._lock:
            if self._in_transaction:
                raise PersistenceError("Nested transactions are not supported")

            self._execute("BEGIN IMMEDIATE")
            self._in_transaction = True
            try:
                yield self
            except BaseException:
                self._rollback()
                raise
            else:
                try:
                    self._conn.execute("COMMIT")
                except sqlite3.Error as e:
                    self._rollback()
                    raise PersistenceError(f"Commit failed: {e}")
            finally:
                self._in_transaction = False

    def _rollback(self) -> None:
        """Roll back if SQLite has not already done so; never masks the caller's error."""
        if not self._conn.in_transaction:
            logger.warning("Transaction already rolled back by SQLite")
            return
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.error(f"Rollback failed: {e}")
            return
        logger.warning("Transaction rolled back")

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    # =========================================================================
    # Feed Cursor Operations
    # =========================================================================

    def get_cursor(self, endpoint: str) -> Optional[Dict[str, Any]]:
        """Get the cursor for a polled endpoint."""
        with self._lock:
            cursor = self._execute(
                "SELECT endpoint, token, fetched_at FROM feed_cursor WHERE endpoint = ?",
                (endpoint,)
            )
            row = cursor.fetchone()
            return dict(row) if row else None

    def set_cursor(self, endpoint: str, token: Optional[str], fetched_at: str) -> None:
        """Create or advance the cursor for a polled endpoint."""
        with self._lock:
            self._execute("""
                INSERT INTO feed_cursor (endpoint, token, fetched_at)
                VALUES (?, ?, ?)
                ON CONFLICT(endpoint) DO UPDATE SET
                    token = excluded.token,
                    fetched_at = excluded.fetched_at
            """, (endpoint, token, fetched_at))

    def get_cursors(self) -> List[Dict[str, Any]]:
        with self._lock:
            cursor = self._execute(
                "SELECT endpoint, token, fetched_at FROM feed_cursor ORDER BY endpoint"
            )
            return [dict(row) for row in cursor.fetchall()]

    # =========================================================================
    # Report Archive Operations
    # =========================================================================

    def insert_archive(
        self,
        region: str,
        filename: str,
        report_url: Optional[str],
        content: bytes,
        content_hash: str,
        retrieved_at: str,
        parse_ok: bool = True,
        error: Optional[str] = None
    ) -> int:
        """Append a downloaded report. Entries are never overwritten."""
        with self._lock:
            cursor = self._execute("""
                INSERT INTO report_archive
                (region, filename, report_url, content, content_hash,
                 retrieved_at, checked_at, parse_ok, error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (region, filename, report_url, content, content_hash,
                  retrieved_at, retrieved_at, 1 if parse_ok else 0, error))
            return cursor.lastrowid

    def touch_archive(self, archive_id: int, checked_at: str) -> None:
        """Refresh the freshness timestamp of an archive entry."""
        with self._lock:
            self._execute(
                "UPDATE report_archive SET checked_at = ? WHERE id = ?",
                (checked_at, archive_id)
            )

    def get_latest_archive(self, region: str) -> Optional[Dict[str, Any]]:
        """Get the most recent archive entry for a region."""
        with self._lock:
            cursor = self._execute("""
                SELECT * FROM report_archive
                WHERE region = ?
                ORDER BY retrieved_at DESC, id DESC
                LIMIT 1
            """, (region,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def get_archive_by_filename(self, region: str, filename: str) -> Optional[Dict[str, Any]]:
        """Get the newest archive entry for a report file, if downloaded before."""
        with self._lock:
            cursor = self._execute("""
                SELECT * FROM report_archive
                WHERE region = ? AND filename = ?
                ORDER BY retrieved_at DESC, id DESC
                LIMIT 1
            """, (region, filename))
            row = cursor.fetchone()
            return dict(row) if row else None

    def get_archive_entries(self, region: str, limit: int = 50) -> List[Dict[str, Any]]:
        """List archive entries for a region without their content."""
        with self._lock:
            cursor = self._execute("""
                SELECT id, region, filename, report_url, content_hash,
                       retrieved_at, checked_at, parse_ok, error
                FROM report_archive
                WHERE region = ?
                ORDER BY retrieved_at DESC, id DESC
                LIMIT ?
            """, (region, limit))
            return [dict(row) for row in cursor.fetchall()]

    def purge_archive(self, before: str) -> int:
        """Delete archive entries older than ``before``, keeping the newest per region."""
        with self._lock:
            cursor = self._execute("""
                DELETE FROM report_archive
                WHERE retrieved_at < ?
                AND id NOT IN (
                    SELECT (
                        SELECT r.id FROM report_archive AS r
                        WHERE r.region = g.region
                        ORDER BY r.retrieved_at DESC, r.id DESC
                        LIMIT 1
                    )
                    FROM (SELECT DISTINCT region FROM report_archive) AS g
                )
            """, (before,))
            return cursor.rowcount

    # =========================================================================
    # City Warning Operations
    # =========================================================================

    def get_live_warnings(self, region: str) -> List[Dict[str, Any]]:
        """Get all rows of a region that are not soft-deleted."""
        with self._lock:
            cursor = self._execute("""
                SELECT * FROM city_warning
                WHERE region = ? AND is_deleted = 0
                ORDER BY city, kind, id
            """, (region,))
            return [dict(row) for row in cursor.fetchall()]

    def get_active_warnings(self, region: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get warnings currently in effect, optionally for one region."""
        with self._lock:
            if region:
                cursor = self._execute("""
                    SELECT * FROM city_warning
                    WHERE is_deleted = 0 AND status != 'cleared' AND region = ?
                    ORDER BY region, city, kind
                """, (region,))
            else:
                cursor = self._execute("""
                    SELECT * FROM city_warning
                    WHERE is_deleted = 0 AND status != 'cleared'
                    ORDER BY region, city, kind
                """)
            return [dict(row) for row in cursor.fetchall()]

    def get_warning_history(self, region: str, city: str, kind: str) -> List[Dict[str, Any]]:
        """Get every row ever written for a tuple, oldest first."""
        with self._lock:
            cursor = self._execute("""
                SELECT * FROM city_warning
                WHERE region = ? AND city = ? AND kind = ?
                ORDER BY id ASC
            """, (region, city, kind))
            return [dict(row) for row in cursor.fetchall()]

    def get_cleared_history(self, region: str) -> List[Tuple[str, str]]:
        """(city, kind) tuples whose newest row is a soft-deleted clearance."""
        with self._lock:
            cursor = self._execute("""
                SELECT w.city, w.kind FROM city_warning AS w
                WHERE w.region = ? AND w.is_deleted = 1 AND w.status = 'cleared'
                AND w.id = (
                    SELECT MAX(x.id) FROM city_warning AS x
                    WHERE x.region = w.region AND x.city = w.city AND x.kind = w.kind
                )
                ORDER BY w.city, w.kind
            """, (region,))
            return [(row["city"], row["kind"]) for row in cursor.fetchall()]

    def insert_warning(
        self,
        region: str,
        city: str,
        kind: str,
        kind_code: str,
        status: str,
        raw_text: str,
        report_file: Optional[str],
        updated_at: str
    ) -> int:
        """Insert a new live warning row."""
        with self._lock:
            cursor = self._execute("""
                INSERT INTO city_warning
                (region, city, kind, kind_code, status, raw_text,
                 report_file, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (region, city, kind, kind_code, status, raw_text,
                  report_file, updated_at, updated_at))
            return cursor.lastrowid

    def update_warning(
        self,
        warning_id: int,
        status: str,
        raw_text: str,
        report_file: Optional[str],
        updated_at: str
    ) -> None:
        """Record a status transition on a live row."""
        with self._lock:
            self._execute("""
                UPDATE city_warning
                SET status = ?, raw_text = ?, report_file = ?, updated_at = ?
                WHERE id = ? AND is_deleted = 0
            """, (status, raw_text, report_file, updated_at, warning_id))

    def touch_warning(self, warning_id: int, report_file: Optional[str], updated_at: str) -> None:
        """Refresh a live row without changing its status."""
        with self._lock:
            self._execute("""
                UPDATE city_warning
                SET report_file = ?, updated_at = ?
                WHERE id = ? AND is_deleted = 0
            """, (report_file, updated_at, warning_id))

    def soft_delete_warning(self, warning_id: int, updated_at: str) -> None:
        """Mark a row inactive; it stays for history."""
        with self._lock:
            self._execute("""
                UPDATE city_warning
                SET is_deleted = 1, updated_at = ?
                WHERE id = ?
            """, (updated_at, warning_id))

    def purge_deleted_warnings(self, before: str) -> int:
        """Physically remove soft-deleted rows last touched before ``before``."""
        with self._lock:
            cursor = self._execute("""
                DELETE FROM city_warning
                WHERE is_deleted = 1 AND updated_at < ?
            """, (before,))
            return cursor.rowcount

    # =========================================================================
    # Summary
    # =========================================================================

    def get_data_summary(self) -> Dict[str, Any]:
        """Get summary of all data in database."""
        with self._lock:
            active = self._execute(
                "SELECT COUNT(*) FROM city_warning WHERE is_deleted = 0 AND status != 'cleared'"
            ).fetchone()[0]

            history = self._execute(
                "SELECT COUNT(*) FROM city_warning"
            ).fetchone()[0]

            reports = self._execute(
                "SELECT COUNT(*) FROM report_archive"
            ).fetchone()[0]

            failed = self._execute(
                "SELECT COUNT(*) FROM report_archive WHERE parse_ok = 0"
            ).fetchone()[0]

            return {
                "active_warnings": active,
                "warning_rows": history,
                "archived_reports": reports,
                "failed_reports": failed,
            }

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
                logger.info("Database connection closed")
