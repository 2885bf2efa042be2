"""SQLite storage shared by jobs, records, logs, reports and source state."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import Lock, RLock
from typing import Dict, Iterator

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS source_state (
        source_id TEXT PRIMARY KEY,
        payload TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rate_limit_state (
        source_id TEXT PRIMARY KEY,
        payload TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        priority TEXT NOT NULL,
        parent_job TEXT,
        created_at TEXT NOT NULL,
        payload TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status, created_at)",
    """
    CREATE TABLE IF NOT EXISTS cv_records (
        id TEXT PRIMARY KEY,
        fingerprint TEXT,
        email TEXT,
        phone TEXT,
        name_key TEXT,
        company_key TEXT,
        status TEXT NOT NULL,
        source_id TEXT NOT NULL,
        experience_level TEXT,
        overall_score REAL NOT NULL DEFAULT 0,
        keywords TEXT NOT NULL DEFAULT '[]',
        scraped_at TEXT NOT NULL,
        created_at TEXT NOT NULL,
        payload TEXT NOT NULL
    )
    """,
    # A fingerprint may belong to at most one live (non-duplicate) record.
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_cv_records_fingerprint
        ON cv_records(fingerprint) WHERE status != 'duplicate' AND fingerprint IS NOT NULL
    """,
    "CREATE INDEX IF NOT EXISTS idx_cv_records_email ON cv_records(email)",
    "CREATE INDEX IF NOT EXISTS idx_cv_records_phone ON cv_records(phone)",
    "CREATE INDEX IF NOT EXISTS idx_cv_records_company ON cv_records(company_key)",
    "CREATE INDEX IF NOT EXISTS idx_cv_records_status ON cv_records(status, experience_level, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_cv_records_source ON cv_records(source_id, scraped_at)",
    """
    CREATE TABLE IF NOT EXISTS dedup_reviews (
        record_id TEXT PRIMARY KEY,
        candidate_id TEXT NOT NULL,
        confidence REAL NOT NULL,
        match_fields TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'open',
        created_at TEXT NOT NULL,
        resolved_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS log_entries (
        id TEXT PRIMARY KEY,
        job_id TEXT,
        source_id TEXT,
        operation TEXT NOT NULL,
        level TEXT NOT NULL,
        type TEXT NOT NULL,
        error_type TEXT,
        timestamp TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        payload TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_log_entries_job ON log_entries(job_id, timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_log_entries_source ON log_entries(source_id, timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_log_entries_expiry ON log_entries(expires_at)",
    """
    CREATE TABLE IF NOT EXISTS quality_reports (
        id TEXT PRIMARY KEY,
        report_type TEXT NOT NULL,
        generated_at TEXT NOT NULL,
        payload TEXT NOT NULL
    )
    """,
)


class SQLiteManager:
    """Manage SQLite connections with schema guarantees and per-database write locks."""

    def __init__(self) -> None:
        self._connections: Dict[Path, sqlite3.Connection] = {}
        self._locks: Dict[Path, RLock] = {}
        # Nesting depth per database; only touched while holding that database's lock.
        self._depth: Dict[Path, int] = {}
        self._lock = Lock()

    def connect(self, path: Path) -> sqlite3.Connection:
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if path not in self._connections:
                conn = sqlite3.connect(path, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                self._connections[path] = conn
                self._locks[path] = RLock()
                self._ensure_schema(conn)
            return self._connections[path]

    def lock_for(self, path: Path) -> RLock:
        self.connect(path)
        return self._locks[path]

    @contextmanager
    def transaction(self, path: Path, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Serialise a read-check-write sequence on one database and commit it atomically.

        ``immediate`` takes the SQLite write lock up front so other processes
        cannot interleave a write between our reads and writes.
        """

        conn = self.connect(path)
        with self._locks[path]:
            depth = self._depth.get(path, 0)
            self._depth[path] = depth + 1
            try:
                if depth == 0 and immediate and not conn.in_transaction:
                    conn.execute("BEGIN IMMEDIATE")
                yield conn
            except BaseException:
                if depth == 0:
                    conn.rollback()
                raise
            else:
                if depth == 0:
                    conn.commit()
            finally:
                self._depth[path] = depth

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        for statement in _SCHEMA:
            conn.execute(statement)
        conn.commit()

    def reset(self, path: Path) -> None:
        with self._lock:
            if path in self._connections:
                self._connections.pop(path).close()
                self._locks.pop(path, None)
                self._depth.pop(path, None)
        if path.exists():
            path.unlink()

    def close_all(self) -> None:
        with self._lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()
            self._locks.clear()
            self._depth.clear()


__all__ = ["SQLiteManager"]
