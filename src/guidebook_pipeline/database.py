"""
SQLite persistence shared by the queue, the project store and the asset cache.

One database file holds every durable record of the pipeline, so the HTTP
process, the supervisor worker and the unit workers can run in separate
processes and still see the same jobs, projects, output records and cache
entries. WAL mode lets many readers poll while a single writer commits.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from .exceptions import QueueUnavailableError

# Default database path
DEFAULT_DB_PATH = Path("data/pipeline.db")

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        queue_name TEXT NOT NULL,
        name TEXT NOT NULL,
        payload TEXT NOT NULL,
        status TEXT NOT NULL,
        priority INTEGER NOT NULL,
        max_attempts INTEGER NOT NULL,
        backoff TEXT NOT NULL,
        attempts_made INTEGER NOT NULL DEFAULT 0,
        progress INTEGER NOT NULL DEFAULT 0,
        current_step TEXT,
        result TEXT,
        failure_reason TEXT,
        available_at REAL NOT NULL,
        heartbeat_at REAL,
        enqueued_at TEXT NOT NULL,
        started_at TEXT,
        finished_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_queue_status ON jobs(queue_name, status)",
    """
    CREATE TABLE IF NOT EXISTS projects (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        subtitle TEXT,
        author TEXT NOT NULL,
        base_language TEXT NOT NULL,
        number_of_chapters INTEGER NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chapters (
        project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        chapter_order INTEGER NOT NULL,
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        PRIMARY KEY (project_id, chapter_order)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS assets (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        filename TEXT NOT NULL,
        original_name TEXT NOT NULL,
        mime_type TEXT NOT NULL,
        size INTEGER NOT NULL,
        url TEXT NOT NULL,
        storage_key TEXT NOT NULL,
        chapter_number INTEGER,
        position INTEGER,
        caption TEXT,
        is_map INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_assets_project ON assets(project_id)",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_assets_single_map
    ON assets(project_id) WHERE is_map = 1
    """,
    """
    CREATE TABLE IF NOT EXISTS documents (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        format TEXT NOT NULL,
        language TEXT NOT NULL,
        filename TEXT NOT NULL,
        url TEXT NOT NULL,
        storage_key TEXT NOT NULL,
        size INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (project_id, format, language)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS translations (
        project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        language TEXT NOT NULL,
        title TEXT NOT NULL,
        subtitle TEXT,
        chapters TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (project_id, language)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cache_entries (
        key TEXT PRIMARY KEY,
        value BLOB NOT NULL,
        scope TEXT,
        expires_at REAL,
        created_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_cache_scope ON cache_entries(scope)",
]


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def datetime_from_epoch(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value)


def load_json(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


class Database:
    """
    SQLite database handle.

    Every operation opens a short-lived connection, so one instance can be
    shared by threads and the file can be shared by processes.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH, timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.timeout = timeout
        _ensure_db_dir(self.db_path)
        self._init_db()

    def _connect(self, isolation_level: Optional[str] = "") -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=self.timeout, isolation_level=isolation_level)
        except sqlite3.Error as exc:
            raise QueueUnavailableError(f"Cannot open database {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection that commits on success and rolls back on error."""
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def immediate(self) -> Iterator[sqlite3.Connection]:
        """
        Run a read-modify-write sequence under ``BEGIN IMMEDIATE``.

        The write lock is taken up front, so two processes claiming from the
        same queue serialize here instead of both reading the same pending row.
        """
        conn = self._connect(isolation_level=None)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self.connection() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
