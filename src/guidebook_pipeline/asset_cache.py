"""
TTL cache for binary assets shared by every worker of a pipeline run.

The cache only saves repeated downloads: a miss, an expired entry or a
storage error all read as "absent" and callers fetch from the authoritative
source instead. Entries may carry a ``scope`` (the project id) so a whole
run's assets can be purged at teardown even though asset keys are hashes.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from hashlib import sha256
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Tuple
from urllib.parse import unquote, urlparse

import requests

from .database import Database
from .exceptions import AssetFetchError
from .storage import BlobStorage

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 7200


def asset_key(source_identifier: str) -> str:
    """Build the cache key for an asset: ``asset:<sha256 of the identifier>``."""
    return f"asset:{sha256(source_identifier.encode('utf-8')).hexdigest()}"


def project_key(project_id: str, data_type: str) -> str:
    return f"project:{project_id}:{data_type}"


class AssetCache:
    """
    Key/value store for blobs with per-entry expiry.

    Attributes:
        database: Shared SQLite database holding ``cache_entries``
        default_ttl: TTL applied when ``set`` is called without one
        clock: Epoch-seconds time source
    """

    def __init__(
        self,
        database: Database,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.database = database
        self.default_ttl = default_ttl
        self.clock = clock

    def _expires_at(self, ttl_seconds: Optional[float]) -> Optional[float]:
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return None
        return self.clock() + ttl

    def set(self, key: str, blob: bytes, ttl_seconds: Optional[float] = None, scope: Optional[str] = None) -> None:
        """Store ``blob`` under ``key``; a TTL of 0 or less means no expiry."""
        with self.database.connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO cache_entries (key, value, scope, expires_at, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (key, sqlite3.Binary(blob), scope, self._expires_at(ttl_seconds), self.clock()),
            )

    def set_many(
        self,
        items: Iterable[Tuple[str, bytes]],
        ttl_seconds: Optional[float] = None,
        scope: Optional[str] = None,
    ) -> int:
        """Store several entries in one transaction; returns how many were written."""
        expires_at = self._expires_at(ttl_seconds)
        now = self.clock()
        rows = [(key, sqlite3.Binary(blob), scope, expires_at, now) for key, blob in items]
        if not rows:
            return 0
        with self.database.connection() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO cache_entries (key, value, scope, expires_at, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                rows,
            )
        return len(rows)

    def get(self, key: str) -> Optional[bytes]:
        try:
            with self.database.connection() as conn:
                row = conn.execute(
                    "SELECT value, expires_at FROM cache_entries WHERE key = ?", (key,)
                ).fetchone()
        except sqlite3.Error as exc:
            logger.warning(f"Cache read for {key} failed, treating as miss: {exc}")
            return None
        if row is None:
            return None
        if row["expires_at"] is not None and row["expires_at"] <= self.clock():
            return None
        return bytes(row["value"])

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> bool:
        with self.database.connection() as conn:
            return conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,)).rowcount > 0

    def clear_by_pattern(self, pattern: str) -> int:
        """
        Delete every entry whose key matches a glob pattern.

        Args:
            pattern: Glob with ``*`` and ``?`` wildcards, e.g. ``project:abc:*``

        Returns:
            Number of deleted entries
        """
        with self.database.connection() as conn:
            count = conn.execute("DELETE FROM cache_entries WHERE key GLOB ?", (pattern,)).rowcount
        logger.info(f"Cleared {count} cache entries matching {pattern}")
        return count

    def clear_scope(self, scope: str) -> int:
        with self.database.connection() as conn:
            return conn.execute("DELETE FROM cache_entries WHERE scope = ?", (scope,)).rowcount

    def clear_project(self, project_id: str) -> int:
        """Purge a project's assets and its ``project:<id>:*`` data."""
        count = self.clear_scope(project_id)
        count += self.clear_by_pattern(f"{project_key(project_id, '')}*")
        logger.info(f"Cleared {count} cache entries for project {project_id}")
        return count

    def clear_all(self) -> int:
        with self.database.connection() as conn:
            count = conn.execute("DELETE FROM cache_entries").rowcount
        logger.info(f"Cleared all {count} cache entries")
        return count

    def purge_expired(self) -> int:
        with self.database.connection() as conn:
            return conn.execute(
                "DELETE FROM cache_entries WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (self.clock(),),
            ).rowcount

    def count(self, scope: Optional[str] = None) -> int:
        """Count live (unexpired) entries, optionally within one scope."""
        query = "SELECT COUNT(*) FROM cache_entries WHERE (expires_at IS NULL OR expires_at > ?)"
        values: list[Any] = [self.clock()]
        if scope is not None:
            query += " AND scope = ?"
            values.append(scope)
        with self.database.connection() as conn:
            return conn.execute(query, values).fetchone()[0]

    def set_project_data(
        self, project_id: str, data_type: str, data: Any, ttl_seconds: Optional[float] = None
    ) -> None:
        payload = json.dumps(data).encode("utf-8")
        self.set(project_key(project_id, data_type), payload, ttl_seconds, scope=project_id)

    def get_project_data(self, project_id: str, data_type: str) -> Optional[Any]:
        raw = self.get(project_key(project_id, data_type))
        if raw is None:
            return None
        return json.loads(raw.decode("utf-8"))


class AssetFetcher:
    """Authoritative source for asset bytes: ``http(s)://`` via requests, ``file://`` from disk."""

    def __init__(self, timeout: float = 30.0, session: Optional[requests.Session] = None) -> None:
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(self, url: str) -> bytes:
        parsed = urlparse(url)
        if parsed.scheme in ("http", "https"):
            try:
                response = self.session.get(url, timeout=self.timeout)
                response.raise_for_status()
            except requests.RequestException as exc:
                raise AssetFetchError(url, str(exc)) from exc
            return response.content
        if parsed.scheme in ("file", ""):
            path = Path(unquote(parsed.path)) if parsed.scheme == "file" else Path(url)
            try:
                return path.read_bytes()
            except OSError as exc:
                raise AssetFetchError(url, str(exc)) from exc
        raise AssetFetchError(url, f"unsupported scheme {parsed.scheme!r}")


class CachedAssetSource:
    """
    Read-through view used by workers: cache first, blob storage on a miss.

    Assets are addressed by their storage key, which never changes, rather
    than by a download URL that may have expired since ingestion.
    """

    def __init__(self, cache: AssetCache, storage: BlobStorage) -> None:
        self.cache = cache
        self.storage = storage
        self.hits = 0
        self.misses = 0

    def get(self, storage_key: str) -> bytes:
        cached = self.cache.get(asset_key(storage_key))
        if cached is not None:
            self.hits += 1
            return cached
        self.misses += 1
        logger.debug(f"Cache miss for {storage_key}, reading from storage")
        return self.storage.read(storage_key)

    def stats(self) -> Dict[str, int]:
        return {"hits": self.hits, "misses": self.misses}
