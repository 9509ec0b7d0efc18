"""
Projects, their content and the output records produced by unit workers.

Output records (rendered documents, translated bundles) are unique per
``(project, variant)``. Their existence is what the supervisor and the
workers check to skip work that is already done, so each one is written in
a single insert and a losing concurrent insert returns the winner's record.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from typing import Callable, List, Optional
from uuid import uuid4

from .database import Database, datetime_from_epoch, deserialize_datetime, serialize_datetime
from .models import (
    Asset,
    Chapter,
    DocumentFormat,
    DocumentRecord,
    Language,
    Project,
    ProjectCreate,
    ProjectStatus,
    TranslationBundle,
)

logger = logging.getLogger(__name__)


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        title=row["title"],
        subtitle=row["subtitle"],
        author=row["author"],
        base_language=Language(row["base_language"]),
        number_of_chapters=row["number_of_chapters"],
        status=ProjectStatus(row["status"]),
        created_at=deserialize_datetime(row["created_at"]),
        updated_at=deserialize_datetime(row["updated_at"]),
    )


def _row_to_asset(row: sqlite3.Row) -> Asset:
    return Asset(
        id=row["id"],
        project_id=row["project_id"],
        filename=row["filename"],
        original_name=row["original_name"],
        mime_type=row["mime_type"],
        size=row["size"],
        url=row["url"],
        storage_key=row["storage_key"],
        chapter_number=row["chapter_number"],
        position=row["position"],
        caption=row["caption"],
        is_map=bool(row["is_map"]),
    )


def _row_to_document(row: sqlite3.Row) -> DocumentRecord:
    return DocumentRecord(
        id=row["id"],
        project_id=row["project_id"],
        format=DocumentFormat(row["format"]),
        language=Language(row["language"]),
        filename=row["filename"],
        url=row["url"],
        storage_key=row["storage_key"],
        size=row["size"],
        created_at=deserialize_datetime(row["created_at"]),
    )


def _row_to_bundle(row: sqlite3.Row) -> TranslationBundle:
    chapters = [Chapter(order=item["order"], title=item["title"], content=item["content"]) for item in json.loads(row["chapters"])]
    return TranslationBundle(
        project_id=row["project_id"],
        language=Language(row["language"]),
        title=row["title"],
        subtitle=row["subtitle"],
        chapters=chapters,
    )


class ProjectStore:
    def __init__(self, database: Database, clock: Callable[[], float] = time.time):
        self.database = database
        self.clock = clock

    def _now(self) -> str:
        return serialize_datetime(datetime_from_epoch(self.clock()))

    # Projects

    def create_project(self, data: ProjectCreate) -> Project:
        project_id = uuid4().hex
        now = self._now()
        with self.database.connection() as conn:
            conn.execute(
                """
                INSERT INTO projects (
                    id, title, subtitle, author, base_language,
                    number_of_chapters, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    project_id,
                    data.title,
                    data.subtitle,
                    data.author,
                    data.base_language.value,
                    data.number_of_chapters,
                    ProjectStatus.DRAFT.value,
                    now,
                    now,
                ),
            )
        logger.info(f"Created project {project_id} ({data.title})")
        return self.get_project(project_id)  # type: ignore[return-value]

    def get_project(self, project_id: str) -> Optional[Project]:
        with self.database.connection() as conn:
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
            return _row_to_project(row) if row else None

    def set_status(self, project_id: str, status: ProjectStatus) -> None:
        """Persist a project status. Only the supervisor calls this."""
        with self.database.connection() as conn:
            conn.execute(
                "UPDATE projects SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, self._now(), project_id),
            )

    # Chapters

    def has_chapters(self, project_id: str) -> bool:
        with self.database.connection() as conn:
            row = conn.execute("SELECT 1 FROM chapters WHERE project_id = ? LIMIT 1", (project_id,)).fetchone()
            return row is not None

    def get_chapters(self, project_id: str) -> List[Chapter]:
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT chapter_order, title, content FROM chapters WHERE project_id = ? ORDER BY chapter_order",
                (project_id,),
            ).fetchall()
            return [Chapter(order=row["chapter_order"], title=row["title"], content=row["content"]) for row in rows]

    def save_chapters(self, project_id: str, chapters: List[Chapter]) -> bool:
        """
        Persist a project's chapters in one transaction.

        Returns:
            False, writing nothing, if the project already has chapters
        """
        with self.database.immediate() as conn:
            existing = conn.execute("SELECT 1 FROM chapters WHERE project_id = ? LIMIT 1", (project_id,)).fetchone()
            if existing:
                return False
            conn.executemany(
                "INSERT INTO chapters (project_id, chapter_order, title, content) VALUES (?, ?, ?, ?)",
                [(project_id, chapter.order, chapter.title, chapter.content) for chapter in chapters],
            )
        return True

    # Assets

    def list_assets(self, project_id: str) -> List[Asset]:
        with self.database.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM assets WHERE project_id = ?
                ORDER BY is_map DESC, chapter_number, position, created_at, rowid
                """,
                (project_id,),
            ).fetchall()
            return [_row_to_asset(row) for row in rows]

    def has_assets(self, project_id: str) -> bool:
        with self.database.connection() as conn:
            row = conn.execute("SELECT 1 FROM assets WHERE project_id = ? LIMIT 1", (project_id,)).fetchone()
            return row is not None

    def add_asset(self, asset: Asset) -> Asset:
        """
        Insert an asset; images placed in a chapter get the next free position there.

        A second map for the same project is rejected by a unique index and
        the existing map is returned instead.
        """
        with self.database.immediate() as conn:
            position = asset.position
            if asset.chapter_number is not None and position is None:
                row = conn.execute(
                    "SELECT COUNT(*) FROM assets WHERE project_id = ? AND chapter_number = ? AND is_map = 0",
                    (asset.project_id, asset.chapter_number),
                ).fetchone()
                position = row[0] + 1
            asset.position = position
            try:
                conn.execute(
                    """
                    INSERT INTO assets (
                        id, project_id, filename, original_name, mime_type, size, url,
                        storage_key, chapter_number, position, caption, is_map, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        asset.id,
                        asset.project_id,
                        asset.filename,
                        asset.original_name,
                        asset.mime_type,
                        asset.size,
                        asset.url,
                        asset.storage_key,
                        asset.chapter_number,
                        position,
                        asset.caption,
                        int(asset.is_map),
                        self._now(),
                    ),
                )
            except sqlite3.IntegrityError:
                if not asset.is_map:
                    raise
                existing = conn.execute(
                    "SELECT * FROM assets WHERE project_id = ? AND is_map = 1", (asset.project_id,)
                ).fetchone()
                logger.info(f"Project {asset.project_id} already has a map; keeping {existing['id']}")
                return _row_to_asset(existing)
        return asset

    # Rendered documents

    def get_document(self, project_id: str, fmt: DocumentFormat, language: Language) -> Optional[DocumentRecord]:
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE project_id = ? AND format = ? AND language = ?",
                (project_id, fmt.value, language.value),
            ).fetchone()
            return _row_to_document(row) if row else None

    def list_documents(self, project_id: str) -> List[DocumentRecord]:
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM documents WHERE project_id = ? ORDER BY created_at, rowid", (project_id,)
            ).fetchall()
            return [_row_to_document(row) for row in rows]

    def save_document(
        self,
        project_id: str,
        fmt: DocumentFormat,
        language: Language,
        filename: str,
        url: str,
        storage_key: str,
        size: int,
    ) -> tuple[DocumentRecord, bool]:
        """
        Atomically persist a rendered document record.

        Returns:
            ``(record, created)``; ``created`` is False when a concurrent
            delivery already stored the record, which is then returned as is
        """
        record = DocumentRecord(
            id=uuid4().hex,
            project_id=project_id,
            format=fmt,
            language=language,
            filename=filename,
            url=url,
            storage_key=storage_key,
            size=size,
            created_at=datetime_from_epoch(self.clock()),
        )
        try:
            with self.database.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO documents (
                        id, project_id, format, language, filename, url, storage_key, size, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        project_id,
                        fmt.value,
                        language.value,
                        filename,
                        url,
                        storage_key,
                        size,
                        serialize_datetime(record.created_at),
                    ),
                )
        except sqlite3.IntegrityError:
            existing = self.get_document(project_id, fmt, language)
            if existing is None:
                raise
            logger.info(f"Document {fmt.value}/{language.value} for {project_id} already stored by another delivery")
            return existing, False
        return record, True

    def delete_document(self, project_id: str, fmt: DocumentFormat, language: Language) -> bool:
        with self.database.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM documents WHERE project_id = ? AND format = ? AND language = ?",
                (project_id, fmt.value, language.value),
            )
            return cursor.rowcount > 0

    # Translated bundles

    def get_translation(self, project_id: str, language: Language) -> Optional[TranslationBundle]:
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT * FROM translations WHERE project_id = ? AND language = ?",
                (project_id, language.value),
            ).fetchone()
            return _row_to_bundle(row) if row else None

    def save_translation(self, bundle: TranslationBundle) -> TranslationBundle:
        """Insert a translated bundle, or return the one a concurrent delivery stored first."""
        chapters = json.dumps(
            [{"order": chapter.order, "title": chapter.title, "content": chapter.content} for chapter in bundle.chapters]
        )
        try:
            with self.database.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO translations (project_id, language, title, subtitle, chapters, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (bundle.project_id, bundle.language.value, bundle.title, bundle.subtitle, chapters, self._now()),
                )
        except sqlite3.IntegrityError:
            existing = self.get_translation(bundle.project_id, bundle.language)
            if existing is None:
                raise
            return existing
        return bundle
