"""
Unit-of-work handlers run by workers.

Every handler is idempotent. It checks for its output record before doing
any work, checks again after producing the artifact and before persisting it,
and persists with a single atomic write. A duplicate delivery therefore ends
as a no-op returning the record that is already stored.
"""

from __future__ import annotations

import logging
import tempfile
from typing import Any, Dict, Optional
from uuid import uuid4

from .asset_cache import CachedAssetSource
from .collaborators import ContentGenerator, DocumentRenderer, RenderableDocument, Translator
from .exceptions import ProjectNotFoundError, UpstreamDataMissingError
from .models import (
    DocumentFormat,
    GenerateBookPayload,
    GenerateContentPayload,
    Language,
    Project,
    RenderDocumentPayload,
    TranslateDocumentPayload,
    TranslationBundle,
)
from .project_store import ProjectStore
from .storage import BlobStorage
from .utils import sanitize_label
from .worker import JobContext

logger = logging.getLogger(__name__)


def _require_project(projects: ProjectStore, project_id: str) -> Project:
    project = projects.get_project(project_id)
    if project is None:
        raise ProjectNotFoundError(project_id)
    return project


class ContentGenerationHandler:
    def __init__(self, projects: ProjectStore, generator: ContentGenerator) -> None:
        self.projects = projects
        self.generator = generator

    def __call__(self, context: JobContext) -> Dict[str, Any]:
        payload = GenerateContentPayload.model_validate(context.payload)
        project = _require_project(self.projects, payload.project_id)

        if self.projects.has_chapters(project.id):
            context.report_progress(100, "content already generated")
            return {"project_id": project.id, "chapters": len(self.projects.get_chapters(project.id)), "skipped": True}

        context.report_progress(10, "generating content")
        chapters = self.generator.generate(project, payload.number_of_chapters)
        if not chapters:
            raise UpstreamDataMissingError(f"Content generator returned no chapters for {project.id}", stage="content")

        context.report_progress(80, "saving chapters")
        created = self.projects.save_chapters(project.id, chapters)
        if not created:
            logger.info(f"[{project.id}] Chapters were saved by another delivery; discarding this result")
        context.report_progress(100, "content ready")
        return {"project_id": project.id, "chapters": len(self.projects.get_chapters(project.id)), "skipped": not created}


class _DocumentProducer:
    """Shared render, upload and persist steps for render and translation handlers."""

    def __init__(
        self,
        projects: ProjectStore,
        storage: BlobStorage,
        assets: CachedAssetSource,
        renderer: DocumentRenderer,
    ) -> None:
        self.projects = projects
        self.storage = storage
        self.assets = assets
        self.renderer = renderer

    def _document_for(
        self,
        project: Project,
        fmt: DocumentFormat,
        language: Language,
        title: str,
        subtitle: Optional[str],
        author: str,
        bundle: Optional[TranslationBundle] = None,
    ) -> RenderableDocument:
        chapters = bundle.chapters if bundle else self.projects.get_chapters(project.id)
        if not chapters:
            raise UpstreamDataMissingError(f"Project {project.id} has no chapters to render", stage="render")
        assets = self.projects.list_assets(project.id)
        return RenderableDocument(
            title=title,
            subtitle=subtitle,
            author=author,
            format=fmt,
            language=language,
            chapters=chapters,
            images=[asset for asset in assets if not asset.is_map],
            map_asset=next((asset for asset in assets if asset.is_map), None),
        )

    def _produce(self, context: JobContext, project: Project, document: RenderableDocument) -> Dict[str, Any]:
        fmt = document.format
        language = document.language
        filename = (
            f"{sanitize_label(document.title, fallback='guide')}-{language.value.lower()}-"
            f"{uuid4().hex[:8]}.{fmt.extension}"
        )

        # Rendered bytes live only in this spooled file until the upload finishes.
        with tempfile.TemporaryFile() as spool:
            self.renderer.render(document, spool, self.assets)
            context.report_progress(70, "uploading document")
            spool.seek(0)
            blob = self.storage.upload(spool, filename, fmt.content_type)

        context.report_progress(90, "saving document record")
        existing = self.projects.get_document(project.id, fmt, language)
        if existing:
            logger.info(f"[{project.id}] {fmt.value}/{language.value} stored by another delivery; dropping {blob.key}")
            self.storage.delete(blob.key)
            context.report_progress(100, "document already stored")
            return existing.to_result(skipped=True)

        record, created = self.projects.save_document(
            project.id, fmt, language, filename=filename, url=blob.url, storage_key=blob.key, size=blob.size
        )
        if not created:
            self.storage.delete(blob.key)
        context.report_progress(100, "document ready")
        logger.info(f"[{project.id}] Stored {fmt.value}/{language.value} as {record.filename}")
        return record.to_result(skipped=not created)


class DocumentRenderHandler(_DocumentProducer):
    """Renders one document in one format and language."""

    def __call__(self, context: JobContext) -> Dict[str, Any]:
        payload = RenderDocumentPayload.model_validate(context.payload)
        existing = self.projects.get_document(payload.project_id, payload.format, payload.language)
        if existing:
            context.report_progress(100, "document already exists")
            return existing.to_result(skipped=True)

        project = _require_project(self.projects, payload.project_id)
        context.report_progress(10, "loading content")
        bundle = None
        if payload.language != project.base_language:
            bundle = self.projects.get_translation(project.id, payload.language)
        metadata = payload.title_metadata
        document = self._document_for(
            project,
            payload.format,
            payload.language,
            title=bundle.title if bundle else metadata.title,
            subtitle=bundle.subtitle if bundle else metadata.subtitle,
            author=metadata.author,
            bundle=bundle,
        )
        context.report_progress(30, f"rendering {payload.format.value}")
        return self._produce(context, project, document)


class DocumentTranslationHandler(_DocumentProducer):
    """Translates a rendered document into one target language and renders the result."""

    def __init__(
        self,
        projects: ProjectStore,
        storage: BlobStorage,
        assets: CachedAssetSource,
        renderer: DocumentRenderer,
        translator: Translator,
    ) -> None:
        super().__init__(projects, storage, assets, renderer)
        self.translator = translator

    def __call__(self, context: JobContext) -> Dict[str, Any]:
        payload = TranslateDocumentPayload.model_validate(context.payload)
        existing = self.projects.get_document(payload.project_id, payload.format, payload.target_language)
        if existing:
            context.report_progress(100, "translation already exists")
            return existing.to_result(skipped=True)

        source = self.projects.get_document(payload.project_id, payload.format, payload.source_language)
        if source is None:
            raise UpstreamDataMissingError(
                f"No {payload.format.value}/{payload.source_language.value} document to translate "
                f"for project {payload.project_id}",
                stage="translate",
            )
        project = _require_project(self.projects, payload.project_id)

        context.report_progress(10, "loading translation")
        bundle = self.projects.get_translation(project.id, payload.target_language)
        if bundle is None:
            bundle = self._translate(context, project, payload.source_language, payload.target_language)

        context.report_progress(50, f"rendering {payload.format.value}")
        document = self._document_for(
            project,
            payload.format,
            payload.target_language,
            title=bundle.title,
            subtitle=bundle.subtitle,
            author=project.author,
            bundle=bundle,
        )
        return self._produce(context, project, document)

    def _translate(
        self, context: JobContext, project: Project, source: Language, target: Language
    ) -> TranslationBundle:
        chapters = self.projects.get_chapters(project.id)
        if not chapters:
            raise UpstreamDataMissingError(f"Project {project.id} has no chapters to translate", stage="translate")
        context.report_progress(20, f"translating to {target.value}")
        title, subtitle = self.translator.translate_metadata(project.title, project.subtitle, source, target)
        translated = self.translator.translate_chapters(chapters, source, target)
        context.report_progress(40, "saving translation")
        return self.projects.save_translation(
            TranslationBundle(project_id=project.id, language=target, title=title, subtitle=subtitle, chapters=translated)
        )


class GenerateBookHandler:
    """Runs the supervisor for a top-level ``book-generation`` job."""

    def __init__(self, supervisor) -> None:
        self.supervisor = supervisor

    def __call__(self, context: JobContext) -> Dict[str, Any]:
        payload = GenerateBookPayload.model_validate(context.payload)
        return self.supervisor.run(context.job.id, payload, context.report_progress)
