"""
Pipeline supervisor: drives one project through the generation phases.

The supervisor runs inside a ``book-generation`` worker. Each phase enqueues
unit jobs on the worker queues and polls the job status store until they are
terminal, so the units can run in other processes. The project status moves
only at phase boundaries:

    DRAFT -> GENERATING_CONTENT -> GENERATING_DOCUMENTS -> TRANSLATING -> COMPLETED

Any error after preflight marks the project FAILED and purges its cache
entries. Output records already persisted are kept, so a re-trigger resumes
at the first missing unit.
"""

from __future__ import annotations

import io
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse
from uuid import uuid4

from omegaconf import DictConfig

from .asset_cache import AssetCache, AssetFetcher, asset_key
from .exceptions import (
    AssetFetchError,
    InvalidTransitionError,
    JobFailedError,
    JobTimeoutError,
    PipelineAlreadyFinishedError,
    ProjectNotFoundError,
    StorageError,
    UpstreamDataMissingError,
)
from .job_queue import NOT_FOUND, JobQueue
from .models import (
    Asset,
    DocumentFormat,
    GenerateBookPayload,
    GenerateContentPayload,
    GenerationParameters,
    InlineAssetReference,
    JobState,
    JobStatusResponse,
    Language,
    Project,
    ProjectStatus,
    QueueName,
    RenderDocumentPayload,
    TranslateDocumentPayload,
    can_transition,
)
from .project_store import ProjectStore
from .storage import BlobStorage
from .utils import body_chapter_numbers, distribute_chapter_numbers, remove_staged_upload, sanitize_filename

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, Optional[str]], None]

# Progress bands of the top-level job.
CONTENT_DONE = 40
ASSETS_DONE = 50
PRECACHE_DONE = 55
PRIMARY_DONE = 70


def _no_progress(percent: int, step: Optional[str] = None) -> None:
    return None


class RunProgress:
    """
    Progress sink of one run.

    Remembers the last report so long waits can re-send it as a heartbeat;
    the stored progress is monotonic, so a repeat never lowers it but does
    keep the job from being recovered as stalled.
    """

    def __init__(self, report: ProgressCallback) -> None:
        self.report = report
        self.percent = 0
        self.step: Optional[str] = None

    def __call__(self, percent: int, step: Optional[str] = None) -> None:
        self.percent = max(self.percent, percent)
        self.step = step
        self.report(percent, step)

    def heartbeat(self) -> None:
        self.report(self.percent, self.step)


class PipelineSupervisor:
    """
    Orchestrates the generation phases of a project.

    Attributes:
        config: Runtime configuration (``supervisor``, ``cache``, ``languages``, ``formats``)
        queue: Job queue used to enqueue and poll unit jobs
        projects: Project state and output records
        cache: Asset cache pre-warmed before the document phases
        storage: Blob storage for ingested images
        fetcher: Downloads asset references given as http(s) URLs
        clock: Epoch-seconds time source
        sleeper: Called with the poll interval between status checks
    """

    def __init__(
        self,
        config: DictConfig,
        queue: JobQueue,
        projects: ProjectStore,
        cache: AssetCache,
        storage: BlobStorage,
        fetcher: AssetFetcher,
        clock: Callable[[], float] = time.time,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.queue = queue
        self.projects = projects
        self.cache = cache
        self.storage = storage
        self.fetcher = fetcher
        self.clock = clock
        self.sleeper = sleeper
        self.settings = config.supervisor

    # Triggering

    def request_generation(
        self,
        project_id: str,
        parameters: Optional[GenerationParameters] = None,
        inline_assets: Optional[List[InlineAssetReference]] = None,
    ) -> str:
        """
        Enqueue a top-level generation job for a project.

        A project that is not in DRAFT (finished, or left mid-phase by a
        crashed run) is reset to DRAFT first. Its output records stay, so the
        new run only produces what is missing.

        Returns:
            The id of the enqueued ``book-generation`` job

        Raises:
            ProjectNotFoundError: If the project does not exist
            InvalidTransitionError: If a generation job for the project is still queued or running

        Staged uploads of a rejected request are deleted.
        """
        project = self.projects.get_project(project_id)
        if project is None:
            self.discard_staged(inline_assets or [])
            raise ProjectNotFoundError(project_id)

        if self._has_open_run(project_id):
            self.discard_staged(inline_assets or [])
            raise InvalidTransitionError(project_id, project.status.value, ProjectStatus.GENERATING_CONTENT.value)

        if project.status != ProjectStatus.DRAFT:
            logger.info(f"[{project_id}] Resetting {project.status.value} project to DRAFT for a new run")
            self.projects.set_status(project_id, ProjectStatus.DRAFT)

        payload = GenerateBookPayload(
            project_id=project_id,
            request_parameters=parameters or GenerationParameters(),
            inline_asset_references=inline_assets or [],
        )
        return self.queue.enqueue(
            QueueName.BOOK_GENERATION.value,
            payload.model_dump(mode="json"),
            name=f"generate-book:{project_id}",
        )

    def discard_staged(self, references: List[InlineAssetReference]) -> int:
        """Delete staged uploads that are no longer needed; returns how many were removed."""
        staging_root = Path(self.config.paths.staging_dir)
        removed = sum(1 for reference in references if remove_staged_upload(Path(reference.path), staging_root))
        if removed:
            logger.info(f"Removed {removed} staged upload(s)")
        return removed

    def _has_open_run(self, project_id: str) -> bool:
        for state in (JobState.PENDING, JobState.ACTIVE):
            for job in self.queue.store.list_jobs(QueueName.BOOK_GENERATION.value, state):
                if job.payload.get("project_id") == project_id:
                    return True
        return False

    # Running

    def run(
        self,
        job_id: str,
        payload: GenerateBookPayload,
        report_progress: ProgressCallback = _no_progress,
    ) -> Dict[str, Any]:
        """
        Run every phase for the project named in ``payload``.

        Args:
            job_id: Id of the ``book-generation`` job being processed
            payload: Trigger payload with request parameters and staged assets
            report_progress: Progress sink of the top-level job

        Returns:
            Summary with the document count and how many units were enqueued or skipped

        Raises:
            ProjectNotFoundError: If the project never appeared during preflight
            PipelineAlreadyFinishedError: If the project is already COMPLETED or FAILED
            PipelineError: Any phase failure, after the project is marked FAILED
        """
        try:
            project = self._preflight(payload.project_id)
            logger.info(f"[{project.id}] Starting pipeline run for job {job_id}")
            try:
                summary = self._run_phases(project, payload, RunProgress(report_progress))
            except Exception as exc:
                self._handle_failure(project.id, exc)
                raise
        finally:
            self.discard_staged(payload.inline_asset_references)
        logger.info(f"[{project.id}] Pipeline completed: {summary}")
        return summary

    def _preflight(self, project_id: str) -> Project:
        attempts = int(self.settings.preflight_attempts)
        project = None
        for attempt in range(1, attempts + 1):
            project = self.projects.get_project(project_id)
            if project is not None:
                break
            if attempt < attempts:
                delay = float(self.settings.preflight_delay) * attempt
                logger.warning(f"[{project_id}] Project not found (attempt {attempt}/{attempts}); retrying in {delay:g}s")
                self.sleeper(delay)
        if project is None:
            raise ProjectNotFoundError(project_id)
        if project.status.is_terminal:
            raise PipelineAlreadyFinishedError(project_id, project.status.value)
        return project

    def _run_phases(
        self, project: Project, payload: GenerateBookPayload, report_progress: RunProgress
    ) -> Dict[str, Any]:
        parameters = payload.request_parameters
        counters = {"enqueued": 0, "skipped": 0}

        self._content_phase(project, parameters, counters, report_progress)
        self._asset_phase(project, parameters, payload.inline_asset_references, report_progress)
        self._precache_phase(project, report_progress)
        self._primary_phase(project, parameters, counters, report_progress)
        self._translation_phase(project, parameters, counters, report_progress)

        purged = self.cache.clear_project(project.id)
        self._transition(project.id, ProjectStatus.COMPLETED)
        report_progress(100, "completed")
        return {
            "project_id": project.id,
            "status": ProjectStatus.COMPLETED.value,
            "documents": len(self.projects.list_documents(project.id)),
            "enqueued": counters["enqueued"],
            "skipped": counters["skipped"],
            "cache_entries_purged": purged,
        }

    def _handle_failure(self, project_id: str, exc: Exception) -> None:
        logger.error(f"[{project_id}] Pipeline failed: {exc}")
        project = self.projects.get_project(project_id)
        if project is not None and not project.status.is_terminal:
            self.projects.set_status(project_id, ProjectStatus.FAILED)
        try:
            self.cache.clear_project(project_id)
        except sqlite3.Error as cache_exc:
            logger.error(f"[{project_id}] Cache purge after failure did not complete: {cache_exc}")

    def _transition(self, project_id: str, target: ProjectStatus) -> None:
        project = self.projects.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        if not can_transition(project.status, target):
            raise InvalidTransitionError(project_id, project.status.value, target.value)
        if project.status != target:
            self.projects.set_status(project_id, target)
            logger.info(f"[{project_id}] Status {project.status.value} -> {target.value}")

    # Phases

    def _content_phase(
        self,
        project: Project,
        parameters: GenerationParameters,
        counters: Dict[str, int],
        report_progress: RunProgress,
    ) -> None:
        self._transition(project.id, ProjectStatus.GENERATING_CONTENT)
        report_progress(5, "checking content")
        if self.projects.has_chapters(project.id):
            logger.info(f"[{project.id}] Content exists, skipping generation")
            counters["skipped"] += 1
        else:
            content_payload = GenerateContentPayload(
                project_id=project.id,
                number_of_chapters=parameters.number_of_chapters or project.number_of_chapters,
            )
            job_id = self.queue.enqueue(
                QueueName.CONTENT_GENERATION.value,
                content_payload.model_dump(mode="json"),
                name=f"generate-content:{project.id}",
            )
            counters["enqueued"] += 1
            report_progress(10, "generating content")
            self.wait_for_job(
                job_id, float(self.settings.content_timeout), stage="content", heartbeat=report_progress.heartbeat
            )
            if not self.projects.has_chapters(project.id):
                raise UpstreamDataMissingError(f"Content job {job_id} finished without chapters", stage="content")
        report_progress(CONTENT_DONE, "content ready")

    def _asset_phase(
        self,
        project: Project,
        parameters: GenerationParameters,
        references: List[InlineAssetReference],
        report_progress: RunProgress,
    ) -> None:
        if self.projects.has_assets(project.id):
            logger.info(f"[{project.id}] Assets already ingested, skipping")
        elif references:
            report_progress(CONTENT_DONE + 2, "ingesting assets")
            self.ingest_assets(project, parameters, references)
        report_progress(ASSETS_DONE, "assets ready")

    def ingest_assets(
        self,
        project: Project,
        parameters: GenerationParameters,
        references: List[InlineAssetReference],
    ) -> List[Asset]:
        """
        Upload staged assets and place images in chapters.

        Images are placed at the chapter numbers given in the request when
        one is given per image; otherwise they are spread evenly over the body
        chapters. At most one map is kept.
        """
        orders = [chapter.order for chapter in self.projects.get_chapters(project.id)]
        images = [reference for reference in references if not reference.is_map]
        maps = [reference for reference in references if reference.is_map]
        if len(maps) > 1:
            logger.warning(f"[{project.id}] {len(maps)} maps supplied; only the first is kept")

        explicit = parameters.image_chapter_numbers
        if explicit and len(explicit) == len(images) and orders:
            lowest, highest = min(orders), max(orders)
            placements = [max(lowest, min(number, highest)) for number in explicit]
        else:
            placements = distribute_chapter_numbers(len(images), body_chapter_numbers(orders))

        stored: List[Asset] = []
        for reference, chapter_number in zip(images, placements):
            chapter_number = reference.chapter_number or chapter_number
            stored.append(self._store_asset(project.id, reference, chapter_number, reference.caption, False))
        if maps:
            caption = parameters.map_caption or maps[0].caption
            stored.append(self._store_asset(project.id, maps[0], None, caption, True))
        logger.info(f"[{project.id}] Ingested {len(stored)} asset(s)")
        return stored

    def _store_asset(
        self,
        project_id: str,
        reference: InlineAssetReference,
        chapter_number: Optional[int],
        caption: Optional[str],
        is_map: bool,
    ) -> Asset:
        asset_id = uuid4().hex
        filename = f"{project_id}/{asset_id[:8]}-{sanitize_filename(reference.original_name, fallback_stem='image')}"
        if urlparse(reference.path).scheme in ("http", "https"):
            try:
                content = self.fetcher.fetch(reference.path)
            except AssetFetchError as exc:
                raise UpstreamDataMissingError(str(exc), stage="assets") from exc
            blob = self.storage.upload(io.BytesIO(content), filename, reference.mime_type)
        else:
            path = Path(reference.path)
            if not path.exists():
                raise UpstreamDataMissingError(f"Staged asset {path} is missing", stage="assets")
            with path.open("rb") as handle:
                blob = self.storage.upload(handle, filename, reference.mime_type)
            remove_staged_upload(path, Path(self.config.paths.staging_dir))
        return self.projects.add_asset(
            Asset(
                id=asset_id,
                project_id=project_id,
                filename=filename,
                original_name=reference.original_name,
                mime_type=reference.mime_type,
                size=blob.size,
                url=blob.url,
                storage_key=blob.key,
                chapter_number=chapter_number,
                caption=caption,
                is_map=is_map,
            )
        )

    def _precache_phase(self, project: Project, report_progress: RunProgress) -> None:
        report_progress(ASSETS_DONE + 1, "caching assets")
        self.precache_assets(project.id)
        report_progress(PRECACHE_DONE, "assets cached")

    def precache_assets(self, project_id: str) -> int:
        """
        Pre-warm the asset cache with every asset of a project.

        Assets are read from blob storage by key. Failed reads are retried for
        ``cache.precache_rounds`` more rounds with a growing delay. Assets that
        still fail are left to the workers, which read them directly on a cache
        miss.

        Returns:
            Number of assets cached
        """
        ttl = float(self.config.cache.ttl_seconds)
        rounds = int(self.config.cache.precache_rounds)
        retry_delay = float(self.config.cache.precache_retry_delay)

        pending = self.projects.list_assets(project_id)
        cached = 0
        for round_number in range(rounds + 1):
            items = []
            failures = []
            for asset in pending:
                try:
                    items.append((asset_key(asset.storage_key), self.storage.read(asset.storage_key)))
                except StorageError as exc:
                    logger.warning(f"[{project_id}] Pre-cache of {asset.original_name} failed: {exc}")
                    failures.append(asset)
            cached += self.cache.set_many(items, ttl_seconds=ttl, scope=project_id)
            if not failures:
                break
            pending = failures
            if round_number < rounds:
                self.sleeper(retry_delay * (round_number + 1))
        else:
            logger.warning(
                f"[{project_id}] {len(pending)} asset(s) not cached after {rounds + 1} rounds; workers will read directly"
            )
        logger.info(f"[{project_id}] Cached {cached} asset(s)")
        return cached

    def _primary_phase(
        self,
        project: Project,
        parameters: GenerationParameters,
        counters: Dict[str, int],
        report_progress: RunProgress,
    ) -> None:
        self._transition(project.id, ProjectStatus.GENERATING_DOCUMENTS)
        base = project.base_language
        job_ids = []
        for fmt in self._formats(parameters):
            if self.projects.get_document(project.id, fmt, base):
                logger.info(f"[{project.id}] {fmt.value}/{base.value} exists, skipping")
                counters["skipped"] += 1
                continue
            render_payload = RenderDocumentPayload(
                project_id=project.id, format=fmt, language=base, title_metadata=project.title_metadata()
            )
            job_ids.append(
                self.queue.enqueue(
                    QueueName.DOCUMENT_GENERATION.value,
                    render_payload.model_dump(mode="json"),
                    name=f"render:{project.id}:{fmt.value}:{base.value}",
                )
            )
        counters["enqueued"] += len(job_ids)
        if job_ids:
            report_progress(PRECACHE_DONE + 1, f"rendering {len(job_ids)} document(s)")
            self.wait_for_jobs(
                job_ids, float(self.settings.render_timeout), stage="render", heartbeat=report_progress.heartbeat
            )
        report_progress(PRIMARY_DONE, "primary documents ready")

    def _translation_phase(
        self,
        project: Project,
        parameters: GenerationParameters,
        counters: Dict[str, int],
        report_progress: RunProgress,
    ) -> None:
        self._transition(project.id, ProjectStatus.TRANSLATING)
        languages = self._target_languages(project, parameters)
        formats = self._formats(parameters)
        for index, language in enumerate(languages):
            job_ids = []
            for fmt in formats:
                if self.projects.get_document(project.id, fmt, language):
                    logger.info(f"[{project.id}] {fmt.value}/{language.value} exists, skipping")
                    counters["skipped"] += 1
                    continue
                translate_payload = TranslateDocumentPayload(
                    project_id=project.id, format=fmt, source_language=project.base_language, target_language=language
                )
                job_ids.append(
                    self.queue.enqueue(
                        QueueName.DOCUMENT_TRANSLATION.value,
                        translate_payload.model_dump(mode="json"),
                        name=f"translate:{project.id}:{fmt.value}:{language.value}",
                    )
                )
            counters["enqueued"] += len(job_ids)
            if job_ids:
                self.wait_for_jobs(
                    job_ids,
                    float(self.settings.translation_timeout),
                    stage="translate",
                    heartbeat=report_progress.heartbeat,
                )
            percent = PRIMARY_DONE + int((100 - PRIMARY_DONE) * (index + 1) / len(languages))
            report_progress(min(percent, 99), f"{language.value} ready")

    def _formats(self, parameters: GenerationParameters) -> List[DocumentFormat]:
        if parameters.formats:
            return list(dict.fromkeys(parameters.formats))
        return [DocumentFormat(value) for value in self.config.formats]

    def _target_languages(self, project: Project, parameters: GenerationParameters) -> List[Language]:
        if parameters.target_languages is not None:
            languages = parameters.target_languages
        else:
            languages = [Language(value) for value in self.config.languages.targets]
        return [language for language in dict.fromkeys(languages) if language != project.base_language]

    # Waiting

    def wait_for_job(
        self,
        job_id: str,
        timeout: float,
        stage: str = "wait",
        heartbeat: Optional[Callable[[], None]] = None,
    ) -> JobStatusResponse:
        """
        Poll a job until it is terminal.

        Raises:
            JobFailedError: If the job failed or its record disappeared
            JobTimeoutError: If it is still not terminal after ``timeout`` seconds
        """
        return self.wait_for_jobs([job_id], timeout, stage, heartbeat)[job_id]

    def wait_for_jobs(
        self,
        job_ids: List[str],
        timeout: float,
        stage: str = "wait",
        heartbeat: Optional[Callable[[], None]] = None,
    ) -> Dict[str, JobStatusResponse]:
        """
        Poll a group of jobs until every one of them is terminal.

        The group shares one deadline. Failures are raised only once the whole
        group has settled, so no unit of the phase is still running when the
        next phase or the failure handler starts.

        Args:
            job_ids: Jobs to wait for
            timeout: Seconds until the whole group must be terminal
            stage: Stage name carried by raised errors
            heartbeat: Called before every sleep so the waiting job stays alive
        """
        deadline = self.clock() + timeout
        poll_interval = float(self.settings.poll_interval)
        finished: Dict[str, JobStatusResponse] = {}
        pending = list(job_ids)
        while True:
            for job_id in list(pending):
                status = self.queue.get_status(job_id)
                if status.is_terminal or status.status == NOT_FOUND:
                    finished[job_id] = status
                    pending.remove(job_id)
            if not pending:
                break
            if self.clock() >= deadline:
                raise JobTimeoutError(pending[0], timeout, stage=stage)
            if heartbeat is not None:
                heartbeat()
            self.sleeper(poll_interval)

        for job_id in job_ids:
            status = finished[job_id]
            if status.status == NOT_FOUND:
                raise JobFailedError(job_id, "job record disappeared", stage=stage)
            if status.status == JobState.FAILED.value:
                raise JobFailedError(job_id, status.failure_reason, stage=stage)
        return finished
