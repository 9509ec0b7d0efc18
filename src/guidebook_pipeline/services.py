"""
Explicit wiring of the pipeline's services.

Everything is constructed once per process from the runtime configuration
and passed by reference; nothing reaches for a module-level client.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from omegaconf import DictConfig

from .asset_cache import AssetCache, AssetFetcher, CachedAssetSource
from .collaborators import (
    ContentGenerator,
    DocumentRenderer,
    NoopTranslator,
    TemplateContentGenerator,
    TextDocumentRenderer,
    Translator,
)
from .database import Database
from .handlers import (
    ContentGenerationHandler,
    DocumentRenderHandler,
    DocumentTranslationHandler,
    GenerateBookHandler,
)
from .job_queue import JobQueue
from .job_store import JobStatusStore
from .models import QueueName
from .project_store import ProjectStore
from .storage import BlobStorage, LocalBlobStorage, S3BlobStorage
from .supervisor import PipelineSupervisor
from .worker import Handler, Worker, WorkerPool


@dataclass
class PipelineServices:
    config: DictConfig
    database: Database
    job_store: JobStatusStore
    queue: JobQueue
    projects: ProjectStore
    cache: AssetCache
    fetcher: AssetFetcher
    asset_source: CachedAssetSource
    storage: BlobStorage
    supervisor: PipelineSupervisor
    handlers: Dict[str, Handler] = field(default_factory=dict)

    def worker(self, queue_name: str) -> Worker:
        if queue_name not in self.handlers:
            raise ValueError(f"Unknown queue: {queue_name}")
        return Worker(
            self.queue,
            queue_name,
            self.handlers[queue_name],
            idle_sleep=float(self.config.worker.idle_sleep),
        )

    def worker_pool(self, queue_names: Optional[List[str]] = None) -> WorkerPool:
        names = queue_names or list(self.handlers.keys())
        return WorkerPool([self.worker(name) for name in names])


def build_storage(config: DictConfig) -> BlobStorage:
    """S3 when a bucket is configured, otherwise the local output directory."""
    storage_config = config.storage
    if storage_config.s3_bucket:
        return S3BlobStorage(
            bucket=str(storage_config.s3_bucket),
            prefix=str(storage_config.prefix),
            presign_expiration=int(storage_config.presign_expiration),
        )
    return LocalBlobStorage(Path(config.paths.output_dir), prefix=str(storage_config.prefix))


def build_services(
    config: DictConfig,
    clock: Callable[[], float] = time.time,
    sleeper: Callable[[float], None] = time.sleep,
    storage: Optional[BlobStorage] = None,
    fetcher: Optional[AssetFetcher] = None,
    content_generator: Optional[ContentGenerator] = None,
    renderer: Optional[DocumentRenderer] = None,
    translator: Optional[Translator] = None,
) -> PipelineServices:
    database = Database(Path(config.paths.database))
    job_store = JobStatusStore(database)
    queue = JobQueue(job_store, config, clock=clock)
    projects = ProjectStore(database, clock=clock)
    cache = AssetCache(database, default_ttl=float(config.cache.ttl_seconds), clock=clock)
    storage = storage or build_storage(config)
    fetcher = fetcher or AssetFetcher(timeout=float(config.cache.fetch_timeout))
    asset_source = CachedAssetSource(cache, storage)
    renderer = renderer or TextDocumentRenderer()

    supervisor = PipelineSupervisor(
        config,
        queue,
        projects,
        cache,
        storage,
        fetcher,
        clock=clock,
        sleeper=sleeper,
    )
    handlers: Dict[str, Handler] = {
        QueueName.BOOK_GENERATION.value: GenerateBookHandler(supervisor),
        QueueName.CONTENT_GENERATION.value: ContentGenerationHandler(
            projects, content_generator or TemplateContentGenerator()
        ),
        QueueName.DOCUMENT_GENERATION.value: DocumentRenderHandler(projects, storage, asset_source, renderer),
        QueueName.DOCUMENT_TRANSLATION.value: DocumentTranslationHandler(
            projects, storage, asset_source, renderer, translator or NoopTranslator()
        ),
    }
    return PipelineServices(
        config=config,
        database=database,
        job_store=job_store,
        queue=queue,
        projects=projects,
        cache=cache,
        fetcher=fetcher,
        asset_source=asset_source,
        storage=storage,
        supervisor=supervisor,
        handlers=handlers,
    )
