"""
Prioritized, durable work queues on top of the job status store.

Delivery is at-least-once: a job is redelivered when its worker raises (up to
``max_attempts``) or when its worker stops heart-beating. Each queue has a
strict concurrency ceiling taken from configuration, default 1, because a
single unit of work may hold a whole rendered document in memory.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from datetime import timedelta
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from omegaconf import DictConfig, OmegaConf

from .configuration import queue_settings
from .database import datetime_from_epoch
from .exceptions import QueueUnavailableError, UnrecoverableJobError
from .job_store import JobStatusStore
from .models import (
    BackoffPolicy,
    Job,
    JobOptions,
    JobState,
    JobStatusResponse,
    QueueMetrics,
)

logger = logging.getLogger(__name__)

NOT_FOUND = "not_found"


class JobQueue:
    """
    Queue facade used by producers (supervisor, HTTP layer) and consumers (workers).

    Attributes:
        store: Durable job records
        config: Runtime configuration; ``queues.<name>`` holds per-queue defaults
        clock: Epoch-seconds time source, injectable for tests
    """

    def __init__(
        self,
        store: JobStatusStore,
        config: DictConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.config = config
        self.clock = clock
        self.stalled_after = float(config.worker.stalled_after)

    @property
    def queue_names(self) -> list[str]:
        return list(self.config.queues.keys())

    def _settings(self, queue_name: str) -> DictConfig:
        return queue_settings(self.config, queue_name)

    def enqueue(
        self,
        queue_name: str,
        payload: Dict[str, Any],
        options: Optional[JobOptions] = None,
        name: Optional[str] = None,
    ) -> str:
        """
        Add a job to a queue without waiting for it to be consumed.

        Args:
            queue_name: Target queue; must be configured
            payload: JSON-serializable job payload
            options: Priority, attempt and backoff overrides for this job
            name: Job name for logs, defaults to the queue name

        Returns:
            The new job id

        Raises:
            ValueError: If the queue is not configured
            QueueUnavailableError: If the job could not be stored
        """
        settings = self._settings(queue_name)
        options = options or JobOptions()
        backoff = options.backoff or BackoffPolicy.model_validate(OmegaConf.to_container(settings.backoff, resolve=True))
        now = self.clock()
        job = Job(
            id=uuid4().hex,
            queue_name=queue_name,
            name=name or queue_name,
            payload=payload,
            status=JobState.PENDING,
            priority=options.priority if options.priority is not None else int(settings.priority),
            max_attempts=options.max_attempts or int(settings.max_attempts),
            backoff=backoff,
            available_at=now,
            enqueued_at=datetime_from_epoch(now),
        )
        try:
            self.store.insert(job)
        except sqlite3.Error as exc:
            raise QueueUnavailableError(f"Failed to enqueue {job.name} on {queue_name}: {exc}") from exc
        logger.info(f"Enqueued job {job.id} ({job.name}) on {queue_name}")
        return job.id

    def get_status(self, job_id: str) -> JobStatusResponse:
        """Return the externally visible status of a job; unknown ids report ``not_found``."""
        try:
            job = self.store.get(job_id)
        except sqlite3.Error as exc:
            logger.warning(f"Status lookup for job {job_id} failed: {exc}")
            job = None
        if job is None:
            return JobStatusResponse(job_id=job_id, status=NOT_FOUND)
        return job.to_status()

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.store.get(job_id)

    def metrics(self, queue_name: str) -> QueueMetrics:
        self._settings(queue_name)
        counts = self.store.count_by_status(queue_name)
        return QueueMetrics(
            queue_name=queue_name,
            waiting=counts[JobState.PENDING.value],
            active=counts[JobState.ACTIVE.value],
            completed=counts[JobState.COMPLETED.value],
            failed=counts[JobState.FAILED.value],
            total=sum(counts.values()),
        )

    def claim(self, queue_name: str) -> Optional[Job]:
        """
        Take the next job for a worker, honouring the queue's concurrency ceiling.

        Stalled jobs are recovered first so that a crashed worker does not
        hold the ceiling forever.
        """
        settings = self._settings(queue_name)
        self.recover_stalled(queue_name)
        now = self.clock()
        job = self.store.claim_next(
            queue_name,
            concurrency=int(settings.concurrency),
            now=now,
            started_at=datetime_from_epoch(now),
        )
        if job:
            logger.info(f"Claimed job {job.id} ({job.name}) attempt {job.attempts_made}/{job.max_attempts}")
        return job

    def update_progress(self, job_id: str, percent: int, step: Optional[str] = None) -> None:
        percent = max(0, min(100, int(percent)))
        self.store.update_progress(job_id, percent, step, self.clock())

    def complete(self, job_id: str, result: Any = None) -> None:
        now = self.clock()
        job = self.store.get(job_id)
        if not self.store.mark_completed(job_id, result, datetime_from_epoch(now)):
            logger.warning(f"Job {job_id} was not active; completion ignored")
            return
        logger.info(f"Job {job_id} completed")
        if job:
            self._apply_retention(job.queue_name, now)

    def fail(self, job_id: str, error: BaseException | str, retryable: bool = True) -> JobState:
        """
        Record a failed delivery.

        Args:
            job_id: The job whose handler raised
            error: The exception or message; stored verbatim as the failure reason
            retryable: False forces the job straight to ``failed``

        Returns:
            ``pending`` if the job was scheduled for redelivery, ``failed`` otherwise
        """
        reason = str(error)
        if isinstance(error, UnrecoverableJobError):
            retryable = False
        job = self.store.get(job_id)
        if job is None:
            logger.warning(f"Cannot fail unknown job {job_id}")
            return JobState.FAILED
        if job.status.is_terminal:
            logger.warning(f"Job {job_id} is already {job.status.value}; failure ignored")
            return job.status

        now = self.clock()
        if retryable and job.attempts_made < job.max_attempts:
            delay = job.backoff.delay_for(job.attempts_made)
            self.store.schedule_retry(job_id, reason, now + delay)
            logger.warning(
                f"Job {job_id} attempt {job.attempts_made}/{job.max_attempts} failed: {reason}; retrying in {delay:g}s"
            )
            return JobState.PENDING

        self.store.mark_failed(job_id, reason, datetime_from_epoch(now))
        logger.error(f"Job {job_id} failed after {job.attempts_made} attempt(s): {reason}")
        return JobState.FAILED

    def recover_stalled(self, queue_name: str) -> int:
        """Redeliver (or fail, once attempts are spent) active jobs whose heartbeat is too old."""
        cutoff = self.clock() - self.stalled_after
        recovered = 0
        for job in self.store.list_stalled(queue_name, cutoff):
            logger.warning(f"Job {job.id} on {queue_name} stalled; recovering")
            self.fail(job.id, "job stalled: worker stopped reporting")
            recovered += 1
        return recovered

    def _apply_retention(self, queue_name: str, now: float) -> None:
        retention = self._settings(queue_name).remove_on_complete
        finished_before = datetime_from_epoch(now) - timedelta(seconds=float(retention.age))
        removed = self.store.prune_completed(queue_name, finished_before, int(retention.count))
        if removed:
            logger.debug(f"Pruned {removed} completed job(s) from {queue_name}")
