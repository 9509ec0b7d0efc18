"""
Queue consumers.

A worker is bound to exactly one queue and runs one job at a time. In
production each worker is its own process (``guidebook-pipeline worker``);
``WorkerPool`` runs one thread per queue for single-process development.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

from .exceptions import QueueUnavailableError
from .job_queue import JobQueue
from .models import Job

logger = logging.getLogger(__name__)


class JobContext:
    """What a handler sees of the job it is running."""

    def __init__(self, job: Job, queue: JobQueue) -> None:
        self.job = job
        self.queue = queue

    @property
    def payload(self) -> Dict[str, Any]:
        return self.job.payload

    def report_progress(self, percent: int, step: Optional[str] = None) -> None:
        self.queue.update_progress(self.job.id, percent, step)


Handler = Callable[[JobContext], Any]


class Worker:
    def __init__(self, queue: JobQueue, queue_name: str, handler: Handler, idle_sleep: float = 1.0) -> None:
        self.queue = queue
        self.queue_name = queue_name
        self.handler = handler
        self.idle_sleep = idle_sleep

    def run_once(self) -> bool:
        """
        Claim and process at most one job.

        Returns:
            True if a job was processed (successfully or not), False if none was available

        Note:
            Handler exceptions are recorded on the job through ``JobQueue.fail``,
            which decides between redelivery and a terminal failure.
        """
        job = self.queue.claim(self.queue_name)
        if job is None:
            return False

        logger.info(f"Worker {self.queue_name} processing job {job.id} ({job.name})")
        context = JobContext(job, self.queue)
        try:
            result = self.handler(context)
        except Exception as exc:
            logger.exception(f"Job {job.id} ({job.name}) raised: {exc}")
            self.queue.fail(job.id, exc)
            return True

        self.queue.complete(job.id, result)
        return True

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info(f"Worker for {self.queue_name} started")
        while not stop_event.is_set():
            try:
                processed = self.run_once()
            except QueueUnavailableError as exc:
                logger.error(f"Queue {self.queue_name} unavailable: {exc}")
                processed = False
            if not processed:
                stop_event.wait(self.idle_sleep)
        logger.info(f"Worker for {self.queue_name} stopped")


class WorkerPool:
    """Runs a set of workers on a thread pool until ``stop`` is called."""

    def __init__(self, workers: List[Worker]) -> None:
        self.workers = workers
        self._stop_event = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures: List[Future] = []

    def start(self) -> None:
        if self._executor is not None:
            return
        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(max_workers=len(self.workers), thread_name_prefix="worker")
        self._futures = [self._executor.submit(worker.run_forever, self._stop_event) for worker in self.workers]

    def stop(self, wait: bool = True) -> None:
        self._stop_event.set()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        for future in self._futures:
            if future.done() and future.exception() is not None:
                logger.error(f"Worker thread ended with an error: {future.exception()}")
        self._futures = []

    def run_until_idle(self, max_rounds: int = 1000) -> int:
        """
        Process jobs on the calling thread until no worker finds anything to do.

        Returns:
            Number of jobs processed
        """
        processed = 0
        for _ in range(max_rounds):
            round_processed = sum(1 for worker in self.workers if worker.run_once())
            processed += round_processed
            if round_processed == 0:
                break
        return processed

    def wait(self, poll: float = 0.5) -> None:
        """Block until interrupted; used by the CLI."""
        try:
            while not self._stop_event.is_set():
                time.sleep(poll)
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping workers")
        finally:
            self.stop()
