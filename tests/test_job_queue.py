"""
Tests for the durable job queue and job status store.
"""

import time

import pytest

from guidebook_pipeline.exceptions import UpstreamDataMissingError
from guidebook_pipeline.job_queue import NOT_FOUND
from guidebook_pipeline.models import BackoffPolicy, JobOptions, JobState
from guidebook_pipeline.worker import Worker, WorkerPool

QUEUE = "content-generation"


class TestEnqueue:
    """Tests for adding jobs and reading their status."""

    def test_enqueue_returns_waiting_job(self, services):
        """A new job is reported as waiting with zero progress."""
        job_id = services.queue.enqueue(QUEUE, {"project_id": "p1", "number_of_chapters": 3})

        status = services.queue.get_status(job_id)
        assert status.status == "waiting"
        assert status.progress.percent == 0
        assert status.queue_name == QUEUE
        assert status.timestamps.enqueued_at is not None
        assert status.timestamps.started_at is None

    def test_enqueue_uses_queue_defaults(self, services):
        """Priority and attempts come from the queue configuration unless overridden."""
        default_id = services.queue.enqueue(QUEUE, {})
        custom_id = services.queue.enqueue(QUEUE, {}, JobOptions(priority=1, max_attempts=5))

        default_job = services.queue.get_job(default_id)
        custom_job = services.queue.get_job(custom_id)
        assert default_job.priority == 10
        assert default_job.max_attempts == 2
        assert default_job.backoff.type == "exponential"
        assert custom_job.priority == 1
        assert custom_job.max_attempts == 5

    def test_enqueue_unknown_queue_raises(self, services):
        """Only configured queues accept jobs."""
        with pytest.raises(ValueError):
            services.queue.enqueue("no-such-queue", {})

    def test_unknown_job_reports_not_found(self, services):
        """Status lookups never raise for unknown ids."""
        status = services.queue.get_status("missing")
        assert status.status == NOT_FOUND
        assert status.job_id == "missing"


class TestClaim:
    """Tests for delivery order and the concurrency ceiling."""

    def test_lower_priority_number_runs_first(self, services):
        """Jobs are claimed by priority, then in enqueue order."""
        late = services.queue.enqueue(QUEUE, {"n": 1}, JobOptions(priority=10))
        urgent = services.queue.enqueue(QUEUE, {"n": 2}, JobOptions(priority=1))
        later = services.queue.enqueue(QUEUE, {"n": 3}, JobOptions(priority=10))

        order = []
        for _ in range(3):
            job = services.queue.claim(QUEUE)
            order.append(job.id)
            services.queue.complete(job.id, None)

        assert order == [urgent, late, later]

    def test_concurrency_ceiling_blocks_second_claim(self, services):
        """With concurrency 1 a second job is not handed out while one is active."""
        services.queue.enqueue(QUEUE, {"n": 1})
        services.queue.enqueue(QUEUE, {"n": 2})

        first = services.queue.claim(QUEUE)
        assert first is not None
        assert services.queue.claim(QUEUE) is None
        assert services.queue.metrics(QUEUE).active == 1

        services.queue.complete(first.id, {"ok": True})
        second = services.queue.claim(QUEUE)
        assert second is not None
        assert second.id != first.id

    @pytest.mark.parametrize("config_overrides", [{"queues": {QUEUE: {"concurrency": 2}}}])
    def test_configured_ceiling_allows_two(self, services):
        """The ceiling is read from the queue's configuration."""
        for n in range(3):
            services.queue.enqueue(QUEUE, {"n": n})

        assert services.queue.claim(QUEUE) is not None
        assert services.queue.claim(QUEUE) is not None
        assert services.queue.claim(QUEUE) is None

    def test_empty_queue_returns_none(self, services):
        assert services.queue.claim(QUEUE) is None


class TestRetries:
    """Tests for redelivery, backoff and terminal failure."""

    def test_always_failing_job_fails_after_max_attempts(self, services, clock):
        """A job whose handler always raises is delivered exactly max_attempts times."""
        calls = []

        def handler(context):
            calls.append(context.job.attempts_made)
            raise RuntimeError("renderer exploded")

        job_id = services.queue.enqueue(QUEUE, {}, JobOptions(max_attempts=3))
        worker = Worker(services.queue, QUEUE, handler)

        for _ in range(10):
            worker.run_once()
            clock.advance(120)

        status = services.queue.get_status(job_id)
        assert calls == [1, 2, 3]
        assert status.status == "failed"
        assert status.attempts_made == 3
        assert status.failure_reason == "renderer exploded"

    def test_retry_waits_for_backoff(self, services, clock):
        """A failed attempt is not redelivered before its backoff delay elapses."""
        job_id = services.queue.enqueue(
            QUEUE, {}, JobOptions(max_attempts=2, backoff=BackoffPolicy(type="fixed", delay=5.0))
        )
        job = services.queue.claim(QUEUE)

        assert services.queue.fail(job.id, RuntimeError("transient")) == JobState.PENDING
        assert services.queue.get_status(job_id).status == "waiting"
        assert services.queue.claim(QUEUE) is None

        clock.advance(5.0)
        retried = services.queue.claim(QUEUE)
        assert retried.id == job_id
        assert retried.attempts_made == 2

    def test_unrecoverable_error_skips_retries(self, services):
        """Errors marked unrecoverable fail the job on the first attempt."""

        def handler(context):
            raise UpstreamDataMissingError("no source document", stage="translate")

        job_id = services.queue.enqueue(QUEUE, {}, JobOptions(max_attempts=5))
        Worker(services.queue, QUEUE, handler).run_once()

        status = services.queue.get_status(job_id)
        assert status.status == "failed"
        assert status.attempts_made == 1
        assert status.failure_reason == "no source document"

    def test_successful_job_records_result(self, services):
        job_id = services.queue.enqueue(QUEUE, {"value": 21})
        Worker(services.queue, QUEUE, lambda context: {"doubled": context.payload["value"] * 2}).run_once()

        status = services.queue.get_status(job_id)
        assert status.status == "completed"
        assert status.result == {"doubled": 42}
        assert status.progress.percent == 100
        assert status.timestamps.finished_at is not None

    def test_completed_job_is_immutable(self, services):
        """A finished job cannot be failed afterwards."""
        job_id = services.queue.enqueue(QUEUE, {})
        job = services.queue.claim(QUEUE)
        services.queue.complete(job.id, {"done": True})

        services.queue.fail(job_id, RuntimeError("late failure"))
        assert services.queue.get_status(job_id).status == "completed"


class TestProgress:
    """Tests for progress reporting."""

    def test_progress_never_decreases(self, services):
        """A lower progress value does not overwrite a higher one."""
        job_id = services.queue.enqueue(QUEUE, {})
        services.queue.claim(QUEUE)

        observed = []
        for percent in (10, 50, 30, 80, 120):
            services.queue.update_progress(job_id, percent, f"step {percent}")
            observed.append(services.queue.get_status(job_id).progress.percent)

        assert observed == [10, 50, 50, 80, 100]
        assert services.queue.get_status(job_id).progress.current_step == "step 120"

    def test_progress_survives_redelivery(self, services, clock):
        """A retried job keeps the progress reached by its earlier attempt."""
        job_id = services.queue.enqueue(QUEUE, {})
        job = services.queue.claim(QUEUE)
        services.queue.update_progress(job_id, 60)
        services.queue.fail(job.id, RuntimeError("transient"))
        clock.advance(60)

        services.queue.claim(QUEUE)
        services.queue.update_progress(job_id, 10)
        assert services.queue.get_status(job_id).progress.percent == 60


class TestStalledJobs:
    """Tests for recovering jobs whose worker disappeared."""

    def test_stalled_job_is_redelivered(self, services, clock):
        job_id = services.queue.enqueue(QUEUE, {})
        services.queue.claim(QUEUE)

        clock.advance(301)
        again = services.queue.claim(QUEUE)
        # The stalled delivery fails with a backoff, so it is pending, not yet claimable.
        assert again is None
        assert services.queue.get_status(job_id).status == "waiting"

        clock.advance(60)
        again = services.queue.claim(QUEUE)
        assert again.id == job_id
        assert again.attempts_made == 2

    def test_stalled_job_without_attempts_left_fails(self, services, clock):
        job_id = services.queue.enqueue(QUEUE, {}, JobOptions(max_attempts=1))
        services.queue.claim(QUEUE)

        clock.advance(301)
        services.queue.recover_stalled(QUEUE)

        status = services.queue.get_status(job_id)
        assert status.status == "failed"
        assert "stalled" in status.failure_reason

    def test_heartbeat_keeps_job_alive(self, services, clock):
        job_id = services.queue.enqueue(QUEUE, {})
        services.queue.claim(QUEUE)

        clock.advance(200)
        services.queue.update_progress(job_id, 10)
        clock.advance(200)

        assert services.queue.recover_stalled(QUEUE) == 0
        assert services.queue.get_status(job_id).status == "active"


class TestMetricsAndRetention:
    """Tests for queue metrics and completed-job retention."""

    def test_metrics_count_each_state(self, services):
        for n in range(4):
            services.queue.enqueue(QUEUE, {"n": n}, JobOptions(max_attempts=1))

        first = services.queue.claim(QUEUE)
        services.queue.complete(first.id, None)
        second = services.queue.claim(QUEUE)
        services.queue.fail(second.id, RuntimeError("bad"))
        services.queue.claim(QUEUE)

        metrics = services.queue.metrics(QUEUE)
        assert metrics.waiting == 1
        assert metrics.active == 1
        assert metrics.completed == 1
        assert metrics.failed == 1
        assert metrics.total == 4

    def test_metrics_unknown_queue_raises(self, services):
        with pytest.raises(ValueError):
            services.queue.metrics("unknown")

    @pytest.mark.parametrize("config_overrides", [{"queues": {QUEUE: {"remove_on_complete": {"count": 1}}}}])
    def test_completed_jobs_are_pruned_by_count(self, services, clock):
        first_id = services.queue.enqueue(QUEUE, {"n": 1})
        second_id = services.queue.enqueue(QUEUE, {"n": 2})
        for _ in range(2):
            job = services.queue.claim(QUEUE)
            clock.advance(1)
            services.queue.complete(job.id, None)

        assert services.queue.get_status(first_id).status == NOT_FOUND
        assert services.queue.get_status(second_id).status == "completed"

    def test_completed_jobs_are_pruned_by_age(self, services, clock):
        old_id = services.queue.enqueue(QUEUE, {"n": 1})
        job = services.queue.claim(QUEUE)
        services.queue.complete(job.id, None)

        clock.advance(3601)
        services.queue.enqueue(QUEUE, {"n": 2})
        job = services.queue.claim(QUEUE)
        services.queue.complete(job.id, None)

        assert services.queue.get_status(old_id).status == NOT_FOUND


class TestWorkerPool:
    def test_run_until_idle_drains_every_queue(self, services):
        handled = []
        workers = [
            Worker(services.queue, name, lambda context: handled.append(context.job.queue_name))
            for name in ("content-generation", "document-generation")
        ]
        for name in ("content-generation", "content-generation", "document-generation"):
            services.queue.enqueue(name, {})

        processed = WorkerPool(workers).run_until_idle()

        assert processed == 3
        assert sorted(handled) == ["content-generation", "content-generation", "document-generation"]

    def test_threads_process_jobs_until_stopped(self, services):
        job_id = services.queue.enqueue(QUEUE, {"value": 1})
        pool = WorkerPool([Worker(services.queue, QUEUE, lambda context: "done", idle_sleep=0.01)])

        pool.start()
        try:
            deadline = time.monotonic() + 5
            while services.queue.get_status(job_id).status != "completed" and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            pool.stop()

        assert services.queue.get_status(job_id).result == "done"
