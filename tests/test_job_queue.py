"""
Tests for the in-process job queue.

Uses stub processors so queue behaviour is tested without a database.
"""

import threading
import time
from datetime import timedelta

import pytest

from import_pipeline.exceptions import FileParseError
from import_pipeline.models.job import (
    ImportSummary, JobEventType, JobResult, JobStatus, ProgressSnapshot, utcnow,
)
from import_pipeline.services.job_queue import JobQueue
from import_pipeline.table_types import TableType


def make_result(success=1, failed=0):
    return JobResult(
        success=success,
        failed=failed,
        errors=(),
        summary=ImportSummary(
            total_records=success + failed,
            new_records=success,
            updated_records=0,
            duplicates_removed=0,
            error_records=failed,
        ),
    )


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class BlockingProcessor:
    """Processor that holds each job until released."""

    def __init__(self):
        self.release = threading.Event()
        self.started = []

    def __call__(self, job, report):
        self.started.append(job.id)
        self.release.wait(5)
        return make_result()


@pytest.fixture
def blocking():
    return BlockingProcessor()


@pytest.fixture
def queue(blocking):
    job_queue = JobQueue(blocking, max_concurrent_jobs=1)
    yield job_queue
    blocking.release.set()
    job_queue.shutdown(wait=True, timeout=5)


def add(queue, key=None, name="items.csv"):
    return queue.add_job(TableType.REFERENCE_SHEET, name, b"Kode Item,Nama Item\n", idempotency_key=key)


class TestSubmission:
    """Tests for add_job() and idempotency."""

    def test_new_job_is_queued(self, queue):
        job_id = add(queue)

        status = queue.get_status(job_id)
        assert status["status"] == "queued"
        assert status["progress"]["current"] == 0

    def test_same_key_returns_existing_job(self, queue):
        first = add(queue, key="upload-1")
        second = add(queue, key="upload-1")

        assert first == second
        assert len(queue.list_jobs()) == 1

    def test_key_reusable_after_job_finishes(self, queue, blocking):
        queue.start()
        first = add(queue, key="upload-1")
        blocking.release.set()
        assert wait_until(lambda: queue.get_status(first)["status"] == "completed")

        second = add(queue, key="upload-1")

        assert second != first

    def test_default_keys_do_not_collide(self, queue):
        assert add(queue) != add(queue)

    def test_list_jobs_newest_first(self, queue):
        first = add(queue, name="a.csv")
        time.sleep(0.01)
        second = add(queue, name="b.csv")

        assert [j["job_id"] for j in queue.list_jobs()] == [second, first]


class TestProcessing:
    """Tests for the worker pool and state transitions."""

    def test_jobs_run_in_fifo_order(self, queue, blocking):
        ids = [add(queue, name=f"{n}.csv") for n in range(3)]
        blocking.release.set()
        queue.start()

        assert wait_until(lambda: all(queue.get_status(i)["status"] == "completed" for i in ids))
        assert blocking.started == ids

    def test_completed_job_has_result_and_no_bytes(self, queue, blocking):
        queue.start()
        job_id = add(queue)
        blocking.release.set()

        assert wait_until(lambda: queue.get_status(job_id)["status"] == "completed")
        job = queue.get_job(job_id)
        assert job.result.success == 1
        assert job.file_bytes is None
        assert job.completed_at is not None

    def test_pipeline_error_fails_job(self):
        def processor(job, report):
            raise FileParseError("Invalid Excel file format")

        job_queue = JobQueue(processor, max_concurrent_jobs=1)
        job_queue.start()
        try:
            job_id = add(job_queue)
            assert wait_until(lambda: job_queue.get_status(job_id)["status"] == "failed")
            assert job_queue.get_status(job_id)["error"] == "Invalid Excel file format"
        finally:
            job_queue.shutdown()

    def test_unexpected_error_fails_job(self):
        def processor(job, report):
            raise RuntimeError("boom")

        job_queue = JobQueue(processor, max_concurrent_jobs=1)
        job_queue.start()
        try:
            job_id = add(job_queue)
            assert wait_until(lambda: job_queue.get_status(job_id)["status"] == "failed")
            assert "boom" in job_queue.get_status(job_id)["error"]
        finally:
            job_queue.shutdown()

    def test_concurrency_limit(self, blocking):
        job_queue = JobQueue(blocking, max_concurrent_jobs=2)
        job_queue.start()
        try:
            ids = [add(job_queue, name=f"{n}.csv") for n in range(3)]
            assert wait_until(lambda: len(blocking.started) == 2)
            time.sleep(0.05)
            assert len(blocking.started) == 2
            assert job_queue.active_count() == 2
            assert job_queue.get_status(ids[2])["status"] == "queued"
        finally:
            blocking.release.set()
            job_queue.shutdown()

    def test_invalid_pool_size(self, blocking):
        with pytest.raises(ValueError):
            JobQueue(blocking, max_concurrent_jobs=0)


class TestCancellation:
    """Tests for cancel_job()."""

    def test_cancel_queued_job(self, queue):
        job_id = add(queue)

        assert queue.cancel_job(job_id) is True
        status = queue.get_status(job_id)
        assert status["status"] == "cancelled"
        assert queue.queue_depth() == 0
        assert queue.get_job(job_id).file_bytes is None

    def test_cancelled_job_never_runs(self, queue, blocking):
        job_id = add(queue)
        queue.cancel_job(job_id)
        blocking.release.set()
        queue.start()
        other = add(queue)

        assert wait_until(lambda: queue.get_status(other)["status"] == "completed")
        assert job_id not in blocking.started

    def test_cannot_cancel_processing_job(self, queue, blocking):
        queue.start()
        job_id = add(queue)
        assert wait_until(lambda: queue.get_status(job_id)["status"] == "processing")

        assert queue.cancel_job(job_id) is False
        assert queue.get_status(job_id)["status"] == "processing"

    def test_cancel_unknown_job(self, queue):
        assert queue.cancel_job("missing") is False


class TestProgress:
    """Tests for update_progress() and ProgressSnapshot."""

    def test_progress_never_goes_backwards(self, queue, blocking):
        queue.start()
        job_id = add(queue)
        assert wait_until(lambda: queue.get_status(job_id)["status"] == "processing")

        queue.update_progress(job_id, 500, 1000, "parsing")
        queue.update_progress(job_id, 200, 5000, "staging")

        progress = queue.get_status(job_id)["progress"]
        assert progress["current"] == 500
        assert progress["total"] == 1000
        assert progress["stage"] == "staging"

    def test_progress_ignored_for_queued_job(self, queue):
        job_id = add(queue)

        queue.update_progress(job_id, 10, 100, "parsing")

        assert queue.get_status(job_id)["progress"]["current"] == 0

    def test_snapshot_eta(self):
        snapshot = ProgressSnapshot().advance(current=250, total=1000, stage="staging", elapsed_seconds=2.0)

        assert snapshot.throughput_rps == 125.0
        assert snapshot.eta_seconds == 6
        assert snapshot.percentage == 25.0

    def test_snapshot_without_total(self):
        snapshot = ProgressSnapshot().advance(current=10, total=None, stage="parsing", elapsed_seconds=1.0)

        assert snapshot.total is None
        assert snapshot.eta_seconds is None
        assert snapshot.percentage is None


class TestEventsAndCleanup:
    """Tests for listener events and retention cleanup."""

    def test_lifecycle_events(self, queue, blocking):
        events = []
        queue.add_listener(lambda e: events.append(e.type))
        queue.start()
        add(queue)
        blocking.release.set()

        assert wait_until(lambda: events and events[-1] == JobEventType.COMPLETED)
        assert events[0] == JobEventType.ADDED
        assert events[1] == JobEventType.STARTED
        assert events[-1] == JobEventType.COMPLETED

    def test_added_reaches_slow_listener_before_started(self, queue, blocking):
        """Workers only see a job after every listener has been told it exists."""
        events = []

        def slow_listener(event):
            if event.type == JobEventType.ADDED:
                time.sleep(0.05)
            events.append(event.type)

        queue.add_listener(slow_listener)
        queue.start()
        add(queue)

        assert wait_until(lambda: len(events) >= 2)
        assert events[:2] == [JobEventType.ADDED, JobEventType.STARTED]

    def test_job_cancelled_by_listener_never_runs(self, queue, blocking):
        queue.add_listener(
            lambda e: queue.cancel_job(e.job_id) if e.type == JobEventType.ADDED else None
        )
        queue.start()
        job_id = add(queue)
        time.sleep(0.1)

        assert queue.get_status(job_id)["status"] == "cancelled"
        assert queue.queue_depth() == 0
        assert blocking.started == []

    def test_failing_listener_does_not_break_queue(self, queue):
        def broken(event):
            raise RuntimeError("listener down")

        queue.add_listener(broken)
        job_id = add(queue)

        assert queue.get_status(job_id)["status"] == "queued"

    def test_cleanup_purges_old_terminal_jobs(self, queue):
        old = add(queue, key="old")
        queue.cancel_job(old)
        active = add(queue, key="active")

        purged = queue.cleanup(now=utcnow() + timedelta(hours=25))

        assert purged == 1
        assert queue.get_job(old) is None
        assert queue.get_job(active) is not None
        assert queue.get_job(active).status == JobStatus.QUEUED

    def test_cleanup_keeps_recent_jobs(self, queue):
        job_id = add(queue)
        queue.cancel_job(job_id)

        assert queue.cleanup() == 0
        assert queue.get_job(job_id) is not None
