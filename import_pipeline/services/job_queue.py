"""
In-process job queue for import jobs.

A fixed pool of worker threads drains a FIFO of queued jobs, one job per
worker at a time. Job state lives in memory; lifecycle changes are
published to listeners (the progress broadcaster) as JobEvents.
"""
import threading
import time
import uuid
from collections import deque
from datetime import timedelta
from typing import Any, Callable, Deque, Dict, List, Optional

import structlog

from import_pipeline.exceptions import ImportPipelineError
from import_pipeline.models.job import (
    ImportJob, JobEvent, JobEventType, JobResult, JobStatus, utcnow,
)
from import_pipeline.table_types import TableType

logger = structlog.get_logger(__name__)

MAX_CONCURRENT_JOBS = 2
JOB_RETENTION_HOURS = 24.0
CLEANUP_INTERVAL_SECONDS = 3600.0

ProgressReporter = Callable[[int, Optional[int], Optional[str]], None]
JobProcessor = Callable[[ImportJob, ProgressReporter], JobResult]
JobListener = Callable[[JobEvent], None]


class JobQueue:
    """
    FIFO job queue with a fixed worker pool.

    Args:
        processor: Called on a worker thread with the job and a progress
            reporter; returns the JobResult or raises
        max_concurrent_jobs: Number of worker threads
        retention_hours: How long terminal jobs stay queryable
        cleanup_interval_seconds: How often the sweeper purges old jobs
    """

    def __init__(
        self,
        processor: JobProcessor,
        max_concurrent_jobs: int = MAX_CONCURRENT_JOBS,
        retention_hours: float = JOB_RETENTION_HOURS,
        cleanup_interval_seconds: float = CLEANUP_INTERVAL_SECONDS,
    ):
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")

        self.processor = processor
        self.max_concurrent_jobs = max_concurrent_jobs
        self.retention = timedelta(hours=retention_hours)
        self.cleanup_interval_seconds = cleanup_interval_seconds

        self._jobs: Dict[str, ImportJob] = {}
        self._keys: Dict[str, str] = {}
        self._pending: Deque[str] = deque()
        self._active = 0
        self._condition = threading.Condition()
        self._listeners: List[JobListener] = []

        self._workers: List[threading.Thread] = []
        self._sweeper: Optional[threading.Thread] = None
        self._stopping = threading.Event()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        if self._workers:
            return
        self._stopping.clear()
        for n in range(self.max_concurrent_jobs):
            worker = threading.Thread(target=self._worker_loop, name=f"import-worker-{n + 1}", daemon=True)
            worker.start()
            self._workers.append(worker)
        self._sweeper = threading.Thread(target=self._sweep_loop, name="import-job-sweeper", daemon=True)
        self._sweeper.start()
        logger.info("job_queue_started", workers=self.max_concurrent_jobs)

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Stop taking new jobs from the queue. Running jobs finish first when wait is set."""
        self._stopping.set()
        with self._condition:
            self._condition.notify_all()
        if wait:
            for worker in self._workers:
                worker.join(timeout)
            if self._sweeper is not None:
                self._sweeper.join(timeout)
        self._workers = []
        self._sweeper = None
        logger.info("job_queue_stopped")

    def add_listener(self, listener: JobListener) -> None:
        self._listeners.append(listener)

    # =========================================================================
    # SUBMISSION AND QUERIES
    # =========================================================================

    def add_job(
        self,
        table_type: TableType,
        file_name: str,
        file_bytes: bytes,
        idempotency_key: Optional[str] = None,
        additional_data: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Queue a job and return its id.

        A key that matches a job which is still queued or processing returns
        that job's id and queues nothing.

        Listeners receive ADDED before the job is handed to the workers, so
        it always precedes STARTED.
        """
        key = idempotency_key or f"{table_type.value}_{file_name}_{time.monotonic_ns()}"

        with self._condition:
            existing_id = self._keys.get(key)
            if existing_id is not None:
                existing = self._jobs.get(existing_id)
                if existing is not None and not existing.status.is_terminal:
                    logger.info("job_deduplicated", job_id=existing_id, idempotency_key=key)
                    return existing_id

            job = ImportJob(
                id=str(uuid.uuid4()),
                idempotency_key=key,
                table_type=table_type,
                file_name=file_name,
                file_bytes=file_bytes,
                additional_data=additional_data,
            )
            self._jobs[job.id] = job
            self._keys[key] = job.id
            event = self._event(JobEventType.ADDED, job)

        logger.info(
            "job_queued",
            job_id=job.id,
            table_type=table_type.value,
            file_name=file_name,
            size_bytes=len(file_bytes),
        )
        self._emit(event)

        with self._condition:
            # Cancelled while listeners were being told
            if job.status == JobStatus.QUEUED:
                self._pending.append(job.id)
                self._condition.notify()
        return job.id

    def get_job(self, job_id: str) -> Optional[ImportJob]:
        with self._condition:
            return self._jobs.get(job_id)

    def get_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._condition:
            job = self._jobs.get(job_id)
            return job.to_dict() if job else None

    def list_jobs(self) -> List[Dict[str, Any]]:
        """All retained jobs, newest first."""
        with self._condition:
            jobs = sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)
            return [job.to_dict() for job in jobs]

    def queue_depth(self) -> int:
        with self._condition:
            return len(self._pending)

    def active_count(self) -> int:
        with self._condition:
            return self._active

    # =========================================================================
    # STATE TRANSITIONS
    # =========================================================================

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a queued job. Jobs that have started cannot be cancelled."""
        with self._condition:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.QUEUED:
                return False
            job.status = JobStatus.CANCELLED
            job.completed_at = utcnow()
            job.release_file()
            try:
                self._pending.remove(job_id)
            except ValueError:
                pass
            event = self._event(JobEventType.CANCELLED, job)

        logger.info("job_cancelled", job_id=job_id)
        self._emit(event)
        return True

    def update_progress(
        self,
        job_id: str,
        current: int,
        total: Optional[int] = None,
        stage: Optional[str] = None,
    ) -> None:
        with self._condition:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return
            started = job.started_at or job.created_at
            elapsed = (utcnow() - started).total_seconds()
            job.progress = job.progress.advance(current, total, stage, elapsed)
            event = self._event(JobEventType.PROGRESS, job)
        self._emit(event)

    def complete_job(self, job_id: str, result: JobResult) -> bool:
        with self._condition:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return False
            job.status = JobStatus.COMPLETED
            job.result = result
            job.completed_at = utcnow()
            job.release_file()
            event = self._event(JobEventType.COMPLETED, job)

        logger.info(
            "job_completed",
            job_id=job_id,
            success=result.success,
            failed=result.failed,
            new_records=result.summary.new_records,
            updated_records=result.summary.updated_records,
        )
        self._emit(event)
        return True

    def fail_job(self, job_id: str, error: str) -> bool:
        with self._condition:
            job = self._jobs.get(job_id)
            if job is None or job.status.is_terminal:
                return False
            job.status = JobStatus.FAILED
            job.error = error
            job.completed_at = utcnow()
            job.release_file()
            event = self._event(JobEventType.FAILED, job)

        logger.warning("job_failed", job_id=job_id, error=error)
        self._emit(event)
        return True

    def cleanup(self, now=None) -> int:
        """Purge terminal jobs older than the retention window. Returns the number purged."""
        cutoff = (now or utcnow()) - self.retention
        with self._condition:
            expired = [
                job_id for job_id, job in self._jobs.items()
                if job.status.is_terminal and (job.completed_at or job.created_at) < cutoff
            ]
            for job_id in expired:
                job = self._jobs.pop(job_id)
                if self._keys.get(job.idempotency_key) == job_id:
                    del self._keys[job.idempotency_key]

        if expired:
            logger.info("jobs_purged", count=len(expired))
        return len(expired)

    # =========================================================================
    # WORKERS
    # =========================================================================

    def _worker_loop(self) -> None:
        while True:
            with self._condition:
                while not self._pending and not self._stopping.is_set():
                    self._condition.wait()
                if self._stopping.is_set():
                    return
                job_id = self._pending.popleft()
                job = self._jobs.get(job_id)
                if job is None or job.status != JobStatus.QUEUED:
                    continue
                job.status = JobStatus.PROCESSING
                job.started_at = utcnow()
                job.progress = job.progress.advance(0, None, "processing", 0)
                self._active += 1
                event = self._event(JobEventType.STARTED, job)

            self._emit(event)
            try:
                self._run(job)
            finally:
                with self._condition:
                    self._active -= 1

    def _run(self, job: ImportJob) -> None:
        log = logger.bind(job_id=job.id, table_type=job.table_type.value)
        log.info("job_started", file_name=job.file_name)

        def report(current: int, total: Optional[int] = None, stage: Optional[str] = None) -> None:
            self.update_progress(job.id, current, total, stage)

        try:
            result = self.processor(job, report)
        except ImportPipelineError as e:
            log.warning("job_processing_error", error=str(e), error_type=type(e).__name__)
            self.fail_job(job.id, str(e))
        except Exception as e:
            log.exception("job_unexpected_error", error_type=type(e).__name__)
            self.fail_job(job.id, f"Unexpected error: {type(e).__name__}: {e}")
        else:
            self.complete_job(job.id, result)

    def _sweep_loop(self) -> None:
        while not self._stopping.wait(self.cleanup_interval_seconds):
            self.cleanup()

    # =========================================================================
    # EVENTS
    # =========================================================================

    @staticmethod
    def _event(event_type: JobEventType, job: ImportJob) -> JobEvent:
        return JobEvent(type=event_type, job_id=job.id, status=job.status, snapshot=job.to_dict())

    def _emit(self, event: JobEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(
                    "job_listener_failed",
                    job_id=event.job_id,
                    event=event.type.value,
                    error=str(e),
                )
