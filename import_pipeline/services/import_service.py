"""
In-process entry point for the import pipeline.

Wires the bulk loader, worker, job queue and progress broadcaster together
and validates submissions before any job is created.
"""
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from import_pipeline.config import Settings
from import_pipeline.exceptions import (
    EmptyFileError, FileTooLargeError, UnknownTableTypeError, UnsupportedFileTypeError,
)
from import_pipeline.services.bulk_operations import BulkLoader
from import_pipeline.services.import_worker import ImportWorker
from import_pipeline.services.job_queue import JobQueue
from import_pipeline.services.progress_broadcaster import ProgressBroadcaster, Subscription
from import_pipeline.services.streaming_parser import SUPPORTED_EXTENSIONS, file_extension
from import_pipeline.table_types import TableType, supported_table_types

logger = structlog.get_logger(__name__)


class ImportService:
    """
    Submit, track, observe and cancel import jobs.

    Args:
        session_factory: sessionmaker bound to the import database
        settings: Runtime settings; defaults apply when omitted
    """

    def __init__(self, session_factory: sessionmaker, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.session_factory = session_factory

        loader = BulkLoader(
            session_factory,
            batch_size=self.settings.staging_batch_size,
            progress_interval=self.settings.progress_interval,
        )
        self.worker = ImportWorker(loader, timeout_seconds=self.settings.job_timeout_seconds)
        self.queue = JobQueue(
            self.worker,
            max_concurrent_jobs=self.settings.max_concurrent_jobs,
            retention_hours=self.settings.job_retention_hours,
            cleanup_interval_seconds=self.settings.cleanup_interval_seconds,
        )
        self.broadcaster = ProgressBroadcaster(
            self.queue.get_status,
            heartbeat_seconds=self.settings.heartbeat_seconds,
            completed_grace_seconds=self.settings.completed_grace_seconds,
            failed_grace_seconds=self.settings.failed_grace_seconds,
        )
        self.queue.add_listener(self.broadcaster.handle_event)

    def start(self) -> None:
        self.queue.start()

    def shutdown(self, wait: bool = True) -> None:
        self.queue.shutdown(wait=wait)

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    def submit_import(
        self,
        table_type: str,
        file_name: str,
        file_bytes: bytes,
        idempotency_key: Optional[str] = None,
        additional_data: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Validate a submission and queue it.

        Returns:
            The new job's id, or the id of the in-flight job with the same
            idempotency key

        Raises:
            UnknownTableTypeError, UnsupportedFileTypeError, EmptyFileError,
            FileTooLargeError: The submission is rejected and no job exists
        """
        try:
            resolved = TableType(table_type)
        except ValueError:
            raise UnknownTableTypeError(table_type, supported_table_types())

        if file_extension(file_name) not in SUPPORTED_EXTENSIONS:
            raise UnsupportedFileTypeError(file_name, SUPPORTED_EXTENSIONS)

        if not file_bytes:
            raise EmptyFileError(file_name)

        if len(file_bytes) > self.settings.max_file_size_bytes:
            raise FileTooLargeError(len(file_bytes), self.settings.max_file_size_bytes)

        return self.queue.add_job(
            resolved,
            file_name,
            file_bytes,
            idempotency_key=idempotency_key,
            additional_data=additional_data,
        )

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self.queue.get_status(job_id)

    def list_jobs(self) -> List[Dict[str, Any]]:
        return self.queue.list_jobs()

    def subscribe_to_job(self, job_id: str) -> Optional[Subscription]:
        """Open a progress channel, or None if the job is unknown. Call from an event loop."""
        if self.queue.get_job(job_id) is None:
            return None
        return self.broadcaster.subscribe(job_id)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.broadcaster.unsubscribe(subscription)

    def cancel_job(self, job_id: str) -> bool:
        return self.queue.cancel_job(job_id)

    def health(self) -> Dict[str, Any]:
        database = "connected"
        try:
            with self.session_factory() as db:
                db.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning("health_check_database_failed", error=str(e))
            database = "unavailable"

        return {
            "status": "healthy" if database == "connected" else "degraded",
            "database": database,
            "queued_jobs": self.queue.queue_depth(),
            "active_jobs": self.queue.active_count(),
            "sse_connections": self.broadcaster.connection_count(),
        }
