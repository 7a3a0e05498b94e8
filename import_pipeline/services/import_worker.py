"""
End-to-end processing of one import job: parse, stage, validate, upsert, clean up.
"""
from typing import Optional

import structlog

from import_pipeline.exceptions import NoDataError
from import_pipeline.models.job import ImportJob, ImportSummary, JobResult
from import_pipeline.services.bulk_operations import BulkLoader, Deadline
from import_pipeline.services.job_queue import ProgressReporter
from import_pipeline.services.streaming_parser import StreamingParser
from import_pipeline.table_types import get_table_spec

logger = structlog.get_logger(__name__)


class ImportWorker:
    """
    Job processor handed to the JobQueue.

    Args:
        loader: BulkLoader bound to the import database
        timeout_seconds: Wall-clock limit per job (None disables it)
    """

    def __init__(self, loader: BulkLoader, timeout_seconds: Optional[float] = None):
        self.loader = loader
        self.timeout_seconds = timeout_seconds

    def __call__(self, job: ImportJob, report: ProgressReporter) -> JobResult:
        return self.process(job, report)

    def process(self, job: ImportJob, report: ProgressReporter) -> JobResult:
        """
        Run the pipeline for one job.

        Staging rows for the job are removed whether the job succeeds or not.

        Raises:
            FileParseError: File could not be decoded or has no header
            NoDataError: The file has a header but no data rows
            StagingError, UpsertError, JobTimeoutError: Propagated from the loader
        """
        spec = get_table_spec(job.table_type)
        deadline = Deadline(job.id, self.timeout_seconds)
        log = logger.bind(job_id=job.id, table_type=spec.table_type.value)

        if job.file_bytes is None:
            raise NoDataError("Uploaded file is no longer available")

        parser = StreamingParser(job.file_bytes, job.file_name, spec.table_type)
        try:
            report(0, None, "parsing")
            loaded = self.loader.stage(job.id, spec, parser.parse(), progress=report, deadline=deadline)
            # Parsing is done; the bytes are not needed again
            parser.close()
            job.release_file()
            if loaded.total_rows == 0:
                raise NoDataError("No valid data found in file")
            log.info(
                "job_rows_staged",
                rows=loaded.loaded,
                strategy=loaded.strategy,
                throughput_rps=round(loaded.throughput_rps),
            )

            report(loaded.total_rows, loaded.total_rows, "validating")
            self.loader.resolve_parents(job.id, spec, job.additional_data, deadline=deadline)
            validation = self.loader.validate(job.id, spec, deadline=deadline)

            report(loaded.total_rows, loaded.total_rows, "upserting")
            upsert = self.loader.atomic_upsert(job.id, spec, deadline=deadline)
        finally:
            parser.close()
            try:
                self.loader.cleanup(job.id, spec)
            except Exception as e:
                log.error("staging_cleanup_failed", error=str(e), error_type=type(e).__name__)

        report(loaded.total_rows, loaded.total_rows, "completed")
        success = upsert.inserted + upsert.updated
        return JobResult(
            success=success,
            failed=validation.invalid,
            errors=tuple(validation.errors),
            summary=ImportSummary(
                total_records=loaded.total_rows,
                new_records=upsert.inserted,
                updated_records=upsert.updated,
                duplicates_removed=upsert.duplicates_removed,
                error_records=validation.invalid,
            ),
        )
