"""
Exception hierarchy for the import pipeline.

Submission errors are raised synchronously to the caller and no job is
created. Everything else is raised inside a worker, recorded on the job
and surfaced only through status queries and progress subscriptions.
"""
from typing import Iterable


class ImportPipelineError(Exception):
    """Base class for all import pipeline errors."""
    pass


# =============================================================================
# SUBMISSION ERRORS (synchronous, no job created)
# =============================================================================

class SubmissionError(ImportPipelineError):
    """Raised when an import request is rejected before a job is created."""
    status_code = 400


class EmptyFileError(SubmissionError):
    def __init__(self, file_name: str = ""):
        super().__init__(f"No data found in file{f' {file_name!r}' if file_name else ''}: the file is empty")


class UnsupportedFileTypeError(SubmissionError):
    def __init__(self, file_name: str, allowed: Iterable[str]):
        super().__init__(
            f"Unsupported file type for {file_name!r}. "
            f"Allowed extensions: {', '.join(sorted(allowed))}"
        )


class FileTooLargeError(SubmissionError):
    status_code = 413

    def __init__(self, size: int, limit: int):
        super().__init__(
            f"File is too large ({size} bytes). Maximum allowed size is {limit} bytes"
        )


class UnknownTableTypeError(SubmissionError):
    def __init__(self, table_type: str, supported: Iterable[str]):
        super().__init__(
            f"Unsupported table type {table_type!r}. Supported: {', '.join(supported)}"
        )


# =============================================================================
# PIPELINE ERRORS (recorded on the job)
# =============================================================================

class FileParseError(ImportPipelineError):
    """The file could not be decoded as CSV or as a workbook."""
    pass


class HeaderNotFoundError(FileParseError):
    def __init__(self, table_type: str, expected: Iterable[str], scanned_rows: int):
        self.expected = list(expected)
        super().__init__(
            f"Header row not found in the first {scanned_rows} rows for {table_type}. "
            f"Expected at least two of these columns: {', '.join(self.expected)}"
        )


class NoDataError(ImportPipelineError):
    """The file parsed but contained no data rows after the header."""
    pass


class StagingError(ImportPipelineError):
    """Both staging strategies failed."""
    pass


class UpsertError(ImportPipelineError):
    """The atomic upsert failed and was rolled back."""
    pass


class JobTimeoutError(ImportPipelineError):
    def __init__(self, job_id: str, timeout_seconds: float):
        super().__init__(f"Import job {job_id} exceeded the time limit of {timeout_seconds:.0f} seconds")
