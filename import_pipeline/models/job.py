"""
In-memory job and result types shared by the queue, worker and broadcaster.
"""
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from import_pipeline.table_types import CanonicalField, TableType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobEventType(str, Enum):
    ADDED = "added"
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ParsedRow:
    """One data row after alias mapping. row_number is 1-based and counted from the header row."""
    row_number: int
    data: Dict[CanonicalField, str]
    is_valid: bool = True
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ProgressSnapshot:
    current: int = 0
    total: Optional[int] = None
    stage: str = "queued"
    throughput_rps: float = 0.0
    eta_seconds: Optional[int] = None

    def advance(
        self,
        current: int,
        total: Optional[int],
        stage: Optional[str],
        elapsed_seconds: float,
    ) -> "ProgressSnapshot":
        """
        Return the next snapshot.

        current never moves backwards and total is fixed once known.
        Throughput is rows per second since the job started; ETA is the
        remaining rows at that rate, rounded up.
        """
        new_current = max(self.current, current)
        new_total = self.total if self.total is not None else total

        throughput = new_current / elapsed_seconds if elapsed_seconds > 0 else 0.0
        eta = None
        if new_total is not None and throughput > 0:
            eta = math.ceil(max(new_total - new_current, 0) / throughput)

        return replace(
            self,
            current=new_current,
            total=new_total,
            stage=stage or self.stage,
            throughput_rps=round(throughput, 2),
            eta_seconds=eta,
        )

    @property
    def percentage(self) -> Optional[float]:
        if not self.total:
            return None
        return round(self.current / self.total * 100, 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current": self.current,
            "total": self.total,
            "percentage": self.percentage,
            "stage": self.stage,
            "throughput_rps": self.throughput_rps,
            "eta_seconds": self.eta_seconds,
        }


@dataclass(frozen=True)
class RowError:
    row_number: int
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"row_number": self.row_number, "message": self.message}


@dataclass(frozen=True)
class ImportSummary:
    total_records: int
    new_records: int
    updated_records: int
    duplicates_removed: int
    error_records: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_records": self.total_records,
            "new_records": self.new_records,
            "updated_records": self.updated_records,
            "duplicates_removed": self.duplicates_removed,
            "error_records": self.error_records,
        }


@dataclass(frozen=True)
class JobResult:
    """Outcome of a completed job. Immutable once attached to the job."""
    success: int
    failed: int
    errors: Tuple[RowError, ...]
    summary: ImportSummary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "failed": self.failed,
            "errors": [e.to_dict() for e in self.errors],
            "summary": self.summary.to_dict(),
        }


@dataclass
class ImportJob:
    id: str
    idempotency_key: str
    table_type: TableType
    file_name: str
    file_bytes: Optional[bytes]
    additional_data: Optional[Dict[str, Any]] = None
    status: JobStatus = JobStatus.QUEUED
    progress: ProgressSnapshot = field(default_factory=ProgressSnapshot)
    result: Optional[JobResult] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def release_file(self) -> None:
        """Drop the uploaded bytes once they are no longer needed."""
        self.file_bytes = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.id,
            "idempotency_key": self.idempotency_key,
            "table_type": self.table_type.value,
            "file_name": self.file_name,
            "status": self.status.value,
            "progress": self.progress.to_dict(),
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(frozen=True)
class JobEvent:
    """A lifecycle event with the job's state captured at emission time."""
    type: JobEventType
    job_id: str
    status: JobStatus
    snapshot: Dict[str, Any]
    timestamp: datetime = field(default_factory=utcnow)
