"""
Pydantic schemas for request/response validation
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

# Response Schemas

class ImportAccepted(BaseModel):
    job_id: str = Field(..., description="Identifier of the queued (or already running) job")


class ProgressSchema(BaseModel):
    current: int
    total: Optional[int] = None
    percentage: Optional[float] = None
    stage: str
    throughput_rps: float
    eta_seconds: Optional[int] = None


class RowErrorSchema(BaseModel):
    row_number: int
    message: str


class ImportSummarySchema(BaseModel):
    total_records: int
    new_records: int
    updated_records: int
    duplicates_removed: int
    error_records: int


class JobResultSchema(BaseModel):
    success: int
    failed: int
    errors: List[RowErrorSchema]
    summary: ImportSummarySchema


class JobStatusResponse(BaseModel):
    job_id: str
    idempotency_key: str
    table_type: str
    file_name: str
    status: str  # 'queued' | 'processing' | 'completed' | 'failed' | 'cancelled'
    progress: ProgressSchema
    result: Optional[JobResultSchema] = None
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobListResponse(BaseModel):
    jobs: List[JobStatusResponse]
    count: int


class CancelResponse(BaseModel):
    job_id: str
    cancelled: bool


class HealthResponse(BaseModel):
    status: str  # 'healthy' | 'degraded'
    database: str
    queued_jobs: int
    active_jobs: int
    sse_connections: int
    timestamp: datetime
