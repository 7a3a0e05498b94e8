"""
FastAPI Import Pipeline Service
Accepts bulk CSV/Excel imports, processes them in the background and
streams job progress over server-sent events.
"""
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from import_pipeline import __version__
from import_pipeline.config import Settings
from import_pipeline.database import Base, get_engine, get_session_factory, initialize_database
from import_pipeline.exceptions import FileTooLargeError, SubmissionError
from import_pipeline.logging_config import configure_logging
from import_pipeline.models import tables  # noqa: F401  (registers tables on Base.metadata)
from import_pipeline.models.schemas import (
    CancelResponse,
    HealthResponse,
    ImportAccepted,
    JobListResponse,
    JobStatusResponse,
)
from import_pipeline.services.import_service import ImportService
from import_pipeline.services.progress_broadcaster import format_sse

logger = structlog.get_logger(__name__)


def get_import_service(request: Request) -> ImportService:
    return request.app.state.import_service


def create_app(service: Optional[ImportService] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application.

    With no service given, the lifespan connects to DATABASE_URL, creates the
    tables and starts a worker pool; it is stopped again on shutdown.
    """
    settings = settings or (service.settings if service else Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        owned = service is None
        if owned:
            initialize_database(settings.database_url)
            session_factory = get_session_factory()
            Base.metadata.create_all(bind=get_engine())
            app.state.import_service = ImportService(session_factory, settings)
        else:
            app.state.import_service = service
        app.state.import_service.start()
        logger.info("import_service_started", environment=settings.environment)
        try:
            yield
        finally:
            app.state.import_service.shutdown(wait=True)
            logger.info("import_service_stopped")

    app = FastAPI(
        title="Import Pipeline Service",
        version=__version__,
        description="Background bulk imports with staged validation and atomic upsert",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def health_check(service: ImportService = Depends(get_import_service)):
        """Database connectivity, queue depth and open SSE connections."""
        return HealthResponse(**service.health(), timestamp=datetime.now(timezone.utc))

    @app.post("/imports", response_model=ImportAccepted, status_code=202)
    async def submit_import(
        table_type: str = Form(...),
        file: UploadFile = File(...),
        idempotency_key: Optional[str] = Form(None),
        additional_data: Optional[str] = Form(None),
        service: ImportService = Depends(get_import_service),
    ):
        limit = service.settings.max_file_size_bytes
        # Read one byte past the limit so oversize uploads are detected without reading them whole
        contents = await file.read(limit + 1)
        if len(contents) > limit:
            error = FileTooLargeError(len(contents), limit)
            raise HTTPException(status_code=error.status_code, detail=str(error))

        extra = None
        if additional_data:
            try:
                extra = json.loads(additional_data)
            except json.JSONDecodeError as e:
                raise HTTPException(status_code=400, detail=f"additional_data must be valid JSON: {e}")
            if not isinstance(extra, dict):
                raise HTTPException(status_code=400, detail="additional_data must be a JSON object")

        try:
            job_id = service.submit_import(
                table_type,
                file.filename or "",
                contents,
                idempotency_key=idempotency_key or None,
                additional_data=extra,
            )
        except SubmissionError as e:
            logger.info("import_rejected", table_type=table_type, file_name=file.filename, reason=str(e))
            raise HTTPException(status_code=e.status_code, detail=str(e))

        return ImportAccepted(job_id=job_id)

    @app.get("/imports", response_model=JobListResponse)
    async def list_imports(service: ImportService = Depends(get_import_service)):
        jobs = service.list_jobs()
        return JobListResponse(jobs=jobs, count=len(jobs))

    @app.get("/imports/{job_id}", response_model=JobStatusResponse)
    async def get_import(job_id: str, service: ImportService = Depends(get_import_service)):
        status = service.get_job_status(job_id)
        if status is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return status

    @app.get("/imports/{job_id}/events")
    async def stream_import_events(job_id: str, service: ImportService = Depends(get_import_service)):
        """Server-sent events: connected, status, progress, heartbeat, close."""
        subscription = service.subscribe_to_job(job_id)
        if subscription is None:
            raise HTTPException(status_code=404, detail="Job not found")

        async def generate():
            try:
                async for message in subscription.messages(service.settings.heartbeat_seconds):
                    yield format_sse(message)
            finally:
                service.unsubscribe(subscription)

        return StreamingResponse(
            generate(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.post("/imports/{job_id}/cancel", response_model=CancelResponse)
    async def cancel_import(job_id: str, service: ImportService = Depends(get_import_service)):
        if service.get_job_status(job_id) is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return CancelResponse(job_id=job_id, cancelled=service.cancel_job(job_id))

    return app


def run() -> None:
    import uvicorn

    settings = Settings.from_env()
    uvicorn.run(
        "import_pipeline.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
