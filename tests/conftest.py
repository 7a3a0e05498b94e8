"""
Shared fixtures for import pipeline tests.
"""

import io
import os
import tempfile
import time

import pandas as pd
import pytest
from sqlalchemy.orm import sessionmaker

from import_pipeline.config import Settings
from import_pipeline.database import Base, build_engine
from import_pipeline.models import tables  # noqa: F401
from import_pipeline.services.bulk_operations import BulkLoader
from import_pipeline.services.import_service import ImportService


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def engine(temp_dir):
    """SQLite database file with every target and staging table created."""
    db_engine = build_engine(f"sqlite:///{os.path.join(temp_dir, 'imports.db')}")
    Base.metadata.create_all(bind=db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def loader(session_factory):
    """Bulk loader with small batches so batching boundaries are exercised."""
    return BulkLoader(session_factory, batch_size=2, progress_interval=2)


@pytest.fixture
def settings(temp_dir):
    return Settings(
        database_url=f"sqlite:///{os.path.join(temp_dir, 'imports.db')}",
        environment="test",
        # One writer at a time on SQLite
        max_concurrent_jobs=1,
        job_timeout_seconds=60.0,
        cleanup_interval_seconds=3600.0,
        max_file_size_bytes=1024 * 1024,
        staging_batch_size=100,
        progress_interval=100,
        heartbeat_seconds=0.2,
        completed_grace_seconds=0.05,
        failed_grace_seconds=0.05,
    )


@pytest.fixture
def import_service(session_factory, settings):
    """Running ImportService backed by the test database."""
    service = ImportService(session_factory, settings)
    service.start()
    yield service
    service.shutdown(wait=True)


@pytest.fixture
def wait_for_job():
    """Return a function that polls a job until it reaches a terminal state."""
    def _wait(service, job_id, timeout=15.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            status = service.get_job_status(job_id)
            if status and status["status"] in ("completed", "failed", "cancelled"):
                return status
            time.sleep(0.02)
        raise AssertionError(f"Job {job_id} did not finish within {timeout}s")
    return _wait


def csv_bytes(df: pd.DataFrame, **kwargs) -> bytes:
    return df.to_csv(index=False, **kwargs).encode("utf-8")


def xlsx_bytes(df: pd.DataFrame, preamble=None) -> bytes:
    """Write a DataFrame to an in-memory workbook, optionally below preamble rows."""
    buffer = io.BytesIO()
    startrow = len(preamble) if preamble else 0
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        df.to_excel(writer, index=False, startrow=startrow, sheet_name="Sheet1")
        if preamble:
            sheet = writer.sheets["Sheet1"]
            for row_index, cells in enumerate(preamble, start=1):
                for col_index, value in enumerate(cells, start=1):
                    sheet.cell(row=row_index, column=col_index, value=value)
    return buffer.getvalue()


@pytest.fixture
def reference_df():
    """Reference sheet rows as exported from the catalog spreadsheet."""
    return pd.DataFrame({
        'Kode Item': ['BG001', 'BG002', 'BG003'],
        'Nama Item': ['Tote Bag Canvas', 'Sling Bag Leather', 'Backpack Nylon'],
        'Kelompok': ['BAG', 'BAG', 'BAG'],
        'Color': ['Black', 'Brown', 'Navy'],
    })


@pytest.fixture
def reference_csv(reference_df):
    return csv_bytes(reference_df)


@pytest.fixture
def transfer_df():
    return pd.DataFrame({
        'S/N': ['SN001', 'SN002', ''],
        'Kode Item': ['BG001', 'BG002', 'BG003'],
        'Nama Item': ['Tote Bag Canvas', 'Sling Bag Leather', 'Backpack Nylon'],
        'Qty': [1, 1, 3],
    })


@pytest.fixture
def make_csv():
    return csv_bytes


@pytest.fixture
def make_xlsx():
    return xlsx_bytes
