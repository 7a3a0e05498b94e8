# =============================================================================
# IMPORT API TESTS
# Tests FastAPI endpoints, upload validation, job status and SSE streaming
# =============================================================================

import pytest
from fastapi.testclient import TestClient

from import_pipeline.main import create_app
from import_pipeline.models.tables import TransferOrder
from import_pipeline.services.import_service import ImportService

pytestmark = pytest.mark.integration


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def service(session_factory, settings):
    """Service handed to the app; the lifespan starts and stops it"""
    return ImportService(session_factory, settings)


@pytest.fixture
def client(service):
    """FastAPI test client with the lifespan running"""
    with TestClient(create_app(service=service)) as test_client:
        yield test_client


def upload(client, content, file_name="items.csv", table_type="reference-sheet", **form):
    return client.post(
        "/imports",
        data={"table_type": table_type, **form},
        files={"file": (file_name, content, "text/csv")},
    )


def sse_events(body):
    """Event names in an SSE response body, in order"""
    return [line[len("event: "):] for line in body.splitlines() if line.startswith("event: ")]


# =============================================================================
# HEALTH CHECK ENDPOINT TESTS
# =============================================================================

def test_health_check(client):
    """Test health check reports the database and an idle queue"""
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database"] == "connected"
    assert data["queued_jobs"] == 0
    assert "timestamp" in data


# =============================================================================
# SUBMISSION ENDPOINT TESTS
# =============================================================================

def test_submit_returns_job_id(client, service, wait_for_job, reference_csv):
    """Test a valid upload is accepted and processed in the background"""
    response = upload(client, reference_csv, file_name="reference.csv")

    assert response.status_code == 202
    job_id = response.json()["job_id"]
    assert wait_for_job(service, job_id)["status"] == "completed"


def test_submit_empty_file(client):
    """Test a 0-byte upload is rejected and no job is created"""
    response = upload(client, b"")

    assert response.status_code == 400
    assert "No data found in file" in response.json()["detail"]
    assert client.get("/imports").json()["count"] == 0


def test_submit_oversize_file(client, settings):
    """Test uploads over the size limit are rejected with 413"""
    response = upload(client, b"x" * (settings.max_file_size_bytes + 1))

    assert response.status_code == 413


def test_submit_unknown_table_type(client):
    """Test an unknown table type is rejected"""
    response = upload(client, b"a,b\n1,2\n", table_type="customers")

    assert response.status_code == 400
    assert "customers" in response.json()["detail"]


def test_submit_unsupported_extension(client):
    """Test non-CSV, non-Excel files are rejected"""
    response = upload(client, b"%PDF-1.4", file_name="items.pdf")

    assert response.status_code == 400


def test_submit_invalid_additional_data(client, reference_csv):
    """Test additional_data must be a JSON object"""
    response = upload(client, reference_csv, additional_data="{not json")
    assert response.status_code == 400

    response = upload(client, reference_csv, additional_data="[1, 2]")
    assert response.status_code == 400


def test_submit_transfer_items_with_parent(client, service, session_factory, wait_for_job, transfer_df, make_csv):
    """Test additional_data is passed through to the job"""
    with session_factory() as db:
        order = TransferOrder(to_number="TO-12")
        db.add(order)
        db.commit()
        to_id = order.id

    response = upload(
        client,
        make_csv(transfer_df),
        file_name="transfer.csv",
        table_type="transfer-items",
        additional_data=f'{{"to_id": {to_id}}}',
    )

    assert response.status_code == 202
    status = wait_for_job(service, response.json()["job_id"])
    assert status["status"] == "completed"
    assert status["result"]["success"] == 3


# =============================================================================
# STATUS ENDPOINT TESTS
# =============================================================================

def test_job_status(client, service, wait_for_job, reference_csv):
    """Test the status of a finished job includes its result"""
    job_id = upload(client, reference_csv).json()["job_id"]
    wait_for_job(service, job_id)

    response = client.get(f"/imports/{job_id}")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "completed"
    assert data["table_type"] == "reference-sheet"
    assert data["result"]["summary"]["new_records"] == 3
    assert data["progress"]["percentage"] == 100.0


def test_job_status_not_found(client):
    """Test unknown job ids return 404"""
    response = client.get("/imports/does-not-exist")

    assert response.status_code == 404


def test_list_jobs(client, service, wait_for_job, reference_csv):
    """Test all jobs are listed"""
    first = upload(client, reference_csv, file_name="a.csv").json()["job_id"]
    second = upload(client, reference_csv, file_name="b.csv").json()["job_id"]
    wait_for_job(service, first)
    wait_for_job(service, second)

    data = client.get("/imports").json()

    assert data["count"] == 2
    assert {job["job_id"] for job in data["jobs"]} == {first, second}


def test_failed_job_reports_error(client, service, wait_for_job):
    """Test a file without a recognisable header fails with a reason"""
    job_id = upload(client, b"foo,bar\n1,2\n").json()["job_id"]
    wait_for_job(service, job_id)

    data = client.get(f"/imports/{job_id}").json()

    assert data["status"] == "failed"
    assert "Header row not found" in data["error"]


# =============================================================================
# CANCEL ENDPOINT TESTS
# =============================================================================

def test_cancel_finished_job(client, service, wait_for_job, reference_csv):
    """Test a job that already ran cannot be cancelled"""
    job_id = upload(client, reference_csv).json()["job_id"]
    wait_for_job(service, job_id)

    response = client.post(f"/imports/{job_id}/cancel")

    assert response.status_code == 200
    assert response.json() == {"job_id": job_id, "cancelled": False}


def test_cancel_not_found(client):
    """Test cancelling an unknown job returns 404"""
    response = client.post("/imports/does-not-exist/cancel")

    assert response.status_code == 404


# =============================================================================
# SSE ENDPOINT TESTS
# =============================================================================

def test_events_for_finished_job(client, service, wait_for_job, reference_csv):
    """Test the stream sends connected and status, then closes"""
    job_id = upload(client, reference_csv).json()["job_id"]
    wait_for_job(service, job_id)

    response = client.get(f"/imports/{job_id}/events")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert sse_events(response.text) == ["connected", "status", "close"]
    assert '"status": "completed"' in response.text


def test_events_connection_released(client, service, wait_for_job, reference_csv):
    """Test the subscription is removed once the stream ends"""
    job_id = upload(client, reference_csv).json()["job_id"]
    wait_for_job(service, job_id)

    client.get(f"/imports/{job_id}/events")

    assert client.get("/health").json()["sse_connections"] == 0


def test_events_not_found(client):
    """Test subscribing to an unknown job returns 404"""
    response = client.get("/imports/does-not-exist/events")

    assert response.status_code == 404
