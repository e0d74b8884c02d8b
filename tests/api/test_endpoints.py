"""
API endpoint tests
"""

import asyncio
import pytest
from unittest.mock import MagicMock, patch
from fastapi.testclient import TestClient
from api.main import app
from api.dependencies import get_db, get_row_sink, get_runner
from core.config import settings
from reconciliation.base import RowSink, SheetRole
from reconciliation.runner import SyncRunner
from services.survey_service import wait_for_pushes


class RecordingSink(RowSink):
    """Row sink that remembers every write"""

    def __init__(self):
        self.calls = []

    async def append_row(self, role, row):
        self.calls.append(("append", role, row))
        return True

    async def update_row(self, role, match_key, row):
        self.calls.append(("update", role, row))
        return True

    async def delete_row(self, role, match_key):
        self.calls.append(("delete", role, match_key.primary))
        return True


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def app_runner(session_maker):
    """Runner owned by the app's event loop, not the test loop"""
    return SyncRunner(session_maker)


@pytest.fixture
def client(session_maker, app_runner, sink):
    """Create test client with database, runner and sink overrides"""

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_runner] = lambda: app_runner
    app.dependency_overrides[get_row_sink] = lambda: sink

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def synced_client(client, sheet_snapshot):
    response = client.post("/sync", json=sheet_snapshot)
    assert response.status_code == 200
    return client


# ============================================================================
# Root and health
# ============================================================================

def test_root_lists_endpoints(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["endpoints"]["surveys"] == "/surveys"


def test_health_endpoint_database_connected(client):
    """Test health endpoint returns database status"""
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()

    assert data["status"] == "healthy"
    assert data["database_connected"] is True
    assert data["sync_in_progress"] is False
    assert data["last_sync"] is None
    assert response.headers["X-Request-ID"].startswith("req_")


def test_health_reuses_request_id(client):
    response = client.get("/health", headers={"X-Request-ID": "req_fromproxy"})

    assert response.headers["X-Request-ID"] == "req_fromproxy"
    assert "X-API-Latency-ms" in response.headers


def test_health_reports_last_sync(synced_client):
    data = synced_client.get("/health").json()

    assert data["last_sync"]["status"] == "SUCCESS"
    assert data["last_sync"]["created"] == 4


# ============================================================================
# Sync
# ============================================================================

class TestSyncEndpoint:
    """Test POST /sync"""

    def test_sync_with_rows_in_body(self, client, sheet_snapshot):
        response = client.post("/sync", json=sheet_snapshot)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "SUCCESS"
        assert data["mode"] == "incremental"
        assert data["result"]["created"] == 4
        assert data["result"]["completed"] is True

    def test_rerun_skips_unchanged_rows(self, synced_client, sheet_snapshot):
        data = synced_client.post("/sync", json=sheet_snapshot).json()

        assert data["result"]["created"] == 0
        assert data["result"]["skipped"] == 4

    def test_sync_without_source(self, client):
        """No configured sheet and no rows in the body"""
        response = client.post("/sync")

        assert response.status_code == 502
        assert "detail" in response.json()

    def test_sync_while_running_conflicts(self, client):
        app.dependency_overrides[get_runner] = lambda: MagicMock(in_progress=True)

        response = client.post("/sync")

        assert response.status_code == 409

    def test_background_sync(self, client, sheet_snapshot):
        response = client.post("/sync?background=true", json=sheet_snapshot)

        assert response.status_code == 202
        assert response.json()["status"] == "ACCEPTED"

        # Background tasks finish before the test client returns
        recent = client.get("/sync/status").json()["recent"]
        assert [entry["status"] for entry in recent] == ["SUCCESS"]

    def test_deadline_returns_partial_result(self, client, sheet_snapshot):
        with patch.object(settings, "SYNC_DEADLINE_SECONDS", 0):
            response = client.post("/sync?mode=batched&batch_size=1", json=sheet_snapshot)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "PARTIAL"
        assert data["result"]["completed"] is False
        assert data["result"]["next_batch_number"] == 2
        assert "continue with batch 2" in data["message"]

    def test_batched_continuation(self, client, sheet_snapshot):
        with patch.object(settings, "SYNC_DEADLINE_SECONDS", 0):
            client.post("/sync?mode=batched&batch_size=2", json=sheet_snapshot)

        data = client.post("/sync?mode=batched&batch_size=2&batch_number=2", json=sheet_snapshot).json()

        assert data["status"] == "SUCCESS"
        assert data["result"]["created"] == 2

    def test_request_timeout(self, client, app_runner, sheet_snapshot):
        async def hang(*args, **kwargs):
            await asyncio.sleep(3600)

        app_runner.read_rows = hang
        with patch.object(settings, "SYNC_REQUEST_TIMEOUT_SECONDS", 0.2):
            response = client.post("/sync", json=sheet_snapshot)

        assert response.status_code == 408
        recent = client.get("/sync/status").json()["recent"]
        assert recent[0]["status"] == "FAILED"

    def test_invalid_mode(self, client):
        response = client.post("/sync?mode=sometimes")

        assert response.status_code == 422


class TestSyncStatus:

    def test_status_lists_recent_runs_newest_first(self, synced_client, sheet_snapshot):
        synced_client.post("/sync?mode=full", json=sheet_snapshot)

        data = synced_client.get("/sync/status?limit=5").json()

        assert data["sync_in_progress"] is False
        assert [entry["mode"] for entry in data["recent"]] == ["full", "incremental"]

    def test_validate_posted_rows(self, client, sheet_snapshot):
        response = client.post("/sync/validate", json=sheet_snapshot)

        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert data["master_count"] == 2
        assert data["summary_count"] == 2
        assert "Result: OK" in data["report"]

    def test_validate_reports_duplicates(self, client, sheet_snapshot, detail_row):
        sheet_snapshot["master_rows"].append(detail_row("1002240001"))

        data = client.post("/sync/validate", json=sheet_snapshot).json()

        assert data["valid"] is False
        assert data["duplicate_master_ids"] == ["1002240001"]

    def test_enum_sync_without_source(self, client):
        response = client.post("/sync/enums")

        assert response.status_code == 502


class TestApiKey:

    def test_missing_key_rejected(self, client):
        with patch.object(settings, "API_KEY", "s3cret"):
            response = client.get("/sync/status")

        assert response.status_code == 401

    def test_valid_key_accepted(self, client):
        with patch.object(settings, "API_KEY", "s3cret"):
            response = client.get("/sync/status", headers={"X-API-Key": "s3cret"})

        assert response.status_code == 200

    def test_reads_need_no_key(self, synced_client):
        with patch.object(settings, "API_KEY", "s3cret"):
            assert synced_client.get("/surveys").status_code == 200
            assert synced_client.delete("/surveys/1002240001").status_code == 401


# ============================================================================
# Surveys
# ============================================================================

class TestSurveyEndpoints:
    """Test the survey list and direct edits"""

    def test_list_surveys(self, synced_client):
        response = synced_client.get("/surveys?page=1&page_size=1")

        assert response.status_code == 200
        data = response.json()
        assert [item["case_id"] for item in data["items"]] == ["1002237835"]
        assert data["pagination"]["total_items"] == 2
        assert data["pagination"]["total_pages"] == 2
        assert data["pagination"]["has_next"] is True

    def test_list_filters(self, synced_client):
        data = synced_client.get("/surveys?job_status=go live&search=maju").json()

        assert [item["case_id"] for item in data["items"]] == ["1002240001"]
        assert data["filters_applied"] == {"job_status": "go live", "search": "maju"}

    def test_get_survey(self, synced_client):
        response = synced_client.get("/surveys/1002240001")

        assert response.status_code == 200
        data = response.json()
        assert data["sequence_no"] == "0002"
        assert data["job_status"] == "GO_LIVE"
        assert data["sync_status"] == "SYNCED"

    def test_get_unknown_survey(self, synced_client):
        response = synced_client.get("/surveys/404")

        assert response.status_code == 404
        assert response.json()["detail"] == "Survey 404 not found"

    def test_update_survey_pushes_row(self, synced_client, sink):
        response = synced_client.patch(
            "/surveys/1002240001",
            json={"job_status": "Done", "remark": "Selesai"}
        )
        synced_client.portal.call(wait_for_pushes)

        assert response.status_code == 200
        data = response.json()
        assert data["job_status"] == "DONE"
        assert data["remark"] == "Selesai"
        assert data["sync_status"] == "PENDING"

        [(action, role, row)] = sink.calls
        assert (action, role) == ("update", SheetRole.SUMMARY)
        assert row[1] == "Done"

    def test_update_move_conflict(self, synced_client, sink):
        response = synced_client.patch("/surveys/1002240001", json={"case_id": "1002237835"})

        assert response.status_code == 409
        assert sink.calls == []

    def test_create_survey(self, client, sheet_snapshot, detail_row, sink):
        sheet_snapshot["master_rows"].append(detail_row("1002260001", customer_name="Toko Abadi"))
        client.post("/sync", json=sheet_snapshot)

        response = client.post("/surveys", json={
            "sequence_no": "0003",
            "case_id": "1002260001",
            "job_status": "Review",
            "contract_value": "1250000"
        })
        client.portal.call(wait_for_pushes)

        assert response.status_code == 201
        assert response.json()["job_status"] == "REVIEW"
        [(action, _, row)] = sink.calls
        assert action == "append"
        assert row[0] == "0003"

    def test_create_duplicate(self, synced_client):
        response = synced_client.post("/surveys", json={"sequence_no": "0001", "case_id": "1002240001"})

        assert response.status_code == 409

    def test_create_rejects_blank_case(self, synced_client):
        response = synced_client.post("/surveys", json={"sequence_no": "0009", "case_id": ""})

        assert response.status_code == 422

    def test_delete_survey(self, synced_client, sink):
        response = synced_client.delete("/surveys/1002240001")
        synced_client.portal.call(wait_for_pushes)

        assert response.status_code == 204
        assert synced_client.get("/surveys/1002240001").status_code == 404
        assert sink.calls == [("delete", SheetRole.SUMMARY, "0002")]


# ============================================================================
# Stats
# ============================================================================

def test_stats(synced_client):
    response = synced_client.get("/stats")

    assert response.status_code == 200
    data = response.json()
    assert data["total_surveys"] == 2
    assert data["total_masters"] == 2
    assert data["pending"] == 2
    assert data["go_live"] == 1
    assert data["approval_rate"] == 0.0
    assert data["profit_count"] == 1
    assert data["loss_count"] == 0
    assert data["by_job_status"] == {"REVIEW": 1, "GO_LIVE": 1}
    assert data["by_installation_status"] == {"SURVEY": 2}
    assert data["last_sync"]["status"] == "SUCCESS"


def test_stats_empty_database(client):
    data = client.get("/stats").json()

    assert data["total_surveys"] == 0
    assert data["approval_rate"] == 0.0
    assert data["last_sync"] is None
