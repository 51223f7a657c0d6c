"""Tests for Flask route endpoints."""

import json
import sys
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from flask.testing import FlaskClient

from media_uploader.services import upload_manager
from media_uploader.services.session import SessionContext
from media_uploader.services.upload_manager import UploadManager
from media_uploader.services.upload_task import UploadRequest
from tests.conftest import FAILED_OUTPUT, SAS_URL, FakeRunner


@pytest.fixture
def manager(fake_runner: FakeRunner, tmp_path: Path) -> Generator[UploadManager, None, None]:
    """Install an upload manager driving the scripted runner as the global one."""
    manager = UploadManager(
        SessionContext("/usr/local/bin/azcopy"),
        runner=fake_runner,
        settling_delay=0,
        metadata_directory=tmp_path / "staging",
    )
    upload_manager._upload_manager = manager
    yield manager


@pytest.fixture
def payload(upload_request: UploadRequest) -> dict[str, Any]:
    """JSON body for POST /api/upload/start."""
    return {**upload_request.to_dict(), "conflict_policy": "ignore"}


def _start(client: FlaskClient, manager: UploadManager, payload: dict[str, Any]) -> str:
    manager.session.set_credential("Show", SAS_URL)
    response = client.post("/api/upload/start", json=payload)
    assert response.status_code == 202
    job_id = json.loads(response.data)["job_id"]
    assert manager.wait_for_job(job_id, timeout=5)
    assert manager.drain(timeout=5)
    return job_id


class TestSettingsAPI:
    """Tests for settings API endpoints."""

    def test_get_settings(self, client: FlaskClient) -> None:
        """Test getting current settings."""
        response = client.get("/api/settings")
        assert response.status_code == 200

        data = json.loads(response.data)
        assert data["azcopy_path"] == "/nonexistent/azcopy"
        assert "conflict_policy" in data
        assert "max_workers" in data

    def test_update_settings(self, client: FlaskClient) -> None:
        """Test updating settings."""
        response = client.put(
            "/api/settings",
            data=json.dumps({"conflict_policy": "overwrite", "max_workers": 2}),
            content_type="application/json",
        )
        assert response.status_code == 200

        data = json.loads(response.data)
        assert data["conflict_policy"] == "overwrite"
        assert data["max_workers"] == 2

    @pytest.mark.parametrize(
        "body",
        [
            {"conflict_policy": "merge"},
            {"max_workers": 0},
            {"max_workers": True},
            {"settling_delay_seconds": -1},
            {"folder_overrides": ["Sound"]},
        ],
    )
    def test_update_settings_invalid_value(self, client: FlaskClient, body: dict[str, Any]) -> None:
        """Test that invalid values are rejected."""
        response = client.put("/api/settings", json=body)
        assert response.status_code == 400

    def test_update_settings_invalid_key(self, client: FlaskClient) -> None:
        """Test that invalid settings keys are ignored."""
        response = client.put(
            "/api/settings",
            data=json.dumps({"invalid_key": "value"}),
            content_type="application/json",
        )
        assert response.status_code == 400

    def test_update_settings_no_json(self, client: FlaskClient) -> None:
        """Test error when no JSON body provided."""
        response = client.put("/api/settings", data="not json")
        assert response.status_code == 400

    def test_validate_tool_missing(self, client: FlaskClient) -> None:
        """Test validating the configured (missing) tool."""
        response = client.post("/api/settings/validate")
        assert response.status_code == 200

        data = json.loads(response.data)
        assert data["success"] is False
        assert data["azcopy_path"] == "/nonexistent/azcopy"
        assert "error" in data

    def test_validate_tool_present(self, client: FlaskClient) -> None:
        """Test validating an executable that exists."""
        response = client.post("/api/settings/validate", json={"azcopy_path": sys.executable})
        assert response.status_code == 200
        assert json.loads(response.data)["success"] is True

    def test_get_version(self, client: FlaskClient) -> None:
        """Test getting application version."""
        response = client.get("/api/settings/version")
        assert response.status_code == 200

        data = json.loads(response.data)
        assert "version" in data


class TestSessionAPI:
    """Tests for session API endpoints."""

    def test_store_credential(self, client: FlaskClient, manager: UploadManager) -> None:
        """Test that a stored credential is listed but never returned."""
        response = client.put(
            "/api/session/credentials/Show",
            json={"credential": SAS_URL, "user_id": "dit@example.com"},
        )
        assert response.status_code == 200

        response = client.get("/api/session")
        data = json.loads(response.data)
        assert data["shows"] == ["Show"]
        assert data["user_id"] == "dit@example.com"
        assert b"sig=abc" not in response.data

    @pytest.mark.parametrize(
        "body",
        [
            {},
            {"credential": 42},
            {"credential": "https://acct.blob.core.windows.net/show"},
            {"credential": "?sig=abc"},
            {"credential": "https://acct.blob.core.windows.net/show?"},
        ],
    )
    def test_invalid_credential(
        self, client: FlaskClient, manager: UploadManager, body: dict[str, Any]
    ) -> None:
        """Test that missing or malformed credentials are rejected."""
        response = client.put("/api/session/credentials/Show", json=body)
        assert response.status_code == 400
        assert not manager.session.has_credential("Show")

    def test_close_session(self, client: FlaskClient, manager: UploadManager) -> None:
        """Test that logging out forgets credentials."""
        manager.session.set_credential("Show", SAS_URL)

        response = client.delete("/api/session")
        assert response.status_code == 200
        assert manager.session.closed
        assert manager.session.shows() == []


class TestUploadAPI:
    """Tests for upload API endpoints."""

    def test_start_no_body(self, client: FlaskClient) -> None:
        """Test error when no request is provided."""
        response = client.post("/api/upload/start", json={})
        assert response.status_code == 400

    def test_start_missing_fields(self, client: FlaskClient, manager: UploadManager) -> None:
        """Test error when required fields are missing."""
        response = client.post("/api/upload/start", json={"show_name": "Show"})
        assert response.status_code == 400
        assert "error" in json.loads(response.data)

    def test_start_without_credential(
        self, client: FlaskClient, manager: UploadManager, payload: dict[str, Any]
    ) -> None:
        """Test that a show without a credential is a conflict."""
        response = client.post("/api/upload/start", json=payload)
        assert response.status_code == 409

    def test_start_bad_policy(
        self, client: FlaskClient, manager: UploadManager, payload: dict[str, Any]
    ) -> None:
        """Test that an unknown conflict policy is rejected."""
        manager.session.set_credential("Show", SAS_URL)
        response = client.post("/api/upload/start", json={**payload, "conflict_policy": "merge"})
        assert response.status_code == 400

    @pytest.mark.parametrize(
        "overrides",
        [
            {"source_dirs": {"Camera RAW": "/src/A001"}},
            {"files": {"Camera RAW": {"clip1": {"filePath": "A001/clip1.mov"}}}},
            {"is_block": "false"},
        ],
    )
    def test_start_malformed_request(
        self,
        client: FlaskClient,
        manager: UploadManager,
        payload: dict[str, Any],
        overrides: dict[str, Any],
        fake_runner: FakeRunner,
    ) -> None:
        """Test that wrongly shaped request values are rejected before anything runs."""
        manager.session.set_credential("Show", SAS_URL)
        response = client.post("/api/upload/start", json={**payload, **overrides})

        assert response.status_code == 400
        assert "error" in json.loads(response.data)
        assert manager.get_active_jobs() == []
        assert fake_runner.launches == []

    def test_start_and_status(
        self, client: FlaskClient, manager: UploadManager, payload: dict[str, Any]
    ) -> None:
        """Test a complete upload through the API."""
        job_id = _start(client, manager, payload)

        response = client.get(f"/api/upload/status/{job_id}")
        assert response.status_code == 200

        data = json.loads(response.data)
        assert data["status"] == "completed"
        assert data["units_completed"] == 3
        assert data["progress_percent"] == 100.0
        assert b"sig=abc" not in response.data

    def test_get_status_not_found(self, client: FlaskClient, manager: UploadManager) -> None:
        """Test getting status of non-existent job."""
        response = client.get("/api/upload/status/nonexistent-job-id")
        assert response.status_code == 404

    def test_active_jobs(
        self, client: FlaskClient, manager: UploadManager, upload_request: UploadRequest
    ) -> None:
        """Test listing jobs that have not finished."""
        manager.session.set_credential("Show", SAS_URL)
        job = manager.create_job(upload_request)

        response = client.get("/api/upload/active")
        assert response.status_code == 200

        data = json.loads(response.data)
        assert data["count"] == 1
        assert data["jobs"][0]["job_id"] == job.job_id

    def test_cancel_upload_not_found(self, client: FlaskClient, manager: UploadManager) -> None:
        """Test cancelling non-existent job."""
        response = client.post("/api/upload/cancel/nonexistent-job-id")
        assert response.status_code == 404

    def test_cancel_finished_upload(
        self, client: FlaskClient, manager: UploadManager, payload: dict[str, Any]
    ) -> None:
        """Test that a finished job cannot be cancelled."""
        job_id = _start(client, manager, payload)
        response = client.post(f"/api/upload/cancel/{job_id}")
        assert response.status_code == 409

    def test_cancel_pending_upload(
        self, client: FlaskClient, manager: UploadManager, upload_request: UploadRequest
    ) -> None:
        """Test cancelling a job that has not started."""
        manager.session.set_credential("Show", SAS_URL)
        job = manager.create_job(upload_request)

        response = client.post(f"/api/upload/cancel/{job.job_id}")
        assert response.status_code == 200
        assert json.loads(response.data)["success"] is True
        assert job.cancelled

    def test_retry_job(
        self,
        client: FlaskClient,
        manager: UploadManager,
        fake_runner: FakeRunner,
        payload: dict[str, Any],
    ) -> None:
        """Test restarting a failed job."""
        fake_runner.script("_metadata.json", [FAILED_OUTPUT])
        job_id = _start(client, manager, payload)
        fake_runner.scripts.clear()

        response = client.post(f"/api/upload/retry/{job_id}")
        assert response.status_code == 202

        data = json.loads(response.data)
        assert data["status"] == "restarted"
        assert data["attempt"] == 2
        assert manager.wait_for_job(job_id, timeout=5)
        assert manager.get_job(job_id).status.value == "completed"

    def test_retry_not_found(self, client: FlaskClient, manager: UploadManager) -> None:
        """Test retrying a job that does not exist."""
        response = client.post("/api/upload/retry/nonexistent-job-id")
        assert response.status_code == 404

    def test_retry_active_job(
        self, client: FlaskClient, manager: UploadManager, upload_request: UploadRequest
    ) -> None:
        """Test that a job that has not finished cannot be retried."""
        manager.session.set_credential("Show", SAS_URL)
        job = manager.create_job(upload_request)

        response = client.post(f"/api/upload/retry/{job.job_id}")
        assert response.status_code == 409

    def test_retry_unit(
        self,
        client: FlaskClient,
        manager: UploadManager,
        fake_runner: FakeRunner,
        payload: dict[str, Any],
    ) -> None:
        """Test retrying a single failed folder."""
        fake_runner.script("sources/SND01", [FAILED_OUTPUT])
        job_id = _start(client, manager, payload)
        unit_id = manager.get_job(job_id).units[2].unit_id
        fake_runner.scripts.clear()

        response = client.post(f"/api/upload/retry/{job_id}/{unit_id}")
        assert response.status_code == 202

        data = json.loads(response.data)
        assert data["status"] == "restarted"
        assert data["task"]["retry"] is True
        assert "sig=abc" not in json.dumps(data)

    def test_retry_uploaded_unit(
        self, client: FlaskClient, manager: UploadManager, payload: dict[str, Any]
    ) -> None:
        """Test that an uploaded folder cannot be retried."""
        job_id = _start(client, manager, payload)
        unit_id = manager.get_job(job_id).units[0].unit_id

        response = client.post(f"/api/upload/retry/{job_id}/{unit_id}")
        assert response.status_code == 409

    def test_retry_unit_not_found(self, client: FlaskClient, manager: UploadManager) -> None:
        """Test retrying a folder of an unknown job."""
        response = client.post("/api/upload/retry/nonexistent-job-id/unit")
        assert response.status_code == 404


class TestProgressSSE:
    """Tests for the progress stream."""

    def test_progress_stream_not_found(self, client: FlaskClient, manager: UploadManager) -> None:
        """Test SSE stream for non-existent job."""
        response = client.get("/api/upload/progress/nonexistent-job-id")
        assert response.status_code == 200
        assert response.content_type.startswith("text/event-stream")
        assert b"Job not found" in response.data

    def test_progress_stream_finished_job(
        self, client: FlaskClient, manager: UploadManager, payload: dict[str, Any]
    ) -> None:
        """Test that a finished job sends its final state and closes the stream."""
        job_id = _start(client, manager, payload)

        response = client.get(f"/api/upload/progress/{job_id}")
        events = [
            json.loads(line[len("data: ") :])
            for line in response.data.decode().splitlines()
            if line.startswith("data: ")
        ]
        assert len(events) == 1
        assert events[0]["status"] == "completed"
        assert events[0]["units_completed"] == 3


class TestLogsAPI:
    """Tests for logs API endpoints."""

    def test_get_entries(self, client: FlaskClient) -> None:
        """Test getting log entries."""
        response = client.get("/api/logs/entries")
        assert response.status_code == 200

        data = json.loads(response.data)
        assert "entries" in data
        assert "total" in data
        assert any(e["event"] == "app_started" for e in data["entries"])

    def test_get_entries_with_filters(self, client: FlaskClient) -> None:
        """Test getting log entries with filters."""
        response = client.get("/api/logs/entries?level=ERROR&category=upload&limit=abc")
        assert response.status_code == 200

        data = json.loads(response.data)
        assert data["total"] == 0
        assert data["limit"] == 100

    def test_limit_is_capped(self, client: FlaskClient) -> None:
        """Test that paging parameters are clamped to their bounds."""
        response = client.get("/api/logs/entries?limit=5000&offset=-3")
        data = json.loads(response.data)
        assert data["limit"] == 1000
        assert data["offset"] == 0

    def test_filter_by_job(
        self, client: FlaskClient, manager: UploadManager, payload: dict[str, Any]
    ) -> None:
        """Test that events of one job can be selected by its id."""
        job_id = _start(client, manager, payload)

        response = client.get(f"/api/logs/entries?job_id={job_id}")
        data = json.loads(response.data)
        events = {e["event"] for e in data["entries"]}
        assert {"upload_job_created", "upload_job_completed"} <= events
        assert all(e["metadata"]["job_id"] == job_id for e in data["entries"])

    def test_bad_task_id(self, client: FlaskClient) -> None:
        """Test that a non-numeric task id is rejected."""
        response = client.get("/api/logs/entries?task_id=abc")
        assert response.status_code == 400

    def test_job_summary(
        self, client: FlaskClient, manager: UploadManager, payload: dict[str, Any]
    ) -> None:
        """Test reading back the summary written when a job finished."""
        job_id = _start(client, manager, payload)

        response = client.get(f"/api/logs/jobs/{job_id}")
        assert response.status_code == 200

        data = json.loads(response.data)
        assert len(data["attempts"]) == 1
        attempt = data["attempts"][0]
        assert attempt["status"] == "completed"
        assert len(attempt["units"]) == 3
        assert all(u["status"] == "Completed" for u in attempt["units"])

    def test_job_summary_unknown(self, client: FlaskClient) -> None:
        """Test that a job without a summary is a 404."""
        response = client.get("/api/logs/jobs/nonexistent-job-id")
        assert response.status_code == 404
