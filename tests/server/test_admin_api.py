"""Tests for admin API endpoints."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from syncengine.server.app import create_app
from syncengine.server.database import Database


@pytest.fixture
def app(db: Database) -> FastAPI:
    """App without background workers."""
    return create_app(db, start_background=False)


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    """Create a test client with the app."""
    return TestClient(app)


@pytest.fixture
def failed_job_id(app: FastAPI) -> int:
    """A job that has exhausted its single attempt."""
    queue = app.state.queue
    queue.register("broken", MagicMock(side_effect=RuntimeError("disk full")))
    job_id = queue.enqueue("broken", {"user_id": "u1"}, max_attempts=1)
    queue.run_pending()
    return job_id


class TestFailedJobs:
    """Tests for GET /api/admin/jobs/failed."""

    def test_empty(self, client: TestClient) -> None:
        """No failed jobs on a fresh server."""
        response = client.get("/api/admin/jobs/failed")
        assert response.status_code == 200
        assert response.json() == []

    def test_lists_failed(self, client: TestClient, failed_job_id: int) -> None:
        """Failed jobs are listed with their last error."""
        jobs = client.get("/api/admin/jobs/failed").json()
        assert len(jobs) == 1
        job = jobs[0]
        assert job["id"] == failed_job_id
        assert job["name"] == "broken"
        assert job["status"] == "failed"
        assert job["attempts"] == 1
        assert job["maxAttempts"] == 1
        assert job["lastError"] == "disk full"
        assert job["payload"] == {"user_id": "u1"}


class TestRetryJob:
    """Tests for POST /api/admin/jobs/{id}/retry."""

    def test_retry(self, client: TestClient, app: FastAPI, failed_job_id: int) -> None:
        """A failed job goes back to pending."""
        response = client.post(f"/api/admin/jobs/{failed_job_id}/retry")
        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["attempts"] == 0
        assert client.get("/api/admin/jobs/failed").json() == []

    def test_retry_unknown(self, client: TestClient) -> None:
        """Unknown jobs are a 404."""
        response = client.post("/api/admin/jobs/12345/retry")
        assert response.status_code == 404
