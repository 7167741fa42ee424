from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from marketplace.main import create_app

pytestmark = pytest.mark.integration


class SilentCompletionClient:
    async def complete(self, prompt: str) -> str:
        raise ConnectionError("classifier offline")


@pytest.fixture
def client(tmp_path: Path):
    db_path = tmp_path / "marketplace.sqlite3"
    app = create_app(database_path=str(db_path), completion_client=SilentCompletionClient())
    with TestClient(app) as test_client:
        yield test_client


def test_request_id_header_and_metrics_snapshot(client: TestClient) -> None:
    first = client.get("/health")
    second = client.get("/health")
    not_found = client.get("/jobs/missing")
    metrics = client.get("/metrics")

    assert first.status_code == 200
    assert second.status_code == 200
    assert not_found.status_code == 404
    assert metrics.status_code == 200

    first_request_id = first.headers.get("x-request-id")
    second_request_id = second.headers.get("x-request-id")
    assert first_request_id
    assert second_request_id
    assert metrics.headers.get("x-request-id")
    assert first_request_id != second_request_id

    body = metrics.json()
    assert body["totals"]["requests"] >= 3
    assert body["totals"]["errors"] >= 1
    assert body["endpoints"]["GET /health"]["count"] >= 2
    assert body["endpoints"]["GET /jobs/{job_id}"]["4xx"] == 1


def test_incoming_request_id_is_preserved(client: TestClient) -> None:
    response = client.get("/health", headers={"x-request-id": "manual-request-id"})
    assert response.status_code == 200
    assert response.headers.get("x-request-id") == "manual-request-id"


def test_conflicts_are_mapped_to_409(client: TestClient) -> None:
    headers = {"x-username": "alice"}
    client.post("/jobs", headers=headers, json={"job_id": "job-1", "title": "House Painting"})

    duplicate = client.post("/jobs", headers=headers, json={"job_id": "job-1", "title": "House Painting"})
    assert duplicate.status_code == 409
    assert "job-1" in duplicate.json()["detail"]
    assert duplicate.headers.get("x-request-id")

    invalid = client.put("/jobs/job-1/status", headers=headers, json={"status": "in-progress"})
    assert invalid.status_code == 403
    closed = client.put("/jobs/job-1/status", headers=headers, json={"status": "closed"})
    assert closed.status_code == 200
    reopened = client.put("/jobs/job-1/status", headers=headers, json={"status": "assigned", "assigned_to": "bob"})
    assert reopened.status_code == 409
    assert "closed" in reopened.json()["detail"]


def test_metrics_group_requests_by_route_template(client: TestClient) -> None:
    for index in range(5):
        assert client.get(f"/jobs/missing-{index}").status_code == 404
    client.get("/no/such/route")

    endpoints = client.get("/metrics").json()["endpoints"]

    job_keys = [key for key in endpoints if key.startswith("GET /jobs/")]
    assert job_keys == ["GET /jobs/{job_id}"]
    assert endpoints["GET /jobs/{job_id}"]["count"] == 5
    assert endpoints["GET <unmatched>"]["4xx"] == 1
