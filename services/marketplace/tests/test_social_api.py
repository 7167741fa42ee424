from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from marketplace.main import create_app

pytestmark = pytest.mark.integration

ALICE = {"x-username": "alice"}
BOB = {"x-username": "bob"}
CAROL = {"x-username": "carol"}


class SilentCompletionClient:
    async def complete(self, prompt: str) -> str:
        raise ConnectionError("classifier offline")


@pytest.fixture
def client(tmp_path: Path):
    app = create_app(
        database_path=str(tmp_path / "marketplace.sqlite3"),
        data_dir=str(tmp_path / "data"),
        completion_client=SilentCompletionClient(),
    )
    with TestClient(app) as test_client:
        yield test_client


def completed_job(client: TestClient) -> dict[str, Any]:
    job = client.post("/jobs", headers=ALICE, json={"title": "House Painting", "assigned_to": "bob"}).json()
    client.put(f"/jobs/{job['job_id']}/status", headers=BOB, json={"status": "in-progress"})
    closed = client.put(f"/jobs/{job['job_id']}/status", headers=ALICE, json={"status": "closed"})
    assert closed.status_code == 200
    return closed.json()


def test_poster_rates_worker_once(client: TestClient) -> None:
    job = completed_job(client)
    payload = {"job_id": job["job_id"], "rated_username": "bob", "rating": 4, "comment": "Tidy work"}

    created = client.post("/ratings", headers=ALICE, json=payload)
    assert created.status_code == 201
    assert created.json()["rater_username"] == "alice"

    duplicate = client.post("/ratings", headers=ALICE, json={**payload, "rating": 1})
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"] == "You have already submitted a rating for this job."

    summary = client.get("/users/bob/ratings").json()
    assert summary == {"username": "bob", "average_rating": 4.0, "rating_count": 1}

    notes = client.get("/notifications", headers=BOB).json()
    assert any("rated you 4/5" in note["message"] for note in notes)


def test_rating_rules(client: TestClient) -> None:
    open_job = client.post("/jobs", headers=ALICE, json={"title": "Dog Walking"}).json()
    closed_job = completed_job(client)

    not_closed = client.post(
        "/ratings",
        headers=ALICE,
        json={"job_id": open_job["job_id"], "rated_username": "bob", "rating": 5},
    )
    assert not_closed.status_code == 400

    not_poster = client.post(
        "/ratings",
        headers=CAROL,
        json={"job_id": closed_job["job_id"], "rated_username": "bob", "rating": 5},
    )
    assert not_poster.status_code == 403

    wrong_worker = client.post(
        "/ratings",
        headers=ALICE,
        json={"job_id": closed_job["job_id"], "rated_username": "carol", "rating": 5},
    )
    assert wrong_worker.status_code == 400

    out_of_range = client.post(
        "/ratings",
        headers=ALICE,
        json={"job_id": closed_job["job_id"], "rated_username": "bob", "rating": 6},
    )
    assert out_of_range.status_code == 422

    missing = client.post("/ratings", headers=ALICE, json={"job_id": "nope", "rated_username": "bob", "rating": 5})
    assert missing.status_code == 404


def test_follow_and_unfollow(client: TestClient) -> None:
    assert client.post("/users/alice/follow", headers=ALICE).status_code == 400

    followed = client.post("/users/alice/follow", headers=BOB)
    assert followed.status_code == 201
    assert client.post("/users/alice/follow", headers=BOB).status_code == 409

    followers = client.get("/users/alice/followers").json()
    assert [edge["follower"] for edge in followers] == ["bob"]
    notes = client.get("/notifications", headers=ALICE).json()
    assert notes[0]["message"] == "bob started following you."
    assert notes[0]["link"] == "#profile/bob"

    assert client.delete("/users/alice/follow", headers=BOB).status_code == 200
    assert client.delete("/users/alice/follow", headers=BOB).status_code == 404
    assert client.get("/users/alice/followers").json() == []


def test_agency_join_request_flow(client: TestClient) -> None:
    created = client.post("/agencies", headers=ALICE, json={"agency_id": "acme", "name": "Acme Helpers"})
    assert created.status_code == 201
    assert created.json()["members"] == ["alice"]

    assert client.post("/agencies/acme/requests", headers=ALICE).status_code == 400
    assert client.post("/agencies/missing/requests", headers=BOB).status_code == 404

    with client.websocket_connect("/ws") as owner:
        owner.send_json({"event": "init", "data": "alice"})
        owner.receive_json()

        sent = client.post("/agencies/acme/requests", headers=BOB)
        assert sent.status_code == 201

        for _ in range(10):
            message = owner.receive_json()
            if message["event"] == "agency_join_request_received":
                break
        assert message["data"]["username"] == "bob"
        assert message["data"]["status"] == "pending"

    duplicate = client.post("/agencies/acme/requests", headers=BOB)
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"] == "You have already sent a request to this agency."

    not_owner = client.post("/agencies/acme/requests/bob/handle", headers=BOB, json={"action": "accept"})
    assert not_owner.status_code == 403

    accepted = client.post("/agencies/acme/requests/bob/handle", headers=ALICE, json={"action": "accept"})
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "accepted"
    assert client.get("/agencies/acme").json()["members"] == ["alice", "bob"]

    again = client.post("/agencies/acme/requests/bob/handle", headers=ALICE, json={"action": "reject"})
    assert again.status_code == 409

    notes = client.get("/notifications", headers=BOB).json()
    assert any("has been accepted" in note["message"] for note in notes)


def test_rejected_join_request(client: TestClient) -> None:
    client.post("/agencies", headers=ALICE, json={"agency_id": "acme", "name": "Acme Helpers"})
    client.post("/agencies/acme/requests", headers=CAROL)

    rejected = client.post("/agencies/acme/requests/carol/handle", headers=ALICE, json={"action": "reject"})

    assert rejected.json()["status"] == "rejected"
    assert client.get("/agencies/acme").json()["members"] == ["alice"]
    assert client.post("/agencies/acme/requests/nobody/handle", headers=ALICE, json={"action": "accept"}).status_code == 404


def test_owner_removes_agency_member(client: TestClient) -> None:
    client.post("/agencies", headers=ALICE, json={"agency_id": "acme", "name": "Acme Helpers"})
    client.post("/agencies/acme/requests", headers=BOB)
    client.post("/agencies/acme/requests/bob/handle", headers=ALICE, json={"action": "accept"})

    assert client.delete("/agencies/acme/members/bob", headers=BOB).status_code == 403
    assert client.delete("/agencies/acme/members/alice", headers=ALICE).status_code == 400
    assert client.delete("/agencies/missing/members/bob", headers=ALICE).status_code == 404

    with client.websocket_connect("/ws") as member:
        member.send_json({"event": "init", "data": "bob"})
        member.receive_json()

        removed = client.delete("/agencies/acme/members/bob", headers=ALICE)
        assert removed.status_code == 200
        assert removed.json()["members"] == ["alice"]

        seen: list[str] = []
        for _ in range(10):
            message = member.receive_json()
            seen.append(message["event"])
            if message["event"] == "content_updated" and message["data"]["type"] == "agencies":
                break
        assert message["data"]["data"]["members"] == ["alice"]
        assert "notification" in seen

    not_member = client.delete("/agencies/acme/members/bob", headers=ALICE)
    assert not_member.status_code == 404
    assert not_member.json()["detail"] == "User 'bob' is not a member of this agency."

    notes = client.get("/notifications", headers=BOB).json()
    assert notes[0]["message"] == 'You have been removed from the agency: "Acme Helpers".'
