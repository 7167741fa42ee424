from __future__ import annotations

import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from marketplace.main import create_app
from marketplace.site_content import DEFAULT_SETTINGS, SiteContentStore

pytestmark = pytest.mark.integration


class SilentCompletionClient:
    async def complete(self, prompt: str) -> str:
        raise ConnectionError("classifier offline")


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "data"


@pytest.fixture
def client(tmp_path: Path, data_dir: Path):
    app = create_app(
        database_path=str(tmp_path / "marketplace.sqlite3"),
        data_dir=str(data_dir),
        admin_api_key="admin-key",
        completion_client=SilentCompletionClient(),
    )
    with TestClient(app) as test_client:
        yield test_client


def test_settings_default_then_merge(client: TestClient, data_dir: Path) -> None:
    assert client.get("/settings").json() == DEFAULT_SETTINGS

    unauthorized = client.put("/admin/settings", json={"defaultPersonAvatar": "/img/person.png"})
    assert unauthorized.status_code == 401

    updated = client.put(
        "/admin/settings",
        headers={"x-api-key": "admin-key"},
        json={"defaultPersonAvatar": "/img/person.png"},
    )
    assert updated.status_code == 200
    assert updated.json() == {"defaultPersonAvatar": "/img/person.png", "defaultAgencyAvatar": ""}

    on_disk = json.loads((data_dir / "settings.json").read_text(encoding="utf-8"))
    assert on_disk == updated.json()


def test_about_content_is_replaced_whole(client: TestClient) -> None:
    document = {"ourStory": {"paragraphs": ["We started in 2024."]}}

    with client.websocket_connect("/ws") as viewer:
        viewer.send_json({"event": "init", "data": "viewer"})
        viewer.receive_json()
        replaced = client.put("/admin/about-content", headers={"x-api-key": "admin-key"}, json=document)
        assert replaced.status_code == 200
        assert viewer.receive_json() == {"event": "about_content_updated", "data": document}

    assert client.get("/about-content").json() == document


@pytest.mark.unit
def test_store_falls_back_to_defaults_on_corrupt_file(tmp_path: Path) -> None:
    store = SiteContentStore(str(tmp_path))
    (tmp_path / "settings.json").write_text("{not json", encoding="utf-8")
    (tmp_path / "about-content.json").write_text("[1, 2, 3]", encoding="utf-8")

    settings = store.read_settings()
    settings["defaultPersonAvatar"] = "mutated"

    assert store.read_settings() == DEFAULT_SETTINGS
    assert store.read_about_content()["ourTeam"]["title"] == "Our Team"
