"""Tests for the HTTP API: health, announcement endpoints and engine controls."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from bonfire.api import create_app
from bonfire.config import Config
from bonfire.models import RecordStatus
from bonfire.store import RecordStore


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def app(test_config: Config, engine, store: RecordStore):
    application = create_app(test_config)
    application.state.config = test_config
    application.state.db = engine
    application.state.store = store
    return application


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def sync(app) -> MagicMock:
    """A stand-in sync engine attached to the app."""
    sync = MagicMock()
    sync.started = True
    sync.gateway.client.is_ready.return_value = True
    sync.sync_reactions = AsyncMock(return_value=2)
    sync.identity.stats.return_value = {
        "size": 1,
        "ttl_seconds": 300.0,
        "entries": [
            {
                "discord_id": "U1",
                "account_id": "acct-1",
                "display_name": "sky",
                "age_seconds": 3.5,
            }
        ],
    }
    app.state.sync = sync
    return sync


# =============================================================================
# Health
# =============================================================================


class TestHealth:
    def test_health_without_bot(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["database"] == "ok"
        assert data["discord"] == "unavailable"
        assert data["listeners"] == "unavailable"

    def test_health_with_bot(self, client: TestClient, sync: MagicMock) -> None:
        data = client.get("/health").json()

        assert data["discord"] == "connected"
        assert data["listeners"] == "active"


# =============================================================================
# Posts
# =============================================================================


class TestCreatePost:
    def test_create(self, client: TestClient, store: RecordStore) -> None:
        response = client.post(
            "/api/discord/post",
            json={
                "title": "Evening Roam",
                "description": "North gate",
                "additionalInfo": "Bring water",
                "roamId": "roam-1",
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["success"] is True
        record = store.get(data["postId"])
        assert record.status == RecordStatus.PENDING
        assert record.author == "Anonymous"
        assert record.additional_info == "Bring water"
        assert record.roam_id == "roam-1"
        assert record.timestamp is not None
        assert data["post"]["additionalInfo"] == "Bring water"

    def test_title_required(self, client: TestClient, store: RecordStore) -> None:
        response = client.post("/api/discord/post", json={"description": "No title"})

        assert response.status_code == 400
        assert response.json()["detail"] == "Title is required"
        assert store.list_records() == []


class TestUpdatePost:
    def test_update_requests_edit(
        self, client: TestClient, store: RecordStore, posted_record
    ) -> None:
        response = client.put(
            f"/api/discord/post/{posted_record.id}",
            json={"additionalInfo": "Bring water"},
        )

        assert response.status_code == 200
        assert response.json()["updateData"] == {"additionalInfo": "Bring water"}
        record = store.get(posted_record.id)
        assert record.update_requested is True
        assert record.additional_info == "Bring water"
        assert record.title == "Evening Roam"

    def test_update_missing(self, client: TestClient) -> None:
        response = client.put("/api/discord/post/nope", json={"title": "x"})

        assert response.status_code == 404

    def test_null_text_field_rejected(
        self, client: TestClient, store: RecordStore, posted_record
    ) -> None:
        response = client.put(f"/api/discord/post/{posted_record.id}", json={"title": None})

        assert response.status_code == 422
        record = store.get(posted_record.id)
        assert record.title == "Evening Roam"
        assert record.update_requested is False

    def test_timestamp_can_be_cleared(
        self, client: TestClient, store: RecordStore, posted_record
    ) -> None:
        response = client.put(f"/api/discord/post/{posted_record.id}", json={"timestamp": None})

        assert response.status_code == 200
        assert store.get(posted_record.id).timestamp is None


class TestReadAndDelete:
    def test_list_posts(self, client: TestClient, store: RecordStore, posted_record) -> None:
        client.post("/api/discord/post", json={"title": "Later"})

        data = client.get("/api/discord/posts").json()
        assert data["count"] == 2
        assert data["posts"][0]["title"] == "Later"

        posted = client.get("/api/discord/posts", params={"status": "posted"}).json()
        assert [p["id"] for p in posted["posts"]] == [posted_record.id]
        assert posted["posts"][0]["discordMessageId"] == "M1"

    def test_list_limit(self, client: TestClient, posted_record) -> None:
        client.post("/api/discord/post", json={"title": "Later"})

        data = client.get("/api/discord/posts", params={"limit": 1}).json()

        assert data["count"] == 1

    def test_get_post(self, client: TestClient, posted_record) -> None:
        data = client.get(f"/api/discord/post/{posted_record.id}").json()

        assert data["post"]["id"] == posted_record.id
        assert data["post"]["reactions"] == {"✅": 0}

    def test_get_missing(self, client: TestClient) -> None:
        assert client.get("/api/discord/post/nope").status_code == 404

    def test_delete_is_soft(self, client: TestClient, store: RecordStore, posted_record) -> None:
        response = client.delete(f"/api/discord/post/{posted_record.id}")

        assert response.status_code == 200
        record = store.get(posted_record.id)
        assert record.status == RecordStatus.DELETED
        assert record.discord_message_id == "M1"

    def test_delete_missing(self, client: TestClient) -> None:
        assert client.delete("/api/discord/post/nope").status_code == 404


# =============================================================================
# Engine controls
# =============================================================================


class TestEngineControls:
    def test_sync_reactions(self, client: TestClient, sync: MagicMock) -> None:
        response = client.post("/api/discord/reactions/sync")

        assert response.status_code == 200
        assert response.json() == {"success": True, "synced": 2}
        sync.sync_reactions.assert_awaited_once()

    def test_sync_reactions_without_bot(self, client: TestClient) -> None:
        assert client.post("/api/discord/reactions/sync").status_code == 503

    def test_identity_cache(self, client: TestClient, sync: MagicMock) -> None:
        data = client.get("/api/discord/identity-cache").json()

        assert data["size"] == 1
        assert data["ttlSeconds"] == 300.0
        assert data["entries"][0]["discordId"] == "U1"
        assert data["entries"][0]["ageSeconds"] == 3.5
