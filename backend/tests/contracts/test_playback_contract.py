"""
Contract Tests for Playback Endpoints

The endpoints run against a dedicated orchestrator (preview provider, no
persistence) injected through the get_orchestrator dependency. The client is
used as a context manager so that all requests share one event loop with the
orchestrator's task chain.
"""

import pytest
from fastapi.testclient import TestClient

from api import playback
from core.playback_orchestrator import PlaybackOrchestrator
from main import app
from models.playback_models import PlaybackSettings
from models.response_models import (
    CommandAcceptedResponse,
    PlaybackStateResponse,
    ReadingHistoryResponse,
    VoicesListResponse,
)
from services.content_pipeline import StaticContentPipeline
from services.provider_manager import ProviderManager


BOOK = {
    "bookId": "book-1",
    "sections": [
        {
            "sectionId": "ch1",
            "title": "Chapter 1",
            "bookTitle": "A Book",
            "author": "An Author",
            "sentences": [
                {"text": "First sentence.", "locationId": "loc-0", "sourceIndices": [0]},
                {"text": "Second sentence.", "locationId": "loc-1", "sourceIndices": [1]},
                {"text": "Third sentence.", "locationId": "loc-2", "sourceIndices": [2]},
            ],
        },
        {
            "sectionId": "ch2",
            "title": "Chapter 2",
            "sentences": [
                {"text": "Fourth sentence.", "locationId": "loc-3", "sourceIndices": [3]},
            ],
        },
    ],
}


@pytest.fixture
def orchestrator():
    return PlaybackOrchestrator(
        provider_manager=ProviderManager(),
        content_pipeline=StaticContentPipeline(),
        repository=None,
        settings=PlaybackSettings(provider_id="preview")
    )


@pytest.fixture
def client(orchestrator):
    app.dependency_overrides[playback.get_orchestrator] = lambda: orchestrator
    with TestClient(app) as test_client:
        yield test_client
        test_client.portal.call(orchestrator.close)
    app.dependency_overrides.pop(playback.get_orchestrator, None)


@pytest.fixture
def loaded(client):
    """Book registered and first section loaded without auto-play."""
    assert client.post("/api/playback/book", json=BOOK).status_code == 202
    response = client.post("/api/playback/section", json={"sectionIndex": 0, "autoPlay": False})
    assert response.status_code == 202
    return client


class TestPlaybackStateContract:
    """Contract tests for GET /api/playback/state."""

    def test_state_returns_200(self, client):
        response = client.get("/api/playback/state")
        assert response.status_code == 200
        PlaybackStateResponse.model_validate(response.json())

    def test_state_uses_camel_case(self, client):
        data = client.get("/api/playback/state").json()
        for key in ("bookId", "providerId", "activeLocationId", "currentIndex",
                    "currentSectionIndex", "totalDuration", "remainingDuration", "lastError"):
            assert key in data
        assert "current_index" not in data

    def test_initial_state_is_stopped(self, client):
        data = client.get("/api/playback/state").json()
        assert data["status"] == "stopped"
        assert data["bookId"] is None
        assert data["queue"] == []

    def test_loaded_section_queue_items(self, loaded):
        data = loaded.get("/api/playback/state").json()
        assert data["bookId"] == "book-1"
        assert data["currentSectionIndex"] == 0
        assert [item["locationId"] for item in data["queue"]] == ["loc-0", "loc-1", "loc-2"]
        item = data["queue"][0]
        assert item["isAnnouncement"] is False
        assert item["isSkipped"] is False
        assert item["sourceIndices"] == [0]
        assert data["totalDuration"] > 0


class TestTransportContract:
    """Contract tests for transport commands."""

    def test_play_returns_202(self, loaded):
        response = loaded.post("/api/playback/play")
        assert response.status_code == 202
        validated = CommandAcceptedResponse.model_validate(response.json())
        assert validated.command == "play"
        assert validated.accepted is True

    def test_play_without_book_is_accepted(self, client):
        """Nothing to play is not an HTTP error; the status stays stopped."""
        response = client.post("/api/playback/play")
        assert response.status_code == 202
        assert response.json()["status"] == "stopped"

    def test_stop_returns_stopped(self, loaded):
        loaded.post("/api/playback/play")
        response = loaded.post("/api/playback/stop")
        assert response.status_code == 202
        assert response.json()["status"] == "stopped"

    def test_jump_validates_index(self, loaded):
        response = loaded.post("/api/playback/jump", json={"index": -1})
        assert response.status_code == 422

    def test_seek_to_time_validates_seconds(self, loaded):
        response = loaded.post("/api/playback/seek-to-time", json={"seconds": -5})
        assert response.status_code == 422

    def test_skip_mask_marks_items(self, loaded):
        response = loaded.post("/api/playback/skip-mask", json={"indices": [1]})
        assert response.status_code == 202
        queue = loaded.get("/api/playback/state").json()["queue"]
        assert [item["isSkipped"] for item in queue] == [False, True, False]

    def test_table_adaptation_replaces_cells(self, loaded):
        response = loaded.post("/api/playback/table-adaptations", json={
            "adaptations": [{"text": "A table in prose.", "sourceIndices": [1, 2]}]
        })
        assert response.status_code == 202
        queue = loaded.get("/api/playback/state").json()["queue"]
        assert [item["text"] for item in queue[:2]] == ["First sentence.", "A table in prose."]
        assert [item["isSkipped"] for item in queue] == [False, False, True]

    def test_empty_table_adaptations_rejected(self, loaded):
        response = loaded.post("/api/playback/table-adaptations", json={"adaptations": []})
        assert response.status_code == 422


class TestSettingsContract:
    """Contract tests for speed, provider and preferences."""

    def test_speed_in_range(self, client, orchestrator):
        response = client.post("/api/playback/speed", json={"speed": 1.5})
        assert response.status_code == 202
        assert orchestrator.settings.speed == 1.5

    def test_speed_out_of_range_returns_400(self, client):
        response = client.post("/api/playback/speed", json={"speed": 9.0})
        assert response.status_code == 400
        assert response.json()["detail"].startswith("[PLAYBACK_INVALID_SPEED]")

    def test_unknown_provider_returns_400(self, client):
        response = client.post("/api/playback/provider", json={"providerId": "polly"})
        assert response.status_code == 400
        assert response.json()["detail"] == "[PLAYBACK_UNKNOWN_PROVIDER]providerId:polly"

    def test_switch_provider(self, client, orchestrator):
        response = client.post("/api/playback/provider", json={"providerId": "local"})
        assert response.status_code == 202
        assert orchestrator.settings.provider_id == "local"

    def test_preferences_update(self, client, orchestrator):
        response = client.put("/api/playback/preferences", json={"prerollEnabled": True})
        assert response.status_code == 200
        assert orchestrator.settings.preroll_enabled is True
        assert orchestrator.settings.smart_resume_enabled is True

    def test_voices_list(self, client):
        response = client.get("/api/playback/voices")
        assert response.status_code == 200
        validated = VoicesListResponse.model_validate(response.json())
        assert validated.provider_id == "preview"
        assert response.json()["voices"][0].keys() >= {"id", "name", "language", "providerId", "isDownloaded"}

    def test_preview_text_required(self, client):
        response = client.post("/api/playback/preview", json={"text": ""})
        assert response.status_code == 422


class TestBookContract:
    """Contract tests for book and section commands."""

    def test_section_without_book_returns_409(self, client):
        response = client.post("/api/playback/section", json={"sectionIndex": 0})
        assert response.status_code == 409
        assert response.json()["detail"] == "[PLAYBACK_BOOK_NOT_LOADED]"

    def test_section_requires_index_or_id(self, loaded):
        response = loaded.post("/api/playback/section", json={})
        assert response.status_code == 400
        assert response.json()["detail"].startswith("[PLAYBACK_INVALID_COMMAND]")

    def test_section_by_id(self, loaded):
        response = loaded.post("/api/playback/section", json={"sectionId": "ch2", "autoPlay": False})
        assert response.status_code == 202
        data = loaded.get("/api/playback/state").json()
        assert data["currentSectionIndex"] == 1
        assert data["queue"][0]["locationId"] == "loc-3"

    def test_book_id_required(self, client):
        response = client.post("/api/playback/book", json={"bookId": ""})
        assert response.status_code == 422

    def test_history_without_book_returns_409(self, client):
        response = client.get("/api/playback/history")
        assert response.status_code == 409

    def test_history_without_persistence_is_empty(self, loaded):
        response = loaded.get("/api/playback/history")
        assert response.status_code == 200
        assert ReadingHistoryResponse.model_validate(response.json()).entries == []


class TestVersionContract:

    def test_version_endpoint(self, client):
        response = client.get("/api/version")
        assert response.status_code == 200
        assert "version" in response.json()
