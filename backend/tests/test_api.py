"""
Tests for the HTTP layer: routing, error mapping and response shapes.
"""
import pytest
from fastapi.testclient import TestClient

import engine.session_service as session_module
import services.lastfm_service as lastfm_module
import services.media_cache as media_module
from config import settings
from conftest import video
from engine.session_service import SessionService
from models.media import TrackSearchResult
from services import store as store_module
from services.media_cache import MediaCacheOrchestrator
from services.video_resolver import VideoResolutionService


class FakeTrackSearch:
    async def search(self, query, limit=8):
        return [TrackSearchResult(id="TheBeatlesHeyJude", name="Hey Jude", artist="The Beatles")][:limit]


@pytest.fixture
def client(store, master, video_provider, monkeypatch):
    monkeypatch.setattr(settings, "countdown_sweep_interval_seconds", 0)
    monkeypatch.setattr(store_module, "_store", store)
    monkeypatch.setattr(
        session_module, "_session_service",
        SessionService(store=store, master=master, schedule_timers=False),
    )
    monkeypatch.setattr(
        media_module, "_media_cache",
        MediaCacheOrchestrator(store=store, resolver=VideoResolutionService(provider=video_provider)),
    )
    monkeypatch.setattr(lastfm_module, "_lastfm_service", FakeTrackSearch())
    from main import app
    with TestClient(app) as c:
        yield c


def create_lobby(client, n_players=3):
    created = client.post("/api/sessions", json={"host_name": "Host"}).json()
    ids = [created["host_player_id"]]
    for i in range(2, n_players + 1):
        joined = client.post("/api/sessions/join", json={"code": created["code"], "player_name": f"P{i}"})
        assert joined.status_code == 200
        ids.append(joined.json()["player_id"])
    return created["session_id"], ids


class TestSessions:

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "ok"

    def test_round_over_http(self, client):
        session_id, ids = create_lobby(client, 3)
        for pid in ids[1:]:
            r = client.post(f"/api/sessions/{session_id}/ready", json={"player_id": pid})
        assert r.json()["started"] is True
        assert r.json()["session"]["phase"] == "selecting"

        for pid in ids:
            r = client.post(f"/api/sessions/{session_id}/submit", json={
                "player_id": pid, "song_id": f"s-{pid}", "song_name": "Song", "artist": "Artist",
            })
            assert r.status_code == 200
        state = client.get(f"/api/sessions/{session_id}").json()
        assert state["phase"] == "voting"
        subs = {s["player_id"]: s["id"] for s in state["submissions"]}

        client.post(f"/api/sessions/{session_id}/vote", json={"player_id": ids[0], "submission_id": subs[ids[1]]})
        r = client.post(f"/api/sessions/{session_id}/force-end-voting", json={"player_id": ids[0]})
        body = r.json()
        assert body["phase"] == "results"
        assert body["session"]["current_round"]["winner_submission_ids"] == [subs[ids[1]]]

        r = client.post(f"/api/sessions/{session_id}/next-round", json={
            "player_id": ids[0], "prompt_text": "Best song to cook to?",
        })
        assert r.json()["session"]["current_prompt"]["text"] == "Best song to cook to?"
        assert len(r.json()["session"]["previous_rounds"]) == 1

        r = client.post(f"/api/sessions/{session_id}/end", json={"player_id": ids[0]})
        assert r.json()["phase"] == "ended"
        assert "final_round" in r.json()

    def test_permission_and_phase_errors_are_distinct(self, client):
        session_id, ids = create_lobby(client, 3)

        r = client.post(f"/api/sessions/{session_id}/start", json={"player_id": ids[1]})
        assert r.status_code == 403
        assert r.json()["error_code"] == "PERMISSION_DENIED"

        r = client.post(f"/api/sessions/{session_id}/force-end-voting", json={"player_id": ids[0]})
        assert r.status_code == 409
        assert r.json()["error_code"] == "INVALID_PHASE"

    def test_unknown_session(self, client):
        r = client.get("/api/sessions/does-not-exist")
        assert r.status_code == 404
        assert r.json()["error_code"] == "NOT_FOUND"

    def test_countdown_endpoints(self, client):
        session_id, ids = create_lobby(client, 2)
        client.post(f"/api/sessions/{session_id}/start", json={"player_id": ids[0]})

        r = client.post(f"/api/sessions/{session_id}/countdown", json={"player_id": ids[0], "kind": "selection"})
        assert r.status_code == 200
        assert r.json()["session"]["countdown"]["kind"] == "selection"

        r = client.post(f"/api/sessions/{session_id}/countdown/cancel", json={"player_id": ids[0]})
        assert r.json()["cancelled"] is True
        assert r.json()["session"]["countdown"] is None

    def test_prompt_preview(self, client):
        session_id, ids = create_lobby(client, 2)
        r = client.get(f"/api/sessions/{session_id}/prompt-preview", params={"player_id": ids[0]})
        assert r.status_code == 200
        assert r.json()["text"]
        r = client.get(f"/api/sessions/{session_id}/prompt-preview", params={"player_id": ids[1]})
        assert r.status_code == 403


class TestMedia:

    def test_resolve_not_found(self, client):
        r = client.post("/api/media/resolve", json={"artist": "The Beatles", "track": "Hey Jude"})
        assert r.status_code == 200
        assert r.json() == {"notFound": True, "fromCache": False}

    def test_resolve_found(self, client, video_provider):
        video_provider.default = [video("hj", "The Beatles - Hey Jude (Official Video)", "TheBeatlesVEVO")]
        r = client.post("/api/media/resolve", json={
            "artist": "The Beatles", "track": "Hey Jude", "prefer_video": True,
        })
        body = r.json()
        assert body["externalId"] == "hj"
        assert body["isVideo"] is True
        assert body["embedUrl"] == "https://www.youtube.com/embed/hj"

    def test_resolve_requires_names(self, client):
        r = client.post("/api/media/resolve", json={"artist": " ", "track": "Hey Jude"})
        assert r.status_code == 400

    def test_music_search(self, client):
        r = client.get("/api/music/search", params={"q": "hey jude"})
        assert r.json()["results"][0]["name"] == "Hey Jude"

    def test_cache_management(self, client):
        r = client.post("/api/cache/add-entry", json={
            "artist": "Daft Punk", "track": "One More Time", "external_id": "omt",
        })
        assert r.status_code == 201

        r = client.get("/api/cache/entry", params={"artist": "daft punk", "track": "one more time!"})
        assert r.json()["audio"]["external_id"] == "omt"
        r = client.get("/api/cache/entry", params={"artist": "x", "track": "y"})
        assert r.status_code == 404
        assert r.json()["error_code"] == "NOT_RESOLVABLE"

        stats = client.get("/api/cache/stats").json()
        assert stats["total_entries"] == 1
        assert client.get("/api/cache/top-accessed").json()["entries"][0]["artist"] == "Daft Punk"

        r = client.post("/api/cache/cleanup", json={"min_confidence": 0.5})
        assert r.json()["success"] is True
        assert r.json()["deleted"] == 0
