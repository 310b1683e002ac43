import json

import pytest
from fastapi.testclient import TestClient

from conftest import FakeEngine, FakeGenerator
from studio_api import app
from studio_api.config import OperatorConfig
from studio_api.deps import build_services, get_services
from studio_api.models import Character, EpisodeStatus, Project

pytestmark = pytest.mark.api

TOKEN = "test-admin-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}

BIBLE = {
    "show": {"title": "Lakeside Lights", "genre": "reality-drama"},
    "cast": [{"name": "Ines", "role": "newcomer"}],
    "seasons": [{"arc": "Summer secrets", "episodes": [{"title": "Arrival", "synopsis": "Ines arrives."}]}],
}


@pytest.fixture
def make_client(tmp_path, monkeypatch):
    monkeypatch.setenv("ADMIN_TOKEN", TOKEN)

    def factory(generator=None, engine=None):
        config = OperatorConfig(str(tmp_path / "absent.yaml"))
        config.config["storage"].update(
            {
                "db_path": str(tmp_path / "studio.db"),
                "media_dir": str(tmp_path / "media"),
                "runs_dir": str(tmp_path / "runs"),
                "public_base_url": "http://test/media",
            }
        )
        config.config["recovery"]["retry_delay_sec"] = 0
        services = build_services(config, generator or FakeGenerator(), engine or FakeEngine())
        app.dependency_overrides[get_services] = lambda: services
        return TestClient(app), services

    yield factory
    app.dependency_overrides.clear()


def _seed_project(services):
    project = Project(id="proj-api", title="Rooftop Nights")
    services.db.insert_project(project)
    services.db.insert_character(Character(id="c-1", project_id=project.id, name="Tasha"))
    return project


def test_healthz(make_client):
    client, _ = make_client()
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_missing_token_is_401(make_client):
    client, _ = make_client()
    response = client.post("/episode-producer", json={"projectId": "x"})
    assert response.status_code == 401
    assert response.json() == {"success": False, "error": "Missing authentication token"}


def test_wrong_token_is_401(make_client):
    client, _ = make_client()
    response = client.post(
        "/prompt-to-production",
        json={"prompt": "A long enough show idea"},
        headers={"Authorization": "Bearer not-the-token"},
    )
    assert response.status_code == 401
    assert response.json()["error"] == "Invalid authentication token"


def test_preflight_answers_any_path(make_client):
    client, _ = make_client()
    assert client.options("/episode-producer").status_code == 200
    assert client.options("/anything/at/all").status_code == 200


def test_short_prompt_is_400(make_client):
    client, _ = make_client()
    response = client.post("/prompt-to-production", json={"prompt": "too short"}, headers=AUTH)
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert "at least 10 characters" in body["error"]


def test_prompt_to_production(make_client):
    client, services = make_client(FakeGenerator({"bible": json.dumps(BIBLE)}))
    response = client.post(
        "/prompt-to-production",
        json={"prompt": "Summer on a Minnesota lake", "seasonCount": 1, "episodesPerSeason": 2},
        headers=AUTH,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    production = body["production"]
    assert production["project"]["title"] == "Lakeside Lights"
    assert [e["title"] for e in production["episodes"]] == ["Arrival", "Episode 2"]
    assert all(e["status"] == "draft" for e in production["episodes"])

    listed = client.get(f"/projects/{production['project']['id']}/episodes", params={"status": "draft"})
    assert len(listed.json()["episodes"]) == 2


def test_prompt_to_production_exhausted_retries_is_500(make_client):
    client, services = make_client(FakeGenerator({"bible": "not json at all"}))
    response = client.post("/prompt-to-production", json={"prompt": "Summer on a Minnesota lake"}, headers=AUTH)
    assert response.status_code == 500
    assert response.json()["error"].endswith("Please try again or contact support.")
    assert len(services.db.list_error_logs("prompt-to-production")) == 3


def test_aborted_production_returns_report_with_500(make_client):
    client, services = make_client(FakeGenerator(fail={"orchestrate_scenes"}))
    project = _seed_project(services)
    response = client.post("/episode-producer", json={"projectId": project.id}, headers=AUTH)
    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert body["productionSteps"][-1]["status"] == "skipped"
    assert services.db.get(body["episodeId"]).status == EpisodeStatus.FAILED


def test_unknown_project_is_404(make_client):
    client, _ = make_client()
    response = client.post("/episode-producer", json={"projectId": "ghost"}, headers=AUTH)
    assert response.status_code == 404
    assert client.get("/projects/ghost/episodes").status_code == 404


def test_render_unknown_episode_is_404(make_client):
    client, _ = make_client()
    response = client.post("/render-episode-video", json={"episodeId": "ghost"}, headers=AUTH)
    assert response.status_code == 404


def test_polling_endpoints_404(make_client):
    client, _ = make_client()
    assert client.get("/episodes/ghost").status_code == 404
    assert client.get("/jobs/ghost").status_code == 404
    assert client.get("/media/nothing/here.png").status_code == 404


def test_media_is_served_with_its_content_type(make_client):
    client, services = make_client()
    services.storage.put("ep-1/scene_1.png", b"\x89PNG", "image/png")
    response = client.get("/media/ep-1/scene_1.png")
    assert response.status_code == 200
    assert response.content == b"\x89PNG"
    assert response.headers["content-type"] == "image/png"


def test_post_production_bot_needs_no_token(make_client):
    client, _ = make_client()
    response = client.post(
        "/god-level-color-grader-bot",
        json={"frames": [{"sceneType": "confessional", "duration": 4}], "style": "netflix-premium"},
    )
    assert response.status_code == 200
    assert response.json()["success"] is True


@pytest.mark.parametrize("duration", ["abc", [4], "nan"])
def test_post_production_bot_rejects_bad_frame_duration(make_client, duration):
    client, _ = make_client()
    response = client.post("/frame-optimizer-bot", json={"frames": [{"duration": duration}]})
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert "duration" in body["error"]


def test_script_bot_requires_topic_or_theme(make_client):
    client, _ = make_client()
    assert client.post("/script-generator-bot", json={}).status_code == 400

    response = client.post("/script-generator-bot", json={"projectTheme": "Culture Clash", "episodeTitle": "Brunch"})
    body = response.json()
    assert response.status_code == 200
    assert body["topic"] == "Culture Clash: Brunch"
    assert 70 <= body["viral_score"] <= 99


def test_scene_bot_falls_back_on_unparseable_reply(make_client):
    client, _ = make_client(FakeGenerator({"orchestrate_scenes": {"title": "t", "scenes": []}}))
    response = client.post("/scene-orchestration", json={"script": "Poolside argument\nMore"}, headers=AUTH)
    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "matchedTemplate": "custom",
        "scene": {"title": "Poolside argument", "setting": "generated scene"},
        "templateUsed": False,
    }


def test_voice_bot_rejects_blank_text(make_client):
    client, _ = make_client()
    response = client.post("/godlike-voice-bot", json={"text": "   "}, headers=AUTH)
    assert response.status_code == 400


def test_unified_processor_renders_storyboard(make_client):
    client, services = make_client()
    project = _seed_project(services)
    episode = services.db.insert(
        {"project_id": project.id, "storyboard": [{"scene_number": 1, "duration_seconds": 5}]}
    )
    response = client.post("/god-level-unified-processor", json={"episodeId": episode.id}, headers=AUTH)
    assert response.status_code == 200
    assert "_UNIFIED_" in response.json()["videoUrl"]


def test_self_healing(make_client):
    client, _ = make_client()
    response = client.post(
        "/self-healing",
        json={"errorType": "TimeoutError", "errorMessage": "gateway timeout", "component": "batch"},
        headers=AUTH,
    )
    assert response.json()["recoveryAction"] == "restart_service"


def test_character_designer_saves_cast(make_client):
    client, services = make_client()
    project = _seed_project(services)
    response = client.post(
        "/ai-character-designer",
        json={"projectId": project.id, "prompt": "A returning star with a grudge", "count": 2},
        headers=AUTH,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["character"]["name"] == "Tasha"
    assert body["character"]["metadata"]["generated_from_prompt"] == "A returning star with a grudge"
    names = [c.name for c in services.db.list_characters(project.id)]
    assert names.count("Marcus") == 1
    assert len(names) == 3


def test_character_designer_validation(make_client):
    client, services = make_client()
    project = _seed_project(services)
    blank = client.post("/ai-character-designer", json={"projectId": project.id, "prompt": " "}, headers=AUTH)
    assert blank.status_code == 400
    missing = client.post("/ai-character-designer", json={"projectId": "ghost", "prompt": "Diva"}, headers=AUTH)
    assert missing.status_code == 404


def test_music_generator_returns_spec(make_client):
    client, _ = make_client()
    response = client.post(
        "/suno-music-generator",
        json={"characterName": "Tasha", "characterPersonality": "laid back", "mood": "Intense"},
        headers=AUTH,
    )
    assert response.status_code == 200
    spec = response.json()["musicSpec"]
    assert spec["tempo"] == 150
    assert spec["style"] == "Urban/Hip-Hop"
    assert spec["vocals"] == "Smooth, relaxed vocal style"
    assert client.post("/suno-music-generator", json={"characterName": "Tasha"}).status_code == 401
