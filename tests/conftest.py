"""
Test configuration and fixtures.

Everything runs against a temporary SQLite file and media directory; the
content generator and the video engine are replaced with in-process fakes so
no test makes a network call unless it is marked liveapi.
"""

import asyncio
import json
import os
import sys

import pytest
import requests

# Ensure repo root is on sys.path
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from studio_api.cache import TTLCache
from studio_api.db import Database
from studio_api.events import EventLogger
from studio_api.generator import failure
from studio_api.models import Character, Project
from studio_api.orchestrator import Orchestrator, VideoRenderer
from studio_api.recovery import ErrorReporter
from studio_api.stages import build_registry
from studio_api.storage import StorageManager


class MockResponse:
    """Mock HTTP response for testing"""

    def __init__(self, json_data=None, status_code=200, content=b"", text=None):
        self.json_data = json_data
        self.status_code = status_code
        self.content = content
        self.text = text if text is not None else json.dumps(json_data or {})
        self.headers = {"content-type": "application/json"}

    def json(self):
        if self.json_data is None:
            raise ValueError("No JSON body")
        return self.json_data

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


DEFAULT_SCENES = {
    "title": "Rooftop Reunion",
    "matched_template": "reunion",
    "scenes": [
        {
            "location": "Rooftop bar",
            "characters": ["Tasha", "Marcus"],
            "description": "Old friends spot each other across the bar",
            "emotion": "tense",
            "music_cue": "low synth",
            "duration_seconds": 6,
            "dialogue": "I did not expect to see you here.",
        },
        {
            "location": "Confessional booth",
            "characters": ["Tasha"],
            "description": "Tasha explains why she left",
            "emotion": "raw",
            "duration_seconds": 4,
            "scene_type": "confessional",
        },
    ],
}


DEFAULT_CAST = {
    "characters": [
        {
            "name": "Tasha",
            "role": "returning star",
            "age": 29,
            "personality": "Confident and sharp-tongued",
            "background": "Left the show after season one",
            "goals": "Reclaim her spot at the top",
            "voice": "shimmer",
            "relationships": [{"character": "Marcus", "type": "ex", "description": "Unfinished business"}],
        },
        {
            "name": "Marcus",
            "role": "ex",
            "personality": "Charming but evasive",
            "background": "Runs the rooftop bar",
            "goals": ["Keep the peace", "Win Tasha back"],
        },
    ]
}


class FakeGenerator:
    """In-process ContentGenerator. Replies are keyed by call kind:
    script, cultural, bible, music (plain text) or the tool schema name."""

    def __init__(self, replies=None, fail=()):
        self.replies = {
            "script": "INT. ROOFTOP - NIGHT\nTasha walks in. Marcus freezes.",
            "cultural": "INT. ROOFTOP - NIGHT\nTasha walks in, Minneapolis cold on her coat.",
            "optimize_hook": {
                "optimized_title": "The Rooftop Showdown",
                "optimized_description": "Old wounds reopen under the skyline.",
                "hooks": ["She came back for one reason."],
            },
            "direct_episode": {"guidance": "Handheld, tight on faces", "shots": ["wide", "close"], "pacing": "fast"},
            "orchestrate_scenes": DEFAULT_SCENES,
            "design_characters": DEFAULT_CAST,
            "music": "A confident hip-hop anthem with rooftop swagger.",
        }
        self.replies.update(replies or {})
        self.fail = set(fail)
        self.calls = []
        self.images = 0
        self.speech = 0
        self.music = []

    @staticmethod
    def _kind(messages, schema):
        if schema:
            return schema["name"]
        system = messages[0]["content"] if messages else ""
        if "showrunner" in system:
            return "bible"
        if "Rewrite the script" in system:
            return "cultural"
        if "music generator" in system:
            return "music"
        return "script"

    async def chat(self, messages, schema=None, model=None, temperature=0.8):
        kind = self._kind(messages, schema)
        self.calls.append(kind)
        if kind in self.fail:
            return failure("network", f"{kind} upstream unreachable")
        reply = self.replies.get(kind)
        if callable(reply):
            reply = reply(messages)
        if isinstance(reply, dict) and reply.get("success") is False:
            return reply
        return {"success": True, "content": reply}

    async def generate_image(self, prompt, size=None):
        self.images += 1
        if "image" in self.fail:
            return failure("http", "Content generation returned HTTP 500: boom")
        return {"success": True, "image": b"\x89PNG-fake"}

    async def synthesize_speech(self, text, voice="nova", speed=1.0, model=None, response_format="mp3"):
        self.speech += 1
        if "voice" in self.fail:
            return failure("network", "speech unreachable")
        return {"success": True, "audio": b"ID3-fake-audio"}

    async def generate_music(self, prompt, duration=30, style="Urban/Hip-Hop"):
        self.music.append(prompt)
        reply = self.replies.get("track")
        if reply is None:
            return failure("unconfigured", "Music generation URL is not configured")
        return reply


class FakeEngine:
    """Primary video engine stand-in; unconfigured unless given a result"""

    def __init__(self, result=None, delay=0.0, fail_for=(), delay_for=None):
        self.result = result
        self.delay = delay
        self.delay_for = dict(delay_for or {})
        self.fail_for = set(fail_for)
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.events = []

    async def generate(self, payload):
        episode_id = payload["metadata"]["episodeId"]
        self.calls.append(payload)
        self.events.append(("start", episode_id))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            delay = self.delay_for.get(episode_id, self.delay)
            if delay:
                await asyncio.sleep(delay)
        finally:
            self.active -= 1
            self.events.append(("end", episode_id))
        if episode_id in self.fail_for:
            return failure("http", "Video engine returned HTTP 500")
        if self.result is None:
            return failure("unconfigured", "Video engine URL is not configured")
        return dict(self.result)


@pytest.fixture
def db(tmp_path):
    return Database(str(tmp_path / "studio.db"))


@pytest.fixture
def storage(tmp_path):
    return StorageManager(str(tmp_path / "media"), "http://test/media")


@pytest.fixture
def cache():
    return TTLCache(300)


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def events(db, tmp_path):
    return EventLogger(db, str(tmp_path / "runs"))


@pytest.fixture
def registry(generator, storage, cache):
    return build_registry(generator, storage, cache)


@pytest.fixture
def renderer(engine, registry, events):
    return VideoRenderer(engine, registry, events)


@pytest.fixture
def orchestrator(db, registry, events, renderer, storage):
    return Orchestrator(db, registry, events, renderer, storage, ErrorReporter(db))


@pytest.fixture
def project(db):
    p = Project(id="proj-1", title="Rooftop Nights")
    db.insert_project(p)
    db.insert_character(Character(id="c-1", project_id=p.id, name="Tasha", role="returning star"))
    db.insert_character(Character(id="c-2", project_id=p.id, name="Marcus", role="ex"))
    return p


@pytest.fixture
def no_network(monkeypatch):
    """Fail loudly if anything reaches for the real HTTP stack"""

    def blocked(*args, **kwargs):
        raise RuntimeError(f"Network request attempted in test: {args[1:2]}")

    monkeypatch.setattr(requests.Session, "request", blocked)


def pytest_configure(config):
    """Configure pytest markers"""
    config.addinivalue_line(
        "markers", "liveapi: marks tests that require live API access (disabled by default)"
    )
    config.addinivalue_line(
        "markers", "api: marks HTTP surface tests that run through TestClient"
    )


def pytest_collection_modifyitems(config, items):
    """Skip liveapi tests unless TEST_LIVE_API is set"""
    if os.getenv("TEST_LIVE_API"):
        return
    skip_live = pytest.mark.skip(reason="set TEST_LIVE_API=1 to run live API tests")
    for item in items:
        if "liveapi" in item.keywords:
            item.add_marker(skip_live)
