import asyncio
import base64
import json
import time
from unittest.mock import patch

import pytest
import requests

from conftest import MockResponse
from studio_api.generator import ContentGenerator, VideoEngineClient, parse_llm_json


def _chat_reply(content=None, arguments=None):
    message = {"content": content}
    if arguments is not None:
        message["tool_calls"] = [{"function": {"name": "x", "arguments": arguments}}]
    return MockResponse({"choices": [{"message": message}]})


def test_parse_llm_json_handles_fences_and_chatter():
    assert parse_llm_json('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_llm_json('Sure! Here it is: {"a": {"b": 2}} Enjoy.') == {"a": {"b": 2}}
    with pytest.raises(ValueError):
        parse_llm_json("no json here")


def test_chat_returns_text():
    gen = ContentGenerator(api_key="sk-test")
    with patch("requests.Session.request", return_value=_chat_reply("A script")) as mock_request:
        result = asyncio.run(gen.chat([{"role": "user", "content": "hi"}]))

    assert result == {"success": True, "content": "A script"}
    method, url = mock_request.call_args.args[:2]
    assert method == "POST"
    assert url == "https://api.openai.com/v1/chat/completions"
    assert mock_request.call_args.kwargs["headers"]["Authorization"] == "Bearer sk-test"
    assert "tools" not in mock_request.call_args.kwargs["json"]


def test_chat_with_schema_parses_tool_arguments():
    gen = ContentGenerator()
    schema = {"name": "optimize_hook", "description": "d", "parameters": {"type": "object"}}
    reply = _chat_reply(arguments=json.dumps({"optimized_title": "Big Night"}))
    with patch("requests.Session.request", return_value=reply) as mock_request:
        result = asyncio.run(gen.chat([], schema=schema))

    assert result["content"] == {"optimized_title": "Big Night"}
    body = mock_request.call_args.kwargs["json"]
    assert body["tool_choice"]["function"]["name"] == "optimize_hook"


def test_chat_malformed_json_is_parse_failure():
    gen = ContentGenerator()
    schema = {"name": "orchestrate_scenes", "parameters": {}}
    with patch("requests.Session.request", return_value=_chat_reply("not json at all")):
        result = asyncio.run(gen.chat([], schema=schema))
    assert result["success"] is False
    assert result["reason"] == "parse"


def test_chat_http_error_is_envelope():
    gen = ContentGenerator()
    with patch("requests.Session.request", return_value=MockResponse({}, status_code=503)):
        result = asyncio.run(gen.chat([]))
    assert result["success"] is False
    assert result["reason"] == "http"
    assert "503" in result["error"]


def test_chat_network_error_is_envelope():
    gen = ContentGenerator()
    with patch("requests.Session.request", side_effect=requests.ConnectionError("refused")):
        result = asyncio.run(gen.chat([]))
    assert result["success"] is False
    assert result["reason"] == "network"


def test_chat_unexpected_shape_is_parse_failure():
    gen = ContentGenerator()
    with patch("requests.Session.request", return_value=MockResponse({"choices": []})):
        result = asyncio.run(gen.chat([]))
    assert result["reason"] == "parse"


def test_generate_image_decodes_b64():
    gen = ContentGenerator()
    payload = {"data": [{"b64_json": base64.b64encode(b"png-bytes").decode()}]}
    with patch("requests.Session.request", return_value=MockResponse(payload)):
        result = asyncio.run(gen.generate_image("a rooftop"))
    assert result == {"success": True, "image": b"png-bytes"}


def test_synthesize_speech_returns_bytes():
    gen = ContentGenerator()
    with patch("requests.Session.request", return_value=MockResponse(content=b"ID3")) as mock_request:
        result = asyncio.run(gen.synthesize_speech("hello", voice="nova"))
    assert result == {"success": True, "audio": b"ID3"}
    body = mock_request.call_args.kwargs["json"]
    assert body["model"] == "tts-1-hd"
    assert body["response_format"] == "mp3"


def test_video_engine_unconfigured(no_network):
    result = asyncio.run(VideoEngineClient().generate({"prompt": "x"}))
    assert result["success"] is False
    assert result["reason"] == "unconfigured"


@pytest.mark.parametrize("key", ["videoUrl", "video_url", "url"])
def test_video_engine_reads_any_url_key(key):
    client = VideoEngineClient("http://engine.test")
    with patch("requests.Session.request", return_value=MockResponse({key: "http://cdn/v.mp4"})) as mock_request:
        result = asyncio.run(client.generate({"prompt": "x"}))
    assert result["success"] is True
    assert result["videoUrl"] == "http://cdn/v.mp4"
    assert mock_request.call_args.args[1] == "http://engine.test/api/generate"


def test_video_engine_without_url_is_parse_failure():
    client = VideoEngineClient("http://engine.test")
    with patch("requests.Session.request", return_value=MockResponse({"status": "ok"})):
        result = asyncio.run(client.generate({}))
    assert result["reason"] == "parse"


def test_video_engine_timeout_counts_as_unreachable():
    def slow(*args, **kwargs):
        time.sleep(0.3)
        return MockResponse({"videoUrl": "late"})

    client = VideoEngineClient("http://engine.test", timeout_sec=0.05)
    with patch("requests.Session.request", side_effect=slow):
        result = asyncio.run(client.generate({}))
    assert result["success"] is False
    assert result["reason"] == "timeout"


def test_music_unconfigured(no_network):
    result = asyncio.run(ContentGenerator().generate_music("theme"))
    assert result["success"] is False
    assert result["reason"] == "unconfigured"


def test_music_uses_its_own_url_and_key():
    gen = ContentGenerator(api_key="sk-chat", music_url="http://music.test/api", music_api_key="mk-1")
    reply = MockResponse({"audio_base64": base64.b64encode(b"ID3-theme").decode("ascii")})
    with patch("requests.Session.request", return_value=reply) as mock_request:
        result = asyncio.run(gen.generate_music("Confident anthem", duration=15, style="Pop"))

    assert result == {"success": True, "audio": b"ID3-theme"}
    method, url = mock_request.call_args.args[:2]
    assert url == "http://music.test/api/generate"
    assert mock_request.call_args.kwargs["headers"]["Authorization"] == "Bearer mk-1"
    assert mock_request.call_args.kwargs["json"]["duration"] == 15


def test_music_returns_hosted_track_url():
    gen = ContentGenerator(music_url="http://music.test")
    with patch("requests.Session.request", return_value=MockResponse({"audioUrl": "http://cdn/t.mp3"})):
        result = asyncio.run(gen.generate_music("theme"))
    assert result == {"success": True, "audioUrl": "http://cdn/t.mp3"}


def test_music_without_audio_is_parse_failure():
    gen = ContentGenerator(music_url="http://music.test")
    with patch("requests.Session.request", return_value=MockResponse({"status": "queued"})):
        result = asyncio.run(gen.generate_music("theme"))
    assert result["reason"] == "parse"
