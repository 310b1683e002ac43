"""
Content generation clients.

ContentGenerator wraps an OpenAI-compatible HTTP API for chat, image and speech
generation. VideoEngineClient talks to the primary video engine. Neither client
retries; every failure comes back as an envelope:

    {"success": False, "error": "<message>", "reason": "network|http|parse|timeout|unconfigured"}
"""

import asyncio
import base64
import json
import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import requests

logger = logging.getLogger(__name__)


def parse_llm_json(text: str) -> dict:
    """Parse a JSON object out of model text, tolerating code fences and chatter"""
    text = text.strip()
    text = re.sub(r"^```(?:json)?\s*|\s*```$", "", text, flags=re.DOTALL)
    text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        m = re.search(r"\{.*\}", text, flags=re.DOTALL)
        if m:
            try:
                return json.loads(m.group(0))
            except json.JSONDecodeError as e:
                raise ValueError(f"Failed to parse model JSON: {e}")
        raise ValueError("No JSON object found in model output")


def failure(reason: str, error: str) -> Dict[str, Any]:
    return {"success": False, "error": error, "reason": reason}


class ContentGenerator:
    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        api_key: str = "",
        chat_model: str = "gpt-4o-mini",
        image_model: str = "dall-e-3",
        tts_model: str = "tts-1-hd",
        image_size: str = "1792x1024",
        timeout_sec: float = 60.0,
        music_url: str = "",
        music_api_key: str = "",
        session: Optional[requests.Session] = None,
    ):
        self.base = base_url.rstrip("/") + "/"
        self.music_base = music_url.rstrip("/") + "/" if music_url else ""
        self.music_api_key = music_api_key
        self.api_key = api_key
        self.chat_model = chat_model
        self.image_model = image_model
        self.tts_model = tts_model
        self.image_size = image_size
        self.timeout = float(timeout_sec)
        self.sess = session or requests.Session()

    @classmethod
    def from_config(cls, config) -> "ContentGenerator":
        return cls(
            base_url=config.get("generation.base_url"),
            api_key=config.get_secret("generation.api_key_env"),
            chat_model=config.get("generation.chat_model"),
            image_model=config.get("generation.image_model"),
            tts_model=config.get("generation.tts_model"),
            image_size=config.get("generation.image_size"),
            timeout_sec=config.get("generation.timeout_sec", 60),
            music_url=config.get_secret("music.api_url_env"),
            music_api_key=config.get_secret("music.api_key_env"),
        )

    def _post(self, path: str, payload: Dict[str, Any], api_key: Optional[str] = None) -> requests.Response:
        # an absolute path overrides the generation base URL
        return self.sess.request(
            "POST",
            urljoin(self.base, path),
            json=payload,
            headers={"Authorization": f"Bearer {self.api_key if api_key is None else api_key}"},
            timeout=self.timeout,
        )

    async def _call(self, path: str, payload: Dict[str, Any], api_key: Optional[str] = None):
        """Run the blocking request off the event loop; returns (response, failure)"""
        try:
            resp = await asyncio.to_thread(self._post, path, payload, api_key)
        except requests.RequestException as e:
            logger.error(f"[generator] Request to {path} failed: {e}")
            return None, failure("network", f"Content generation request failed: {e}")
        if resp.status_code >= 400:
            logger.error(f"[generator] {path} returned HTTP {resp.status_code}")
            return None, failure(
                "http", f"Content generation returned HTTP {resp.status_code}: {resp.text[:200]}"
            )
        return resp, None

    async def chat(
        self,
        messages: List[Dict[str, str]],
        schema: Optional[Dict[str, Any]] = None,
        model: Optional[str] = None,
        temperature: float = 0.8,
    ) -> Dict[str, Any]:
        """
        Run one chat completion.

        With a schema (a function definition with name/description/parameters)
        the model is forced to call it and the parsed arguments are returned as
        content; without one the raw reply text is returned.
        """
        body: Dict[str, Any] = {
            "model": model or self.chat_model,
            "messages": messages,
            "temperature": temperature,
        }
        if schema:
            body["tools"] = [{"type": "function", "function": schema}]
            body["tool_choice"] = {"type": "function", "function": {"name": schema["name"]}}

        resp, error = await self._call("chat/completions", body)
        if error:
            return error

        try:
            message = resp.json()["choices"][0]["message"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            return failure("parse", f"Unexpected chat response shape: {e}")

        if not schema:
            return {"success": True, "content": message.get("content") or ""}

        tool_calls = message.get("tool_calls") or []
        raw = tool_calls[0]["function"]["arguments"] if tool_calls else message.get("content") or ""
        try:
            parsed = parse_llm_json(raw)
        except ValueError as e:
            logger.warning(f"[generator] Malformed JSON from model: {e}")
            return failure("parse", str(e))
        return {"success": True, "content": parsed}

    async def generate_image(self, prompt: str, size: Optional[str] = None) -> Dict[str, Any]:
        resp, error = await self._call(
            "images/generations",
            {
                "model": self.image_model,
                "prompt": prompt,
                "size": size or self.image_size,
                "n": 1,
                "response_format": "b64_json",
            },
        )
        if error:
            return error
        try:
            encoded = resp.json()["data"][0]["b64_json"]
            return {"success": True, "image": base64.b64decode(encoded)}
        except (ValueError, KeyError, IndexError, TypeError) as e:
            return failure("parse", f"Unexpected image response shape: {e}")

    async def synthesize_speech(
        self,
        text: str,
        voice: str = "nova",
        speed: float = 1.0,
        model: Optional[str] = None,
        response_format: str = "mp3",
    ) -> Dict[str, Any]:
        resp, error = await self._call(
            "audio/speech",
            {
                "model": model or self.tts_model,
                "input": text,
                "voice": voice,
                "speed": speed,
                "response_format": response_format,
            },
        )
        if error:
            return error
        if not resp.content:
            return failure("parse", "Speech response was empty")
        return {"success": True, "audio": resp.content}

    async def generate_music(
        self, prompt: str, duration: float = 30, style: str = "Urban/Hip-Hop"
    ) -> Dict[str, Any]:
        """Generate a theme track; audio comes back inline (base64) or as a URL"""
        if not self.music_base:
            return failure("unconfigured", "Music generation URL is not configured")
        resp, error = await self._call(
            urljoin(self.music_base, "generate"),
            {"prompt": prompt, "duration": duration, "style": style, "format": "mp3"},
            api_key=self.music_api_key,
        )
        if error:
            return error
        try:
            data = resp.json()
        except ValueError as e:
            return failure("parse", f"Music service returned invalid JSON: {e}")
        if not isinstance(data, dict):
            return failure("parse", "Music service returned a non-object body")
        if data.get("audio_base64"):
            try:
                return {"success": True, "audio": base64.b64decode(data["audio_base64"])}
            except (ValueError, TypeError) as e:
                return failure("parse", f"Music audio was not valid base64: {e}")
        audio_url = data.get("audioUrl") or data.get("audio_url") or data.get("url")
        if not audio_url:
            return failure("parse", "Music response had no audio")
        return {"success": True, "audioUrl": audio_url}


class VideoEngineClient:
    """Client for the primary video engine; a timeout counts as unreachable"""

    def __init__(
        self,
        base_url: str = "",
        api_key: str = "",
        timeout_sec: float = 15.0,
        session: Optional[requests.Session] = None,
    ):
        self.base = base_url.rstrip("/") + "/" if base_url else ""
        self.api_key = api_key
        self.timeout = float(timeout_sec)
        self.sess = session or requests.Session()

    @classmethod
    def from_config(cls, config) -> "VideoEngineClient":
        return cls(
            base_url=config.get_secret("video.engine_url_env"),
            api_key=config.get_secret("video.engine_key_env"),
            timeout_sec=config.get("video.engine_timeout_sec", 15),
        )

    def _post(self, payload: Dict[str, Any]) -> requests.Response:
        return self.sess.request(
            "POST",
            urljoin(self.base, "api/generate"),
            json=payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
        )

    async def generate(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.base:
            return failure("unconfigured", "Video engine URL is not configured")
        try:
            resp = await asyncio.wait_for(
                asyncio.to_thread(self._post, payload), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"[generator] Video engine timed out after {self.timeout:g}s")
            return failure("timeout", f"Video engine did not respond within {self.timeout:g}s")
        except requests.RequestException as e:
            return failure("network", f"Video engine unreachable: {e}")

        if resp.status_code >= 400:
            return failure("http", f"Video engine returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            return failure("parse", f"Video engine returned invalid JSON: {e}")
        if not isinstance(data, dict):
            return failure("parse", "Video engine returned a non-object body")

        video_url = data.get("videoUrl") or data.get("video_url") or data.get("url")
        if not video_url:
            return failure("parse", "Video engine response had no video URL")
        return {"success": True, "videoUrl": video_url, "engine": data}
