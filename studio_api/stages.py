"""
Stage Runners
Each runner turns a request dict into a {"success": True, ...} payload or a
{"success": False, "error": ...} envelope. Runners never raise and never touch
episode records; persistence belongs to the orchestrator.
"""

import base64
import logging
import math
import random
import time
from typing import Any, Callable, Dict, List, Optional

from . import postprod
from .cache import TTLCache, fingerprint
from .models import Scene, StageKind

logger = logging.getLogger(__name__)

HOOK_SCHEMA = {
    "name": "optimize_hook",
    "description": "Return a scroll-stopping title, description and opening hooks",
    "parameters": {
        "type": "object",
        "properties": {
            "optimized_title": {"type": "string"},
            "optimized_description": {"type": "string"},
            "hooks": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["optimized_title", "optimized_description"],
    },
}

DIRECTOR_SCHEMA = {
    "name": "direct_episode",
    "description": "Return director guidance for a reality TV episode",
    "parameters": {
        "type": "object",
        "properties": {
            "guidance": {"type": "string"},
            "shots": {"type": "array", "items": {"type": "string"}},
            "pacing": {"type": "string"},
        },
        "required": ["guidance"],
    },
}

SCENE_SCHEMA = {
    "name": "orchestrate_scenes",
    "description": "Break a reality TV script into ordered storyboard scenes",
    "parameters": {
        "type": "object",
        "properties": {
            "title": {"type": "string"},
            "matched_template": {"type": "string"},
            "scenes": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "location": {"type": "string"},
                        "characters": {"type": "array", "items": {"type": "string"}},
                        "description": {"type": "string"},
                        "emotion": {"type": "string"},
                        "music_cue": {"type": "string"},
                        "duration_seconds": {"type": "number"},
                        "scene_type": {
                            "type": "string",
                            "enum": ["confessional", "confrontation", "group-drama", "walk-off", "entrance"],
                        },
                        "dialogue": {"type": "string"},
                    },
                    "required": ["description"],
                },
            },
        },
        "required": ["scenes"],
    },
}

VOICES = ("alloy", "echo", "fable", "onyx", "nova", "shimmer")

CHARACTER_SCHEMA = {
    "name": "design_characters",
    "description": "Create reality TV cast members with distinct personalities and conflicts",
    "parameters": {
        "type": "object",
        "properties": {
            "characters": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string"},
                        "role": {"type": "string"},
                        "age": {"type": "number"},
                        "personality": {"type": "string"},
                        "background": {"type": "string"},
                        "goals": {"type": "string"},
                        "voice": {"type": "string", "enum": list(VOICES)},
                        "relationships": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "properties": {
                                    "character": {"type": "string"},
                                    "type": {"type": "string"},
                                    "description": {"type": "string"},
                                },
                            },
                        },
                    },
                    "required": ["name", "personality"],
                },
            },
        },
        "required": ["characters"],
    },
}


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return "\n".join(str(v) for v in value)
    return str(value)


def normalize_scenes(raw_scenes: Optional[List[Any]], default_duration: float = 5) -> List[Scene]:
    """Coerce model output into Scenes numbered 1..n in the order given"""
    scenes: List[Scene] = []
    for raw in raw_scenes or []:
        if not isinstance(raw, dict):
            continue
        try:
            duration = float(raw.get("duration_seconds", raw.get("duration")))
        except (TypeError, ValueError):
            duration = default_duration
        if not math.isfinite(duration) or duration <= 0:
            duration = default_duration

        characters = raw.get("characters") or []
        if isinstance(characters, str):
            characters = [c.strip() for c in characters.split(",") if c.strip()]

        scenes.append(
            Scene(
                scene_number=len(scenes) + 1,
                location=_text(raw.get("location")),
                characters=[str(c) for c in characters],
                description=_text(raw.get("description") or raw.get("action")),
                emotion=_text(raw.get("emotion")),
                music_cue=_text(raw.get("music_cue") or raw.get("musicCue")),
                duration_seconds=duration,
                scene_type=raw.get("scene_type") or raw.get("sceneType"),
                dialogue=_text(raw.get("dialogue")) or None,
                image_url=raw.get("image_url"),
            )
        )
    return scenes


def character_lines(characters: Optional[List[Any]]) -> str:
    lines = []
    for c in characters or []:
        if isinstance(c, dict):
            name = c.get("name", "Unnamed")
            role = c.get("role", "cast")
            personality = c.get("personality", "")
            lines.append(f"- {name} ({role}): {personality}".rstrip(": "))
        else:
            lines.append(f"- {c}")
    return "\n".join(lines) or "- (no established cast; invent one)"


class StageRunner:
    """Base runner: times the call and converts any exception to an envelope"""

    kind: StageKind
    bot_type: str = "stage"
    quality_score: float = 0.9

    async def run(self, request: Dict[str, Any]) -> Dict[str, Any]:
        start = time.monotonic()
        try:
            result = await self._run(request)
        except Exception as e:
            logger.error(f"[{self.kind.value}] Stage failed: {e}")
            result = {"success": False, "error": str(e) or type(e).__name__}
        if not result.get("success") and not result.get("error"):
            result["error"] = f"{self.kind.value} stage failed"
        result["executionTimeMs"] = int((time.monotonic() - start) * 1000)
        return result

    async def _run(self, request: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError


class ScriptStage(StageRunner):
    kind = StageKind.SCRIPT
    bot_type = "script_generator"

    def __init__(self, generator):
        self.generator = generator

    async def _run(self, request):
        topic = request.get("topic") or request.get("prompt") or "An unscripted night out"
        messages = [
            {
                "role": "system",
                "content": (
                    "You write reality TV episode scripts with confessionals, "
                    "confrontations and a cliffhanger. Use the cast as given."
                ),
            },
            {
                "role": "user",
                "content": (
                    f"Topic: {topic}\n"
                    f"Genre: {request.get('genre', 'reality-drama')}\n"
                    f"Mood: {request.get('mood', 'dramatic')}\n"
                    f"Cast:\n{character_lines(request.get('characters'))}"
                ),
            },
        ]
        result = await self.generator.chat(messages)
        if not result["success"]:
            return result
        script = _text(result["content"]).strip()
        if not script:
            return {"success": False, "error": "Model returned an empty script", "reason": "parse"}
        return {"success": True, "script": script, "topic": topic}


class HookStage(StageRunner):
    kind = StageKind.HOOK
    bot_type = "hook_optimizer"

    def __init__(self, generator):
        self.generator = generator

    async def _run(self, request):
        messages = [
            {"role": "system", "content": "You package reality TV episodes for maximum click-through."},
            {
                "role": "user",
                "content": (
                    f"Episode concept: {request.get('prompt', '')}\n"
                    f"Current title: {request.get('title', '')}\n"
                    f"Genre: {request.get('genre', 'reality-drama')}"
                ),
            },
        ]
        result = await self.generator.chat(messages, schema=HOOK_SCHEMA)
        if not result["success"]:
            return result
        content = result["content"]
        return {
            "success": True,
            "optimized_title": _text(content.get("optimized_title")).strip(),
            "optimized_description": _text(content.get("optimized_description")).strip(),
            "hooks": [str(h) for h in content.get("hooks") or []],
        }


class CulturalStage(StageRunner):
    kind = StageKind.CULTURAL
    bot_type = "cultural_injection"

    def __init__(self, generator):
        self.generator = generator

    async def _run(self, request):
        script = request.get("script") or ""
        if not script:
            return {"success": False, "error": "No script to inject", "reason": "validation"}
        messages = [
            {
                "role": "system",
                "content": "Rewrite the script with authentic slang, references and setting detail. Keep every scene.",
            },
            {"role": "user", "content": f"Style: {request.get('style', 'reality-tv')}\n\n{script}"},
        ]
        result = await self.generator.chat(messages)
        if not result["success"]:
            return result
        content = _text(result["content"]).strip()
        if not content:
            return {"success": False, "error": "Model returned empty content", "reason": "parse"}
        return {"success": True, "injected_content": content}


class DirectorStage(StageRunner):
    kind = StageKind.DIRECTOR
    bot_type = "expert_director"

    def __init__(self, generator):
        self.generator = generator

    async def _run(self, request):
        messages = [
            {"role": "system", "content": "You are a veteran reality TV director."},
            {
                "role": "user",
                "content": f"Give shot and pacing direction for:\n{request.get('script') or request.get('prompt', '')}",
            },
        ]
        result = await self.generator.chat(messages, schema=DIRECTOR_SCHEMA)
        if not result["success"]:
            return result
        content = result["content"]
        return {
            "success": True,
            "guidance": _text(content.get("guidance")),
            "shots": [str(s) for s in content.get("shots") or []],
            "pacing": _text(content.get("pacing")),
        }


class SceneStage(StageRunner):
    kind = StageKind.SCENE
    bot_type = "scene_orchestration"
    quality_score = 0.95

    def __init__(self, generator):
        self.generator = generator

    async def _run(self, request):
        script = request.get("script") or ""
        if not script:
            return {"success": False, "error": "No script to orchestrate", "reason": "validation"}
        direction = request.get("direction") or ""
        messages = [
            {"role": "system", "content": "You storyboard reality TV scripts scene by scene."},
            {
                "role": "user",
                "content": (
                    f"Style: {request.get('style', 'reality-tv')}\n"
                    f"Cast: {', '.join(request.get('characters') or []) or 'as written'}\n"
                    f"Director notes: {direction or 'none'}\n\n{script}"
                ),
            },
        ]
        result = await self.generator.chat(messages, schema=SCENE_SCHEMA)
        if not result["success"]:
            return result
        content = result["content"]
        scenes = normalize_scenes(content.get("scenes"), request.get("default_duration", 5))
        if not scenes:
            return {"success": False, "error": "Scene orchestration returned no scenes", "reason": "parse"}
        matched = content.get("matched_template") or "custom"
        return {
            "success": True,
            "title": _text(content.get("title")),
            "scenes": [s.model_dump() for s in scenes],
            "matchedTemplate": matched,
            "templateUsed": matched != "custom",
        }


class ImageStage(StageRunner):
    kind = StageKind.IMAGE
    bot_type = "scene_image"

    def __init__(self, generator, storage):
        self.generator = generator
        self.storage = storage

    async def _run(self, request):
        scene = request["scene"]
        prompt = (
            f"Cinematic reality TV still, {request.get('style', 'vh1-netflix-premium')} look. "
            f"{scene.get('location', '')}. {scene.get('description', '')}. "
            f"Mood: {scene.get('emotion', '')}."
        )
        result = await self.generator.generate_image(prompt)
        if not result["success"]:
            return result
        path = f"{request['episode_id']}/scene_{scene['scene_number']}_{int(time.time() * 1000)}.png"
        url = self.storage.put(path, result["image"], "image/png")
        return {"success": True, "imageUrl": url, "sceneNumber": scene["scene_number"]}


class VoiceStage(StageRunner):
    kind = StageKind.VOICE
    bot_type = "voice"

    def __init__(self, generator, storage):
        self.generator = generator
        self.storage = storage

    async def _run(self, request):
        text = (request.get("text") or "").strip()
        if not text:
            return {"success": False, "error": "Text is required", "reason": "validation"}
        voice = request.get("voice") or "nova"
        speed = request.get("speed") or 1.0
        result = await self.generator.synthesize_speech(text, voice=voice, speed=speed)
        if not result["success"]:
            return result
        audio = result["audio"]
        path = f"{request.get('episode_id', 'unassigned')}/voice_{int(time.time() * 1000)}.mp3"
        url = self.storage.put(path, audio, "audio/mpeg")
        return {
            "success": True,
            "audioUrl": url,
            "audioContent": base64.b64encode(audio).decode("ascii"),
            "voice": voice,
            "speed": speed,
        }


def normalize_character(raw: Dict[str, Any], index: int = 0) -> Dict[str, Any]:
    """Coerce one designed cast member into Character fields plus voice metadata"""
    name = _text(raw.get("name")).strip() or f"Cast Member {index + 1}"
    voice = _text(raw.get("voice")).strip().lower()
    if voice not in VOICES:
        voice = VOICES[len(name) % len(VOICES)]
    relationships = [r for r in raw.get("relationships") or [] if isinstance(r, dict)]
    metadata: Dict[str, Any] = {"voice": voice, "relationships": relationships}
    if raw.get("age") is not None:
        metadata["age"] = raw.get("age")
    return {
        "name": name,
        "role": _text(raw.get("role")).strip() or "wildcard",
        "personality": _text(raw.get("personality")).strip(),
        "background": _text(raw.get("background")).strip(),
        "goals": _text(raw.get("goals")).strip(),
        "metadata": metadata,
    }


class CharacterStage(StageRunner):
    kind = StageKind.CHARACTER
    bot_type = "character_designer"

    def __init__(self, generator):
        self.generator = generator

    async def _run(self, request):
        names = [str(n) for n in request.get("names") or [] if str(n).strip()]
        prompt = (request.get("prompt") or "").strip()
        if not prompt and not names:
            return {"success": False, "error": "Prompt is required", "reason": "validation"}
        count = len(names) or int(request.get("count") or 1)
        brief = f"Show concept: {prompt or 'reality drama'}\nCast members to create: {count}"
        if names:
            brief += "\nUse exactly these names, in this order: " + ", ".join(names)
        messages = [
            {
                "role": "system",
                "content": (
                    "You design reality TV cast members. Give each a distinct personality, "
                    "a background, goals that create conflict and a fitting voice."
                ),
            },
            {"role": "user", "content": brief},
        ]
        result = await self.generator.chat(messages, schema=CHARACTER_SCHEMA)
        if not result["success"]:
            return result
        raw = [c for c in result["content"].get("characters") or [] if isinstance(c, dict)]
        characters = [normalize_character(c, i) for i, c in enumerate(raw)]
        if names:
            # keep the names the scenes already use
            by_name = {c["name"].lower(): c for c in characters}
            characters = [
                {**by_name.get(n.lower(), normalize_character({"name": n}, i)), "name": n}
                for i, n in enumerate(names)
            ]
        else:
            characters = characters[:count]
        if not characters:
            return {"success": False, "error": "Character design returned no characters", "reason": "parse"}
        return {"success": True, "characters": characters}


MOOD_TEMPO = {
    "Energetic": 140,
    "Confident": 120,
    "Dramatic": 100,
    "Chill": 80,
    "Intense": 150,
    "Romantic": 90,
    "Aggressive": 160,
}
MUSIC_KEYS = ["C Major", "G Major", "D Major", "A Minor", "E Minor", "F Major", "Bb Major"]


def music_instruments(style: str, mood: str) -> List[str]:
    instruments = ["808 bass", "hi-hats", "snare"]
    if "Hip-Hop" in style or "Urban" in style:
        instruments += ["piano", "synth lead", "vocal samples"]
    elif mood == "Dramatic":
        instruments += ["strings", "cinematic pads", "brass"]
    else:
        instruments += ["melody", "pads"]
    return instruments


def music_structure(duration: float) -> List[str]:
    if duration <= 15:
        return ["Intro (2s)", "Hook (8s)", "Outro (5s)"]
    if duration <= 30:
        return ["Intro (4s)", "Verse (8s)", "Hook (10s)", "Outro (8s)"]
    return ["Intro (5s)", "Verse 1 (15s)", "Hook (15s)", "Verse 2 (15s)", "Hook (15s)", "Outro (10s)"]


def vocal_style(personality: Optional[str]) -> str:
    if not personality:
        return "none"
    p = personality.lower()
    if "confident" in p:
        return "Strong, assertive vocals with ad-libs"
    if "dramatic" in p:
        return "Emotional, theatrical vocal delivery"
    if "chill" in p or "laid back" in p:
        return "Smooth, relaxed vocal style"
    return "Dynamic vocal performance with character"


def music_spec(name: str, personality: Optional[str], style: str, mood: str, duration: float) -> Dict[str, Any]:
    return {
        "characterName": name,
        "style": style,
        "mood": mood,
        "duration": duration,
        "tempo": MOOD_TEMPO.get(mood, 120),
        "key": MUSIC_KEYS[len(name) % len(MUSIC_KEYS)],
        "instruments": music_instruments(style, mood),
        "structure": music_structure(duration),
        "vocals": vocal_style(personality),
    }


class MusicStage(StageRunner):
    """Theme music for a cast member: a deterministic spec plus a generated track when configured"""

    kind = StageKind.MUSIC
    bot_type = "music_generator"

    def __init__(self, generator, storage, default_style: str = "Urban/Hip-Hop"):
        self.generator = generator
        self.storage = storage
        self.default_style = default_style

    async def _prompt(self, request, spec) -> str:
        if request.get("custom_prompt"):
            return request["custom_prompt"]
        fallback = (
            f"{spec['mood']} {spec['style']} theme for {spec['characterName']}, "
            f"{spec['tempo']} BPM in {spec['key']}, featuring {', '.join(spec['instruments'])}."
        )
        messages = [
            {
                "role": "system",
                "content": "You write 2-3 sentence prompts for an AI music generator. Reply with the prompt only.",
            },
            {
                "role": "user",
                "content": (
                    f"Character: {spec['characterName']}\n"
                    f"Personality: {request.get('character_personality') or 'unknown'}\n"
                    f"Style: {spec['style']}\nMood: {spec['mood']}\n"
                    f"Tempo: {spec['tempo']} BPM\nKey: {spec['key']}"
                ),
            },
        ]
        result = await self.generator.chat(messages)
        if not result["success"]:
            logger.warning(f"[music] Prompt generation failed, using template: {result.get('error')}")
            return fallback
        return _text(result["content"]).strip() or fallback

    async def _run(self, request):
        name = (request.get("character_name") or "").strip()
        if not name:
            return {"success": False, "error": "Character name is required", "reason": "validation"}
        spec = music_spec(
            name,
            request.get("character_personality"),
            request.get("music_style") or self.default_style,
            request.get("mood") or "Confident",
            request.get("duration") or 30,
        )
        prompt = await self._prompt(request, spec)

        generated = await self.generator.generate_music(prompt, duration=spec["duration"], style=spec["style"])
        audio_url = None
        if generated["success"]:
            if generated.get("audio"):
                path = f"{request.get('episode_id') or 'unassigned'}/music_{int(time.time() * 1000)}.mp3"
                audio_url = self.storage.put(path, generated["audio"], "audio/mpeg")
            else:
                audio_url = generated.get("audioUrl")
            message = f"Theme music generated for {name}"
        elif generated.get("reason") == "unconfigured":
            message = f"Music spec created for {name}; no music service is configured"
        else:
            logger.warning(f"[music] Track generation failed for {name}: {generated.get('error')}")
            message = f"Music spec created for {name}; track generation failed: {generated.get('error')}"

        return {
            "success": True,
            "musicSpec": spec,
            "prompt": prompt,
            "audioUrl": audio_url,
            "message": message,
            "instructions": "Use the prompt with a music generator if no track was produced",
        }


class PureStage(StageRunner):
    """Wraps a local post-production function; optionally cached by request fingerprint"""

    def __init__(
        self,
        kind: StageKind,
        func: Callable[[Dict[str, Any]], Dict[str, Any]],
        cache: Optional[TTLCache] = None,
    ):
        self.kind = kind
        self.bot_type = kind.value
        self.func = func
        self.cache = cache

    async def _run(self, request):
        async def compute():
            return {"success": True, **self.func(request)}

        try:
            if self.cache is None:
                return await compute()
            result = await self.cache.with_cache(fingerprint(self.kind.value, request), compute)
        except (TypeError, ValueError) as e:
            return {"success": False, "error": str(e), "reason": "validation"}
        return dict(result)


def _seeded(request: Dict[str, Any]) -> Optional[random.Random]:
    seed = request.get("seed")
    return random.Random(seed) if seed is not None else None


PURE_FUNCTIONS = {
    StageKind.FRAME_OPTIMIZE: lambda r: postprod.run_frame_optimizer(
        r.get("frames") or [], r.get("quality", "ultra"), _seeded(r)
    ),
    StageKind.COLOR_GRADE: lambda r: postprod.run_color_grader(
        r.get("frames") or [], r.get("style") or postprod.DEFAULT_COLOR_STYLE
    ),
    StageKind.EFFECTS: lambda r: postprod.run_effects(
        r.get("frames") or [], r.get("style") or postprod.DEFAULT_COLOR_STYLE
    ),
    StageKind.AUDIO_MASTER: lambda r: postprod.run_audio_master(r.get("quality", "premium")),
    StageKind.AUDIO_SYNC: lambda r: postprod.run_audio_sync(
        r.get("frames") or [], r.get("audio_url"), r.get("total_duration")
    ),
    StageKind.QUALITY_ENHANCE: lambda r: postprod.run_quality_enhancer(
        r.get("frames") or [],
        r.get("quality", "premium"),
        r.get("target_resolution", "1920x1080"),
        r.get("target_fps", 30),
    ),
}

# frame optimization jitters unless seeded, so it is never cached
UNCACHED = {StageKind.FRAME_OPTIMIZE}


class StageRegistry:
    """Typed lookup from StageKind to its runner, complete at construction"""

    def __init__(self, runners: Dict[StageKind, StageRunner]):
        missing = [k.value for k in StageKind if k not in runners]
        if missing:
            raise ValueError(f"No stage runner registered for: {', '.join(missing)}")
        self._runners = dict(runners)

    def __getitem__(self, kind: StageKind) -> StageRunner:
        return self._runners[kind]

    def __contains__(self, kind: StageKind) -> bool:
        return kind in self._runners


def build_registry(
    generator, storage, cache: Optional[TTLCache] = None, music_style: str = "Urban/Hip-Hop"
) -> StageRegistry:
    from .compose import ComposeStage

    runners: Dict[StageKind, StageRunner] = {
        StageKind.SCRIPT: ScriptStage(generator),
        StageKind.HOOK: HookStage(generator),
        StageKind.CULTURAL: CulturalStage(generator),
        StageKind.DIRECTOR: DirectorStage(generator),
        StageKind.SCENE: SceneStage(generator),
        StageKind.IMAGE: ImageStage(generator, storage),
        StageKind.VOICE: VoiceStage(generator, storage),
        StageKind.CHARACTER: CharacterStage(generator),
        StageKind.MUSIC: MusicStage(generator, storage, music_style),
    }
    for kind, func in PURE_FUNCTIONS.items():
        runners[kind] = PureStage(kind, func, None if kind in UNCACHED else cache)
    runners[StageKind.COMPOSE] = ComposeStage(storage, runners)
    return StageRegistry(runners)
