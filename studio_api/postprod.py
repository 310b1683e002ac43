"""
Post-production parameter stages.
Frame timing, transitions, color grading, effects, audio mastering, audio sync
and encoder presets. Everything here is computed locally with no external call.
"""

import logging
import random
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

MIN_FRAME_SECONDS = 3.0
MAX_FRAME_SECONDS = 8.0
FRAME_JITTER_SECONDS = 0.25
DEFAULT_FRAME_SECONDS = 5

ACTION_SCENES = ("confrontation", "walk-off")

# (from_scene_type, to_scene_type) -> (transition type, seconds)
TRANSITIONS = {
    ("confrontation", "confessional"): ("quick-cut", 0.1),
    ("confessional", "group-drama"): ("dissolve", 0.7),
    ("walk-off", "entrance"): ("fade-black", 1.0),
    ("group-drama", "confrontation"): ("smash-cut", 0.05),
}
DEFAULT_TRANSITION = ("fade", 0.5)

ENCODER_PRESETS = {
    "ultra": {
        "codec": "libx264",
        "preset": "slow",
        "crf": 18,
        "bitrate": "8M",
        "maxBitrate": "10000k",
        "profile": "high",
        "level": "4.2",
    },
    "premium": {
        "codec": "libx264",
        "preset": "medium",
        "crf": 21,
        "bitrate": "6M",
        "maxBitrate": "6M",
        "profile": "high",
        "level": "4.1",
    },
    "broadcast": {
        "codec": "libx264",
        "preset": "medium",
        "crf": 23,
        "bitrate": "4M",
        "maxBitrate": "4M",
        "profile": "main",
        "level": "4.0",
    },
}

COLOR_PROFILES = {
    "bet-vh1-premium": {
        "name": "BET/VH1 Premium Reality TV",
        "saturation": 1.25,
        "contrast": 1.2,
        "warmth": 1.15,
        "shadows": 0.92,
        "highlights": 1.08,
        "vibrance": 1.3,
        "clarity": 1.15,
        "skinTones": {"protection": True, "enhancement": 1.1, "smoothing": 0.85},
        "colorCast": {"tint": "warm-golden", "strength": 0.15},
    },
    "netflix-premium": {
        "name": "Netflix Premium Documentary",
        "saturation": 1.15,
        "contrast": 1.25,
        "warmth": 1.05,
        "shadows": 0.88,
        "highlights": 1.12,
        "vibrance": 1.2,
        "clarity": 1.2,
        "skinTones": {"protection": True, "enhancement": 1.05, "smoothing": 0.9},
    },
    "hulu-vibrant": {
        "name": "Hulu Vibrant Reality",
        "saturation": 1.3,
        "contrast": 1.15,
        "warmth": 1.1,
        "shadows": 0.95,
        "highlights": 1.05,
        "vibrance": 1.4,
        "clarity": 1.1,
    },
}
DEFAULT_COLOR_STYLE = "bet-vh1-premium"

SCENE_GRADING = {
    "confessional": {
        "saturation": 1.2,
        "contrast": 1.25,
        "warmth": 1.2,
        "vignette": 0.3,
        "focus": "sharp",
        "mood": "intimate",
    },
    "confrontation": {
        "saturation": 1.3,
        "contrast": 1.3,
        "warmth": 1.1,
        "tension": "high",
        "sharpness": 1.2,
        "mood": "intense",
    },
    "group-drama": {
        "saturation": 1.25,
        "contrast": 1.2,
        "warmth": 1.15,
        "depth": "deep",
        "mood": "dynamic",
    },
    "walk-off": {
        "saturation": 1.15,
        "contrast": 1.1,
        "warmth": 1.0,
        "motion": "dramatic",
        "mood": "emotional",
    },
}
DEFAULT_SCENE_GRADING = {
    "saturation": 1.2,
    "contrast": 1.15,
    "warmth": 1.1,
    "mood": "balanced",
}

LUT_RECOMMENDATIONS = [
    {
        "name": "BET Reality Premium",
        "file": "bet-reality-premium.cube",
        "strength": 0.85,
        "scenes": ["confessional", "group-drama"],
    },
    {
        "name": "VH1 Vibrant",
        "file": "vh1-vibrant.cube",
        "strength": 0.9,
        "scenes": ["confrontation", "walk-off"],
    },
    {
        "name": "Golden Hour Reality",
        "file": "golden-hour-reality.cube",
        "strength": 0.75,
        "scenes": ["entrance", "confessional"],
    },
]

# scene type -> (effect type, start scale, end scale, easing)
CAMERA_MOVES = {
    "confrontation": ("dramatic-zoom", 1.0, 1.15, "ease-in"),
    "confessional": ("slow-push", 1.0, 1.08, "linear"),
    "walk-off": ("pull-back", 1.1, 1.0, "ease-out"),
    "entrance": ("reveal-zoom", 1.2, 1.0, "ease-out"),
}

FFMPEG_EFFECTS_CHAIN = "noise=alls=10:allf=t,unsharp=5:5:1.2:5:5:0.0,gblur=sigma=2:steps=2"

AUDIO_MASTERING = {
    "premium": {"bitrate": "192k", "profile": "aac_low"},
    "broadcast": {"bitrate": "256k", "profile": "aac_main"},
    "ultra": {"bitrate": "320k", "profile": "aac_main"},
}

COMPRESSOR = {
    "threshold": -18,
    "ratio": 4,
    "attack": 5,
    "release": 50,
    "makeupGain": 2,
    "kneeWidth": 2.5,
}

EQ_BANDS = {
    "bass": {"frequency": 80, "gain": 2, "q": 1.2},
    "mud": {"frequency": 250, "gain": -2, "q": 1.0},
    "presence": {"frequency": 3000, "gain": 3, "q": 1.5},
    "harshness": {"frequency": 5000, "gain": -1.5, "q": 2.0},
    "air": {"frequency": 10000, "gain": 2, "q": 0.7},
}

LIMITER = {"ceiling": -0.1, "threshold": -2, "release": 100, "lookahead": 5}

LOUDNESS = {"targetLUFS": -16, "truePeak": -1.0, "range": 8, "standard": "EBU R128"}


def _scene_type(frame: Dict[str, Any]) -> str:
    return frame.get("sceneType") or frame.get("scene_type") or "unknown"


def _frame_duration(frame: Dict[str, Any]) -> float:
    value = frame.get("duration", frame.get("duration_seconds"))
    if not value:
        return DEFAULT_FRAME_SECONDS
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Frame duration must be a number, got {value!r}")


def clamp_duration(duration: float, jitter: float = 0.0) -> float:
    """Clamp into the readable band, apply jitter, then clamp again"""
    value = min(max(duration, MIN_FRAME_SECONDS), MAX_FRAME_SECONDS) + jitter
    return min(max(value, MIN_FRAME_SECONDS), MAX_FRAME_SECONDS)


def optimize_frames(
    frames: List[Dict[str, Any]], rng: Optional[random.Random] = None
) -> List[Dict[str, Any]]:
    """Return copies of frames with clamped, jittered durations"""
    rng = rng or random.Random()
    optimized = []
    for index, frame in enumerate(frames):
        jitter = (rng.random() - 0.5) * (FRAME_JITTER_SECONDS * 2)
        optimized.append(
            {
                **frame,
                "duration": clamp_duration(_frame_duration(frame), jitter),
                "index": index,
                "optimized": True,
            }
        )
    return optimized


def transition_for(from_type: str, to_type: str) -> Dict[str, Any]:
    kind, seconds = TRANSITIONS.get((from_type, to_type), DEFAULT_TRANSITION)
    return {"type": kind, "duration": seconds}


def calculate_transitions(frames: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    transitions = []
    for i in range(len(frames) - 1):
        transition = transition_for(_scene_type(frames[i]), _scene_type(frames[i + 1]))
        transitions.append({"fromFrame": i, "toFrame": i + 1, **transition})
    return transitions


def analyze_quality_needs(frames: List[Dict[str, Any]], quality: str) -> Dict[str, Any]:
    scene_types = {_scene_type(f) for f in frames}
    preset = ENCODER_PRESETS.get(quality, ENCODER_PRESETS["broadcast"])
    return {
        "recommendedBitrate": preset["bitrate"],
        "recommendedCRF": preset["crf"],
        "needsDenoising": False,
        "needsSharpening": any(t in scene_types for t in ACTION_SCENES),
        "needsColorGrading": True,
        "cinematicMode": "confessional" in scene_types,
    }


def frame_stats(frames: List[Dict[str, Any]]) -> Dict[str, float]:
    durations = [f["duration"] for f in frames]
    if not durations:
        return {"totalDuration": 0.0, "avgDuration": 0.0, "minDuration": 0.0, "maxDuration": 0.0}
    total = sum(durations)
    return {
        "totalDuration": total,
        "avgDuration": total / len(durations),
        "minDuration": min(durations),
        "maxDuration": max(durations),
    }


def run_frame_optimizer(
    frames: List[Dict[str, Any]],
    quality: str = "ultra",
    rng: Optional[random.Random] = None,
) -> Dict[str, Any]:
    optimized = optimize_frames(frames, rng)
    logger.info(f"[postprod] Optimized {len(optimized)} frames for {quality} quality")
    return {
        "frames": optimized,
        "optimizedCount": len(optimized),
        "transitions": calculate_transitions(optimized),
        "qualityAnalysis": analyze_quality_needs(frames, quality),
        "stats": frame_stats(optimized),
    }


def color_profile(style: str) -> Dict[str, Any]:
    return COLOR_PROFILES.get(style, COLOR_PROFILES[DEFAULT_COLOR_STYLE])


def color_filters(profile: Dict[str, Any]) -> str:
    """Build the ffmpeg filter string for a color profile"""
    filters = [
        f"eq=saturation={profile['saturation']}",
        f"eq=contrast={profile['contrast']}",
    ]
    if profile["warmth"] > 1.0:
        warmth = (profile["warmth"] - 1.0) * 0.2
        filters.append(f"colortemperature=temperature={6500 + warmth * 1000:g}")
    filters.append(f"curves=all='0/0 0.5/{profile['shadows'] * 0.5:g} 1/1'")
    filters.append(f"unsharp=5:5:{profile['vibrance']}:5:5:0")
    return ",".join(filters)


def run_color_grader(frames: List[Dict[str, Any]], style: str = DEFAULT_COLOR_STYLE) -> Dict[str, Any]:
    profile = color_profile(style)
    scene_grading = [
        {
            "frameIndex": index,
            "sceneType": _scene_type(frame),
            "grading": dict(SCENE_GRADING.get(_scene_type(frame), DEFAULT_SCENE_GRADING)),
        }
        for index, frame in enumerate(frames)
    ]
    return {
        "colorProfile": profile,
        "sceneGrading": scene_grading,
        "lutRecommendations": [dict(lut) for lut in LUT_RECOMMENDATIONS],
        "colorScience": {
            "colorSpace": "BT.709",
            "gamma": 2.4,
            "primaries": "BT.709",
            "transferFunction": "BT.1886",
            "dynamicRange": "SDR",
            "bitDepth": 8,
            "chromaSubsampling": "4:2:0",
            "recommendations": {
                "skinToneProtection": True,
                "vibrantColors": True,
                "deepBlacks": True,
                "cleanWhites": True,
                "warmOverall": True,
            },
        },
        "ffmpegFilters": color_filters(profile),
    }


def _visual_effects(scene_type: str) -> List[Dict[str, Any]]:
    effects = []
    if scene_type in ACTION_SCENES:
        effects.append({"type": "glow", "intensity": 0.3, "color": "warm"})
    if scene_type == "confessional":
        effects.append({"type": "vignette", "intensity": 0.4, "falloff": 0.6})
    effects.append({"type": "grain", "intensity": 0.15, "size": 1.5})
    effects.append({"type": "sharpen", "amount": 1.2})
    return effects


def _camera_effect(frame: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    move = CAMERA_MOVES.get(_scene_type(frame))
    if not move:
        return None
    kind, start, end, easing = move
    return {
        "type": kind,
        "startScale": start,
        "endScale": end,
        "duration": _frame_duration(frame),
        "easing": easing,
    }


def run_effects(frames: List[Dict[str, Any]], style: str = DEFAULT_COLOR_STYLE) -> Dict[str, Any]:
    visual = []
    graphics = []
    camera = []
    for index, frame in enumerate(frames):
        scene_type = _scene_type(frame)
        visual.append({"frameIndex": index, "sceneType": scene_type, "effects": _visual_effects(scene_type)})
        camera.append({"frameIndex": index, "sceneType": scene_type, "effect": _camera_effect(frame)})
        if scene_type == "confessional":
            graphics.append(
                {
                    "type": "lower-third",
                    "frameIndex": index,
                    "animation": "slide-in",
                    "duration": 3,
                    "style": "premium-reality-tv",
                }
            )
        elif scene_type == "confrontation":
            graphics.append(
                {
                    "type": "tension-text",
                    "frameIndex": index,
                    "animation": "pulse",
                    "duration": 2,
                    "style": "dramatic",
                }
            )
    return {
        "style": style,
        "visualEffects": visual,
        "motionGraphics": graphics,
        "realityTVEffects": {
            "flashbacks": {"enabled": False, "style": "quick-flash"},
            "reactions": {"enabled": True, "style": "dramatic-zoom"},
            "soundEffects": {"dramaBoom": True, "gasps": True, "recordScratch": False},
            "overlays": {"thoughtBubbles": False, "emojis": False, "flashingText": True},
        },
        "cameraEffects": camera,
        "ffmpegEffects": FFMPEG_EFFECTS_CHAIN,
    }


def mastering_settings(quality: str) -> Dict[str, Any]:
    base = AUDIO_MASTERING.get(quality, AUDIO_MASTERING["premium"])
    return {**base, "sampleRate": 48000, "channels": 2, "codec": "aac"}


def audio_filters() -> str:
    filters = ["highpass=f=80"]
    for band in ("bass", "mud", "presence", "harshness", "air"):
        eq = EQ_BANDS[band]
        filters.append(
            f"equalizer=f={eq['frequency']}:width_type=q:width={eq['q']}:g={eq['gain']}"
        )
    c = COMPRESSOR
    filters.append(
        f"acompressor=threshold={c['threshold']}dB:ratio={c['ratio']}:attack={c['attack']}"
        f":release={c['release']}:makeup={c['makeupGain']}dB:knee={c['kneeWidth']}dB"
    )
    filters.append(
        f"loudnorm=I={LOUDNESS['targetLUFS']}:TP={LOUDNESS['truePeak']}:LRA={LOUDNESS['range']}"
    )
    filters.append(
        f"alimiter=limit={LIMITER['ceiling']}dB:attack={LIMITER['lookahead']}:release={LIMITER['release']}"
    )
    return ",".join(filters)


def run_audio_master(quality: str = "premium") -> Dict[str, Any]:
    return {
        "masteringSettings": mastering_settings(quality),
        "compressionSettings": dict(COMPRESSOR),
        "eqSettings": {name: dict(band) for name, band in EQ_BANDS.items()},
        "limiterSettings": dict(LIMITER),
        "loudnessSettings": dict(LOUDNESS),
        "ffmpegAudioFilters": audio_filters(),
    }


def sync_points(frames: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    points = []
    elapsed = 0.0
    for index, frame in enumerate(frames):
        scene_type = _scene_type(frame)
        if scene_type in ACTION_SCENES:
            points.append(
                {"time": elapsed, "type": "dramatic-music-swell", "intensity": "high", "frameIndex": index}
            )
        elif scene_type == "confessional":
            points.append(
                {"time": elapsed, "type": "ambient-background", "intensity": "low", "frameIndex": index}
            )
        elapsed += _frame_duration(frame)
    return points


def run_audio_sync(
    frames: List[Dict[str, Any]],
    audio_url: Optional[str] = None,
    total_duration: Optional[float] = None,
) -> Dict[str, Any]:
    return {
        "codec": "aac",
        "bitrate": "192k",
        "sampleRate": 48000,
        "channels": 2,
        "format": "aac",
        "volume": 1.0,
        "normalize": True,
        "audioUrl": audio_url,
        "totalDuration": total_duration
        if total_duration is not None
        else sum(_frame_duration(f) for f in frames),
        "syncPoints": sync_points(frames),
        "recommendations": {
            "fadeIn": 0.5,
            "fadeOut": 1.0,
            "normalization": True,
            "compression": True,
        },
    }


def encoder_settings(
    quality: str, resolution: str = "1920x1080", fps: int = 30
) -> Dict[str, Any]:
    preset = ENCODER_PRESETS.get(quality, ENCODER_PRESETS["premium"])
    return {**preset, "resolution": resolution, "fps": fps}


def run_quality_enhancer(
    frames: List[Dict[str, Any]],
    quality: str = "premium",
    resolution: str = "1920x1080",
    fps: int = 30,
) -> Dict[str, Any]:
    durations = [_frame_duration(f) for f in frames]
    return {
        **encoder_settings(quality, resolution, fps),
        "frameAnalysis": {
            "totalFrames": len(frames),
            "averageDuration": sum(durations) / len(durations) if durations else 0.0,
            "needsDenoising": False,
            "needsSharpening": True,
            "complexity": "high",
            "motionIntensity": "medium",
        },
        "recommendations": {
            "useGPU": False,
            "useMultipass": quality == "ultra",
            "applyDenoising": False,
            "applySharpening": True,
            "applyColorGrading": True,
        },
    }
