import logging
import math
from typing import Dict, List, Optional

from .models import Episode, Frame, ManifestMetadata, Scene, VideoManifest

logger = logging.getLogger(__name__)

# allowance for transition overlap between consecutive frames
DURATION_TOLERANCE_PER_FRAME = 1.0


class ManifestError(ValueError):
    pass


def frame_from_scene(
    scene: Scene, image_url: Optional[str] = None, voiceover_url: Optional[str] = None
) -> Frame:
    return Frame(
        scene_number=scene.scene_number,
        image=image_url or scene.image_url,
        duration=scene.duration_seconds,
        dialogue=scene.dialogue,
        characters=list(scene.characters),
        scene_type=scene.scene_type,
        voiceover_url=voiceover_url,
    )


def build_manifest(
    episode: Episode,
    frames: List[Frame],
    audio_url: Optional[str] = None,
    style: str = "vh1-netflix-premium",
    prompt: str = "",
) -> VideoManifest:
    characters_used: Dict[str, None] = {}
    for frame in frames:
        for name in frame.characters:
            characters_used.setdefault(name, None)
    manifest = VideoManifest(
        episode_id=episode.id,
        frames=frames,
        total_duration=sum(f.duration for f in frames),
        audio_url=audio_url,
        metadata=ManifestMetadata(
            style=style,
            prompt=prompt or episode.synopsis or episode.title,
            characters_used=list(characters_used),
        ),
    )
    validate_manifest(manifest)
    return manifest


def manifest_from_storyboard(episode: Episode, audio_url: Optional[str] = None, style: str = "vh1-netflix-premium") -> VideoManifest:
    return build_manifest(
        episode, [frame_from_scene(s) for s in episode.storyboard], audio_url, style
    )


def validate_manifest(manifest: VideoManifest) -> None:
    """Raise ManifestError unless the manifest can be handed to compositing"""
    if not manifest.frames:
        raise ManifestError(f"Episode {manifest.episode_id} has no frames to render")
    numbers = [f.scene_number for f in manifest.frames]
    if any(b <= a for a, b in zip(numbers, numbers[1:])):
        raise ManifestError("Manifest frames are out of scene order")
    if any(not math.isfinite(f.duration) or f.duration <= 0 for f in manifest.frames):
        raise ManifestError("Manifest frame durations must be positive numbers")
    if not math.isfinite(manifest.total_duration):
        raise ManifestError("Manifest total duration must be a finite number")
    drift = abs(sum(f.duration for f in manifest.frames) - manifest.total_duration)
    if drift > DURATION_TOLERANCE_PER_FRAME * len(manifest.frames):
        raise ManifestError(
            f"Manifest total duration {manifest.total_duration:.2f}s does not match its frames"
        )


def manifest_path(owner: str, episode_id: str) -> str:
    return f"{owner}/{episode_id}/video-manifest.json"
