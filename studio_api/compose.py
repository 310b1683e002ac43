"""
Unified processor: the secondary render backend.

Runs every post-production stage over a manifest, stores the combined render
plan beside the manifest, and reports the URL the compositor writes the video to.
"""

import logging
import time
from typing import Any, Dict

from .models import StageKind
from .stages import StageRunner

logger = logging.getLogger(__name__)

POST_STAGES = (
    StageKind.FRAME_OPTIMIZE,
    StageKind.COLOR_GRADE,
    StageKind.EFFECTS,
    StageKind.QUALITY_ENHANCE,
    StageKind.AUDIO_SYNC,
    StageKind.AUDIO_MASTER,
)


class ComposeStage(StageRunner):
    kind = StageKind.COMPOSE
    bot_type = "unified_processor"
    quality_score = 0.96

    def __init__(self, storage, runners: Dict[StageKind, StageRunner]):
        self.storage = storage
        self.runners = runners

    async def _run(self, request):
        manifest = request["manifest"]
        settings = request.get("settings") or {}
        owner = request.get("owner", "admin")
        frames = manifest.get("frames") or []
        if not frames:
            return {"success": False, "error": "Manifest has no frames to compose", "reason": "validation"}

        quality = settings.get("quality", "ultra")
        stage_request = {
            "frames": frames,
            "quality": quality,
            "style": settings.get("style"),
            "audio_url": settings.get("audio_file") or manifest.get("audioUrl"),
            "total_duration": manifest.get("totalDuration"),
            "target_resolution": settings.get("resolution", "1920x1080"),
            "target_fps": settings.get("frame_rate", 30),
        }

        phases: Dict[str, Any] = {}
        for kind in POST_STAGES:
            result = await self.runners[kind].run(stage_request)
            if not result["success"]:
                return {
                    "success": False,
                    "error": f"{kind.value} failed: {result['error']}",
                    "reason": "compose",
                }
            phases[kind.value] = {k: v for k, v in result.items() if k != "success"}

        episode_id = manifest["episodeId"]
        ts = int(time.time() * 1000)
        plan = {
            "episodeId": episode_id,
            "manifest": manifest,
            "settings": settings,
            "phases": phases,
            "videoSpecs": {
                "resolution": stage_request["target_resolution"],
                "fps": stage_request["target_fps"],
                "pixelFormat": "yuv420p",
                "colorSpace": "bt709",
                "transitions": settings.get("transitions") or ["fade"],
                "outputFormat": settings.get("output_format", "mp4"),
            },
        }
        plan_url = self.storage.put_json(f"{owner}/{episode_id}/render-plan_{ts}.json", plan)
        video_url = self.storage.public_url(
            f"episode-videos/{owner}/{episode_id}_UNIFIED_{ts}.{settings.get('output_format', 'mp4')}"
        )
        logger.info(f"[compose] Render plan for {episode_id} stored with {len(phases)} phases")
        return {
            "success": True,
            "videoUrl": video_url,
            "renderPlanUrl": plan_url,
            "phases": list(phases),
        }
