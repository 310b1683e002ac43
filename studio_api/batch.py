"""
Batch Video Renderer
Renders many episodes in sequential batches; episodes within a batch render
concurrently and one episode's failure never stops the others.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .manifest import manifest_from_storyboard
from .models import EpisodeStatus, RenderSettings

logger = logging.getLogger(__name__)


class BatchCoordinator:
    def __init__(self, db, renderer, batch_size: int = 3, owner: str = "admin"):
        self.db = db
        self.renderer = renderer
        self.batch_size = max(1, batch_size)
        self.owner = owner

    def resolve(self, episode_ids: List[str], project_id: Optional[str] = None) -> List[str]:
        """Explicit ids win; otherwise every episode of the project, or of the owner"""
        if episode_ids:
            return list(episode_ids)
        if project_id:
            return [e.id for e in self.db.list_by_project(project_id)]
        return [e.id for e in self.db.list_episodes(self.owner)]

    async def run(
        self,
        episode_ids: List[str],
        settings: RenderSettings,
        project_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        ids = self.resolve(episode_ids, project_id)
        batches = [ids[i:i + self.batch_size] for i in range(0, len(ids), self.batch_size)]
        start = time.monotonic()
        results: List[Dict[str, Any]] = []

        for number, batch in enumerate(batches, 1):
            logger.info(f"[batch] Batch {number}/{len(batches)}: {len(batch)} episodes")
            results.extend(
                await asyncio.gather(*(self._render_one(episode_id, settings) for episode_id in batch))
            )

        total_ms = int((time.monotonic() - start) * 1000)
        success_count = sum(1 for r in results if r["status"] == EpisodeStatus.COMPLETED.value)
        fail_count = len(results) - success_count
        logger.info(f"[batch] Done: {success_count} rendered, {fail_count} failed")
        return {
            "success": True,
            "totalEpisodes": len(results),
            "successCount": success_count,
            "failCount": fail_count,
            "batchCount": len(batches),
            "totalProcessingTime": f"{total_ms / 60000:.2f} minutes",
            "totalProcessingTimeMs": total_ms,
            "results": results,
            "settings": settings.model_dump(),
            "message": f"Rendered {success_count} of {len(results)} episodes",
        }

    async def _render_one(self, episode_id: str, settings: RenderSettings) -> Dict[str, Any]:
        start = time.monotonic()
        episode = self.db.get(episode_id)
        result = {
            "episodeId": episode_id,
            "episodeNumber": episode.episode_number if episode else None,
            "title": episode.title if episode else "",
            "status": EpisodeStatus.FAILED.value,
            "videoUrl": None,
            "error": None,
            "backend": None,
        }
        if episode is None:
            result["error"] = f"Episode {episode_id} not found"
            return _timed(result, start)

        try:
            rendering = self.db.transition(
                episode_id,
                EpisodeStatus.RENDERING,
                render_started_at=datetime.now(timezone.utc),
                video_render_error=None,
            )
            if rendering is None:
                raise RuntimeError(f"Episode {episode_id} cannot start rendering from {episode.status.value}")
            manifest = manifest_from_storyboard(rendering, settings.audio_file, settings.style)
            outcome = await self.renderer.render(rendering, manifest, settings)
            if not outcome["success"]:
                raise RuntimeError(outcome["error"])
            self.db.transition(
                episode_id,
                EpisodeStatus.COMPLETED,
                video_url=outcome["videoUrl"],
                render_completed_at=datetime.now(timezone.utc),
            )
            result.update(
                status=EpisodeStatus.COMPLETED.value,
                videoUrl=outcome["videoUrl"],
                backend=outcome["backend"],
            )
        except Exception as e:
            logger.error(f"[batch] Episode {episode_id} failed: {e}")
            self.db.transition(episode_id, EpisodeStatus.FAILED, video_render_error=str(e))
            result["error"] = str(e)
        return _timed(result, start)


def _timed(result: Dict[str, Any], start: float) -> Dict[str, Any]:
    elapsed = int((time.monotonic() - start) * 1000)
    result["processingTimeMs"] = elapsed
    result["processingTime"] = f"{elapsed / 1000:.2f}s"
    return result
