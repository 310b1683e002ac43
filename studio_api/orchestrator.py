"""
Pipeline Orchestrator
Runs episode production in phases, drives the episode status machine, and
dispatches tracked background render jobs.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from .manifest import build_manifest, frame_from_scene, manifest_from_storyboard, manifest_path
from .models import (
    Character,
    Episode,
    EpisodeStatus,
    Frame,
    JobStatus,
    ProductionStep,
    Project,
    RenderJob,
    RenderSettings,
    Scene,
    StageKind,
    StepStatus,
)
from .state import PRODUCTION_PHASES, RENDER_IN_PROGRESS, RESTARTABLE, Phase, can_transition

logger = logging.getLogger(__name__)

STEP_LABELS = {
    StageKind.SCRIPT: "Script Generation",
    StageKind.HOOK: "Hook Optimization",
    StageKind.CULTURAL: "Cultural Injection",
    StageKind.DIRECTOR: "Expert Direction",
    StageKind.SCENE: "Scene Orchestration",
}
VIDEO_STEP = "Video Generation"

PRIMARY_BACKEND = "infinite_creation_engine"
SECONDARY_BACKEND = "unified_processor"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ProductionRefused(Exception):
    """The request cannot start; carries the HTTP status to answer with"""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class PipelineAborted(Exception):
    def __init__(self, phase: Phase, kind: StageKind, error: str):
        super().__init__(f"{STEP_LABELS.get(kind, kind.value)} failed: {error}")
        self.phase = phase
        self.kind = kind
        self.error = error


class RenderFailed(Exception):
    pass


def engine_payload(episode: Episode, manifest, settings: RenderSettings) -> Dict[str, Any]:
    document = manifest.to_document()
    return {
        "prompt": f"{episode.title}: {episode.synopsis}".strip(": "),
        "style": settings.style,
        "characters": document["metadata"]["charactersUsed"],
        "mood": "dramatic",
        "quality": "ultra",
        "format": settings.output_format,
        "resolution": "1920x1080",
        "fps": 30,
        "metadata": {
            "episodeId": episode.id,
            "frames": document["frames"],
            "audioUrl": document["audioUrl"],
            "totalDuration": document["totalDuration"],
        },
    }


class VideoRenderer:
    """Primary engine first; any failure or timeout falls back to the unified processor"""

    def __init__(self, engine, registry, events, owner: str = "admin"):
        self.engine = engine
        self.registry = registry
        self.events = events
        self.owner = owner

    async def render(self, episode: Episode, manifest, settings: RenderSettings) -> Dict[str, Any]:
        start = time.monotonic()
        primary = await self.engine.generate(engine_payload(episode, manifest, settings))
        elapsed = int((time.monotonic() - start) * 1000)
        if primary["success"]:
            self.events.record("ultra_video", episode.id, elapsed, True, 0.98, {"backend": PRIMARY_BACKEND})
            return {"success": True, "videoUrl": primary["videoUrl"], "backend": PRIMARY_BACKEND}

        self.events.record(
            "ultra_video",
            episode.id,
            elapsed,
            False,
            metadata={"error": primary["error"], "reason": primary.get("reason")},
        )
        logger.warning(
            f"[render] Primary engine failed for {episode.id} ({primary.get('reason')}), using unified processor"
        )

        composer = self.registry[StageKind.COMPOSE]
        secondary = await composer.run(
            {
                "manifest": manifest.to_document(),
                "settings": settings.model_dump(),
                "owner": self.owner,
            }
        )
        self.events.record(
            composer.bot_type,
            episode.id,
            secondary["executionTimeMs"],
            secondary["success"],
            composer.quality_score,
            {} if secondary["success"] else {"error": secondary["error"]},
        )
        if secondary["success"]:
            return {
                "success": True,
                "videoUrl": secondary["videoUrl"],
                "backend": SECONDARY_BACKEND,
                "renderPlanUrl": secondary["renderPlanUrl"],
                "primaryError": primary["error"],
            }
        return {
            "success": False,
            "error": f"Primary engine: {primary['error']}; unified processor: {secondary['error']}",
        }


class Orchestrator:
    """Coordinates stage runners for one episode at a time"""

    def __init__(
        self,
        db,
        registry,
        events,
        renderer: VideoRenderer,
        storage,
        reporter,
        phases: Optional[List[Phase]] = None,
        owner: str = "admin",
        ready_threshold: float = 80,
    ):
        self.db = db
        self.registry = registry
        self.events = events
        self.renderer = renderer
        self.storage = storage
        self.reporter = reporter
        self.phases = phases or PRODUCTION_PHASES
        self.owner = owner
        self.ready_threshold = ready_threshold
        self._tasks: Set[asyncio.Task] = set()

    # Stage plumbing

    async def run_stage(self, kind: StageKind, request: Dict[str, Any], episode_id: Optional[str]) -> Dict[str, Any]:
        """Run one stage and record its execution stat"""
        runner = self.registry[kind]
        result = await runner.run(request)
        self.events.record(
            runner.bot_type,
            episode_id,
            result.get("executionTimeMs", 0),
            result["success"],
            runner.quality_score,
            {} if result["success"] else {"error": result["error"], "reason": result.get("reason")},
        )
        return result

    def _stage_request(self, kind: StageKind, ctx: Dict[str, Any], outputs: Dict[StageKind, Dict[str, Any]]) -> Dict[str, Any]:
        project: Project = ctx["project"]
        episode: Episode = ctx["episode"]
        base = {
            "prompt": ctx["prompt"],
            "genre": project.genre,
            "mood": project.mood,
            "theme": project.theme,
            "episode_id": episode.id,
        }
        if kind == StageKind.SCRIPT:
            return {**base, "topic": ctx["prompt"], "characters": ctx["characters"]}
        if kind == StageKind.HOOK:
            return {**base, "title": episode.title}
        if kind in (StageKind.CULTURAL, StageKind.DIRECTOR):
            return {**base, "script": outputs[StageKind.SCRIPT]["script"], "style": project.genre}
        if kind == StageKind.SCENE:
            script = outputs[StageKind.CULTURAL]["injected_content"] or outputs[StageKind.SCRIPT]["script"]
            return {
                **base,
                "script": script,
                "direction": outputs[StageKind.DIRECTOR]["guidance"],
                "characters": [c["name"] for c in ctx["characters"]],
                "style": project.genre,
            }
        raise ValueError(f"{kind.value} is not a production stage")

    def _substitute(self, kind: StageKind, ctx: Dict[str, Any], outputs: Dict[StageKind, Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Nearest valid stand-in for a failed stage, or None when there is none"""
        episode: Episode = ctx["episode"]
        if kind == StageKind.SCRIPT:
            fallback = episode.script or episode.synopsis or ctx["prompt"]
            return {"script": fallback} if fallback else None
        if kind == StageKind.HOOK:
            return {"optimized_title": "", "optimized_description": "", "hooks": []}
        if kind == StageKind.CULTURAL:
            return {"injected_content": outputs[StageKind.SCRIPT]["script"]}
        if kind == StageKind.DIRECTOR:
            return {"guidance": "", "shots": [], "pacing": ""}
        return None

    async def _run_phase(self, phase: Phase, ctx, outputs, steps: List[ProductionStep], episode_id: str):
        requests = [(kind, self._stage_request(kind, ctx, outputs)) for kind in phase.stages]
        if phase.parallel:
            results = await asyncio.gather(
                *(self.run_stage(kind, req, episode_id) for kind, req in requests)
            )
        else:
            results = [await self.run_stage(kind, req, episode_id) for kind, req in requests]

        aborted = None
        for (kind, _), result in zip(requests, results):
            if result["success"]:
                outputs[kind] = result
                steps.append(ProductionStep(step=STEP_LABELS[kind], status=StepStatus.COMPLETED, result=_summary(kind, result)))
                continue
            steps.append(ProductionStep(step=STEP_LABELS[kind], status=StepStatus.FAILED, result={"error": result["error"]}))
            substitute = None if phase.on_failure == "abort" else self._substitute(kind, ctx, outputs)
            if substitute is None:
                aborted = aborted or PipelineAborted(phase, kind, result["error"])
            else:
                logger.warning(f"[orchestrator] {kind.value} failed for {episode_id}, substituting fallback")
                outputs[kind] = {"success": False, **substitute}
        if aborted:
            raise aborted

    # Episode production

    def _prepare_episode(self, project: Project, episode_id: Optional[str]) -> Episode:
        if episode_id is None:
            number = self.db.next_episode_number(project.id)
            episode = self.db.insert(
                {"project_id": project.id, "episode_number": number, "title": f"Episode {number}"}
            )
            if episode is None:
                raise ProductionRefused(500, "Failed to create episode")
        else:
            episode = self.db.get(episode_id)
            if episode is None or episode.project_id != project.id:
                raise ProductionRefused(404, f"Episode {episode_id} not found in project {project.id}")

        if episode.status in RENDER_IN_PROGRESS:
            raise ProductionRefused(409, f"Episode {episode.id} is {episode.status.value}; wait for the render to finish")
        if episode.status in RESTARTABLE:
            episode = self.db.transition(episode.id, EpisodeStatus.NOT_STARTED)
        if episode is not None and episode.status == EpisodeStatus.NOT_STARTED:
            episode = self.db.transition(episode.id, EpisodeStatus.DRAFT, video_render_error=None)
        if episode is None:
            raise ProductionRefused(409, "Episode status changed while starting production")
        return episode

    async def _ensure_characters(self, project: Project, scenes: List[Dict[str, Any]], prompt: str) -> int:
        """Design a cast for the names the scenes use when the project has none"""
        if self.db.list_characters(project.id):
            return 0
        names: Dict[str, None] = {}
        for scene in scenes:
            for name in scene.get("characters") or []:
                names.setdefault(name, None)
        if not names:
            return 0
        result = await self.run_stage(
            StageKind.CHARACTER, {"prompt": prompt, "names": list(names), "project_id": project.id}, None
        )
        if result["success"]:
            designed = result["characters"]
            source = "character_designer"
        else:
            logger.warning(f"[orchestrator] Character design failed for {project.id}, storing names only")
            designed = [{"name": name, "metadata": {}} for name in names]
            source = "scene_orchestration"
        for fields in designed:
            self.db.insert_character(
                Character(
                    id=str(uuid.uuid4()),
                    project_id=project.id,
                    **{**fields, "metadata": {**fields.get("metadata", {}), "source": source}},
                )
            )
        return len(designed)

    async def produce_episode(
        self,
        project_id: str,
        episode_id: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Run phases 1-3 synchronously and dispatch phase 4 in the background"""
        start = time.monotonic()
        project = self.db.get_project(project_id)
        if project is None:
            raise ProductionRefused(404, f"Project {project_id} not found")
        episode = self._prepare_episode(project, episode_id)
        logger.info(f"[orchestrator] Producing episode {episode.id} ({episode.title})")

        ctx = {
            "project": project,
            "episode": episode,
            "prompt": prompt or episode.synopsis or episode.title or project.theme,
            "characters": [c.model_dump() for c in self.db.list_characters(project.id)],
        }
        outputs: Dict[StageKind, Dict[str, Any]] = {}
        steps: List[ProductionStep] = []

        try:
            for phase in self.phases:
                await self._run_phase(phase, ctx, outputs, steps, episode.id)
        except PipelineAborted as e:
            steps.append(ProductionStep(step=VIDEO_STEP, status=StepStatus.SKIPPED))
            self.db.transition(episode.id, EpisodeStatus.FAILED, video_render_error=str(e))
            self.reporter.report(e, "episode-producer", e.phase.name, {"episodeId": episode.id})
            return self._production_report(episode, steps, start, success=False, error=str(e))

        scenes = outputs[StageKind.SCENE]["scenes"]
        hook = outputs[StageKind.HOOK]
        script = outputs[StageKind.CULTURAL]["injected_content"] or outputs[StageKind.SCRIPT]["script"]
        updated = self.db.update(
            episode.id,
            {
                "status": EpisodeStatus.SCRIPT_READY,
                "script": script,
                "storyboard": scenes,
                "title": hook.get("optimized_title") or episode.title,
                "synopsis": hook.get("optimized_description") or episode.synopsis,
            },
        )
        if updated is None:
            raise ProductionRefused(409, f"Episode {episode.id} changed during production; storyboard not saved")
        await self._ensure_characters(project, scenes, ctx["prompt"])

        job = None
        if updated.storyboard:
            job = self.dispatch_render(updated, RenderSettings(), ctx["prompt"])
            steps.append(ProductionStep(step=VIDEO_STEP, status=StepStatus.STARTED, result={"jobId": job.id}))
        else:
            steps.append(ProductionStep(step=VIDEO_STEP, status=StepStatus.SKIPPED))
        return self._production_report(updated, steps, start, success=True, job=job)

    def _production_report(
        self,
        episode: Episode,
        steps: List[ProductionStep],
        start: float,
        success: bool,
        error: Optional[str] = None,
        job: Optional[RenderJob] = None,
    ) -> Dict[str, Any]:
        done = sum(1 for s in steps if s.status in (StepStatus.COMPLETED, StepStatus.STARTED))
        success_rate = round(done / len(steps) * 100, 1) if steps else 0.0
        total_ms = int((time.monotonic() - start) * 1000)
        self.events.record(
            "production_team",
            episode.id,
            total_ms,
            success,
            success_rate,
            {"steps": len(steps), "error": error} if error else {"steps": len(steps)},
        )
        report = {
            "success": success,
            "episodeId": episode.id,
            "productionSteps": [s.model_dump(mode="json") for s in steps],
            "successRate": success_rate,
            "totalTimeMs": total_ms,
            "readyForVideo": success and success_rate >= self.ready_threshold,
            "jobId": job.id if job else None,
        }
        if success:
            report["message"] = f"Episode produced with {success_rate:g}% of steps succeeding"
        else:
            report["error"] = error
            report["message"] = "Production stopped; retry the episode once the failing stage recovers"
        return report

    # Background rendering

    def dispatch_render(self, episode: Episode, settings: RenderSettings, prompt: str = "") -> RenderJob:
        """Record a job, then start rendering without waiting for it"""
        job = RenderJob(
            id=str(uuid.uuid4()),
            episode_id=episode.id,
            episode_version=episode.status_version,
        )
        if not self.db.create_job(job):
            raise RuntimeError(f"Failed to record render job for episode {episode.id}")
        task = asyncio.create_task(self._render_job(job, episode.id, settings, prompt))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(f"[orchestrator] Dispatched render job {job.id} for episode {episode.id}")
        return job

    def render_episode(self, episode_id: str, settings: RenderSettings) -> RenderJob:
        episode = self.db.get(episode_id)
        if episode is None:
            raise ProductionRefused(404, f"Episode {episode_id} not found")
        if not episode.storyboard:
            raise ProductionRefused(400, f"Episode {episode_id} has no storyboard to render")
        return self.dispatch_render(episode, settings, episode.synopsis)

    async def wait_for_jobs(self):
        """Wait for every in-flight background job (used at shutdown and in tests)"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _frame_for(self, episode: Episode, scene: Scene, settings: RenderSettings) -> Frame:
        async def image():
            if scene.image_url:
                return scene.image_url
            result = await self.run_stage(
                StageKind.IMAGE,
                {"episode_id": episode.id, "scene": scene.model_dump(), "style": settings.style},
                episode.id,
            )
            return result.get("imageUrl")

        async def voice():
            if not scene.dialogue:
                return None
            result = await self.run_stage(
                StageKind.VOICE,
                {"episode_id": episode.id, "text": scene.dialogue, "voice": "nova"},
                episode.id,
            )
            return result.get("audioUrl")

        image_url, voiceover_url = await asyncio.gather(image(), voice())
        return frame_from_scene(scene, image_url, voiceover_url)

    def _advance_to_rendering(self, episode: Episode, manifest_url: str) -> Episode:
        started = False
        for target in (EpisodeStatus.MANIFEST_READY, EpisodeStatus.PROCESSING, EpisodeStatus.RENDERING):
            if not can_transition(episode.status, target):
                continue
            fields: Dict[str, Any] = {}
            if target == EpisodeStatus.MANIFEST_READY:
                fields["manifest_url"] = manifest_url
            elif not started:
                fields.update(render_started_at=_now(), video_render_error=None)
                started = True
            updated = self.db.transition(episode.id, target, **fields)
            if updated is None:
                raise RenderFailed(f"Episode {episode.id} could not enter {target.value}")
            episode = updated
        if episode.manifest_url != manifest_url:
            episode = self.db.update(episode.id, {"manifest_url": manifest_url}) or episode
        return episode

    async def _render_job(self, job: RenderJob, episode_id: str, settings: RenderSettings, prompt: str):
        self.db.update_job(job.id, status=JobStatus.RUNNING)
        try:
            episode = self.db.get(episode_id)
            if episode is None:
                raise RenderFailed(f"Episode {episode_id} disappeared before rendering")
            frames = list(await asyncio.gather(*(self._frame_for(episode, s, settings) for s in episode.storyboard)))
            manifest = build_manifest(episode, frames, settings.audio_file, settings.style, prompt)
            manifest_url = self.storage.put_json(manifest_path(self.owner, episode.id), manifest.to_document())

            episode = self._advance_to_rendering(episode, manifest_url)
            self.db.update_job(job.id, episode_version=episode.status_version)

            result = await self.renderer.render(episode, manifest, settings)
            if not result["success"]:
                raise RenderFailed(result["error"])

            current = self.db.get(episode_id)
            if current is not None and current.status_version != episode.status_version:
                logger.warning(
                    f"[orchestrator] Episode {episode_id} moved to v{current.status_version} "
                    f"while job {job.id} rendered v{episode.status_version}"
                )
            self.db.transition(
                episode_id,
                EpisodeStatus.COMPLETED,
                video_url=result["videoUrl"],
                render_completed_at=_now(),
            )
            self.db.update_job(
                job.id,
                status=JobStatus.COMPLETED,
                backend=result["backend"],
                video_url=result["videoUrl"],
                finished_at=_now(),
            )
            logger.info(f"[orchestrator] Job {job.id} completed via {result['backend']}")
        except Exception as e:
            logger.error(f"[orchestrator] Job {job.id} failed for episode {episode_id}: {e}")
            self.db.transition(episode_id, EpisodeStatus.FAILED, video_render_error=str(e))
            self.db.update_job(job.id, status=JobStatus.FAILED, error=str(e), finished_at=_now())
            self.reporter.report(e, "render-episode-video", "render", {"episodeId": episode_id, "jobId": job.id})

    async def render_now(self, episode_id: str, settings: RenderSettings) -> Dict[str, Any]:
        """Render synchronously through the engine chain and persist the result"""
        episode = self.db.get(episode_id)
        if episode is None:
            raise ProductionRefused(404, f"Episode {episode_id} not found")
        if not episode.storyboard:
            raise ProductionRefused(400, f"Episode {episode_id} has no storyboard to render")
        if episode.status in RENDER_IN_PROGRESS:
            raise ProductionRefused(409, f"Episode {episode_id} is {episode.status.value}; wait for the render to finish")
        manifest = manifest_from_storyboard(episode, settings.audio_file, settings.style)
        manifest_url = self.storage.put_json(manifest_path(self.owner, episode.id), manifest.to_document())
        try:
            episode = self._advance_to_rendering(episode, manifest_url)
            result = await self.renderer.render(episode, manifest, settings)
            if not result["success"]:
                raise RenderFailed(result["error"])
        except RenderFailed as e:
            logger.error(f"[orchestrator] Synchronous render failed for episode {episode_id}: {e}")
            self.db.transition(episode_id, EpisodeStatus.FAILED, video_render_error=str(e))
            self.reporter.report(e, "infinite-creation-engine", "render", {"episodeId": episode_id})
            return {"success": False, "error": str(e)}
        self.db.transition(
            episode_id,
            EpisodeStatus.COMPLETED,
            video_url=result["videoUrl"],
            render_completed_at=_now(),
        )
        return {**result, "manifestUrl": manifest_url}


def _summary(kind: StageKind, result: Dict[str, Any]) -> Dict[str, Any]:
    if kind == StageKind.SCRIPT:
        return {"length": len(result["script"])}
    if kind == StageKind.HOOK:
        return {"title": result["optimized_title"]}
    if kind == StageKind.CULTURAL:
        return {"length": len(result["injected_content"])}
    if kind == StageKind.DIRECTOR:
        return {"shots": len(result["shots"])}
    if kind == StageKind.SCENE:
        return {"scenes": len(result["scenes"])}
    return {}
