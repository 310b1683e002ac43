import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EpisodeStatus(str, Enum):
    """Episode production status"""
    NOT_STARTED = "not_started"
    DRAFT = "draft"
    SCRIPT_READY = "script_ready"
    MANIFEST_READY = "manifest_ready"
    PROCESSING = "processing"
    RENDERING = "rendering"
    COMPLETED = "completed"
    FAILED = "failed"


class StageKind(str, Enum):
    """Closed set of stage runners known to the registry"""
    SCRIPT = "script"
    HOOK = "hook"
    CULTURAL = "cultural"
    DIRECTOR = "director"
    SCENE = "scene"
    IMAGE = "image"
    VOICE = "voice"
    CHARACTER = "character"
    MUSIC = "music"
    FRAME_OPTIMIZE = "frame_optimize"
    COLOR_GRADE = "color_grade"
    EFFECTS = "effects"
    AUDIO_MASTER = "audio_master"
    AUDIO_SYNC = "audio_sync"
    QUALITY_ENHANCE = "quality_enhance"
    COMPOSE = "compose"


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    STARTED = "started"
    SKIPPED = "skipped"


class JobStatus(str, Enum):
    """Background render job status"""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Project(BaseModel):
    id: str
    title: str = "Untitled Production"
    genre: str = "reality-drama"
    mood: str = "dramatic"
    theme: str = "Drama"
    owner: str = "admin"
    created_at: datetime = Field(default_factory=utcnow)


class Character(BaseModel):
    id: str
    project_id: str
    name: str
    role: str = "wildcard"
    personality: str = ""
    background: str = ""
    goals: str = ""
    metadata: Dict[str, Any] = {}


class Scene(BaseModel):
    """One storyboard entry; list order is screen order"""
    scene_number: int
    location: str = ""
    characters: List[str] = []
    description: str = ""
    emotion: str = ""
    music_cue: str = ""
    duration_seconds: float = 30
    scene_type: Optional[str] = None
    dialogue: Optional[str] = None
    image_url: Optional[str] = None

    @field_validator("duration_seconds")
    @classmethod
    def duration_positive(cls, v: float) -> float:
        if not math.isfinite(v) or v <= 0:
            raise ValueError("Scene duration must be a positive number")
        return v


class Episode(BaseModel):
    id: str
    project_id: str
    episode_number: int = 1
    season: int = 1
    title: str = ""
    synopsis: str = ""
    script: str = ""
    storyboard: List[Scene] = []
    status: EpisodeStatus = EpisodeStatus.NOT_STARTED
    status_version: int = 0
    video_url: Optional[str] = None
    video_render_error: Optional[str] = None
    manifest_url: Optional[str] = None
    render_started_at: Optional[datetime] = None
    render_completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("storyboard")
    @classmethod
    def scene_numbers_increase(cls, v: List[Scene]) -> List[Scene]:
        for prev, cur in zip(v, v[1:]):
            if cur.scene_number <= prev.scene_number:
                raise ValueError("Storyboard scene numbers must be strictly increasing")
        return v


class Frame(BaseModel):
    """Rendering-ready scene with its resolved media"""
    model_config = ConfigDict(frozen=True)

    scene_number: int
    image: Optional[str] = None
    duration: float
    dialogue: Optional[str] = None
    characters: List[str] = []
    scene_type: Optional[str] = None
    voiceover_url: Optional[str] = None

    def to_manifest(self) -> Dict[str, Any]:
        return {
            "sceneNumber": self.scene_number,
            "image": self.image,
            "duration": self.duration,
            "dialogue": self.dialogue,
            "characters": list(self.characters),
            "sceneType": self.scene_type,
            "voiceoverUrl": self.voiceover_url,
        }


class ManifestMetadata(BaseModel):
    style: str = "vh1-netflix-premium"
    prompt: str = ""
    generated_at: datetime = Field(default_factory=utcnow)
    characters_used: List[str] = []


class VideoManifest(BaseModel):
    episode_id: str
    frames: List[Frame]
    total_duration: float
    audio_url: Optional[str] = None
    metadata: ManifestMetadata = Field(default_factory=ManifestMetadata)

    def to_document(self) -> Dict[str, Any]:
        """Serialize in the hand-off shape read by the compositor and player"""
        return {
            "episodeId": self.episode_id,
            "totalDuration": self.total_duration,
            "frames": [f.to_manifest() for f in self.frames],
            "audioUrl": self.audio_url,
            "metadata": {
                "style": self.metadata.style,
                "prompt": self.metadata.prompt,
                "generatedAt": self.metadata.generated_at.isoformat(),
                "charactersUsed": list(self.metadata.characters_used),
            },
        }


class BotExecutionStat(BaseModel):
    bot_type: str
    episode_id: Optional[str] = None
    execution_time_ms: int = 0
    quality_score: float = 0.0
    success: bool = True
    metadata: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)


class ErrorLog(BaseModel):
    id: Optional[int] = None
    error_type: str
    error_message: str
    component: str = "unknown"
    context: Dict[str, Any] = {}
    recovery_status: str = "processing"
    recovery_action: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None


class SystemHealth(BaseModel):
    service_name: str
    status: str
    last_check: datetime = Field(default_factory=utcnow)
    metrics: Dict[str, Any] = {}


class RenderJob(BaseModel):
    """Tracking record written before a background render is dispatched"""
    id: str
    episode_id: str
    kind: str = "render"
    status: JobStatus = JobStatus.QUEUED
    backend: Optional[str] = None
    episode_version: int = 0
    video_url: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None


class ProductionStep(BaseModel):
    step: str
    status: StepStatus
    result: Optional[Any] = None


# Request bodies


class _CamelBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class EpisodeProduceRequest(_CamelBody):
    episode_id: Optional[str] = Field(default=None, alias="episodeId")
    project_id: str = Field(alias="projectId")
    prompt: Optional[str] = None


class PromptToProductionRequest(_CamelBody):
    prompt: str
    season_count: int = Field(default=1, alias="seasonCount", ge=1, le=10)
    episodes_per_season: int = Field(default=6, alias="episodesPerSeason", ge=1, le=30)

    @field_validator("prompt")
    @classmethod
    def prompt_long_enough(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 10:
            raise ValueError("Prompt must be at least 10 characters")
        return v


class RenderSettings(BaseModel):
    frame_rate: int = 30
    resolution: str = "1920x1080"
    audio_file: Optional[str] = None
    transitions: List[str] = []
    output_format: str = "mp4"
    audio_instructions: Optional[str] = None
    quality: str = "ultra"
    style: str = "vh1-netflix-premium"


class BatchRenderRequest(BaseModel):
    episode_manifests: List[str] = []
    settings: RenderSettings = Field(default_factory=RenderSettings)
    output_paths: List[str] = []
    project_id: Optional[str] = None


class RenderEpisodeRequest(_CamelBody):
    episode_id: str = Field(alias="episodeId")
    settings: RenderSettings = Field(default_factory=RenderSettings)


class ScriptBotRequest(_CamelBody):
    episode_id: Optional[str] = Field(default=None, alias="episodeId")
    topic: Optional[str] = None
    project_theme: Optional[str] = Field(default=None, alias="projectTheme")
    episode_title: Optional[str] = Field(default=None, alias="episodeTitle")
    characters: Optional[List[Dict[str, Any]]] = None
    genre: str = "reality-drama"
    mood: str = "dramatic"


class SceneBotRequest(_CamelBody):
    episode_id: Optional[str] = Field(default=None, alias="episodeId")
    script: str
    style: str = "reality-tv"
    characters: List[str] = []
    direction: Optional[str] = None


class VoiceBotRequest(_CamelBody):
    episode_id: str = Field(default="unassigned", alias="episodeId")
    text: str
    voice: str = "nova"
    speed: float = Field(default=1.0, gt=0.25, le=4.0)

    @field_validator("text")
    @classmethod
    def text_required(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Text is required")
        return v


class FramesRequest(_CamelBody):
    frames: List[Dict[str, Any]] = []
    quality: str = "premium"
    style: str = "bet-vh1-premium"
    audio_url: Optional[str] = Field(default=None, alias="audioUrl")
    total_duration: Optional[float] = Field(default=None, alias="totalDuration")
    target_resolution: str = Field(default="1920x1080", alias="targetResolution")
    target_fps: int = Field(default=30, alias="targetFPS")
    seed: Optional[int] = None

    @field_validator("frames")
    @classmethod
    def durations_numeric(cls, v: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        for index, frame in enumerate(v):
            value = frame.get("duration", frame.get("duration_seconds"))
            if value is None or value == "":
                continue
            try:
                seconds = float(value)
            except (TypeError, ValueError):
                raise ValueError(f"Frame {index} duration must be a number")
            if not math.isfinite(seconds) or seconds < 0:
                raise ValueError(f"Frame {index} duration must be a non-negative number")
        return v


class CharacterDesignRequest(_CamelBody):
    project_id: str = Field(alias="projectId")
    prompt: str
    count: int = Field(default=1, ge=1, le=12)

    @field_validator("prompt")
    @classmethod
    def prompt_required(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Prompt is required")
        return v.strip()


class MusicRequest(_CamelBody):
    episode_id: Optional[str] = Field(default=None, alias="episodeId")
    character_name: str = Field(alias="characterName")
    character_personality: Optional[str] = Field(default=None, alias="characterPersonality")
    music_style: Optional[str] = Field(default=None, alias="musicStyle")
    mood: Optional[str] = None
    duration: float = Field(default=30, gt=0, le=300)
    custom_prompt: Optional[str] = Field(default=None, alias="customPrompt")


class VideoEngineRequest(_CamelBody):
    episode_id: str = Field(alias="episodeId")
    settings: RenderSettings = Field(default_factory=RenderSettings)


class SelfHealingRequest(_CamelBody):
    error_type: str = Field(default="UnknownError", alias="errorType")
    error_message: str = Field(alias="errorMessage")
    component: str = "unknown"
    context: Dict[str, Any] = {}
