import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .models import (
    BotExecutionStat,
    Character,
    Episode,
    EpisodeStatus,
    ErrorLog,
    JobStatus,
    Project,
    RenderJob,
    Scene,
    SystemHealth,
)
from .state import can_transition

logger = logging.getLogger(__name__)

# Columns on the episodes table that callers may write through update()
EPISODE_FIELDS = (
    "episode_number",
    "season",
    "title",
    "synopsis",
    "script",
    "storyboard",
    "status",
    "video_url",
    "video_render_error",
    "manifest_url",
    "render_started_at",
    "render_completed_at",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _column_value(key: str, value: Any) -> Any:
    if key == "storyboard":
        scenes = [s.model_dump() if isinstance(s, Scene) else s for s in value or []]
        return json.dumps(scenes)
    if isinstance(value, EpisodeStatus):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class Database:
    """SQLite record store for projects, episodes and pipeline bookkeeping"""

    def __init__(self, db_path: str = "studio.db"):
        self.db_path = db_path
        self.init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self):
        """Initialize database with required tables"""
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS projects (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    genre TEXT NOT NULL,
                    mood TEXT NOT NULL,
                    theme TEXT NOT NULL,
                    owner TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS characters (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    role TEXT NOT NULL,
                    personality TEXT NOT NULL,
                    background TEXT NOT NULL,
                    goals TEXT NOT NULL,
                    metadata_json TEXT NOT NULL,
                    FOREIGN KEY (project_id) REFERENCES projects (id)
                );

                CREATE TABLE IF NOT EXISTS episodes (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    episode_number INTEGER NOT NULL,
                    season INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    synopsis TEXT NOT NULL,
                    script TEXT NOT NULL,
                    storyboard TEXT NOT NULL,
                    status TEXT NOT NULL,
                    status_version INTEGER NOT NULL DEFAULT 0,
                    video_url TEXT,
                    video_render_error TEXT,
                    manifest_url TEXT,
                    render_started_at TEXT,
                    render_completed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (project_id) REFERENCES projects (id)
                );

                CREATE TABLE IF NOT EXISTS bot_execution_stats (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    bot_type TEXT NOT NULL,
                    episode_id TEXT,
                    execution_time_ms INTEGER NOT NULL,
                    quality_score REAL NOT NULL,
                    success BOOLEAN NOT NULL,
                    metadata_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS error_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    error_type TEXT NOT NULL,
                    error_message TEXT NOT NULL,
                    component TEXT NOT NULL,
                    context_json TEXT NOT NULL,
                    recovery_status TEXT NOT NULL,
                    recovery_action TEXT,
                    created_at TEXT NOT NULL,
                    resolved_at TEXT
                );

                CREATE TABLE IF NOT EXISTS system_health (
                    service_name TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    last_check TEXT NOT NULL,
                    metrics_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS render_jobs (
                    id TEXT PRIMARY KEY,
                    episode_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    backend TEXT,
                    episode_version INTEGER NOT NULL,
                    video_url TEXT,
                    error TEXT,
                    started_at TEXT NOT NULL,
                    finished_at TEXT
                );
                """
            )
            logger.info("[store] Database initialized successfully")

    # Projects and characters

    def insert_project(self, project: Project) -> bool:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO projects (id, title, genre, mood, theme, owner, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        project.id,
                        project.title,
                        project.genre,
                        project.mood,
                        project.theme,
                        project.owner,
                        project.created_at.isoformat(),
                    ),
                )
            logger.info(f"[store] Project {project.id} created")
            return True
        except sqlite3.Error as e:
            logger.error(f"[store] Failed to create project {project.id}: {e}")
            return False

    def get_project(self, project_id: str) -> Optional[Project]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM projects WHERE id = ?", (project_id,)
                ).fetchone()
            if not row:
                return None
            return Project(**{**dict(row), "created_at": _ts(row["created_at"])})
        except sqlite3.Error as e:
            logger.error(f"[store] Failed to get project {project_id}: {e}")
            return None

    def insert_character(self, character: Character) -> bool:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO characters (id, project_id, name, role, personality, background, goals, metadata_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        character.id,
                        character.project_id,
                        character.name,
                        character.role,
                        character.personality,
                        character.background,
                        character.goals,
                        json.dumps(character.metadata),
                    ),
                )
            return True
        except sqlite3.Error as e:
            logger.error(f"[store] Failed to create character {character.name}: {e}")
            return False

    def list_characters(self, project_id: str) -> List[Character]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM characters WHERE project_id = ? ORDER BY rowid",
                    (project_id,),
                ).fetchall()
            characters = []
            for row in rows:
                data = dict(row)
                data["metadata"] = json.loads(data.pop("metadata_json"))
                characters.append(Character(**data))
            return characters
        except sqlite3.Error as e:
            logger.error(f"[store] Failed to list characters for {project_id}: {e}")
            return []

    # Episodes

    def _row_to_episode(self, row: sqlite3.Row) -> Episode:
        data = dict(row)
        data["storyboard"] = [Scene(**s) for s in json.loads(data["storyboard"])]
        for key in ("render_started_at", "render_completed_at", "created_at", "updated_at"):
            data[key] = _ts(data[key])
        return Episode(**data)

    def get(self, episode_id: str) -> Optional[Episode]:
        """Retrieve an episode by ID"""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM episodes WHERE id = ?", (episode_id,)
                ).fetchone()
            return self._row_to_episode(row) if row else None
        except sqlite3.Error as e:
            logger.error(f"[store] Failed to get episode {episode_id}: {e}")
            return None

    def list_by_project(
        self, project_id: str, filters: Optional[Dict[str, Any]] = None
    ) -> List[Episode]:
        """List a project's episodes ordered by season and episode number"""
        query = "SELECT * FROM episodes WHERE project_id = ?"
        params: List[Any] = [project_id]
        for key, value in (filters or {}).items():
            if key not in ("status", "season", "episode_number"):
                raise ValueError(f"Unsupported episode filter: {key}")
            query += f" AND {key} = ?"
            params.append(_column_value(key, value))
        query += " ORDER BY season, episode_number"
        try:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
            return [self._row_to_episode(r) for r in rows]
        except sqlite3.Error as e:
            logger.error(f"[store] Failed to list episodes for {project_id}: {e}")
            return []

    def list_episodes(self, owner: Optional[str] = None) -> List[Episode]:
        query = "SELECT e.* FROM episodes e JOIN projects p ON p.id = e.project_id"
        params: List[Any] = []
        if owner:
            query += " WHERE p.owner = ?"
            params.append(owner)
        query += " ORDER BY e.season, e.episode_number"
        try:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
            return [self._row_to_episode(r) for r in rows]
        except sqlite3.Error as e:
            logger.error(f"[store] Failed to list episodes: {e}")
            return []

    def next_episode_number(self, project_id: str, season: int = 1) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT MAX(episode_number) FROM episodes WHERE project_id = ? AND season = ?",
                (project_id, season),
            ).fetchone()
        return (row[0] or 0) + 1

    def insert(self, partial: Dict[str, Any]) -> Optional[Episode]:
        """Insert an episode from a partial record; missing fields take defaults"""
        data = dict(partial)
        data.setdefault("id", str(uuid.uuid4()))
        episode = Episode(**data)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO episodes (id, project_id, episode_number, season, title, synopsis, script,
                        storyboard, status, status_version, video_url, video_render_error, manifest_url,
                        render_started_at, render_completed_at, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        episode.id,
                        episode.project_id,
                        episode.episode_number,
                        episode.season,
                        episode.title,
                        episode.synopsis,
                        episode.script,
                        _column_value("storyboard", episode.storyboard),
                        episode.status.value,
                        episode.status_version,
                        episode.video_url,
                        episode.video_render_error,
                        episode.manifest_url,
                        _column_value("render_started_at", episode.render_started_at),
                        _column_value("render_completed_at", episode.render_completed_at),
                        episode.created_at.isoformat(),
                        episode.updated_at.isoformat(),
                    ),
                )
            logger.info(f"[store] Episode {episode.id} created")
            return episode
        except sqlite3.Error as e:
            logger.error(f"[store] Failed to create episode {episode.id}: {e}")
            return None

    def update(self, episode_id: str, partial: Dict[str, Any]) -> Optional[Episode]:
        """
        Overwrite the given fields. A status change is checked against the
        state machine and bumps status_version; an illegal one is refused.
        """
        unknown = set(partial) - set(EPISODE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown episode fields: {sorted(unknown)}")
        if "storyboard" in partial:
            # validate ordering and durations before writing
            Episode(id=episode_id, project_id="-", storyboard=partial["storyboard"])
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT status FROM episodes WHERE id = ?", (episode_id,)
                ).fetchone()
                if not row:
                    logger.warning(f"[store] Episode {episode_id} not found for update")
                    return None

                assignments = [f"{key} = ?" for key in partial]
                params = [_column_value(key, value) for key, value in partial.items()]

                if "status" in partial:
                    current = EpisodeStatus(row["status"])
                    new = EpisodeStatus(partial["status"])
                    if not can_transition(current, new):
                        logger.warning(
                            f"[store] Refused status change {current.value} -> {new.value} for episode {episode_id}"
                        )
                        return None
                    assignments.append("status_version = status_version + 1")

                assignments.append("updated_at = ?")
                params.append(_now())
                params.append(episode_id)
                conn.execute(
                    f"UPDATE episodes SET {', '.join(assignments)} WHERE id = ?", params
                )
        except sqlite3.Error as e:
            logger.error(f"[store] Failed to update episode {episode_id}: {e}")
            return None

        if "status" in partial:
            logger.info(
                f"[store] Episode {episode_id} status -> {EpisodeStatus(partial['status']).value}"
            )
        return self.get(episode_id)

    def transition(
        self, episode_id: str, status: EpisodeStatus, **fields: Any
    ) -> Optional[Episode]:
        return self.update(episode_id, {"status": status, **fields})

    def delete(self, episode_id: str) -> bool:
        try:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM episodes WHERE id = ?", (episode_id,))
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            logger.error(f"[store] Failed to delete episode {episode_id}: {e}")
            return False

    # Bot execution stats

    def add_stat(self, stat: BotExecutionStat) -> bool:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO bot_execution_stats (bot_type, episode_id, execution_time_ms, quality_score,
                        success, metadata_json, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        stat.bot_type,
                        stat.episode_id,
                        stat.execution_time_ms,
                        stat.quality_score,
                        stat.success,
                        json.dumps(stat.metadata, default=str),
                        stat.created_at.isoformat(),
                    ),
                )
            return True
        except sqlite3.Error as e:
            logger.error(f"[store] Failed to record stat for {stat.bot_type}: {e}")
            return False

    def list_stats(
        self, episode_id: Optional[str] = None, bot_type: Optional[str] = None
    ) -> List[BotExecutionStat]:
        query = "SELECT * FROM bot_execution_stats WHERE 1 = 1"
        params: List[Any] = []
        if episode_id:
            query += " AND episode_id = ?"
            params.append(episode_id)
        if bot_type:
            query += " AND bot_type = ?"
            params.append(bot_type)
        query += " ORDER BY id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        stats = []
        for row in rows:
            data = dict(row)
            data.pop("id")
            data["metadata"] = json.loads(data.pop("metadata_json"))
            data["success"] = bool(data["success"])
            data["created_at"] = _ts(data["created_at"])
            stats.append(BotExecutionStat(**data))
        return stats

    # Error logs and system health

    def insert_error_log(self, entry: ErrorLog) -> Optional[int]:
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO error_logs (error_type, error_message, component, context_json,
                        recovery_status, recovery_action, created_at, resolved_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.error_type,
                        entry.error_message,
                        entry.component,
                        json.dumps(entry.context, default=str),
                        entry.recovery_status,
                        entry.recovery_action,
                        entry.created_at.isoformat(),
                        _column_value("resolved_at", entry.resolved_at),
                    ),
                )
            return cursor.lastrowid
        except sqlite3.Error as e:
            logger.error(f"[store] Failed to log error {entry.error_type}: {e}")
            return None

    def resolve_error_log(
        self, log_id: int, recovery_status: str, recovery_action: Optional[str]
    ) -> bool:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE error_logs SET recovery_status = ?, recovery_action = ?, resolved_at = ?
                    WHERE id = ? AND resolved_at IS NULL
                    """,
                    (recovery_status, recovery_action, _now(), log_id),
                )
            return True
        except sqlite3.Error as e:
            logger.error(f"[store] Failed to resolve error log {log_id}: {e}")
            return False

    def list_error_logs(self, component: Optional[str] = None) -> List[ErrorLog]:
        query = "SELECT * FROM error_logs"
        params: List[Any] = []
        if component:
            query += " WHERE component = ?"
            params.append(component)
        query += " ORDER BY id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        logs = []
        for row in rows:
            data = dict(row)
            data["context"] = json.loads(data.pop("context_json"))
            data["created_at"] = _ts(data["created_at"])
            data["resolved_at"] = _ts(data["resolved_at"])
            logs.append(ErrorLog(**data))
        return logs

    def upsert_health(self, health: SystemHealth) -> bool:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO system_health (service_name, status, last_check, metrics_json)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(service_name) DO UPDATE SET
                        status = excluded.status,
                        last_check = excluded.last_check,
                        metrics_json = excluded.metrics_json
                    """,
                    (
                        health.service_name,
                        health.status,
                        health.last_check.isoformat(),
                        json.dumps(health.metrics, default=str),
                    ),
                )
            return True
        except sqlite3.Error as e:
            logger.error(f"[store] Failed to upsert health for {health.service_name}: {e}")
            return False

    def get_health(self, service_name: str) -> Optional[SystemHealth]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM system_health WHERE service_name = ?", (service_name,)
            ).fetchone()
        if not row:
            return None
        return SystemHealth(
            service_name=row["service_name"],
            status=row["status"],
            last_check=_ts(row["last_check"]),
            metrics=json.loads(row["metrics_json"]),
        )

    # Render jobs

    def create_job(self, job: RenderJob) -> bool:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO render_jobs (id, episode_id, kind, status, backend, episode_version,
                        video_url, error, started_at, finished_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.id,
                        job.episode_id,
                        job.kind,
                        job.status.value,
                        job.backend,
                        job.episode_version,
                        job.video_url,
                        job.error,
                        job.started_at.isoformat(),
                        _column_value("finished_at", job.finished_at),
                    ),
                )
            logger.info(f"[store] Job {job.id} recorded for episode {job.episode_id}")
            return True
        except sqlite3.Error as e:
            logger.error(f"[store] Failed to create job {job.id}: {e}")
            return False

    def update_job(self, job_id: str, **fields: Any) -> bool:
        allowed = {"status", "backend", "episode_version", "video_url", "error", "finished_at"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")
        values = {
            k: (v.value if isinstance(v, JobStatus) else _column_value(k, v))
            for k, v in fields.items()
        }
        try:
            with self._connect() as conn:
                conn.execute(
                    f"UPDATE render_jobs SET {', '.join(f'{k} = ?' for k in values)} WHERE id = ?",
                    [*values.values(), job_id],
                )
            return True
        except sqlite3.Error as e:
            logger.error(f"[store] Failed to update job {job_id}: {e}")
            return False

    def get_job(self, job_id: str) -> Optional[RenderJob]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM render_jobs WHERE id = ?", (job_id,)).fetchone()
        if not row:
            return None
        data = dict(row)
        data["started_at"] = _ts(data["started_at"])
        data["finished_at"] = _ts(data["finished_at"])
        return RenderJob(**data)

    def list_jobs(self, episode_id: str) -> List[RenderJob]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id FROM render_jobs WHERE episode_id = ? ORDER BY started_at",
                (episode_id,),
            ).fetchall()
        return [self.get_job(r["id"]) for r in rows]
