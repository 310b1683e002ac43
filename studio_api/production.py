"""
Prompt-to-production: turn one show idea into a project with a cast and
seasons of draft episodes, each with a storyboard ready for the producer.
"""

import logging
import uuid
from typing import Any, Dict, List

from pydantic import ValidationError

from .generator import parse_llm_json
from .models import Character, Episode, EpisodeStatus, Project, Scene
from .stages import _text, normalize_scenes

logger = logging.getLogger(__name__)

BIBLE_SYSTEM_PROMPT = """You are a showrunner developing an unscripted reality series.
Return ONLY a JSON object with this shape:
{
  "show": {"title": str, "logline": str, "genre": str, "mood": str, "theme": str},
  "cast": [{"name": str, "role": str, "personality": str, "background": str,
            "goals": str, "voice_style": str, "signature_look": str}],
  "locations": [{"name": str, "description": str}],
  "seasons": [{"arc": str, "episodes": [{"title": str, "synopsis": str, "cliffhanger": str,
      "scenes": [{"scene_number": int, "location": str, "characters": [str],
                  "description": str, "emotion": str, "music_cue": str,
                  "duration_seconds": int}]}]}]
}"""


class ProductionError(Exception):
    pass


class ProductionBuilder:
    def __init__(self, generator, db, owner: str = "admin", default_scene_seconds: float = 30):
        self.generator = generator
        self.db = db
        self.owner = owner
        self.default_scene_seconds = default_scene_seconds

    async def generate_bible(self, prompt: str, season_count: int, episodes_per_season: int) -> Dict[str, Any]:
        """Ask the model for a show bible; raises ProductionError when it cannot be used"""
        messages = [
            {"role": "system", "content": BIBLE_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": (
                    f"Show idea: {prompt}\n"
                    f"Seasons: {season_count}\n"
                    f"Episodes per season: {episodes_per_season}"
                ),
            },
        ]
        result = await self.generator.chat(messages, temperature=0.9)
        if not result["success"]:
            raise ProductionError(result["error"])
        try:
            bible = parse_llm_json(result["content"])
        except ValueError as e:
            raise ProductionError(f"Show bible was not valid JSON: {e}")
        if not isinstance(bible, dict):
            raise ProductionError("Show bible must be a JSON object")
        return bible

    def _season_plans(self, bible: Dict[str, Any], season_count: int) -> List[Dict[str, Any]]:
        seasons = bible.get("seasons")
        if not isinstance(seasons, list):
            seasons = [bible.get("season") or {"episodes": bible.get("episodes") or []}]
        seasons = [s if isinstance(s, dict) else {} for s in seasons[:season_count]]
        return seasons + [{} for _ in range(season_count - len(seasons))]

    def _storyboard(self, plan: Dict[str, Any], cast: List[str], locations: List[str], synopsis: str) -> List[Scene]:
        scenes = normalize_scenes(plan.get("scenes"), self.default_scene_seconds)
        if scenes:
            return scenes
        return [
            Scene(
                scene_number=1,
                location=locations[0] if locations else "Main set",
                characters=cast[:3],
                description=synopsis,
                emotion="tense",
                duration_seconds=self.default_scene_seconds,
            )
        ]

    def _records(
        self,
        bible: Dict[str, Any],
        prompt: str,
        season_count: int,
        episodes_per_season: int,
    ):
        """Build every record in memory; raises ValidationError before anything is written"""
        show = bible.get("show") if isinstance(bible.get("show"), dict) else {}
        project = Project(
            id=str(uuid.uuid4()),
            title=_text(show.get("title")).strip() or "Untitled Production",
            genre=_text(show.get("genre")).strip() or "reality-drama",
            mood=_text(show.get("mood")).strip() or "dramatic",
            theme=_text(show.get("theme")).strip() or "Drama",
            owner=self.owner,
        )

        characters: List[Character] = []
        for raw in bible.get("cast") or []:
            if not isinstance(raw, dict) or not _text(raw.get("name")).strip():
                continue
            characters.append(
                Character(
                    id=str(uuid.uuid4()),
                    project_id=project.id,
                    name=_text(raw["name"]).strip(),
                    role=_text(raw.get("role")).strip() or "wildcard",
                    personality=_text(raw.get("personality")),
                    background=_text(raw.get("background")),
                    goals=_text(raw.get("goals")),
                    metadata={
                        "voice_style": raw.get("voice_style"),
                        "signature_look": raw.get("signature_look"),
                        "source": "prompt-to-production",
                    },
                )
            )
        if not characters:
            characters.append(
                Character(
                    id=str(uuid.uuid4()),
                    project_id=project.id,
                    name="Host",
                    role="host",
                    metadata={"source": "prompt-to-production"},
                )
            )

        cast = [c.name for c in characters]
        locations = [
            _text(loc.get("name")) for loc in bible.get("locations") or [] if isinstance(loc, dict) and loc.get("name")
        ]

        episodes: List[Episode] = []
        seasons = self._season_plans(bible, season_count)
        for season_number, season in enumerate(seasons, 1):
            plans = [p for p in season.get("episodes") or [] if isinstance(p, dict)]
            for number in range(1, episodes_per_season + 1):
                plan = plans[number - 1] if number <= len(plans) else {}
                title = _text(plan.get("title")).strip() or f"Episode {number}"
                synopsis = (
                    _text(plan.get("synopsis")).strip()
                    or f"{project.title}, season {season_number} episode {number}: {prompt}"
                )
                cliffhanger = _text(plan.get("cliffhanger")).strip() or "To be continued..."
                episodes.append(
                    Episode(
                        id=str(uuid.uuid4()),
                        project_id=project.id,
                        season=season_number,
                        episode_number=number,
                        title=title,
                        synopsis=synopsis,
                        script=f"{synopsis}\n\nCliffhanger: {cliffhanger}",
                        storyboard=self._storyboard(plan, cast, locations, synopsis),
                        status=EpisodeStatus.DRAFT,
                    )
                )
        return show, project, characters, locations, episodes, seasons

    def persist(
        self,
        bible: Dict[str, Any],
        prompt: str,
        season_count: int,
        episodes_per_season: int,
    ) -> Dict[str, Any]:
        """Write the project, cast and exactly season_count * episodes_per_season episodes"""
        try:
            show, project, characters, locations, episodes, seasons = self._records(
                bible, prompt, season_count, episodes_per_season
            )
        except ValidationError as e:
            raise ProductionError(f"Show bible has invalid fields: {e.error_count()} validation error(s)")

        if not self.db.insert_project(project):
            raise ProductionError("Failed to create project")
        stored = [c for c in characters if self.db.insert_character(c)]
        for episode in episodes:
            if self.db.insert(episode.model_dump()) is None:
                raise ProductionError(
                    f"Failed to create season {episode.season} episode {episode.episode_number}"
                )

        logger.info(
            f"[production] {project.title}: {len(stored)} characters, {len(episodes)} episodes"
        )
        return {
            "show": show,
            "project": project.model_dump(mode="json"),
            "characters": [c.model_dump() for c in stored],
            "episodes": [e.model_dump(mode="json") for e in episodes],
            "locations": bible.get("locations") or [],
            "seasonArc": _text(seasons[0].get("arc")),
        }
