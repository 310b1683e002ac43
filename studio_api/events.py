"""
Execution Events
Records bot execution stats and mirrors them to the console, the database and
per-episode JSONL files.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import BotExecutionStat

logger = logging.getLogger(__name__)


class EventLogger:
    """Structured stage-run recorder"""

    def __init__(self, db, runs_dir: str = "runs"):
        self.db = db
        self.runs_dir = Path(runs_dir)
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        self.log = logging.getLogger("events")

    def _write_jsonl(self, stat: BotExecutionStat):
        """Append to runs/<episode_id>/events.jsonl"""
        try:
            run_dir = self.runs_dir / (stat.episode_id or "_unassigned")
            run_dir.mkdir(parents=True, exist_ok=True)
            with open(run_dir / "events.jsonl", "a", encoding="utf-8") as f:
                f.write(json.dumps(stat.model_dump(mode="json"), ensure_ascii=False) + "\n")
        except OSError as e:
            self.log.error(f"[events] Failed to write event to JSONL: {e}")

    def _log_to_console(self, stat: BotExecutionStat):
        parts = [
            f"[events] {stat.bot_type}",
            f"Episode: {stat.episode_id or '-'}",
            f"Status: {'ok' if stat.success else 'failed'}",
            f"Time: {stat.execution_time_ms}ms",
        ]
        error = stat.metadata.get("error")
        if error:
            parts.append(f"Error: {error}")
        message = " | ".join(parts)
        if stat.success:
            self.log.info(message)
        else:
            self.log.warning(message)

    def record(
        self,
        bot_type: str,
        episode_id: Optional[str],
        execution_time_ms: int,
        success: bool = True,
        quality_score: float = 0.0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[BotExecutionStat]:
        stat = BotExecutionStat(
            bot_type=bot_type,
            episode_id=episode_id,
            execution_time_ms=int(execution_time_ms),
            quality_score=quality_score if success else 0.0,
            success=success,
            metadata=metadata or {},
        )
        self._write_jsonl(stat)
        if not self.db.add_stat(stat):
            self.log.error(f"[events] Failed to add stat to database: {bot_type}")
            return None
        self._log_to_console(stat)
        return stat

    def get_episode_events(self, episode_id: str, limit: int = 100) -> List[BotExecutionStat]:
        """Read back an episode's stats from its JSONL file"""
        events_file = self.runs_dir / episode_id / "events.jsonl"
        if not events_file.exists():
            return []
        events = []
        with open(events_file, "r", encoding="utf-8") as f:
            for line in f:
                if len(events) >= limit:
                    break
                try:
                    events.append(BotExecutionStat(**json.loads(line)))
                except (json.JSONDecodeError, ValueError) as e:
                    self.log.warning(f"[events] Skipping malformed event line: {e}")
        return events
