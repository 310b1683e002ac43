"""
Service wiring. Everything the routes need is built once from the operator
config; tests swap the whole container through app.dependency_overrides.
"""

import logging
from dataclasses import dataclass
from functools import lru_cache

from .batch import BatchCoordinator
from .cache import TTLCache
from .config import OperatorConfig, operator_config
from .db import Database
from .events import EventLogger
from .generator import ContentGenerator, VideoEngineClient
from .orchestrator import Orchestrator, VideoRenderer
from .production import ProductionBuilder
from .recovery import ErrorReporter, SelfHealer
from .stages import StageRegistry, build_registry
from .storage import StorageManager

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: OperatorConfig
    db: Database
    storage: StorageManager
    cache: TTLCache
    generator: ContentGenerator
    registry: StageRegistry
    events: EventLogger
    reporter: ErrorReporter
    healer: SelfHealer
    renderer: VideoRenderer
    orchestrator: Orchestrator
    batch: BatchCoordinator
    production: ProductionBuilder


def build_services(
    config: OperatorConfig,
    generator: ContentGenerator = None,
    engine: VideoEngineClient = None,
) -> Services:
    owner = config.get("server.owner", "admin")
    db = Database(config.get("storage.db_path", "studio.db"))
    storage = StorageManager(
        config.get("storage.media_dir", "media"),
        config.get("storage.public_base_url", "http://127.0.0.1:8008/media"),
    )
    cache = TTLCache(config.get("cache.ttl_seconds", 300), config.get("cache.max_entries", 1024))
    generator = generator or ContentGenerator.from_config(config)
    engine = engine or VideoEngineClient.from_config(config)
    registry = build_registry(generator, storage, cache, config.get("music.default_style", "Urban/Hip-Hop"))
    events = EventLogger(db, config.get("storage.runs_dir", "runs"))
    reporter = ErrorReporter(db)
    renderer = VideoRenderer(engine, registry, events, owner=owner)
    orchestrator = Orchestrator(
        db,
        registry,
        events,
        renderer,
        storage,
        reporter,
        owner=owner,
        ready_threshold=config.get("pipeline.ready_threshold", 80),
    )
    logger.info("[deps] Studio services ready")
    return Services(
        config=config,
        db=db,
        storage=storage,
        cache=cache,
        generator=generator,
        registry=registry,
        events=events,
        reporter=reporter,
        healer=SelfHealer(db, cache),
        renderer=renderer,
        orchestrator=orchestrator,
        batch=BatchCoordinator(db, renderer, config.get("pipeline.batch_size", 3), owner=owner),
        production=ProductionBuilder(
            generator, db, owner=owner, default_scene_seconds=config.get("pipeline.default_scene_seconds", 30)
        ),
    )


@lru_cache(maxsize=1)
def get_services() -> Services:
    return build_services(operator_config)
