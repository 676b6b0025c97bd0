"""Shared dependencies for the Gateway routes.

Avoids circular imports by centralizing singleton initialization.
"""

from config.settings import get_settings
from frontdesk.core.redis_bus import RedisBus
from frontdesk.matching.learning import LearningRecorder
from frontdesk.routing.router import ScenarioRouter, build_router

settings = get_settings()

# Initialize Singletons
redis_bus = RedisBus(redis_url=settings.redis_url)
learning_recorder = LearningRecorder(
    maxsize=settings.learning_queue_size,
    bus=redis_bus if settings.decision_cache_backend == "redis" else None,
)
scenario_router = build_router(settings, recorder=learning_recorder)


def get_redis_bus() -> RedisBus:
    return redis_bus


def get_learning_recorder() -> LearningRecorder:
    return learning_recorder


def get_scenario_router() -> ScenarioRouter:
    return scenario_router
