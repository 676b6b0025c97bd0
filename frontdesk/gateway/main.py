"""Frontdesk – HTTP Gateway.

Exposes the matching engine to the conversational state machine
(``POST /v1/route``) and the cache-invalidation hook to the authoring
surface (``POST /v1/tenants/{tenant_id}/invalidate``).
"""

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as redis
import structlog
from fastapi import Depends, FastAPI, HTTPException
from pydantic import ValidationError

from config.settings import Settings, get_settings
from frontdesk.core.db import run_migrations
from frontdesk.core.errors import StoreUnavailable
from frontdesk.core.instrumentation import router as metrics_router
from frontdesk.core.instrumentation import setup_instrumentation
from frontdesk.core.redis_bus import RedisBus
from frontdesk.gateway.dependencies import (
    get_learning_recorder,
    get_redis_bus,
    get_scenario_router,
)
from frontdesk.gateway.schemas import InvalidateResponse, RouteRequest
from frontdesk.matching.types import MatchContext
from frontdesk.routing.cache import RedisDecisionCache
from frontdesk.routing.router import RoutingDecision, ScenarioRouter
from frontdesk.scenarios.store import SqlScenarioStore

logger = structlog.get_logger()

settings: Settings = get_settings()
VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[type-arg]
    """Application lifespan: store schema, Redis, learning drain."""
    scenario_router = get_scenario_router()
    recorder = get_learning_recorder()
    redis_bus = get_redis_bus()

    if isinstance(scenario_router.loader.store, SqlScenarioStore) and not settings.is_production:
        run_migrations()

    if settings.decision_cache_backend == "redis":
        try:
            await redis_bus.connect()
            scenario_router.cache = RedisDecisionCache(redis_bus.client)
        except (redis.RedisError, OSError) as e:
            logger.error("gateway.redis_unavailable", error=str(e), fallback="memory")

    recorder.start()
    logger.info("frontdesk.gateway.startup", version=VERSION, env=settings.environment)
    yield
    await recorder.stop()
    await redis_bus.disconnect()
    logger.info("frontdesk.gateway.shutdown")


app = FastAPI(
    title="Frontdesk Scenario Engine",
    description="Multi-tier scenario matching and response selection",
    version=VERSION,
    lifespan=lifespan,
)
setup_instrumentation(app, settings.log_level)
app.include_router(metrics_router)


@app.get("/health")
async def health_check(redis_bus: RedisBus = Depends(get_redis_bus)) -> dict[str, Any]:
    """Health endpoint – returns engine status and backends."""
    redis_ok = await redis_bus.health_check()
    degraded = settings.decision_cache_backend == "redis" and not redis_ok
    return {
        "status": "degraded" if degraded else "ok",
        "service": "frontdesk-scenario-engine",
        "version": VERSION,
        "store": settings.scenario_store_backend,
        "decision_cache": settings.decision_cache_backend,
        "redis": "connected" if redis_ok else "disconnected",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.post("/v1/route", response_model=RoutingDecision)
async def route_utterance(
    request: RouteRequest,
    scenario_router: ScenarioRouter = Depends(get_scenario_router),
) -> RoutingDecision:
    try:
        context = MatchContext.model_validate({**request.context, "channel": request.channel})
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False)) from e

    deadline = None
    if request.timeout_ms:
        deadline = time.monotonic() + request.timeout_ms / 1000

    try:
        return await scenario_router.route(request.utterance, request.tenant_id, context, deadline)
    except StoreUnavailable as e:
        logger.error("gateway.store_unavailable", tenant_id=request.tenant_id, error=str(e))
        raise HTTPException(status_code=503, detail="Scenario store unavailable") from e


@app.post("/v1/tenants/{tenant_id}/invalidate", response_model=InvalidateResponse)
async def invalidate_tenant(
    tenant_id: str,
    scenario_router: ScenarioRouter = Depends(get_scenario_router),
) -> InvalidateResponse:
    version = await scenario_router.invalidate(tenant_id)
    return InvalidateResponse(tenant_id=tenant_id, pool_version=version)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "frontdesk.gateway.main:app",
        host=settings.gateway_host,
        port=settings.gateway_port,
        log_level=settings.log_level,
    )
