from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from stacksearch.apps.api.deps import AdminGuard, get_container
from stacksearch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stacksearch.apps.api.response import SuccessEnvelope, success_response
from stacksearch.services.container import ServiceContainer
from stacksearch.services.telemetry import (
    availability,
    counters_snapshot,
    external_call_stats,
    gauges_snapshot,
    p95_latency,
)
from stacksearch.services.webhooks import queue as webhook_queue


logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    database: str
    queue_depth: int | None
    worker_heartbeat_at: str | None
    breakers: dict[str, str]
    refresh_scheduler: dict[str, Any]


class MetricsResponse(BaseModel):
    counters: dict[str, int]
    gauges: dict[str, float]
    availability_5m: float | None
    p95_latency_ms_5m: float | None
    external_calls_5m: dict[str, dict[str, float | int]]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    return success_response(request=request, data=HealthResponse(status="ok"))


@router.get("/health/ready", response_model=SuccessEnvelope[ReadinessResponse] | ReadinessResponse)
async def readiness(request: Request, container: ServiceContainer = Depends(get_container)) -> dict:
    database = "ok"
    try:
        async with container.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("readiness_database_failed error=%s", exc)
        database = "unavailable"
    heartbeat = await webhook_queue.get_worker_heartbeat()
    breakers = await container.breaker_states()
    degraded = database != "ok" or any(state == "open" for state in breakers.values())
    payload = ReadinessResponse(
        status="degraded" if degraded else "ok",
        database=database,
        queue_depth=await webhook_queue.get_queue_depth(),
        worker_heartbeat_at=heartbeat.isoformat() if heartbeat else None,
        breakers=breakers,
        refresh_scheduler=container.scheduler.status(),
    )
    return success_response(request=request, data=payload)


@router.get(
    "/ops/metrics",
    response_model=SuccessEnvelope[MetricsResponse] | MetricsResponse,
    dependencies=[AdminGuard],
)
async def metrics(request: Request) -> dict:
    payload = MetricsResponse(
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        availability_5m=availability(300),
        p95_latency_ms_5m=p95_latency(300),
        external_calls_5m=external_call_stats(300),
    )
    return success_response(request=request, data=payload)
