from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Literal
from uuid import uuid4

from arq import Retry, create_pool
from arq.connections import ArqRedis, RedisSettings
from pydantic import BaseModel, Field

from stacksearch.core.config import get_settings
from stacksearch.core.errors import is_retriable
from stacksearch.core.logging import mask_key
from stacksearch.services.container import ServiceContainer
from stacksearch.services.resilience import best_effort
from stacksearch.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_redis_pool: ArqRedis | None = None
_redis_pool_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()

WORKER_HEARTBEAT_KEY = "stacksearch:webhook_worker:heartbeat"

ENTRY_UPSERT_EVENTS = frozenset({"entry.publish", "entry.update", "entry.create"})
ENTRY_REMOVE_EVENTS = frozenset({"entry.unpublish", "entry.delete"})
ASSET_UPSERT_EVENTS = frozenset({"asset.publish", "asset.update"})
ASSET_REMOVE_EVENTS = frozenset({"asset.unpublish", "asset.delete"})
KNOWN_EVENTS = ENTRY_UPSERT_EVENTS | ENTRY_REMOVE_EVENTS | ASSET_UPSERT_EVENTS | ASSET_REMOVE_EVENTS

JobOutcome = Literal["indexed", "skipped", "removed", "ignored", "failed"]


class WebhookJobPayload(BaseModel):
    # Normalized handoff between the receiver route and the worker.
    event_id: str = Field(default_factory=lambda: uuid4().hex)
    event: str
    stack_api_key: str
    content_type: str | None = None
    entry: dict[str, Any] | None = None
    asset: dict[str, Any] | None = None
    environment: str | None = None
    locale: str | None = None


async def get_redis_pool() -> ArqRedis:
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.webhook_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth() -> int | None:
    # None signals Redis unavailability to the health endpoint.
    settings = get_settings()
    if settings.webhook_execution_mode.lower() == "inline":
        return 0
    try:
        redis = await get_redis_pool()
        return int(await redis.zcard(f"arq:queue:{settings.webhook_queue_name}"))
    except Exception:  # noqa: BLE001 - health reporting handles degraded Redis
        return None


async def set_worker_heartbeat(*, timestamp: datetime | None = None) -> None:
    settings = get_settings()
    if settings.webhook_execution_mode.lower() == "inline":
        return
    redis = await get_redis_pool()
    await redis.set(WORKER_HEARTBEAT_KEY, (timestamp or datetime.now(timezone.utc)).isoformat())


async def get_worker_heartbeat() -> datetime | None:
    settings = get_settings()
    if settings.webhook_execution_mode.lower() == "inline":
        return None
    try:
        redis = await get_redis_pool()
        value = await redis.get(WORKER_HEARTBEAT_KEY)
    except Exception:  # noqa: BLE001 - missing Redis reads as no heartbeat
        return None
    if not value:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


async def handle_webhook_event(container: ServiceContainer, payload: WebhookJobPayload) -> JobOutcome:
    key = payload.stack_api_key
    indexing = container.indexing
    if payload.event in ENTRY_UPSERT_EVENTS:
        entry = payload.entry or {}
        if not payload.content_type:
            logger.warning("webhook_missing_content_type event=%s stack=%s", payload.event, mask_key(key))
            return "failed"
        indexed = await indexing.update_entry(entry, payload.content_type, key)
        try:
            await indexing.index_entry_images(entry, payload.content_type, key)
        except Exception as exc:  # noqa: BLE001 - image refresh never fails the text update
            logger.warning("webhook_image_index_failed entry=%s error=%s", entry.get("uid"), exc)
        return "indexed" if indexed else "skipped"
    if payload.event in ENTRY_REMOVE_EVENTS:
        await indexing.remove_entry(str((payload.entry or {}).get("uid") or ""), key)
        return "removed"
    if payload.event in ASSET_UPSERT_EVENTS:
        indexed = await indexing.index_asset(payload.asset or {}, key)
        return "indexed" if indexed else "skipped"
    if payload.event in ASSET_REMOVE_EVENTS:
        await indexing.remove_asset(str((payload.asset or {}).get("uid") or ""), key)
        return "removed"
    return "ignored"


async def process_webhook_job(
    container: ServiceContainer,
    payload: WebhookJobPayload,
    *,
    attempt: int,
    max_retries: int,
) -> JobOutcome:
    # Shared by the arq worker and inline mode so both retry the same way.
    try:
        outcome = await handle_webhook_event(container, payload)
    except Exception as exc:  # noqa: BLE001 - classify before deciding to retry
        if is_retriable(exc) and attempt < max_retries:
            increment_counter("webhook_retries_total")
            raise Retry(defer=attempt * 2) from exc
        increment_counter("webhook_failures_total")
        logger.exception(
            "webhook_job_failed event=%s event_id=%s stack=%s", payload.event, payload.event_id, mask_key(payload.stack_api_key)
        )
        return "failed"
    increment_counter(f"webhook_events_total.{outcome}")
    logger.info(
        "webhook_job_processed event=%s event_id=%s stack=%s outcome=%s",
        payload.event,
        payload.event_id,
        mask_key(payload.stack_api_key),
        outcome,
    )
    return outcome


async def _run_inline_job(container: ServiceContainer, payload: WebhookJobPayload, *, max_retries: int) -> JobOutcome:
    # Inline mode mimics worker retries without requiring Redis.
    attempt = 1
    while True:
        try:
            return await process_webhook_job(container, payload, attempt=attempt, max_retries=max_retries)
        except Retry:
            await asyncio.sleep(min(attempt * 0.5, 5.0))
            attempt += 1


async def enqueue_webhook_event(container: ServiceContainer, payload: WebhookJobPayload) -> str:
    settings = container.settings
    if payload.event not in KNOWN_EVENTS:
        logger.info("webhook_event_ignored event=%s", payload.event)
        return payload.event_id
    if settings.webhook_execution_mode.lower() == "inline":
        best_effort(
            _run_inline_job(container, payload, max_retries=settings.webhook_max_retries),
            name="webhook_inline_job",
        )
        return payload.event_id
    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        "process_webhook",
        payload.model_dump(),
        _job_id=payload.event_id,
        _queue_name=settings.webhook_queue_name,
    )
    # arq returns None when the job id is already queued; the event is still accepted.
    return job.job_id if job else payload.event_id
