from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from stacksearch.core.config import get_settings
from stacksearch.core.logging import configure_logging
from stacksearch.services.container import build_container
from stacksearch.services.resilience import drain_background_tasks
from stacksearch.services.webhooks.queue import (
    WebhookJobPayload,
    process_webhook_job,
    set_worker_heartbeat,
)


logger = logging.getLogger(__name__)


async def process_webhook(ctx, payload: dict) -> str:
    # Validate in the worker so malformed jobs fail before touching any tenant.
    job_payload = WebhookJobPayload.model_validate(payload)
    settings = get_settings()
    return await process_webhook_job(
        ctx["container"],
        job_payload,
        attempt=ctx.get("job_try", 1),
        max_retries=settings.webhook_max_retries,
    )


async def _heartbeat_loop() -> None:
    settings = get_settings()
    while True:
        try:
            await set_worker_heartbeat()
        except Exception as exc:  # noqa: BLE001 - heartbeat gaps surface in health checks
            logger.warning("worker_heartbeat_failed error=%s", exc)
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["container"] = await build_container()
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())
    logger.info("webhook_worker_started queue=%s", get_settings().webhook_queue_name)


async def _shutdown(ctx) -> None:
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()
    await drain_background_tasks()
    container = ctx.get("container")
    if container is not None:
        await container.aclose()


class WorkerSettings:
    # Class attributes keep the arq CLI entrypoint working.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.webhook_queue_name
    max_tries = settings.webhook_max_retries
    functions = [process_webhook]
    on_startup = _startup
    on_shutdown = _shutdown
