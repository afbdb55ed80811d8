from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from themedraft.core.config import get_settings
from themedraft.core.logging import configure_logging
from themedraft.persistence.resources import open_resources
from themedraft.services.generation.queue import GenerationJobPayload, set_worker_heartbeat
from themedraft.services.wiring import build_services


logger = logging.getLogger(__name__)


async def generate_template(ctx, payload: dict) -> str | None:
    # Parse and validate payloads in the worker to enforce schema contracts.
    job_payload = GenerationJobPayload.model_validate(payload)
    logger.info(
        "generation_job_dequeued job_id=%s tenant_id=%s try=%s",
        job_payload.job_id,
        job_payload.tenant_id,
        ctx.get("job_try", 1),
    )
    status = await ctx["services"].worker.process(job_payload.job_id)
    return status.value if status is not None else None


async def _heartbeat_loop(redis, interval_s: int) -> None:
    # Emit heartbeats on a fixed interval for ops health reporting.
    while True:
        try:
            await set_worker_heartbeat(redis)
        except Exception as exc:  # noqa: BLE001 - a missed beat must not kill the loop
            logger.warning("worker_heartbeat_failed error=%s", type(exc).__name__)
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    settings = get_settings()
    # The worker only consumes the queue, so it needs no enqueue pool.
    resources = await open_resources(settings, with_queue=False)
    ctx["resources"] = resources
    ctx["services"] = build_services(resources)
    ctx["heartbeat_task"] = asyncio.create_task(
        _heartbeat_loop(resources.redis, settings.worker_heartbeat_interval_s)
    )


async def _shutdown(ctx) -> None:
    # Cancel the heartbeat task to avoid dangling coroutines on exit.
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()
    resources = ctx.get("resources")
    if resources is not None:
        await resources.aclose()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.generation_queue_name
    # One spare try so a redelivery after a lost final attempt still reaches the worker.
    max_tries = settings.max_retry_attempts + 1
    max_jobs = settings.worker_max_jobs
    job_timeout = max(int(settings.ext_call_timeout_ms / 1000) + 60, 300)
    functions = [generate_template]
    on_startup = _startup
    on_shutdown = _shutdown
