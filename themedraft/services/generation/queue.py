from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable

from arq import ArqRedis, Retry
from pydantic import BaseModel


logger = logging.getLogger(__name__)

# Keep heartbeat key stable for ops endpoint lookups.
WORKER_HEARTBEAT_KEY = "themedraft:worker:heartbeat"
GENERATION_TASK_NAME = "generate_template"


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class GenerationJobPayload(BaseModel):
    # API-to-worker handoff; the job row stays the source of truth.
    job_id: str
    tenant_id: str


class GenerationDispatcher:
    """Hands persisted jobs to the arq queue, or runs them in-process.

    Inline mode runs the job to completion before ``enqueue`` returns and
    replays arq's retry loop without the backoff delay.
    """

    def __init__(
        self,
        *,
        queue_pool: ArqRedis | None,
        queue_name: str,
        inline_runner: Callable[[str], Awaitable[Any]] | None = None,
        max_attempts: int = 3,
    ) -> None:
        if queue_pool is None and inline_runner is None:
            raise ValueError("GenerationDispatcher needs a queue pool or an inline runner")
        self._queue_pool = queue_pool
        self._queue_name = queue_name
        self._inline_runner = inline_runner
        self._max_attempts = max_attempts

    @property
    def is_inline(self) -> bool:
        return self._queue_pool is None

    async def enqueue(self, payload: GenerationJobPayload) -> str:
        if self._queue_pool is None:
            await self._run_inline(payload.job_id)
            return payload.job_id
        job = await self._queue_pool.enqueue_job(
            GENERATION_TASK_NAME,
            payload.model_dump(),
            _job_id=payload.job_id,
            _queue_name=self._queue_name,
        )
        # arq returns None when the job id is already queued; the id is still valid.
        if job is None:
            logger.info("generation_enqueue_duplicate job_id=%s", payload.job_id)
        return payload.job_id

    async def _run_inline(self, job_id: str) -> None:
        # Inline mode mimics worker retries without requiring Redis.
        for attempt in range(1, self._max_attempts + 1):
            try:
                await self._inline_runner(job_id)
                return
            except Retry:
                logger.info("generation_inline_retry job_id=%s attempt=%s", job_id, attempt)
                continue


async def get_queue_depth(redis: Any, queue_name: str, *, inline: bool = False) -> int | None:
    # Return None to signal Redis unavailability to ops endpoints.
    if inline:
        return 0
    try:
        depth = await redis.zcard(_queue_key(queue_name))
        return int(depth)
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None


async def set_worker_heartbeat(redis: Any, *, timestamp: datetime | None = None) -> None:
    heartbeat_time = timestamp or _utc_now()
    await redis.set(WORKER_HEARTBEAT_KEY, heartbeat_time.isoformat())


async def get_worker_heartbeat(redis: Any) -> datetime | None:
    # Return None when the heartbeat is missing or Redis is unavailable.
    try:
        raw_value = await redis.get(WORKER_HEARTBEAT_KEY)
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
