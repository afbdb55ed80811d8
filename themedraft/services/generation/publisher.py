from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import Any, AsyncIterator

from pydantic import ValidationError
from redis.exceptions import RedisError

from themedraft.domain.events import JobEvent


logger = logging.getLogger(__name__)


def job_channel(job_id: str, prefix: str = "job") -> str:
    return f"{prefix}:{job_id}"


class JobEventPublisher:
    def __init__(self, redis: Any, *, channel_prefix: str = "job") -> None:
        self._redis = redis
        self._prefix = channel_prefix

    def channel(self, job_id: str) -> str:
        return job_channel(job_id, self._prefix)

    async def publish(self, job_id: str, event: JobEvent) -> int:
        # Best-effort delivery; the job store stays authoritative.
        try:
            return int(await self._redis.publish(self.channel(job_id), event.to_wire()) or 0)
        except RedisError as exc:
            logger.warning(
                "job_event_publish_failed job_id=%s status=%s error=%s",
                job_id,
                event.status,
                type(exc).__name__,
            )
            return 0


class JobSubscription:
    def __init__(self, pubsub: Any, channel: str) -> None:
        self._pubsub = pubsub
        self.channel = channel

    async def get(self, timeout: float) -> JobEvent | None:
        message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        if message is None or message.get("type") != "message":
            return None
        try:
            return JobEvent.from_wire(message["data"])
        except ValidationError:
            logger.warning("job_event_malformed channel=%s", self.channel)
            return None

    async def __aiter__(self) -> AsyncIterator[JobEvent]:
        # Ends after the first terminal event.
        while True:
            event = await self.get(timeout=1.0)
            if event is None:
                continue
            yield event
            if event.is_terminal:
                return


class JobEventSubscriber:
    def __init__(self, redis: Any, *, channel_prefix: str = "job") -> None:
        self._redis = redis
        self._prefix = channel_prefix

    @asynccontextmanager
    async def subscribe(self, job_id: str) -> AsyncIterator[JobSubscription]:
        # One pubsub connection per subscriber; released on exit.
        channel = job_channel(job_id, self._prefix)
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        try:
            yield JobSubscription(pubsub, channel)
        finally:
            try:
                await pubsub.unsubscribe(channel)
            finally:
                await pubsub.aclose()
