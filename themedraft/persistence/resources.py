from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from themedraft.core.config import Settings
from themedraft.persistence.db import build_engine, build_session_factory


logger = logging.getLogger(__name__)


@dataclass
class AppResources:
    # Connection handles owned by one process (API lifespan or worker startup).
    settings: Settings
    engine: AsyncEngine | None
    session_factory: async_sessionmaker[AsyncSession]
    redis: Any
    queue_pool: ArqRedis | None = None

    async def aclose(self) -> None:
        # Release handles in reverse order of acquisition.
        if self.queue_pool is not None:
            await self.queue_pool.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        if self.engine is not None:
            await self.engine.dispose()


async def open_resources(settings: Settings, *, with_queue: bool = True) -> AppResources:
    engine = build_engine(settings)
    redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    queue_pool: ArqRedis | None = None
    # Inline mode never touches the arq queue.
    if with_queue and settings.generation_execution_mode.lower() != "inline":
        queue_pool = await create_pool(
            RedisSettings.from_dsn(settings.redis_url),
            default_queue_name=settings.generation_queue_name,
        )
    logger.info("resources_opened queue=%s", queue_pool is not None)
    return AppResources(
        settings=settings,
        engine=engine,
        session_factory=build_session_factory(engine),
        redis=redis,
        queue_pool=queue_pool,
    )
