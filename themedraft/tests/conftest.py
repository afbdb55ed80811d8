from __future__ import annotations

import pytest

from themedraft.core.config import Settings, get_settings
from themedraft.persistence.db import build_engine, build_session_factory, create_schema
from themedraft.persistence.resources import AppResources
from themedraft.services.telemetry import reset_telemetry
from themedraft.tests.utils.fakes import FakeRedis


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Keep cached settings and in-memory counters from leaking across tests.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path) -> Settings:
    # File-backed SQLite so API, worker and disconnect handler share one store.
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'themedraft.db'}",
        redis_url="redis://localhost:6379/15",
        generation_execution_mode="inline",
        generation_provider="fake",
        generation_default_model="google/gemini-2.0-flash",
        rate_limit_per_minute=5,
        default_credits_limit=10,
        daily_spend_cap_usd=5.0,
        max_retry_attempts=3,
        retry_base_delay_s=2.0,
        sse_poll_interval_s=0.02,
        sse_heartbeat_s=1,
        admin_secret="ops-secret",
    )


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
async def resources(settings: Settings, fake_redis: FakeRedis) -> AppResources:
    engine = build_engine(settings)
    await create_schema(engine)
    handles = AppResources(
        settings=settings,
        engine=engine,
        session_factory=build_session_factory(engine),
        redis=fake_redis,
        queue_pool=None,
    )
    yield handles
    await engine.dispose()
