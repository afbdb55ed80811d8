from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from themedraft.persistence.repos import quotas as quotas_repo
from themedraft.services.quota import QuotaLedger


def _ledger(now: datetime, *, day_timezone: str = "UTC") -> QuotaLedger:
    return QuotaLedger(
        default_credits_limit=10,
        default_daily_cap_usd=Decimal("5.0"),
        day_timezone=day_timezone,
        time_provider=lambda: now,
    )


async def _log_spend(session, tenant_id: str, cost: str, at: datetime) -> None:
    await quotas_repo.add_usage_log(
        session,
        job_id=f"job-{at.isoformat()}",
        tenant_id=tenant_id,
        model="google/gemini-2.0-flash",
        input_tokens=1,
        output_tokens=1,
        estimated_cost_usd=Decimal(cost),
        created_at=at,
    )


@pytest.mark.asyncio
async def test_ensure_quota_creates_defaults_once(resources) -> None:
    ledger = _ledger(datetime(2026, 3, 1, 12, tzinfo=timezone.utc))
    async with resources.session_factory() as session:
        first = await ledger.ensure_quota(session, "t1")
        await session.commit()
        first.credits_used = 7
        await session.commit()
    async with resources.session_factory() as session:
        again = await ledger.ensure_quota(session, "t1")
    assert again.credits_limit == 10
    # An existing row is never reset by a later ensure.
    assert again.credits_used == 7


@pytest.mark.asyncio
async def test_increment_usage_is_in_database(resources) -> None:
    ledger = _ledger(datetime(2026, 3, 1, 12, tzinfo=timezone.utc))
    async with resources.session_factory() as session:
        await ledger.ensure_quota(session, "t1")
        await ledger.increment_usage(session, "t1")
        await ledger.increment_usage(session, "t1")
        await session.commit()
    async with resources.session_factory() as session:
        quota = await quotas_repo.get_quota(session, "t1")
    assert quota.credits_used == 2


@pytest.mark.asyncio
async def test_daily_spend_only_counts_current_day(resources) -> None:
    now = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)
    ledger = _ledger(now)
    async with resources.session_factory() as session:
        await _log_spend(session, "t1", "1.25", datetime(2026, 3, 1, 23, 59, tzinfo=timezone.utc))
        await _log_spend(session, "t1", "0.50", datetime(2026, 3, 2, 0, 0, 1, tzinfo=timezone.utc))
        await _log_spend(session, "t1", "0.25", datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))
        await _log_spend(session, "t2", "3.00", datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))
        await session.commit()
    async with resources.session_factory() as session:
        spent = await ledger.daily_spend(session, "t1")
    assert spent == Decimal("0.75")


def test_day_bounds_follow_reference_timezone() -> None:
    # 03:00 UTC is still the previous day in New York.
    ledger = _ledger(datetime(2026, 1, 15, 3, tzinfo=timezone.utc), day_timezone="America/New_York")
    start, end = ledger.day_bounds(datetime(2026, 1, 15, 3, tzinfo=timezone.utc))
    assert start == datetime(2026, 1, 14, 5, tzinfo=timezone.utc)
    assert end == datetime(2026, 1, 15, 5, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_snapshot_reports_remaining_and_cap(resources) -> None:
    ledger = _ledger(datetime(2026, 3, 2, 9, tzinfo=timezone.utc))
    async with resources.session_factory() as session:
        await ledger.ensure_quota(session, "t1")
        await ledger.increment_usage(session, "t1")
        await _log_spend(session, "t1", "0.40", datetime(2026, 3, 2, 8, tzinfo=timezone.utc))
        await session.commit()
    async with resources.session_factory() as session:
        snapshot = await ledger.snapshot(session, "t1")
    assert snapshot.credits_used == 1
    assert snapshot.credits_remaining == 9
    assert snapshot.max_daily_spend_usd == Decimal("5.0")
    assert snapshot.spent_today_usd == Decimal("0.4")


@pytest.mark.asyncio
async def test_increment_usage_stops_at_credit_limit(resources) -> None:
    ledger = _ledger(datetime(2026, 3, 1, 12, tzinfo=timezone.utc))
    async with resources.session_factory() as session:
        await quotas_repo.insert_quota_if_absent(session, "t1", credits_limit=1, max_daily_spend_usd=None)
        charged = [await ledger.increment_usage(session, "t1") for _ in range(3)]
        await session.commit()
    async with resources.session_factory() as session:
        quota = await quotas_repo.get_quota(session, "t1")
    assert charged == [True, False, False]
    assert quota.credits_used == 1
