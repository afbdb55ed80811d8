from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from themedraft.domain.models import Quota, UsageLog


def _insert_for(session: AsyncSession):
    # Pick the dialect insert that supports ON CONFLICT DO NOTHING.
    dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
    return sqlite_insert if dialect == "sqlite" else pg_insert


async def get_quota(session: AsyncSession, tenant_id: str) -> Quota | None:
    result = await session.execute(select(Quota).where(Quota.tenant_id == tenant_id))
    return result.scalar_one_or_none()


async def insert_quota_if_absent(
    session: AsyncSession,
    tenant_id: str,
    *,
    credits_limit: int,
    max_daily_spend_usd: Decimal | None,
) -> None:
    # Race-safe insert: concurrent first admissions converge on one row.
    insert = _insert_for(session)
    stmt = insert(Quota).values(
        tenant_id=tenant_id,
        credits_limit=credits_limit,
        credits_used=0,
        max_daily_spend_usd=max_daily_spend_usd,
    )
    await session.execute(stmt.on_conflict_do_nothing(index_elements=[Quota.tenant_id]))


async def increment_credits_used(session: AsyncSession, tenant_id: str) -> bool:
    # Atomic in-database increment that never passes the limit; never read-modify-write in Python.
    result = await session.execute(
        update(Quota)
        .where(Quota.tenant_id == tenant_id, Quota.credits_used < Quota.credits_limit)
        .values(credits_used=Quota.credits_used + 1)
    )
    return (result.rowcount or 0) == 1


async def add_usage_log(
    session: AsyncSession,
    *,
    job_id: str,
    tenant_id: str,
    model: str,
    input_tokens: int,
    output_tokens: int,
    estimated_cost_usd: Decimal,
    created_at: datetime,
) -> UsageLog:
    row = UsageLog(
        job_id=job_id,
        tenant_id=tenant_id,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        estimated_cost_usd=estimated_cost_usd,
        created_at=created_at,
    )
    session.add(row)
    return row


async def sum_spend_between(
    session: AsyncSession, tenant_id: str, *, start: datetime, end: datetime
) -> Decimal:
    result = await session.execute(
        select(func.coalesce(func.sum(UsageLog.estimated_cost_usd), 0)).where(
            UsageLog.tenant_id == tenant_id,
            UsageLog.created_at >= start,
            UsageLog.created_at < end,
        )
    )
    return Decimal(str(result.scalar() or 0))
