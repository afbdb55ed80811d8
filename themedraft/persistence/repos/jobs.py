from __future__ import annotations

from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from themedraft.domain.models import GenerationJob
from themedraft.domain.status import ACTIVE_STATUSES, JobStatus, assert_transition


async def create_job(
    session: AsyncSession,
    *,
    tenant_id: str,
    idempotency_key: str,
    template_type: str,
    prompt: str,
) -> GenerationJob:
    # Flush so the unique (tenant, key) constraint fires inside the caller's transaction.
    job = GenerationJob(
        tenant_id=tenant_id,
        idempotency_key=idempotency_key,
        template_type=template_type,
        prompt=prompt,
        status=JobStatus.PENDING,
        retry_count=0,
    )
    session.add(job)
    await session.flush()
    return job


async def get_job(session: AsyncSession, tenant_id: str, job_id: str) -> GenerationJob | None:
    # Return None for tenant mismatch to keep 404 semantics.
    result = await session.execute(
        select(GenerationJob).where(GenerationJob.id == job_id, GenerationJob.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def get_job_by_id(session: AsyncSession, job_id: str) -> GenerationJob | None:
    # Worker-side lookup; tenant checks belong to API callers.
    result = await session.execute(select(GenerationJob).where(GenerationJob.id == job_id))
    return result.scalar_one_or_none()


async def get_job_by_idempotency_key(
    session: AsyncSession, tenant_id: str, idempotency_key: str
) -> GenerationJob | None:
    result = await session.execute(
        select(GenerationJob).where(
            GenerationJob.tenant_id == tenant_id,
            GenerationJob.idempotency_key == idempotency_key,
        )
    )
    return result.scalar_one_or_none()


async def list_recent_jobs(session: AsyncSession, tenant_id: str, *, limit: int = 20) -> list[GenerationJob]:
    result = await session.execute(
        select(GenerationJob)
        .where(GenerationJob.tenant_id == tenant_id)
        .order_by(GenerationJob.created_at.desc(), GenerationJob.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def transition_job(
    session: AsyncSession,
    job_id: str,
    *,
    current: JobStatus,
    target: JobStatus,
    **values: Any,
) -> bool:
    """Move a job from ``current`` to ``target``.

    The update is conditional on the stored status still being ``current``; a
    ``False`` return means another writer (the disconnect handler) got there
    first and the caller must re-read the job before doing anything else.
    """
    assert_transition(current, target)
    result = await session.execute(
        update(GenerationJob)
        .where(GenerationJob.id == job_id, GenerationJob.status == current)
        .values(status=target, **values)
    )
    return (result.rowcount or 0) == 1


async def cancel_if_active(session: AsyncSession, job_id: str, **values: Any) -> bool:
    # Every active status may move to CANCELLED, so one conditional update covers them all.
    for status in ACTIVE_STATUSES:
        assert_transition(status, JobStatus.CANCELLED)
    result = await session.execute(
        update(GenerationJob)
        .where(GenerationJob.id == job_id, GenerationJob.status.in_(list(ACTIVE_STATUSES)))
        .values(status=JobStatus.CANCELLED, **values)
    )
    return (result.rowcount or 0) == 1


async def record_pending_attempt(session: AsyncSession, job_id: str, **values: Any) -> bool:
    # Bookkeeping on a PENDING row without a status change.
    result = await session.execute(
        update(GenerationJob)
        .where(GenerationJob.id == job_id, GenerationJob.status == JobStatus.PENDING)
        .values(**values)
    )
    return (result.rowcount or 0) == 1


async def count_active_jobs(session: AsyncSession, tenant_id: str) -> int:
    # Admitted work that may still charge a credit.
    result = await session.execute(
        select(func.count())
        .select_from(GenerationJob)
        .where(GenerationJob.tenant_id == tenant_id, GenerationJob.status.in_(list(ACTIVE_STATUSES)))
    )
    return int(result.scalar() or 0)


async def count_jobs_by_status(session: AsyncSession) -> dict[JobStatus, int]:
    result = await session.execute(
        select(GenerationJob.status, func.count()).group_by(GenerationJob.status)
    )
    counts = {status: 0 for status in JobStatus}
    for status, count in result.all():
        counts[JobStatus(status)] = int(count)
    return counts
