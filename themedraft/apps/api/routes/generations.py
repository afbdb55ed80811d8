from __future__ import annotations

from datetime import datetime
from typing import Any, AsyncGenerator, Literal

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from themedraft.apps.api.deps import get_db, get_resources, get_services, get_tenant_id
from themedraft.apps.api.response import SuccessEnvelope, success_response
from themedraft.core.errors import JobNotFoundError
from themedraft.domain.events import JobEvent
from themedraft.domain.models import GenerationJob
from themedraft.persistence.repos import jobs as jobs_repo
from themedraft.persistence.resources import AppResources
from themedraft.services.gatekeeper.idempotency import SubmissionInput
from themedraft.services.wiring import GenerationServices


router = APIRouter(prefix="/generations", tags=["generations"])


class GenerationRequest(BaseModel):
    template_type: Literal["product", "collection", "page", "article", "blog"]
    prompt: str = Field(min_length=1)
    idempotency_key: str | None = None


class SubmissionResponse(BaseModel):
    job_id: str
    status: str
    deduplicated: bool


class JobResponse(BaseModel):
    id: str
    template_type: str
    prompt: str
    status: str
    retry_count: int
    result: Any | None = None
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


def _job_response(job: GenerationJob) -> dict[str, Any]:
    return JobResponse(
        id=job.id,
        template_type=job.template_type,
        prompt=job.prompt,
        status=job.status.value,
        retry_count=job.retry_count,
        result=job.result,
        error_message=job.error_message,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    ).model_dump(mode="json")


def _sse_message(event: JobEvent) -> str:
    # One compact JSON line per event.
    return f"data: {event.to_wire()}\n\n"


@router.post("", response_model=SuccessEnvelope[SubmissionResponse], status_code=201)
async def submit_generation(
    payload: GenerationRequest,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    services: GenerationServices = Depends(get_services),
) -> JSONResponse:
    result = await services.submission.submit(
        db,
        tenant_id,
        SubmissionInput(
            template_type=payload.template_type,
            prompt=payload.prompt,
            idempotency_key=payload.idempotency_key,
        ),
    )
    data = SubmissionResponse(
        job_id=result.job_id,
        status=result.status.value,
        deduplicated=result.deduplicated,
    ).model_dump()
    # Replays point at the existing job rather than creating one.
    status_code = 200 if result.deduplicated else 201
    return JSONResponse(content=success_response(request=request, data=data), status_code=status_code)


@router.get("", response_model=SuccessEnvelope[list[JobResponse]])
async def list_generations(
    request: Request,
    limit: int = Query(default=20, ge=1, le=100),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    jobs = await jobs_repo.list_recent_jobs(db, tenant_id, limit=limit)
    return success_response(request=request, data=[_job_response(job) for job in jobs])


@router.get("/{job_id}", response_model=SuccessEnvelope[JobResponse])
async def get_generation(
    job_id: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    job = await jobs_repo.get_job(db, tenant_id, job_id)
    if job is None:
        raise JobNotFoundError("Job not found")
    return success_response(request=request, data=_job_response(job))


@router.get("/{job_id}/events")
async def stream_generation_events(
    job_id: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    resources: AppResources = Depends(get_resources),
    services: GenerationServices = Depends(get_services),
) -> StreamingResponse:
    job = await jobs_repo.get_job(db, tenant_id, job_id)
    if job is None:
        raise JobNotFoundError("Job not found")
    settings = resources.settings

    async def event_stream() -> AsyncGenerator[str, None]:
        updates = services.progress.stream(
            job_id,
            is_disconnected=request.is_disconnected,
            poll_interval_s=settings.sse_poll_interval_s,
            heartbeat_s=settings.sse_heartbeat_s,
        )
        try:
            async for event in updates:
                if event is None:
                    # Comment frame keeps idle proxies from closing the stream.
                    yield ": keep-alive\n\n"
                    continue
                yield _sse_message(event)
        finally:
            # Run the disconnect cleanup now rather than at garbage collection.
            await updates.aclose()

    headers = {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(event_stream(), headers=headers, media_type="text/event-stream")
