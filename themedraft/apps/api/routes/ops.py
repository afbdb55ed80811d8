from __future__ import annotations

from datetime import datetime, timezone
import hmac
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from themedraft.apps.api.deps import get_db, get_resources
from themedraft.apps.api.response import success_response
from themedraft.persistence.repos import jobs as jobs_repo
from themedraft.persistence.resources import AppResources
from themedraft.services.generation import queue as generation_queue
from themedraft.services.telemetry import (
    counters_snapshot,
    external_latency_by_integration,
    gauges_snapshot,
    set_gauge,
)


router = APIRouter(prefix="/ops", tags=["ops"])


def require_admin_secret(
    x_admin_secret: str | None = Header(default=None),
    resources: AppResources = Depends(get_resources),
) -> None:
    # An unset secret disables the endpoint instead of leaving it open.
    expected = resources.settings.admin_secret
    if not expected or not x_admin_secret or not hmac.compare_digest(x_admin_secret, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Invalid admin secret"},
        )


@router.get("/queue", dependencies=[Depends(require_admin_secret)])
async def queue_stats(
    request: Request,
    resources: AppResources = Depends(get_resources),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    settings = resources.settings
    inline = resources.queue_pool is None
    now = datetime.now(timezone.utc)
    depth = await generation_queue.get_queue_depth(
        resources.redis,
        settings.generation_queue_name,
        inline=inline,
    )
    heartbeat = None if inline else await generation_queue.get_worker_heartbeat(resources.redis)
    heartbeat_age_s = (now - heartbeat).total_seconds() if heartbeat else None
    job_counts = await jobs_repo.count_jobs_by_status(db)
    if depth is not None:
        set_gauge("queue.depth", depth)
    payload = {
        "queue_name": settings.generation_queue_name,
        "execution_mode": "inline" if inline else "queue",
        "queue_depth": depth,
        "redis": "ok" if depth is not None else "degraded",
        "worker_heartbeat_age_s": heartbeat_age_s,
        "jobs": {job_status.value.lower(): count for job_status, count in job_counts.items()},
        "counters": counters_snapshot(),
        "gauges": gauges_snapshot(),
        "external_latency": external_latency_by_integration(3600),
        "timestamp": now.isoformat(),
    }
    return success_response(request=request, data=payload)
