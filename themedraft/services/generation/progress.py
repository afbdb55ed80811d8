from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import AsyncIterator, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from themedraft.domain.events import JobEvent
from themedraft.domain.models import GenerationJob
from themedraft.domain.status import JobStatus
from themedraft.persistence.repos import jobs as jobs_repo
from themedraft.services.generation.publisher import JobEventPublisher, JobEventSubscriber
from themedraft.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

CANCELLED_BY_CLIENT = "Cancelled by client"


def snapshot_event(job: GenerationJob, *, message: str | None = None) -> JobEvent:
    # Current stored state rendered as a progress event.
    return JobEvent(
        status=job.status.event_name,
        message=message,
        result=job.result if job.status == JobStatus.COMPLETED else None,
        error=job.error_message if job.status in {JobStatus.FAILED, JobStatus.PENDING} else None,
        retry_count=job.retry_count or None,
    )


class JobProgressService:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: JobEventPublisher,
        subscriber: JobEventSubscriber,
    ) -> None:
        self._session_factory = session_factory
        self._publisher = publisher
        self._subscriber = subscriber

    async def handle_disconnect(self, job_id: str) -> bool:
        """Cancel a job whose progress subscriber went away.

        Returns True when this call moved the job to CANCELLED. A job that has
        already reached a terminal status is left untouched.
        """
        async with self._session_factory() as session:
            async with session.begin():
                cancelled = await jobs_repo.cancel_if_active(
                    session,
                    job_id,
                    completed_at=datetime.now(timezone.utc),
                    error_message=CANCELLED_BY_CLIENT,
                )
        if not cancelled:
            logger.info("subscriber_disconnect_after_terminal job_id=%s", job_id)
            return False
        increment_counter("jobs.cancelled")
        logger.info("job_cancelled_by_disconnect job_id=%s", job_id)
        await self._publisher.publish(job_id, JobEvent(status="cancelled", message=CANCELLED_BY_CLIENT))
        return True

    async def stream(
        self,
        job_id: str,
        *,
        is_disconnected: Callable[[], Awaitable[bool]],
        poll_interval_s: float = 0.5,
        heartbeat_s: float = 15.0,
    ) -> AsyncIterator[JobEvent | None]:
        """Yield progress for one job until a terminal event or disconnect.

        The first item is the stored status. ``None`` items are keep-alive
        ticks emitted every ``heartbeat_s`` seconds of silence. Leaving before
        a terminal event was seen cancels the job.
        """
        saw_terminal = False
        try:
            # Subscribe before reading the snapshot so no transition falls between.
            async with self._subscriber.subscribe(job_id) as subscription:
                async with self._session_factory() as session:
                    job = await jobs_repo.get_job_by_id(session, job_id)
                if job is None:
                    saw_terminal = True
                    return
                snapshot = snapshot_event(job, message="Connected")
                yield snapshot
                if snapshot.is_terminal:
                    saw_terminal = True
                    return

                idle_s = 0.0
                while True:
                    if await is_disconnected():
                        return
                    event = await subscription.get(timeout=poll_interval_s)
                    if event is None:
                        idle_s += poll_interval_s
                        if heartbeat_s and idle_s >= heartbeat_s:
                            idle_s = 0.0
                            yield None
                        continue
                    idle_s = 0.0
                    yield event
                    if event.is_terminal:
                        saw_terminal = True
                        return
        finally:
            if not saw_terminal:
                # Shield so cleanup survives the request task being cancelled.
                await asyncio.shield(self.handle_disconnect(job_id))
