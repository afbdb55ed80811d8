from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable

from arq import Retry
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from themedraft.core.errors import ArtifactValidationError, GenerationBackendError
from themedraft.domain.events import JobEvent
from themedraft.domain.models import GenerationJob
from themedraft.domain.status import JobStatus
from themedraft.persistence.repos import jobs as jobs_repo
from themedraft.persistence.repos import quotas as quotas_repo
from themedraft.providers.generation.base import GenerationBackend, GenerationResult
from themedraft.services.costs import calculate_cost
from themedraft.services.generation.artifacts import parse_artifact
from themedraft.services.generation.publisher import JobEventPublisher
from themedraft.services.quota import QuotaLedger
from themedraft.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_MAX_ERROR_CHARS = 500


class _Superseded(Exception):
    # Raised when a conditional status write finds the row already moved.
    pass


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 2.0

    def delay_for(self, retry_count: int) -> float:
        # Exponential backoff: base, 2*base, 4*base, ...
        return self.base_delay_s * (2 ** max(retry_count - 1, 0))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _failure_message(exc: Exception) -> str:
    # Short, user-visible reason without stack traces.
    if isinstance(exc, (GenerationBackendError, ArtifactValidationError)):
        message = str(exc)
    else:
        message = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
    return message[:_MAX_ERROR_CHARS]


class GenerationWorker:
    """Runs one generation attempt against the job state machine.

    Every status write is conditional on the status this worker last wrote,
    so a concurrent cancellation makes the next write a no-op and the worker
    stops without publishing or charging anything.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: JobEventPublisher,
        backend: GenerationBackend,
        ledger: QuotaLedger,
        model: str,
        retry_policy: RetryPolicy | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._publisher = publisher
        self._backend = backend
        self._ledger = ledger
        self._model = model
        self._retry_policy = retry_policy or RetryPolicy()
        self._now = time_provider or _utc_now

    async def process(self, job_id: str) -> JobStatus | None:
        job = await self._load(job_id)
        if job is None:
            logger.warning("generation_job_missing job_id=%s", job_id)
            return None
        if job.status.is_terminal:
            # Cancelled before start, or a duplicate delivery of a finished job.
            logger.info("generation_job_skipped job_id=%s status=%s", job_id, job.status.value)
            if job.status == JobStatus.CANCELLED:
                await self._emit(job_id, "cancelled", "Job cancelled")
            return job.status

        if job.status != JobStatus.PENDING:
            recovered = await self._recover_stale(job)
            if recovered != JobStatus.PENDING:
                return recovered

        status = JobStatus.PENDING
        try:
            status = await self._advance(job_id, status, JobStatus.PROCESSING, started_at=self._now())
            await self._emit(job_id, "processing", "Starting generation")
            result = await self._backend.generate(job.prompt, template_type=job.template_type, model=self._model)

            status = await self._advance(job_id, status, JobStatus.VALIDATING)
            await self._emit(job_id, "validating", "Validating JSON")
            artifact = parse_artifact(result.content)

            status = await self._advance(job_id, status, JobStatus.WRITING)
            await self._emit(job_id, "writing", "Writing template")
            await self._commit_success(job, artifact, result)
        except _Superseded:
            return await self._converged_status(job_id)
        except Exception as exc:  # noqa: BLE001 - every attempt failure goes through the retry path
            return await self._handle_failure(job, status, exc)

        increment_counter("jobs.completed")
        logger.info("generation_job_completed job_id=%s tenant_id=%s", job_id, job.tenant_id)
        await self._publisher.publish(
            job_id,
            JobEvent(status="completed", message="Generation complete", result=artifact),
        )
        return JobStatus.COMPLETED

    async def _load(self, job_id: str) -> GenerationJob | None:
        async with self._session_factory() as session:
            return await jobs_repo.get_job_by_id(session, job_id)

    async def _advance(self, job_id: str, current: JobStatus, target: JobStatus, **values) -> JobStatus:
        async with self._session_factory() as session:
            async with session.begin():
                moved = await jobs_repo.transition_job(session, job_id, current=current, target=target, **values)
        if not moved:
            raise _Superseded()
        return target

    async def _emit(self, job_id: str, status: str, message: str) -> None:
        await self._publisher.publish(job_id, JobEvent(status=status, message=message))

    async def _commit_success(self, job: GenerationJob, artifact: dict, result: GenerationResult) -> None:
        # Result, usage row, and credit charge commit together or not at all.
        cost = calculate_cost(result.model, result.input_tokens, result.output_tokens)
        now = self._now()
        async with self._session_factory() as session:
            async with session.begin():
                await self._ledger.ensure_quota(session, job.tenant_id)
                moved = await jobs_repo.transition_job(
                    session,
                    job.id,
                    current=JobStatus.WRITING,
                    target=JobStatus.COMPLETED,
                    result=artifact,
                    error_message=None,
                    completed_at=now,
                )
                if not moved:
                    raise _Superseded()
                await quotas_repo.add_usage_log(
                    session,
                    job_id=job.id,
                    tenant_id=job.tenant_id,
                    model=result.model,
                    input_tokens=result.input_tokens,
                    output_tokens=result.output_tokens,
                    estimated_cost_usd=cost,
                    created_at=now,
                )
                await self._ledger.increment_usage(session, job.tenant_id)

    async def _handle_failure(self, job: GenerationJob, status: JobStatus, exc: Exception) -> JobStatus:
        message = _failure_message(exc)
        logger.warning(
            "generation_attempt_failed job_id=%s status=%s error=%s",
            job.id,
            status.value,
            message,
            exc_info=exc,
        )
        async with self._session_factory() as session:
            async with session.begin():
                current = await jobs_repo.get_job_by_id(session, job.id)
                if current is None or current.status != status:
                    moved = False
                else:
                    retry_count = current.retry_count + 1
                    will_retry = retry_count < self._retry_policy.max_attempts
                    values = {"retry_count": retry_count, "error_message": message}
                    if not will_retry:
                        values["completed_at"] = self._now()
                    if will_retry and status == JobStatus.PENDING:
                        # Failed before leaving PENDING; record the attempt in place.
                        moved = await jobs_repo.record_pending_attempt(session, job.id, **values)
                    else:
                        moved = await jobs_repo.transition_job(
                            session,
                            job.id,
                            current=status,
                            target=JobStatus.PENDING if will_retry else JobStatus.FAILED,
                            **values,
                        )
        if not moved:
            return await self._converged_status(job.id)

        if will_retry:
            increment_counter("jobs.retried")
            await self._publisher.publish(
                job.id,
                JobEvent(
                    status="warning",
                    message=f"Retrying attempt {retry_count}",
                    error=message,
                    retry_count=retry_count,
                ),
            )
            raise Retry(defer=self._retry_policy.delay_for(retry_count))

        await self._announce_failed(job.id, message, retry_count)
        return JobStatus.FAILED

    async def _recover_stale(self, job: GenerationJob) -> JobStatus | None:
        """Settle a job left in flight by a worker that died mid-attempt.

        The lost attempt counts toward the ceiling: the job goes back to
        PENDING for another run, or to FAILED once the ceiling is reached.
        """
        stale = job.status
        message = f"Worker interrupted while {stale.value}"
        retry_count = job.retry_count + 1
        exhausted = retry_count >= self._retry_policy.max_attempts
        values = {"retry_count": retry_count, "error_message": message}
        if exhausted:
            values["completed_at"] = self._now()
        async with self._session_factory() as session:
            async with session.begin():
                moved = await jobs_repo.transition_job(
                    session,
                    job.id,
                    current=stale,
                    target=JobStatus.FAILED if exhausted else JobStatus.PENDING,
                    **values,
                )
        if not moved:
            return await self._converged_status(job.id)

        logger.warning(
            "generation_job_recovered job_id=%s status=%s retry_count=%s",
            job.id,
            stale.value,
            retry_count,
        )
        if exhausted:
            await self._announce_failed(job.id, message, retry_count)
            return JobStatus.FAILED
        increment_counter("jobs.retried")
        return JobStatus.PENDING

    async def _announce_failed(self, job_id: str, message: str, retry_count: int) -> None:
        increment_counter("jobs.failed")
        logger.error(
            "generation_job_failed job_id=%s attempts=%s error=%s",
            job_id,
            retry_count,
            message,
        )
        await self._publisher.publish(
            job_id,
            JobEvent(status="failed", message="Job failed", error=message, retry_count=retry_count),
        )

    async def _converged_status(self, job_id: str) -> JobStatus | None:
        # Another writer won; report whatever the store now says.
        job = await self._load(job_id)
        status = job.status if job is not None else None
        logger.info(
            "generation_job_superseded job_id=%s status=%s",
            job_id,
            status.value if status is not None else None,
        )
        return status
