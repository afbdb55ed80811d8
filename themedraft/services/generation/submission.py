from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from themedraft.core.errors import InvalidSubmissionError, JobDispatchError
from themedraft.core.config import TEMPLATE_TYPES
from themedraft.domain.events import JobEvent
from themedraft.domain.status import JobStatus
from themedraft.persistence.repos import jobs as jobs_repo
from themedraft.services.gatekeeper.admission import AdmissionController
from themedraft.services.gatekeeper.idempotency import SubmissionInput
from themedraft.services.generation.publisher import JobEventPublisher
from themedraft.services.generation.queue import GenerationDispatcher, GenerationJobPayload
from themedraft.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmissionResult:
    job_id: str
    status: JobStatus
    deduplicated: bool


def validate_submission(submission: SubmissionInput, *, prompt_max_chars: int) -> SubmissionInput:
    # Reject malformed input before it reaches admission or the store.
    template_type = (submission.template_type or "").strip().lower()
    if template_type not in TEMPLATE_TYPES:
        raise InvalidSubmissionError(
            f"template_type must be one of: {', '.join(TEMPLATE_TYPES)}"
        )
    prompt = (submission.prompt or "").strip()
    if not prompt:
        raise InvalidSubmissionError("prompt must not be empty")
    if len(prompt) > prompt_max_chars:
        raise InvalidSubmissionError(f"prompt must be at most {prompt_max_chars} characters")
    return SubmissionInput(
        template_type=template_type,
        prompt=prompt,
        idempotency_key=submission.idempotency_key,
    )


class SubmissionService:
    def __init__(
        self,
        *,
        admission: AdmissionController,
        dispatcher: GenerationDispatcher,
        publisher: JobEventPublisher,
        prompt_max_chars: int = 4000,
    ) -> None:
        self._admission = admission
        self._dispatcher = dispatcher
        self._publisher = publisher
        self._prompt_max_chars = prompt_max_chars

    async def submit(self, session: AsyncSession, tenant_id: str, submission: SubmissionInput) -> SubmissionResult:
        submission = validate_submission(submission, prompt_max_chars=self._prompt_max_chars)
        decision = await self._admission.admit(session, tenant_id, submission)
        if not decision.allowed:
            raise decision.to_error()

        if decision.existing_job_id is not None:
            return await self._existing(session, tenant_id, decision.existing_job_id)

        try:
            job = await jobs_repo.create_job(
                session,
                tenant_id=tenant_id,
                idempotency_key=decision.idempotency_key,
                template_type=submission.template_type,
                prompt=submission.prompt,
            )
            await session.commit()
        except IntegrityError:
            # A concurrent duplicate won the unique (tenant, key) insert.
            await session.rollback()
            existing = await jobs_repo.get_job_by_idempotency_key(session, tenant_id, decision.idempotency_key)
            if existing is None:
                raise
            increment_counter("admission.deduplicated")
            logger.info("submission_dedup_race tenant_id=%s job_id=%s", tenant_id, existing.id)
            return SubmissionResult(job_id=existing.id, status=existing.status, deduplicated=True)

        job_id = job.id
        logger.info("generation_job_created tenant_id=%s job_id=%s", tenant_id, job_id)
        try:
            await self._dispatcher.enqueue(GenerationJobPayload(job_id=job_id, tenant_id=tenant_id))
        except Exception as exc:
            await self._fail_undispatched(session, job_id)
            raise JobDispatchError("Generation job could not be queued", job_id=job_id) from exc

        if self._dispatcher.is_inline:
            # Inline runs finish before enqueue returns; report the stored outcome.
            session.expire_all()
            refreshed = await jobs_repo.get_job_by_id(session, job_id)
            status = refreshed.status if refreshed is not None else JobStatus.PENDING
            return SubmissionResult(job_id=job_id, status=status, deduplicated=False)
        return SubmissionResult(job_id=job_id, status=JobStatus.PENDING, deduplicated=False)

    async def _existing(self, session: AsyncSession, tenant_id: str, job_id: str) -> SubmissionResult:
        job = await jobs_repo.get_job(session, tenant_id, job_id)
        status = job.status if job is not None else JobStatus.PENDING
        return SubmissionResult(job_id=job_id, status=status, deduplicated=True)

    async def _fail_undispatched(self, session: AsyncSession, job_id: str) -> None:
        # Keep the job observable: an unqueued PENDING row would never move.
        message = "Job could not be queued"
        logger.exception("generation_enqueue_failed job_id=%s", job_id)
        await jobs_repo.transition_job(
            session,
            job_id,
            current=JobStatus.PENDING,
            target=JobStatus.FAILED,
            error_message=message,
            completed_at=datetime.now(timezone.utc),
        )
        await session.commit()
        increment_counter("jobs.failed")
        await self._publisher.publish(job_id, JobEvent(status="failed", message="Job failed", error=message))
