from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Literal, Union

from sqlalchemy.ext.asyncio import AsyncSession

from themedraft.core.errors import (
    AdmissionDeniedError,
    CreditsExhaustedError,
    DailyCapReachedError,
    RateLimitedError,
)
from themedraft.persistence.repos import jobs as jobs_repo
from themedraft.services.gatekeeper.idempotency import SubmissionInput, resolve_idempotency_key
from themedraft.services.gatekeeper.rate_limiter import FixedWindowRateLimiter
from themedraft.services.quota import QuotaLedger
from themedraft.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

DenyReason = Literal["RATE_LIMITED", "CREDITS_EXHAUSTED", "DAILY_CAP_REACHED"]

_DENIAL_ERRORS: dict[str, type[AdmissionDeniedError]] = {
    "RATE_LIMITED": RateLimitedError,
    "CREDITS_EXHAUSTED": CreditsExhaustedError,
    "DAILY_CAP_REACHED": DailyCapReachedError,
}

_DENIAL_MESSAGES: dict[str, str] = {
    "RATE_LIMITED": "Rate limit exceeded. Please wait before trying again.",
    "CREDITS_EXHAUSTED": "Credit limit reached.",
    "DAILY_CAP_REACHED": "Daily spend cap reached.",
}


@dataclass(frozen=True)
class AdmissionAllowed:
    idempotency_key: str
    existing_job_id: str | None = None
    allowed: Literal[True] = True


@dataclass(frozen=True)
class AdmissionDenied:
    reason: DenyReason
    retry_after: int | None = None
    allowed: Literal[False] = False

    @property
    def message(self) -> str:
        return _DENIAL_MESSAGES[self.reason]

    def to_error(self) -> AdmissionDeniedError:
        return _DENIAL_ERRORS[self.reason](self.message, retry_after=self.retry_after)


AdmissionDecision = Union[AdmissionAllowed, AdmissionDenied]


class AdmissionController:
    """Single allow/deny decision in front of job creation.

    Checks run cheapest and most volatile first and stop at the first denial:
    rate limit, dedup lookup, bypass tenant, credits, daily spend. The dedup
    lookup sits before the quota checks because a duplicate submission is
    already admitted work and must not be refused for exhausted credits.
    """

    def __init__(
        self,
        *,
        rate_limiter: FixedWindowRateLimiter | None,
        ledger: QuotaLedger,
        bypass_tenant: str = "",
        idempotency_key_max_length: int = 128,
    ) -> None:
        self._rate_limiter = rate_limiter
        self._ledger = ledger
        self._bypass_tenant = bypass_tenant
        self._idempotency_key_max_length = idempotency_key_max_length

    async def admit(
        self,
        session: AsyncSession,
        tenant_id: str,
        submission: SubmissionInput,
    ) -> AdmissionDecision:
        if self._rate_limiter is not None:
            # The counter increment stands even when a later check denies.
            rate = await self._rate_limiter.check_and_increment(tenant_id)
            if not rate.allowed:
                return self._deny("RATE_LIMITED", tenant_id, retry_after=rate.retry_after)

        idempotency_key = resolve_idempotency_key(
            tenant_id, submission, max_length=self._idempotency_key_max_length
        )
        existing = await jobs_repo.get_job_by_idempotency_key(session, tenant_id, idempotency_key)
        if existing is not None:
            increment_counter("admission.deduplicated")
            logger.info("admission_deduplicated tenant_id=%s job_id=%s", tenant_id, existing.id)
            return AdmissionAllowed(idempotency_key=idempotency_key, existing_job_id=existing.id)

        if self._bypass_tenant and tenant_id == self._bypass_tenant:
            increment_counter("admission.bypassed")
            return AdmissionAllowed(idempotency_key=idempotency_key)

        quota = await self._ledger.ensure_quota(session, tenant_id)
        # Persist a lazily created quota row before any denial returns.
        await session.commit()
        # Unfinished jobs hold a credit until they complete or fail.
        in_flight = await jobs_repo.count_active_jobs(session, tenant_id)
        if quota.credits_used + in_flight >= quota.credits_limit:
            return self._deny("CREDITS_EXHAUSTED", tenant_id)

        spent_today = await self._ledger.daily_spend(session, tenant_id)
        if spent_today >= self._ledger.daily_cap_for(quota):
            return self._deny("DAILY_CAP_REACHED", tenant_id)

        increment_counter("admission.allowed")
        return AdmissionAllowed(idempotency_key=idempotency_key)

    def _deny(self, reason: DenyReason, tenant_id: str, *, retry_after: int | None = None) -> AdmissionDenied:
        increment_counter(f"admission.denied.{reason.lower()}")
        logger.info("admission_denied tenant_id=%s reason=%s", tenant_id, reason)
        return AdmissionDenied(reason=reason, retry_after=retry_after)
