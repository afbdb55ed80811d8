from __future__ import annotations

from dataclasses import dataclass

from themedraft.persistence.resources import AppResources
from themedraft.providers.generation.base import GenerationBackend
from themedraft.providers.generation.factory import get_generation_backend
from themedraft.services.gatekeeper.admission import AdmissionController
from themedraft.services.gatekeeper.rate_limiter import FixedWindowRateLimiter
from themedraft.services.generation.progress import JobProgressService
from themedraft.services.generation.publisher import JobEventPublisher, JobEventSubscriber
from themedraft.services.generation.queue import GenerationDispatcher
from themedraft.services.generation.submission import SubmissionService
from themedraft.services.generation.worker import GenerationWorker, RetryPolicy
from themedraft.services.quota import QuotaLedger


@dataclass
class GenerationServices:
    # Service graph bound to one process's resource handles.
    ledger: QuotaLedger
    admission: AdmissionController
    publisher: JobEventPublisher
    subscriber: JobEventSubscriber
    progress: JobProgressService
    worker: GenerationWorker
    dispatcher: GenerationDispatcher
    submission: SubmissionService


def build_services(
    resources: AppResources,
    *,
    backend: GenerationBackend | None = None,
    ledger: QuotaLedger | None = None,
) -> GenerationServices:
    settings = resources.settings
    ledger = ledger or QuotaLedger.from_settings(settings)
    rate_limiter = None
    if settings.rate_limit_enabled:
        rate_limiter = FixedWindowRateLimiter(
            resources.redis,
            limit=settings.rate_limit_per_minute,
            window_s=settings.rate_limit_window_s,
            prefix=settings.rl_redis_prefix,
        )
    admission = AdmissionController(
        rate_limiter=rate_limiter,
        ledger=ledger,
        bypass_tenant=settings.bypass_limits_tenant,
        idempotency_key_max_length=settings.idempotency_key_max_length,
    )
    publisher = JobEventPublisher(resources.redis, channel_prefix=settings.events_channel_prefix)
    subscriber = JobEventSubscriber(resources.redis, channel_prefix=settings.events_channel_prefix)
    progress = JobProgressService(
        session_factory=resources.session_factory,
        publisher=publisher,
        subscriber=subscriber,
    )
    worker = GenerationWorker(
        session_factory=resources.session_factory,
        publisher=publisher,
        backend=backend or get_generation_backend(settings),
        ledger=ledger,
        model=settings.generation_default_model,
        retry_policy=RetryPolicy(
            max_attempts=settings.max_retry_attempts,
            base_delay_s=settings.retry_base_delay_s,
        ),
    )
    dispatcher = GenerationDispatcher(
        queue_pool=resources.queue_pool,
        queue_name=settings.generation_queue_name,
        inline_runner=worker.process,
        max_attempts=settings.max_retry_attempts,
    )
    submission = SubmissionService(
        admission=admission,
        dispatcher=dispatcher,
        publisher=publisher,
        prompt_max_chars=settings.prompt_max_chars,
    )
    return GenerationServices(
        ledger=ledger,
        admission=admission,
        publisher=publisher,
        subscriber=subscriber,
        progress=progress,
        worker=worker,
        dispatcher=dispatcher,
        submission=submission,
    )
