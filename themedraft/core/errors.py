from __future__ import annotations


class ThemeDraftError(Exception):
    """Base error for themedraft."""


class InvalidSubmissionError(ThemeDraftError):
    """Submission payload is malformed."""


class AdmissionDeniedError(ThemeDraftError):
    """Admission refused the submission; no job record exists."""

    code = "ADMISSION_DENIED"

    def __init__(self, message: str, *, retry_after: int | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class RateLimitedError(AdmissionDeniedError):
    """Tenant exceeded the per-window submission limit."""

    code = "RATE_LIMITED"


class CreditsExhaustedError(AdmissionDeniedError):
    """Tenant has used every credit in its quota."""

    code = "CREDITS_EXHAUSTED"


class DailyCapReachedError(AdmissionDeniedError):
    """Tenant reached its daily spend cap."""

    code = "DAILY_CAP_REACHED"


class GenerationBackendError(ThemeDraftError):
    """Generation backend request failure."""


class GenerationConfigError(GenerationBackendError):
    """Missing or invalid generation backend configuration."""


class GenerationAuthError(GenerationBackendError):
    """Generation backend authentication/authorization failure."""


class ArtifactValidationError(ThemeDraftError):
    """Backend content is not a valid template artifact."""


class InvalidTransitionError(ThemeDraftError):
    """Job status change not permitted by the transition table."""


class JobNotFoundError(ThemeDraftError):
    """Job does not exist or belongs to another tenant."""


class JobDispatchError(ThemeDraftError):
    """Job was recorded but could not be handed to the queue."""

    def __init__(self, message: str, *, job_id: str) -> None:
        super().__init__(message)
        self.job_id = job_id
