from __future__ import annotations

from dataclasses import dataclass
import hashlib
import json

from themedraft.core.errors import InvalidSubmissionError


FINGERPRINT_PREFIX = "gen_"


@dataclass(frozen=True)
class SubmissionInput:
    template_type: str
    prompt: str
    idempotency_key: str | None = None


def compute_input_fingerprint(tenant_id: str, template_type: str, prompt: str) -> str:
    # JSON-encode the ordered tuple so field boundaries can never collide.
    serialized = json.dumps([tenant_id, template_type, prompt], ensure_ascii=False, separators=(",", ":"))
    digest = hashlib.sha256(serialized.encode("utf-8")).hexdigest()
    return f"{FINGERPRINT_PREFIX}{digest}"


def normalize_explicit_key(value: str | None, *, max_length: int = 128) -> str | None:
    # Blank keys fall back to the fingerprint; oversized keys are malformed input.
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    if len(cleaned) > max_length:
        raise InvalidSubmissionError(f"idempotency_key exceeds {max_length} characters")
    return cleaned


def resolve_idempotency_key(tenant_id: str, submission: SubmissionInput, *, max_length: int = 128) -> str:
    """Return the key that collapses duplicate submissions onto one job.

    A caller-supplied key wins verbatim (trimmed). Without one, identical
    tenant, template and prompt always produce the same fingerprint, so a
    double-click or network retry lands on the existing job.
    """
    explicit = normalize_explicit_key(submission.idempotency_key, max_length=max_length)
    if explicit is not None:
        return explicit
    return compute_input_fingerprint(tenant_id, submission.template_type, submission.prompt)
