from __future__ import annotations

import json
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from themedraft.core.errors import ArtifactValidationError


# Some models wrap JSON in a markdown fence despite json_object mode.
_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*(?P<body>.*?)\s*```\s*$", re.DOTALL)


class TemplateArtifact(BaseModel):
    model_config = ConfigDict(extra="allow")

    filename: str = Field(min_length=1)
    code: Any


def parse_artifact(content: str) -> dict[str, Any]:
    """Parse backend output into the stored artifact shape.

    Raises ArtifactValidationError for anything that is not a JSON object with
    a filename and code, which the worker treats like any other attempt failure.
    """
    match = _FENCE_RE.match(content or "")
    body = match.group("body") if match else (content or "")
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError as exc:
        raise ArtifactValidationError("Generation backend returned invalid JSON") from exc
    if not isinstance(parsed, dict):
        raise ArtifactValidationError("Generation backend returned a non-object JSON payload")
    try:
        artifact = TemplateArtifact.model_validate(parsed)
    except ValidationError as exc:
        raise ArtifactValidationError("Generated artifact is missing filename or code") from exc
    if artifact.code is None or artifact.code == "":
        raise ArtifactValidationError("Generated artifact has empty code")
    return artifact.model_dump()
