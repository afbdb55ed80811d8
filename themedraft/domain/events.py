from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel


JobEventStatus = Literal[
    "pending",
    "processing",
    "validating",
    "writing",
    "completed",
    "failed",
    "cancelled",
    "warning",
]

TERMINAL_EVENT_STATUSES = frozenset({"completed", "failed", "cancelled"})


class JobEvent(BaseModel):
    # Wire payload for one job state transition on the progress channel.
    status: JobEventStatus
    message: str | None = None
    result: Any | None = None
    error: str | None = None
    retry_count: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EVENT_STATUSES

    def to_wire(self) -> str:
        return self.model_dump_json(exclude_none=True)

    @classmethod
    def from_wire(cls, raw: str | bytes) -> "JobEvent":
        return cls.model_validate_json(raw)
