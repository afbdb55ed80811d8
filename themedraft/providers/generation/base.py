from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class GenerationResult:
    content: str
    input_tokens: int
    output_tokens: int
    model: str


class GenerationBackend(Protocol):
    async def generate(self, prompt: str, *, template_type: str, model: str) -> GenerationResult:
        ...
