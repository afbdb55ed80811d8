from __future__ import annotations

import json

from themedraft.core.errors import GenerationBackendError
from themedraft.providers.generation.base import GenerationResult


_DEFAULT_CODE = "{% comment %}fake template{% endcomment %}\n<div class=\"page-width\">{{ content }}</div>"


class FakeGenerationBackend:
    def __init__(
        self,
        content: str | None = None,
        *,
        fail_times: int = 0,
        input_tokens: int = 120,
        output_tokens: int = 480,
    ) -> None:
        # Deterministic artifact keeps tests stable without external calls.
        self._content = content
        self._fail_times = fail_times
        self._input_tokens = input_tokens
        self._output_tokens = output_tokens
        self.calls = 0

    async def generate(self, prompt: str, *, template_type: str, model: str) -> GenerationResult:
        self.calls += 1
        if self.calls <= self._fail_times:
            raise GenerationBackendError(f"Fake backend failure on call {self.calls}")
        content = self._content
        if content is None:
            content = json.dumps({"filename": f"{template_type}.fake.liquid", "code": _DEFAULT_CODE})
        return GenerationResult(
            content=content,
            input_tokens=self._input_tokens,
            output_tokens=self._output_tokens,
            model=model,
        )
