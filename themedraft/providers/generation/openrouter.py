from __future__ import annotations

from typing import Any
import time

import httpx

from themedraft.core.config import Settings, get_settings
from themedraft.core.errors import GenerationAuthError, GenerationBackendError, GenerationConfigError
from themedraft.providers.generation.base import GenerationResult
from themedraft.services.telemetry import record_external_call


_SYSTEM_PROMPT = (
    "You are an expert Shopify theme developer. Generate a Liquid template for a "
    "{template_type} page based on the user's description. Reply with a JSON object "
    "containing 'code' (the Liquid source) and 'filename' (for example "
    "'{template_type}.custom.liquid'). Do not include any other text."
)


class OpenRouterGenerationBackend:
    def __init__(self, client: httpx.AsyncClient | None = None, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per backend for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def generate(self, prompt: str, *, template_type: str, model: str) -> GenerationResult:
        api_key = self._settings.openrouter_api_key
        if not api_key:
            raise GenerationConfigError("OPENROUTER_API_KEY is required for the openrouter backend")

        payload: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPT.format(template_type=template_type)},
                {"role": "user", "content": prompt},
            ],
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {api_key}"}
        url = f"{self._settings.openrouter_base_url.rstrip('/')}/chat/completions"
        client = self._get_client()

        start = time.monotonic()
        try:
            response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            self._record(start, success=False)
            raise GenerationBackendError("OpenRouter request failed.") from exc

        if response.status_code in {401, 403}:
            self._record(start, success=False)
            raise GenerationAuthError("OpenRouter auth error: check OPENROUTER_API_KEY.")
        if response.status_code >= 400:
            self._record(start, success=False)
            raise GenerationBackendError(f"OpenRouter error: {response.status_code}")

        try:
            body = response.json()
            content = body["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            self._record(start, success=False)
            raise GenerationBackendError("OpenRouter returned an unexpected response shape.") from exc
        if not content:
            self._record(start, success=False)
            raise GenerationBackendError("OpenRouter returned an empty completion.")

        self._record(start, success=True)
        usage = body.get("usage") or {}
        return GenerationResult(
            content=content,
            input_tokens=int(usage.get("prompt_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or 0),
            model=model,
        )

    def _record(self, start: float, *, success: bool) -> None:
        record_external_call(
            integration="generation.openrouter",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )
