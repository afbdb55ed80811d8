from __future__ import annotations

from themedraft.core.config import Settings, get_settings
from themedraft.core.errors import GenerationConfigError
from themedraft.providers.generation.base import GenerationBackend
from themedraft.providers.generation.fake import FakeGenerationBackend
from themedraft.providers.generation.openrouter import OpenRouterGenerationBackend


def get_generation_backend(settings: Settings | None = None) -> GenerationBackend:
    settings = settings or get_settings()
    provider = (settings.generation_provider or "fake").lower()

    if provider == "fake":
        return FakeGenerationBackend()
    if provider == "openrouter":
        return OpenRouterGenerationBackend(settings=settings)

    raise GenerationConfigError(f"Unsupported generation provider: {provider}")
