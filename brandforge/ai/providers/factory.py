"""Factory to resolve the active completion provider."""

from __future__ import annotations

from functools import lru_cache

from brandforge.ai.providers.base import CompletionProvider
from brandforge.ai.providers.mock_provider import MockCompletionProvider
from brandforge.ai.providers.openai_provider import OpenAICompletionProvider
from brandforge.core.config import get_settings


@lru_cache(maxsize=1)
def get_completion_provider() -> CompletionProvider:
    settings = get_settings()
    provider = settings.ai_provider.strip().lower()
    if provider == "openai":
        return OpenAICompletionProvider(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            base_url=settings.openai_api_base_url,
            timeout_seconds=settings.openai_timeout_seconds,
        )
    return MockCompletionProvider()


def reset_completion_provider_cache() -> None:
    get_completion_provider.cache_clear()
