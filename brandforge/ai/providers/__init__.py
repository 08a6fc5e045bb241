"""Text completion provider integrations."""

from brandforge.ai.providers.base import CompletionProvider, CompletionRequest, CompletionResult, ProviderError
from brandforge.ai.providers.factory import get_completion_provider, reset_completion_provider_cache
from brandforge.ai.providers.mock_provider import MockCompletionProvider
from brandforge.ai.providers.openai_provider import OpenAICompletionProvider

__all__ = [
    "CompletionProvider",
    "CompletionRequest",
    "CompletionResult",
    "MockCompletionProvider",
    "OpenAICompletionProvider",
    "ProviderError",
    "get_completion_provider",
    "reset_completion_provider_cache",
]
