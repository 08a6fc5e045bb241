"""Provider contracts for text completion backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol


class ProviderError(RuntimeError):
    """Raised when a completion provider cannot fulfill a request."""

    code = "provider_error"

    def __init__(self, message: str, *, retryable: bool = False, status_code: Optional[int] = None):
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class CompletionRequest:
    messages: List[Dict[str, str]]
    model: Optional[str] = None
    max_tokens: int = 2048
    temperature: float = 0.7


@dataclass(frozen=True)
class CompletionResult:
    content: str
    model: str
    provider: str
    tokens_in: int = 0
    tokens_out: int = 0
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.tokens_in + self.tokens_out


class CompletionProvider(Protocol):
    provider_name: str

    def complete(self, request: CompletionRequest) -> CompletionResult:
        raise NotImplementedError
