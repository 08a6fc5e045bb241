"""One bounded completion call: a hard timeout and a distinguishable outcome."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
import time
from typing import Optional

from brandforge.ai.providers.base import CompletionProvider, CompletionRequest, CompletionResult


class SectionTimeoutError(TimeoutError):
    """Raised when the completion did not finish within the section timeout."""

    code = "section_timeout"
    retryable = True

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"section_timeout after {timeout_seconds:g}s")


@dataclass(frozen=True)
class SectionOutcome:
    result: CompletionResult
    latency_ms: int


class SectionGenerator:
    """Run each completion on its own worker thread and stop waiting after ``timeout_seconds``.

    A timed-out call is abandoned, not interrupted: its thread finishes in the
    background and its result is discarded. Every call gets a single-use
    executor, so an abandoned call never delays the next one. Retries are not
    attempted here.
    """

    def __init__(self, provider: CompletionProvider, *, timeout_seconds: float = 20.0) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._provider = provider
        self._timeout_seconds = timeout_seconds
        self._closed = False

    @property
    def provider(self) -> CompletionProvider:
        return self._provider

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    def generate(self, request: CompletionRequest, *, timeout_seconds: Optional[float] = None) -> SectionOutcome:
        if self._closed:
            raise RuntimeError("SectionGenerator is closed")
        timeout = timeout_seconds if timeout_seconds is not None else self._timeout_seconds
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="section-gen")
        started = time.monotonic()
        try:
            future = executor.submit(self._provider.complete, request)
            try:
                result = future.result(timeout=timeout)
            except FutureTimeoutError as exc:
                raise SectionTimeoutError(timeout) from exc
        finally:
            executor.shutdown(wait=False)
        latency_ms = int((time.monotonic() - started) * 1000)
        return SectionOutcome(result=result, latency_ms=latency_ms)

    def close(self) -> None:
        self._closed = True

    def __enter__(self) -> "SectionGenerator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def is_retryable_error(exc: BaseException) -> bool:
    """Timeouts and provider errors flagged retryable (429/5xx) may be retried."""

    return bool(getattr(exc, "retryable", False))


def error_code(exc: BaseException) -> str:
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code:
        return code
    return exc.__class__.__name__
