from __future__ import annotations

import random
import threading

import pytest

from brandforge.ai.providers.base import CompletionRequest, CompletionResult, ProviderError
from brandforge.generation.business_plan import retry_backoff_seconds, section_progress
from brandforge.generation.section_generator import (
    SectionGenerator,
    SectionTimeoutError,
    error_code,
    is_retryable_error,
)
from tests.conftest import ScriptedProvider


class _BlockingProvider:
    provider_name = "blocking"

    def __init__(self) -> None:
        self.release = threading.Event()

    def complete(self, request: CompletionRequest) -> CompletionResult:
        del request
        self.release.wait(5)
        return CompletionResult(content="late", model="blocking-v1", provider=self.provider_name)


def _request() -> CompletionRequest:
    return CompletionRequest(messages=[{"role": "user", "content": "Section: PROBLEM"}])


def test_generate_returns_result_with_latency() -> None:
    provider = ScriptedProvider(lambda request: "plain text section")
    with SectionGenerator(provider, timeout_seconds=5) as generator:
        outcome = generator.generate(_request())

    assert outcome.result.content == "plain text section"
    assert outcome.result.total_tokens == 150
    assert outcome.latency_ms >= 0
    assert len(provider.requests) == 1


def test_generate_raises_timeout_when_provider_hangs() -> None:
    provider = _BlockingProvider()
    generator = SectionGenerator(provider, timeout_seconds=0.05)
    try:
        with pytest.raises(SectionTimeoutError) as exc_info:
            generator.generate(_request())
    finally:
        provider.release.set()
        generator.close()

    assert exc_info.value.timeout_seconds == 0.05
    assert is_retryable_error(exc_info.value) is True
    assert error_code(exc_info.value) == "section_timeout"


def test_abandoned_calls_do_not_delay_the_next_section() -> None:
    release = threading.Event()
    calls = []

    def _slow_then_fast(request: CompletionRequest) -> str:
        calls.append(request)
        if len(calls) <= 2:
            release.wait(5)
        return "fast answer"

    generator = SectionGenerator(ScriptedProvider(_slow_then_fast), timeout_seconds=0.2)
    try:
        for _ in range(2):
            with pytest.raises(SectionTimeoutError):
                generator.generate(_request())
        outcome = generator.generate(_request())
    finally:
        release.set()
        generator.close()

    assert outcome.result.content == "fast answer"
    assert len(calls) == 3

    with pytest.raises(RuntimeError):
        generator.generate(_request())


def test_generate_propagates_provider_errors_unchanged() -> None:
    def _fail(request: CompletionRequest) -> str:
        raise ProviderError("upstream 503", retryable=True, status_code=503)

    with SectionGenerator(ScriptedProvider(_fail), timeout_seconds=5) as generator:
        with pytest.raises(ProviderError) as exc_info:
            generator.generate(_request())

    assert exc_info.value.status_code == 503
    assert is_retryable_error(exc_info.value) is True
    assert is_retryable_error(ProviderError("bad request")) is False
    assert error_code(ValueError("x")) == "ValueError"


def test_generator_rejects_non_positive_timeout() -> None:
    with pytest.raises(ValueError):
        SectionGenerator(ScriptedProvider(), timeout_seconds=0)


def test_section_progress_spreads_sections_between_20_and_90() -> None:
    assert [section_progress(index, 4) for index in range(4)] == [37, 55, 72, 90]
    assert section_progress(0, 9) == 27
    assert section_progress(8, 9) == 90


def test_retry_backoff_doubles_with_bounded_jitter() -> None:
    assert retry_backoff_seconds(1, base_ms=500, jitter_ms=0) == 0.5
    assert retry_backoff_seconds(2, base_ms=500, jitter_ms=0) == 1.0
    assert retry_backoff_seconds(3, base_ms=500, jitter_ms=0) == 2.0

    delay = retry_backoff_seconds(1, base_ms=500, jitter_ms=200, rng=random.Random(7))
    assert 0.5 <= delay <= 0.7
