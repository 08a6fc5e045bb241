from types import SimpleNamespace

from brandforge.core import observability


def _settings(dsn: str, *, env: str = "production", rate: float = 0.0) -> SimpleNamespace:
    return SimpleNamespace(
        sentry_dsn=dsn,
        env=env,
        app_name="brandforge_engine",
        app_version="0.1.0",
        sentry_traces_sample_rate=rate,
    )


def test_init_sentry_skips_when_dsn_missing(monkeypatch) -> None:
    observability.reset_observability_for_tests()

    called = {"count": 0}

    def fake_init(**kwargs):  # noqa: ARG001
        called["count"] += 1

    monkeypatch.setattr(observability.sentry_sdk, "init", fake_init)
    monkeypatch.setattr(observability, "get_settings", lambda: _settings("", env="development"))

    assert observability.init_sentry() is False
    assert called["count"] == 0
    observability.reset_observability_for_tests()


def test_init_sentry_initializes_once(monkeypatch) -> None:
    observability.reset_observability_for_tests()

    calls = []

    def fake_init(**kwargs):
        calls.append(kwargs)

    monkeypatch.setattr(observability, "FastApiIntegration", lambda: object())
    monkeypatch.setattr(observability.sentry_sdk, "init", fake_init)
    monkeypatch.setattr(
        observability,
        "get_settings",
        lambda: _settings("https://abc@example.ingest.sentry.io/1", rate=0.2),
    )

    assert observability.init_sentry() is True
    assert observability.init_sentry() is True
    assert len(calls) == 1
    assert calls[0]["dsn"] == "https://abc@example.ingest.sentry.io/1"
    assert calls[0]["environment"] == "production"
    assert calls[0]["release"] == "brandforge_engine@0.1.0"
    assert calls[0]["traces_sample_rate"] == 0.2
    observability.reset_observability_for_tests()


def test_capture_exception_is_noop_until_initialized(monkeypatch) -> None:
    observability.reset_observability_for_tests()
    captured = []
    monkeypatch.setattr(observability.sentry_sdk, "capture_exception", captured.append)

    observability.capture_exception(RuntimeError("ignored"))
    with observability.sentry_scope(org_id="org-1", job_id="job-1"):
        pass

    assert captured == []
