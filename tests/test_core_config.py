import pytest

from brandforge.core.config import get_settings


def test_loads_environment_values(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///./data/test_engine.sqlite")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/9")
    monkeypatch.setenv("SECTION_TIMEOUT_SECONDS", "12.5")
    monkeypatch.setenv("BUSINESS_PLAN_GENERATE_LIMIT", "5")
    monkeypatch.setenv("INLINE_JOB_PROCESSING", "true")
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.env == "development"
    assert settings.database_url.endswith("test_engine.sqlite")
    assert settings.redis_url.endswith("/9")
    assert settings.section_timeout_seconds == 12.5
    assert settings.business_plan_generate_limit == 5
    assert settings.inline_job_processing is True

    get_settings.cache_clear()


def test_defaults_match_generation_policy(monkeypatch) -> None:
    for name in (
        "BUSINESS_PLAN_GENERATE_LIMIT",
        "BUSINESS_PLAN_GENERATE_WINDOW_MINUTES",
        "SECTION_TIMEOUT_SECONDS",
        "JOB_MAX_ATTEMPTS",
        "GENERATION_LOCK_BACKEND",
        "AI_PROVIDER",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ENV", "development")
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.business_plan_generate_limit == 3
    assert settings.business_plan_generate_window_minutes == 60
    assert settings.section_timeout_seconds == 20.0
    assert settings.job_max_attempts == 1
    assert settings.generation_lock_backend == "postgres"

    get_settings.cache_clear()


def test_rejects_mock_provider_in_production(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("AI_PROVIDER", "mock")
    get_settings.cache_clear()

    with pytest.raises(ValueError):
        get_settings()

    get_settings.cache_clear()


def test_requires_openai_key_when_openai_is_selected(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("AI_PROVIDER", "openai")
    monkeypatch.setenv("OPENAI_API_KEY", "")
    get_settings.cache_clear()

    with pytest.raises(ValueError):
        get_settings()

    get_settings.cache_clear()


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("GENERATION_LOCK_BACKEND", "zookeeper"),
        ("SECTION_TIMEOUT_SECONDS", "0"),
        ("BUSINESS_PLAN_GENERATE_LIMIT", "0"),
        ("BUSINESS_PLAN_SECTION_RETRIES", "-1"),
        ("JOB_MAX_ATTEMPTS", "0"),
        ("SENTRY_TRACES_SAMPLE_RATE", "1.5"),
    ],
)
def test_rejects_invalid_runtime_limits(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("AI_PROVIDER", "mock")
    monkeypatch.setenv(name, value)
    get_settings.cache_clear()

    with pytest.raises(ValueError):
        get_settings()

    get_settings.cache_clear()
