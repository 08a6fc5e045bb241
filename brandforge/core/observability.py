"""Observability bootstrap helpers."""

from __future__ import annotations

from contextlib import contextmanager

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

from brandforge.core.config import get_settings
from brandforge.core.logger import get_logger


_SENTRY_INITIALIZED = False


def init_sentry() -> bool:
    """Initialize Sentry once when DSN is configured."""

    global _SENTRY_INITIALIZED
    if _SENTRY_INITIALIZED:
        return True

    settings = get_settings()
    dsn = settings.sentry_dsn.strip()
    if not dsn:
        return False

    sentry_sdk.init(
        dsn=dsn,
        environment=settings.env,
        release=f"{settings.app_name}@{settings.app_version}",
        traces_sample_rate=settings.sentry_traces_sample_rate,
        send_default_pii=False,
        integrations=[FastApiIntegration()],
    )
    _SENTRY_INITIALIZED = True
    get_logger("brandforge.observability").info(
        "sentry_initialized",
        env=settings.env,
        traces_sample_rate=settings.sentry_traces_sample_rate,
    )
    return True


@contextmanager
def sentry_scope(
    *,
    org_id: str | None = None,
    job_id: str | None = None,
    request_id: str | None = None,
):
    """Create a temporary Sentry scope tagged with org/job/request context."""

    with sentry_sdk.new_scope() as scope:
        context_payload: dict[str, str] = {}
        for tag, value in (("org_id", org_id), ("job_id", job_id), ("request_id", request_id)):
            if value:
                scope.set_tag(tag, value)
                context_payload[tag] = value
        if context_payload:
            scope.set_context("brandforge", context_payload)
        yield


def capture_exception(exc: BaseException) -> None:
    if not _SENTRY_INITIALIZED:
        return
    sentry_sdk.capture_exception(exc)


def reset_observability_for_tests() -> None:
    global _SENTRY_INITIALIZED
    _SENTRY_INITIALIZED = False
