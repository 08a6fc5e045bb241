from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json

import pytest
from sqlalchemy import select, update

from brandforge.ai.providers.base import ProviderError
from brandforge.business_plan.service import (
    enqueue_business_plan_generation,
    get_generation_status,
    get_latest_plan,
    plan_view,
)
from brandforge.jobs.contracts import JobStatus, JobValidationError, decode_job_payload
from brandforge.jobs.store import get_job
from brandforge.orchestrator import RedisLeaseLockManager
from brandforge.storage.models import Organization, UsageEntry
from tests.conftest import (
    FakeRedis,
    ScriptedProvider,
    build_sqlite_session_factory,
    build_worker,
    configure_test_env,
    create_org,
    create_project,
    reset_test_env,
    section_of,
)


FOUR_SECTIONS = ["executive_summary", "problem", "solution", "market"]


def _enqueue_plan(session_factory, *, section_keys=None):
    with session_factory() as session:
        org = create_org(session)
        project = create_project(session, org_id=org.id)
        job = enqueue_business_plan_generation(
            session,
            RedisLeaseLockManager(FakeRedis()),
            org_id=org.id,
            project_id=project.id,
            requested_by="owner-1",
            section_keys=section_keys,
        )
        return org.id, project.id, job.id


def test_failed_section_is_isolated_and_job_completes(monkeypatch) -> None:
    configure_test_env(monkeypatch, business_plan_section_retries="0")
    session_factory = build_sqlite_session_factory()
    org_id, project_id, job_id = _enqueue_plan(session_factory, section_keys=FOUR_SECTIONS)

    def _handler(request) -> str:
        section = section_of(request)
        if section == "PROBLEM":
            raise ProviderError("openai_api_error status=400", retryable=False, status_code=400)
        return f"{section} body"

    with build_worker(session_factory, provider=ScriptedProvider(_handler)) as worker:
        assert worker.process_job(job_id) is True

    with session_factory() as session:
        job = get_job(session, job_id)
        assert job.status == JobStatus.DONE.value
        assert job.progress == 100
        result = json.loads(job.result_json)
        assert result["successCount"] == 3
        assert result["failureCount"] == 1
        assert result["latestVersion"] == 1
        assert result["perSectionStatus"] == {
            "EXECUTIVE_SUMMARY": "ok",
            "PROBLEM": "error",
            "SOLUTION": "ok",
            "MARKET": "ok",
        }

        plan = get_latest_plan(session, project_id=project_id)
        view = plan_view(session, plan)
        sections = {section.key: section for section in view.sections}
        assert len(view.sections) == 9
        assert sections["PROBLEM"].status == "ERROR"
        assert sections["PROBLEM"].content == {
            "error": True,
            "message": "generation_failed",
            "reason": "provider_error",
        }
        assert sections["SOLUTION"].status == "OK"
        assert sections["SOLUTION"].content["text"] == "SOLUTION body"
        assert sections["SOLUTION"].content["promptVersion"] == "bp_v1"
        assert sections["FINANCIALS"].status == "PENDING"

        usage = session.scalars(select(UsageEntry).where(UsageEntry.org_id == org_id)).all()
        assert sorted(entry.stage_key for entry in usage) == [
            "business_plan:EXECUTIVE_SUMMARY",
            "business_plan:MARKET",
            "business_plan:SOLUTION",
        ]
        assert session.get(Organization, org_id).monthly_tokens_used == 3 * 225

        status = get_generation_status(session, org_id=org_id, project_id=project_id)
        assert status is not None
        assert status.status == JobStatus.DONE.value
        assert status.message == "Completed"
    reset_test_env()


def test_retryable_section_failure_is_retried_with_backoff(monkeypatch) -> None:
    configure_test_env(
        monkeypatch,
        business_plan_section_retries="2",
        business_plan_retry_base_ms="500",
        business_plan_retry_jitter_ms="0",
    )
    session_factory = build_sqlite_session_factory()
    _, _, job_id = _enqueue_plan(session_factory, section_keys=["market", "risks"])
    calls = {"MARKET": 0}

    def _handler(request) -> str:
        section = section_of(request)
        if section == "MARKET":
            calls["MARKET"] += 1
            if calls["MARKET"] == 1:
                raise ProviderError("openai_api_error status=429", retryable=True, status_code=429)
        return f"{section} body"

    sleeps = []
    with build_worker(session_factory, provider=ScriptedProvider(_handler), sleeps=sleeps) as worker:
        worker.process_job(job_id)

    assert sleeps == [0.5]
    assert calls["MARKET"] == 2
    with session_factory() as session:
        result = json.loads(get_job(session, job_id).result_json)
        assert result["successCount"] == 2
        assert result["failureCount"] == 0
    reset_test_env()


def test_section_gives_up_after_retries_are_exhausted(monkeypatch) -> None:
    configure_test_env(
        monkeypatch,
        business_plan_section_retries="2",
        business_plan_retry_base_ms="500",
        business_plan_retry_jitter_ms="0",
    )
    session_factory = build_sqlite_session_factory()
    _, project_id, job_id = _enqueue_plan(session_factory, section_keys=["solution"])

    def _always_unavailable(request) -> str:
        raise ProviderError("openai_api_error status=503", retryable=True, status_code=503)

    sleeps = []
    with build_worker(session_factory, provider=ScriptedProvider(_always_unavailable), sleeps=sleeps) as worker:
        worker.process_job(job_id)

    assert sleeps == [0.5, 1.0]
    with session_factory() as session:
        job = get_job(session, job_id)
        assert job.status == JobStatus.DONE.value
        result = json.loads(job.result_json)
        assert result["successCount"] == 0
        assert result["failureCount"] == 1
        view = plan_view(session, get_latest_plan(session, project_id=project_id))
        solution = next(section for section in view.sections if section.key == "SOLUTION")
        assert solution.status == "ERROR"
    reset_test_env()


def test_regeneration_creates_next_version_and_carries_sections(monkeypatch) -> None:
    configure_test_env(monkeypatch, business_plan_section_retries="0")
    session_factory = build_sqlite_session_factory()
    org_id, project_id, first_job_id = _enqueue_plan(session_factory)
    provider = ScriptedProvider(lambda request: f"{section_of(request)} v{len(provider.requests)}")

    with build_worker(session_factory, provider=provider) as worker:
        worker.process_job(first_job_id)
        with session_factory() as session:
            second = enqueue_business_plan_generation(
                session,
                RedisLeaseLockManager(FakeRedis()),
                org_id=org_id,
                project_id=project_id,
                section_keys=["risks"],
            )
            second_id = second.id
            payload = decode_job_payload(second.type, second.payload_json)
            assert payload.section_keys == ["RISKS"]
        worker.process_job(second_id)

    with session_factory() as session:
        first_result = json.loads(get_job(session, first_job_id).result_json)
        assert first_result["successCount"] == 9
        latest = get_latest_plan(session, project_id=project_id)
        assert latest.version == 2
        view = plan_view(session, latest)
        sections = {section.key: section for section in view.sections}
        assert sections["RISKS"].content["text"] == "RISKS v10"
        assert sections["EXECUTIVE_SUMMARY"].content["text"] == "EXECUTIVE_SUMMARY v1"
        assert all(section.status == "OK" for section in view.sections)
    reset_test_env()


def test_business_plan_enqueue_validates_preset(monkeypatch) -> None:
    configure_test_env(monkeypatch)
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        org = create_org(session)
        project = create_project(session, org_id=org.id)

        with pytest.raises(JobValidationError):
            enqueue_business_plan_generation(
                session,
                RedisLeaseLockManager(FakeRedis()),
                org_id=org.id,
                project_id=project.id,
                preset="turbo",
            )
    reset_test_env()


def test_progress_and_message_are_written_before_each_section(monkeypatch) -> None:
    configure_test_env(
        monkeypatch,
        business_plan_section_retries="2",
        business_plan_retry_base_ms="500",
        business_plan_retry_jitter_ms="0",
    )
    session_factory = build_sqlite_session_factory()
    _, _, job_id = _enqueue_plan(session_factory, section_keys=FOUR_SECTIONS)
    checkpoints = []

    def _handler(request) -> str:
        section = section_of(request)
        with session_factory() as session:
            job = get_job(session, job_id)
            checkpoints.append((job.progress, json.loads(job.result_json)["message"]))
        if section == "PROBLEM" and len(checkpoints) == 2:
            raise ProviderError("openai_api_error status=503", retryable=True, status_code=503)
        return f"{section} body"

    with build_worker(session_factory, provider=ScriptedProvider(_handler), sleeps=[]) as worker:
        worker.process_job(job_id)

    assert checkpoints == [
        (37, "Generating EXECUTIVE_SUMMARY (1/4)"),
        (55, "Generating PROBLEM (2/4)"),
        (55, "Generating PROBLEM (retry 1/2) (2/4)"),
        (72, "Generating SOLUTION (3/4)"),
        (90, "Generating MARKET (4/4)"),
    ]
    reset_test_env()


def test_plan_generation_resets_an_expired_cycle_first(monkeypatch) -> None:
    configure_test_env(monkeypatch, business_plan_section_retries="0")
    session_factory = build_sqlite_session_factory()
    org_id, _, job_id = _enqueue_plan(session_factory, section_keys=["problem", "solution"])
    with session_factory() as session:
        session.execute(
            update(Organization)
            .where(Organization.id == org_id)
            .values(
                monthly_tokens_used=Organization.monthly_token_limit,
                token_reset_date=datetime.now(timezone.utc) - timedelta(days=45),
            )
        )
        session.commit()

    with build_worker(session_factory, provider=ScriptedProvider()) as worker:
        worker.process_job(job_id)

    with session_factory() as session:
        result = json.loads(get_job(session, job_id).result_json)
        assert result["successCount"] == 2
        assert result["failureCount"] == 0
        assert session.get(Organization, org_id).monthly_tokens_used == 2 * 225
    reset_test_env()
