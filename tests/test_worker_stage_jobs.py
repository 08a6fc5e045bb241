from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
import threading

from sqlalchemy import select, update

from brandforge.ai.providers.base import ProviderError
from brandforge.jobs.contracts import BatchJobPayload, JobStatus, JobType, encode_job_payload
from brandforge.jobs.producer import enqueue_stage_generation
from brandforge.jobs.store import create_job, get_job
from brandforge.jobs.worker import JobWorker, record_worker_heartbeat
from brandforge.storage.models import Organization, OutputVersion, Stage, UsageEntry, WorkerHeartbeat
from tests.conftest import (
    ScriptedProvider,
    build_sqlite_session_factory,
    build_worker,
    configure_test_env,
    create_org,
    create_project,
    reset_test_env,
)


def _enqueue_naming(session_factory, *, plan: str = "MID"):
    with session_factory() as session:
        org = create_org(session, plan=plan)
        project = create_project(session, org_id=org.id)
        result = enqueue_stage_generation(session, org_id=org.id, project_id=project.id, stage_key="naming")
        return org.id, result


def test_worker_completes_stage_job_with_version_and_usage(monkeypatch) -> None:
    configure_test_env(monkeypatch)
    session_factory = build_sqlite_session_factory()
    org_id, enqueued = _enqueue_naming(session_factory)
    provider = ScriptedProvider(lambda request: '{"items": [{"name": "Brewline"}], "notes": "short"}')

    with build_worker(session_factory, provider=provider) as worker:
        processed = worker.run_once()

    assert processed == enqueued.job.id
    with session_factory() as session:
        job = get_job(session, enqueued.job.id)
        assert job.status == JobStatus.DONE.value
        assert job.progress == 100
        assert job.locked_by == "worker-test"
        result = json.loads(job.result_json)
        assert result["message"] == "Completed"
        assert result["versionNumber"] == 1
        assert result["outputId"] == enqueued.output_id
        assert result["billedTokens"] == 225

        versions = session.scalars(select(OutputVersion).where(OutputVersion.output_id == enqueued.output_id)).all()
        assert len(versions) == 1
        assert versions[0].status == "GENERATED"
        assert versions[0].provider == "scripted"
        assert versions[0].prompt_set_version == "naming-v1@0.1.0"
        assert json.loads(versions[0].content_json)["items"][0]["name"] == "Brewline"

        usage = session.scalars(select(UsageEntry).where(UsageEntry.org_id == org_id)).all()
        assert [entry.billed_tokens for entry in usage] == [225]
        assert usage[0].job_id == enqueued.job.id
        assert session.get(Organization, org_id).monthly_tokens_used == 225
        assert session.get(Stage, enqueued.stage_id).status == "GENERATED"
    assert len(provider.requests) == 1
    assert "Generate 5 naming options" in provider.requests[0].messages[-1]["content"]
    reset_test_env()


def test_worker_fails_job_when_budget_runs_out_before_generation(monkeypatch) -> None:
    configure_test_env(monkeypatch)
    session_factory = build_sqlite_session_factory()
    org_id, enqueued = _enqueue_naming(session_factory)
    with session_factory() as session:
        session.execute(update(Organization).where(Organization.id == org_id).values(monthly_tokens_used=500_000))
        session.commit()
    provider = ScriptedProvider()

    with build_worker(session_factory, provider=provider) as worker:
        assert worker.process_job(enqueued.job.id) is True

    with session_factory() as session:
        job = get_job(session, enqueued.job.id)
        assert job.status == JobStatus.FAILED.value
        assert job.error == "budget_exceeded"
        assert session.scalars(select(OutputVersion)).all() == []
        assert session.scalars(select(UsageEntry)).all() == []
    assert provider.requests == []
    reset_test_env()


def test_worker_fails_job_with_undecodable_payload(monkeypatch) -> None:
    configure_test_env(monkeypatch)
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        org = create_org(session)
        job = create_job(session, org_id=org.id, job_type=JobType.GENERATE_OUTPUT, payload_json="{not json")
        session.commit()
        job_id = job.id

    with build_worker(session_factory) as worker:
        worker.process_job(job_id)

    with session_factory() as session:
        failed = get_job(session, job_id)
        assert failed.status == JobStatus.FAILED.value
        assert failed.error == "payload_not_json"
    reset_test_env()


def test_worker_finishes_batch_jobs_without_generation(monkeypatch) -> None:
    configure_test_env(monkeypatch)
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        org = create_org(session)
        project = create_project(session, org_id=org.id)
        job = create_job(
            session,
            org_id=org.id,
            job_type=JobType.BUILD_BRAND_PACK,
            payload_json=encode_job_payload(JobType.BUILD_BRAND_PACK, BatchJobPayload()),
            project_id=project.id,
            resource_id=project.id,
        )
        session.commit()
        job_id = job.id

    with build_worker(session_factory) as worker:
        assert worker.run_once() == job_id
        assert worker.run_once() is None

    with session_factory() as session:
        done = get_job(session, job_id)
        assert done.status == JobStatus.DONE.value
        assert json.loads(done.result_json) == {"message": "BUILD_BRAND_PACK processed"}
    reset_test_env()


def test_worker_requeues_retryable_failure_while_attempts_remain(monkeypatch) -> None:
    configure_test_env(monkeypatch, job_max_attempts="2")
    session_factory = build_sqlite_session_factory()
    _, enqueued = _enqueue_naming(session_factory)

    def _rate_limited(request):
        raise ProviderError("openai_api_error status=429", retryable=True, status_code=429)

    with build_worker(session_factory, provider=ScriptedProvider(_rate_limited)) as worker:
        worker.process_job(enqueued.job.id)
        with session_factory() as session:
            requeued = get_job(session, enqueued.job.id)
            assert requeued.status == JobStatus.QUEUED.value
            assert requeued.attempts == 1
            assert requeued.max_attempts == 2

        worker.process_job(enqueued.job.id)

    with session_factory() as session:
        failed = get_job(session, enqueued.job.id)
        assert failed.status == JobStatus.FAILED.value
        assert failed.attempts == 2
        assert "status=429" in failed.error
        assert session.scalars(select(OutputVersion)).all() == []
    reset_test_env()


def test_process_job_skips_jobs_that_are_not_queued(monkeypatch) -> None:
    configure_test_env(monkeypatch)
    session_factory = build_sqlite_session_factory()
    _, enqueued = _enqueue_naming(session_factory)

    with build_worker(session_factory) as worker:
        assert worker.process_job(enqueued.job.id) is True
        assert worker.process_job(enqueued.job.id) is False
        assert worker.jobs_processed == 1
    reset_test_env()


def test_run_forever_sends_heartbeats_and_stops(monkeypatch) -> None:
    configure_test_env(monkeypatch)
    session_factory = build_sqlite_session_factory()
    _, enqueued = _enqueue_naming(session_factory)
    stop_event = threading.Event()
    beats = []

    def _heartbeat(worker_id: str, status: str, processed: int) -> None:
        beats.append((worker_id, status, processed))
        if status == "running":
            stop_event.set()

    worker = JobWorker(
        session_factory=session_factory,
        provider=ScriptedProvider(),
        worker_id="worker-loop",
        heartbeat=_heartbeat,
    )
    try:
        worker.run_forever(stop_event)
    finally:
        worker.close()

    assert beats == [("worker-loop", "running", 0), ("worker-loop", "stopped", 1)]
    with session_factory() as session:
        assert get_job(session, enqueued.job.id).status == JobStatus.DONE.value
    reset_test_env()


def test_record_worker_heartbeat_upserts_row(monkeypatch) -> None:
    configure_test_env(monkeypatch)
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        record_worker_heartbeat(session, worker_id="worker-1", jobs_processed=2)
        record_worker_heartbeat(session, worker_id="worker-1", status="stopped", jobs_processed=5)

        rows = session.scalars(select(WorkerHeartbeat)).all()
        assert len(rows) == 1
        assert rows[0].status == "stopped"
        assert rows[0].jobs_processed == 5
    reset_test_env()


def test_worker_resets_an_expired_cycle_before_the_budget_check(monkeypatch) -> None:
    configure_test_env(monkeypatch)
    session_factory = build_sqlite_session_factory()
    org_id, enqueued = _enqueue_naming(session_factory)
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
        assert worker.run_once() == enqueued.job.id

    with session_factory() as session:
        assert get_job(session, enqueued.job.id).status == JobStatus.DONE.value
        assert session.get(Organization, org_id).monthly_tokens_used == 225
    reset_test_env()
