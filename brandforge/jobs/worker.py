"""Job worker: claims queued jobs and drives them to DONE or FAILED."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import os
import socket
import threading
import time
from typing import Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from brandforge.ai.providers.base import CompletionProvider
from brandforge.ai.providers.factory import get_completion_provider
from brandforge.billing.usage import BudgetExceededError
from brandforge.core.config import Settings, get_settings
from brandforge.core.logger import bind_job_context, clear_job_context, get_logger
from brandforge.core.metrics import record_job_finished
from brandforge.core.observability import capture_exception, sentry_scope
from brandforge.generation.business_plan import run_business_plan_job
from brandforge.generation.context import JobContext
from brandforge.generation.section_generator import SectionGenerator, error_code, is_retryable_error
from brandforge.generation.stage_runner import run_stage_job
from brandforge.jobs.contracts import (
    IDEMPOTENT_JOB_TYPES,
    JobStatus,
    JobType,
    decode_job_payload,
    parse_job_type,
)
from brandforge.jobs.store import (
    claim_job,
    claim_next_job,
    get_job,
    mark_done,
    mark_failed,
    release_claim,
    requeue_stale_jobs,
)
from brandforge.storage.models import Job, WorkerHeartbeat
from brandforge.storage.tenant import release_org_context, set_org_context


HeartbeatCallback = Callable[[str, str, int], None]

logger = get_logger("brandforge.jobs.worker")


def default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}"


def record_worker_heartbeat(
    session: Session,
    *,
    worker_id: str,
    status: str = "running",
    jobs_processed: int = 0,
    now: Optional[datetime] = None,
) -> WorkerHeartbeat:
    """Upsert the liveness row for ``worker_id`` and commit."""

    seen_at = now or datetime.now(timezone.utc)
    row = session.get(WorkerHeartbeat, worker_id)
    if row is None:
        row = WorkerHeartbeat(worker_id=worker_id)
        session.add(row)
    row.status = status
    row.last_seen_at = seen_at
    row.jobs_processed = jobs_processed
    session.commit()
    return row


def failure_message(exc: BaseException) -> str:
    if isinstance(exc, BudgetExceededError):
        return BudgetExceededError.code
    message = str(exc).strip()
    return message or error_code(exc)


class JobWorker:
    """Claim jobs one at a time and run the handler for their type.

    The polling loop and the inline fast path share ``_execute`` so both end in
    the same states. Failures inside a handler never escape: they become a
    FAILED job (or a requeue while attempts remain for retryable errors).
    """

    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        provider: CompletionProvider | None = None,
        settings: Settings | None = None,
        worker_id: str | None = None,
        heartbeat: HeartbeatCallback | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._provider = provider or get_completion_provider()
        self.worker_id = worker_id or self._settings.worker_id.strip() or default_worker_id()
        self._heartbeat = heartbeat or self._record_heartbeat
        self._sleep = sleep
        self._generator = SectionGenerator(
            self._provider,
            timeout_seconds=self._settings.section_timeout_seconds,
        )
        self._last_heartbeat_at: float | None = None
        self.jobs_processed = 0

    def close(self) -> None:
        self._generator.close()

    def __enter__(self) -> "JobWorker":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def run_once(self) -> Optional[str]:
        """Claim the oldest queued job and process it. Returns its id, or None when idle."""

        with self._session_factory() as session:
            job = claim_next_job(session, worker_id=self.worker_id)
            job_id = job.id if job is not None else None
        if job_id is None:
            return None
        self._execute(job_id)
        return job_id

    def process_job(self, job_id: str) -> bool:
        """Claim and run one specific job. False when it was not QUEUED or someone else claimed it."""

        with self._session_factory() as session:
            claimed = claim_job(session, job_id=job_id, worker_id=self.worker_id)
        if not claimed:
            logger.info("job_claim_skipped", job_id=job_id, worker_id=self.worker_id)
            return False
        self._execute(job_id)
        return True

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info("worker_started", worker_id=self.worker_id)
        try:
            while not stop_event.is_set():
                self._maybe_heartbeat()
                try:
                    job_id = self.run_once()
                except Exception as exc:
                    capture_exception(exc)
                    logger.error("worker_poll_failed", worker_id=self.worker_id, error=str(exc))
                    job_id = None
                if job_id is None:
                    stop_event.wait(self._settings.worker_poll_interval_seconds)
        finally:
            self._send_heartbeat("stopped")
            logger.info("worker_stopped", worker_id=self.worker_id, jobs_processed=self.jobs_processed)

    def sweep_stale_jobs(self, *, now: Optional[datetime] = None) -> None:
        current = now or datetime.now(timezone.utc)
        older_than = current - timedelta(minutes=self._settings.stale_job_timeout_minutes)
        with self._session_factory() as session:
            result = requeue_stale_jobs(session, older_than=older_than, now=current)
        if result.requeued or result.failed:
            logger.warning("stale_jobs_swept", requeued=result.requeued, failed=result.failed)

    def _maybe_heartbeat(self) -> None:
        current = time.monotonic()
        interval = self._settings.worker_heartbeat_interval_seconds
        if self._last_heartbeat_at is not None and current - self._last_heartbeat_at < interval:
            return
        self._last_heartbeat_at = current
        self._send_heartbeat("running")
        try:
            self.sweep_stale_jobs()
        except Exception as exc:
            capture_exception(exc)
            logger.error("stale_job_sweep_failed", error=str(exc))

    def _send_heartbeat(self, status: str) -> None:
        try:
            self._heartbeat(self.worker_id, status, self.jobs_processed)
        except Exception as exc:
            logger.warning("worker_heartbeat_failed", worker_id=self.worker_id, error=str(exc))

    def _record_heartbeat(self, worker_id: str, status: str, jobs_processed: int) -> None:
        with self._session_factory() as session:
            record_worker_heartbeat(session, worker_id=worker_id, status=status, jobs_processed=jobs_processed)

    def _execute(self, job_id: str) -> None:
        with self._session_factory() as session:
            job = get_job(session, job_id)
            if job is None or job.status != JobStatus.PROCESSING.value:
                return
            job_type = job.type
            org_id = job.org_id
            attempts = job.attempts
            max_attempts = job.max_attempts
            bind_job_context(job_id, org_id)
            set_org_context(session, org_id)
            logger.info("job_claimed", job_id=job_id, job_type=job_type, worker_id=self.worker_id, attempt=attempts)
            started = time.monotonic()
            try:
                self._dispatch(session, job)
            except Exception as exc:
                session.rollback()
                self._handle_failure(
                    session,
                    job_id=job_id,
                    job_type=job_type,
                    org_id=org_id,
                    attempts=attempts,
                    max_attempts=max_attempts,
                    exc=exc,
                )
            else:
                record_job_finished(job_type=job_type, status=JobStatus.DONE.value)
                logger.info(
                    "job_completed",
                    job_id=job_id,
                    job_type=job_type,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
            finally:
                self.jobs_processed += 1
                release_org_context(session)
                clear_job_context()

    def _dispatch(self, session: Session, job: Job) -> None:
        job_type = parse_job_type(job.type)
        payload = decode_job_payload(job_type, job.payload_json)
        ctx = JobContext(
            session=session,
            job_id=job.id,
            job_type=job_type.value,
            org_id=job.org_id,
            project_id=job.project_id,
            worker_id=self.worker_id,
            generator=self._generator,
            settings=self._settings,
            sleep=self._sleep,
        )
        if job_type in IDEMPOTENT_JOB_TYPES:
            run_stage_job(ctx, payload)
            return
        if job_type == JobType.BUSINESS_PLAN_GENERATE:
            run_business_plan_job(ctx, payload)
            return

        # File and batch kinds carry no generation step here.
        if not mark_done(session, job_id=job.id, result={"message": f"{job_type.value} processed"}):
            raise RuntimeError("job_not_processing")

    def _handle_failure(
        self,
        session: Session,
        *,
        job_id: str,
        job_type: str,
        org_id: str,
        attempts: int,
        max_attempts: int,
        exc: Exception,
    ) -> None:
        reason = error_code(exc)
        if is_retryable_error(exc) and attempts < max_attempts:
            release_claim(session, job_id=job_id)
            logger.warning(
                "job_requeued",
                job_id=job_id,
                job_type=job_type,
                attempt=attempts,
                max_attempts=max_attempts,
                reason=reason,
            )
            return

        message = failure_message(exc)
        mark_failed(session, job_id=job_id, error=message)
        with sentry_scope(org_id=org_id, job_id=job_id):
            capture_exception(exc)
        record_job_finished(job_type=job_type, status=JobStatus.FAILED.value)
        logger.error("job_failed", job_id=job_id, job_type=job_type, reason=reason, error=message)
