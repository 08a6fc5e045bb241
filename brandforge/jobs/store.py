"""Durable job records: creation, atomic claim and status transitions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from brandforge.jobs.contracts import (
    ACTIVE_JOB_STATUSES,
    FINISHED_JOB_STATUSES,
    JobStatus,
    JobType,
)
from brandforge.storage.audit import record_audit_event
from brandforge.storage.models import Job


FORCE_FAIL_ERROR = "Manually marked as failed by operator"
STALE_JOB_ERROR = "stale_job_timeout"


class JobNotFoundError(LookupError):
    """Raised when a job does not exist or belongs to another organization."""

    code = "not_found"


class InvalidJobTransitionError(RuntimeError):
    """Raised when an operator action is not valid for the job's current status."""

    code = "invalid_transition"

    def __init__(self, job_id: str, status: str, action: str):
        self.job_id = job_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} job {job_id} in status {status}")


@dataclass(frozen=True)
class JobStatusView:
    job_id: str
    type: str
    status: str
    progress: int
    message: Optional[str]
    error: Optional[str]
    result: Optional[Dict[str, Any]]


@dataclass(frozen=True)
class StaleSweepResult:
    requeued: int
    failed: int


def _json_dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def load_job_result(job: Job) -> Optional[Dict[str, Any]]:
    if not job.result_json:
        return None
    try:
        loaded = json.loads(job.result_json)
    except json.JSONDecodeError:
        return {"raw": job.result_json}
    return loaded if isinstance(loaded, dict) else {"value": loaded}


def _type_values(job_types: Iterable[JobType | str]) -> list[str]:
    return [item.value if isinstance(item, JobType) else str(item) for item in job_types]


def create_job(
    session: Session,
    *,
    org_id: str,
    job_type: JobType,
    payload_json: str,
    project_id: Optional[str] = None,
    resource_id: Optional[str] = None,
    stage_key: Optional[str] = None,
    max_attempts: int = 1,
    now: Optional[datetime] = None,
) -> Job:
    job = Job(
        org_id=org_id,
        project_id=project_id,
        resource_id=resource_id,
        stage_key=stage_key,
        type=job_type.value,
        status=JobStatus.QUEUED.value,
        attempts=0,
        max_attempts=max(1, max_attempts),
        payload_json=payload_json,
        progress=0,
        created_at=now or _now_utc(),
    )
    session.add(job)
    session.flush()
    return job


def get_job(session: Session, job_id: str) -> Optional[Job]:
    return session.get(Job, job_id, populate_existing=True)


def get_job_for_org(session: Session, *, org_id: str, job_id: str) -> Job:
    job = get_job(session, job_id)
    if job is None or job.org_id != org_id:
        raise JobNotFoundError(f"Job not found: {job_id}")
    return job


def find_active_job(
    session: Session,
    *,
    org_id: str,
    resource_id: Optional[str],
    job_types: Iterable[JobType | str],
) -> Optional[Job]:
    statement = (
        select(Job)
        .where(
            Job.org_id == org_id,
            Job.resource_id == resource_id,
            Job.type.in_(_type_values(job_types)),
            Job.status.in_(ACTIVE_JOB_STATUSES),
        )
        .order_by(Job.created_at.asc(), Job.id.asc())
        .limit(1)
    )
    return session.scalar(statement)


def claim_job(
    session: Session,
    *,
    job_id: str,
    worker_id: str,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> bool:
    """Move one QUEUED job to PROCESSING with a single conditional UPDATE.

    Returns False when another claimant got there first.
    """

    claimed_at = now or _now_utc()
    result = session.execute(
        update(Job)
        .where(
            Job.id == job_id,
            Job.status == JobStatus.QUEUED.value,
            Job.locked_at.is_(None),
        )
        .values(
            status=JobStatus.PROCESSING.value,
            locked_at=claimed_at,
            locked_by=worker_id,
            started_at=claimed_at,
            attempts=Job.attempts + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if commit:
        session.commit()
    return int(result.rowcount or 0) == 1


def claim_next_job(
    session: Session,
    *,
    worker_id: str,
    now: Optional[datetime] = None,
    max_candidates: int = 5,
) -> Optional[Job]:
    """Claim the oldest QUEUED job, moving on to the next candidate when a race is lost."""

    candidates = session.scalars(
        select(Job.id)
        .where(Job.status == JobStatus.QUEUED.value, Job.locked_at.is_(None))
        .order_by(Job.created_at.asc(), Job.id.asc())
        .limit(max(1, max_candidates))
    ).all()
    for candidate_id in candidates:
        if claim_job(session, job_id=candidate_id, worker_id=worker_id, now=now):
            return get_job(session, candidate_id)
    return None


def update_progress(
    session: Session,
    *,
    job_id: str,
    progress: int,
    result: Optional[Dict[str, Any]] = None,
    commit: bool = True,
) -> bool:
    """Write progress and the partial result in one UPDATE.

    Only applies while the job is PROCESSING and never moves progress backwards.
    """

    clamped = max(0, min(100, int(progress)))
    values: Dict[str, Any] = {"progress": clamped}
    if result is not None:
        values["result_json"] = _json_dumps(result)
    outcome = session.execute(
        update(Job)
        .where(
            Job.id == job_id,
            Job.status == JobStatus.PROCESSING.value,
            Job.progress <= clamped,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if commit:
        session.commit()
    return int(outcome.rowcount or 0) == 1


def mark_done(
    session: Session,
    *,
    job_id: str,
    result: Dict[str, Any],
    now: Optional[datetime] = None,
    commit: bool = True,
) -> bool:
    outcome = session.execute(
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.PROCESSING.value)
        .values(
            status=JobStatus.DONE.value,
            progress=100,
            result_json=_json_dumps(result),
            error=None,
            completed_at=now or _now_utc(),
        )
        .execution_options(synchronize_session=False)
    )
    if commit:
        session.commit()
    return int(outcome.rowcount or 0) == 1


def mark_failed(
    session: Session,
    *,
    job_id: str,
    error: str,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> bool:
    outcome = session.execute(
        update(Job)
        .where(Job.id == job_id, Job.status != JobStatus.DONE.value)
        .values(
            status=JobStatus.FAILED.value,
            error=(error or "unknown_error")[:2000],
            completed_at=now or _now_utc(),
        )
        .execution_options(synchronize_session=False)
    )
    if commit:
        session.commit()
    return int(outcome.rowcount or 0) == 1


def release_claim(session: Session, *, job_id: str, commit: bool = True) -> bool:
    """Return a PROCESSING job to the queue so it can be claimed again."""

    outcome = session.execute(
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.PROCESSING.value)
        .values(
            status=JobStatus.QUEUED.value,
            locked_at=None,
            locked_by=None,
            started_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    if commit:
        session.commit()
    return int(outcome.rowcount or 0) == 1


def retry_job(
    session: Session,
    *,
    org_id: str,
    job_id: str,
    actor: Optional[str] = None,
    commit: bool = True,
) -> Job:
    """FAILED -> QUEUED with attempts, error and claim fields reset."""

    current_status = get_job_for_org(session, org_id=org_id, job_id=job_id).status
    outcome = session.execute(
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.FAILED.value)
        .values(
            status=JobStatus.QUEUED.value,
            attempts=0,
            progress=0,
            error=None,
            result_json=None,
            started_at=None,
            completed_at=None,
            locked_at=None,
            locked_by=None,
        )
        .execution_options(synchronize_session=False)
    )
    if int(outcome.rowcount or 0) != 1:
        session.rollback()
        raise InvalidJobTransitionError(job_id, current_status, "retry")
    record_audit_event(
        session,
        org_id=org_id,
        actor=actor,
        action="JOB_RETRIED",
        target_type="job",
        target_id=job_id,
        details={"previous_status": current_status},
    )
    if commit:
        session.commit()
    return get_job_for_org(session, org_id=org_id, job_id=job_id)


def force_fail_job(
    session: Session,
    *,
    org_id: str,
    job_id: str,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Job:
    current_status = get_job_for_org(session, org_id=org_id, job_id=job_id).status
    if current_status == JobStatus.DONE.value:
        raise InvalidJobTransitionError(job_id, current_status, "force-fail")
    if not mark_failed(session, job_id=job_id, error=FORCE_FAIL_ERROR, now=now, commit=False):
        session.rollback()
        raise InvalidJobTransitionError(job_id, JobStatus.DONE.value, "force-fail")
    record_audit_event(
        session,
        org_id=org_id,
        actor=actor,
        action="JOB_FORCE_FAILED",
        target_type="job",
        target_id=job_id,
        details={"previous_status": current_status},
    )
    if commit:
        session.commit()
    return get_job_for_org(session, org_id=org_id, job_id=job_id)


def get_job_status(session: Session, *, org_id: str, job_id: str) -> JobStatusView:
    job = get_job_for_org(session, org_id=org_id, job_id=job_id)
    return job_status_view(job)


def job_status_view(job: Job) -> JobStatusView:
    result = load_job_result(job)
    message = None
    if result is not None and isinstance(result.get("message"), str):
        message = result["message"]
    return JobStatusView(
        job_id=job.id,
        type=job.type,
        status=job.status,
        progress=int(job.progress or 0),
        message=message,
        error=job.error,
        result=result,
    )


def _finished_since_filter(
    *,
    org_id: str,
    resource_id: Optional[str],
    job_type: JobType,
    since: datetime,
):
    return (
        Job.org_id == org_id,
        Job.resource_id == resource_id,
        Job.type == job_type.value,
        Job.status.in_(FINISHED_JOB_STATUSES),
        Job.created_at >= since,
    )


def count_finished_jobs_since(
    session: Session,
    *,
    org_id: str,
    resource_id: Optional[str],
    job_type: JobType,
    since: datetime,
) -> int:
    count = session.scalar(
        select(func.count(Job.id)).where(
            *_finished_since_filter(org_id=org_id, resource_id=resource_id, job_type=job_type, since=since)
        )
    )
    return int(count or 0)


def oldest_finished_job_since(
    session: Session,
    *,
    org_id: str,
    resource_id: Optional[str],
    job_type: JobType,
    since: datetime,
) -> Optional[datetime]:
    return session.scalar(
        select(func.min(Job.created_at)).where(
            *_finished_since_filter(org_id=org_id, resource_id=resource_id, job_type=job_type, since=since)
        )
    )


def requeue_stale_jobs(
    session: Session,
    *,
    older_than: datetime,
    now: Optional[datetime] = None,
) -> StaleSweepResult:
    """Sweep PROCESSING jobs whose claim is older than ``older_than``.

    Jobs with attempts left go back to QUEUED; the rest are failed.
    """

    stale_filter = (
        Job.status == JobStatus.PROCESSING.value,
        or_(Job.locked_at.is_(None), Job.locked_at < older_than),
    )
    try:
        requeued = session.execute(
            update(Job)
            .where(*stale_filter, Job.attempts < Job.max_attempts)
            .values(
                status=JobStatus.QUEUED.value,
                locked_at=None,
                locked_by=None,
                started_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        failed = session.execute(
            update(Job)
            .where(*stale_filter, Job.attempts >= Job.max_attempts)
            .values(
                status=JobStatus.FAILED.value,
                error=STALE_JOB_ERROR,
                completed_at=now or _now_utc(),
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    return StaleSweepResult(requeued=int(requeued.rowcount or 0), failed=int(failed.rowcount or 0))
