"""Single-flight guarded enqueue for expensive multi-step generations."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from brandforge.core.config import get_settings
from brandforge.core.logger import get_logger
from brandforge.core.metrics import record_guarded_rejection, record_job_enqueued
from brandforge.jobs.contracts import JobType, encode_job_payload
from brandforge.jobs.producer import resolve_resource_project
from brandforge.jobs.store import create_job, find_active_job
from brandforge.orchestrator.locks import GenerationLockError, GenerationLockManager
from brandforge.orchestrator.rate_window import GenerationRateLimitError, check_generation_window
from brandforge.storage.models import Job


logger = get_logger("brandforge.orchestrator.guarded")


def try_enqueue_guarded(
    session: Session,
    lock_manager: GenerationLockManager,
    *,
    org_id: str,
    resource_id: str,
    kind: JobType,
    payload: BaseModel,
    max_generations: Optional[int] = None,
    window_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Job:
    """Admit a new job only if no generation is running and the window has room.

    The lock covers the admission decision only: it is taken without waiting,
    the job row is committed while it is held, and it is released before return.
    Raises ``GenerationLockError`` or ``GenerationRateLimitError`` without
    creating a row.
    """

    settings = get_settings()
    limit = max_generations if max_generations is not None else settings.business_plan_generate_limit
    window = window_minutes if window_minutes is not None else settings.business_plan_generate_window_minutes

    project = resolve_resource_project(session, org_id=org_id, kind=kind, resource_id=resource_id)
    payload_json = encode_job_payload(kind, payload)

    try:
        with lock_manager.hold(org_id, resource_id):
            active = find_active_job(session, org_id=org_id, resource_id=resource_id, job_types=[kind])
            if active is not None:
                raise GenerationLockError(org_id, resource_id, reason="active_job")

            decision = check_generation_window(
                session,
                org_id=org_id,
                resource_id=resource_id,
                job_type=kind,
                max_generations=limit,
                window_minutes=window,
                now=now,
            )
            if not decision.allowed:
                raise GenerationRateLimitError(decision)

            job = create_job(
                session,
                org_id=org_id,
                job_type=kind,
                payload_json=payload_json,
                project_id=project.id,
                resource_id=resource_id,
                max_attempts=settings.job_max_attempts,
                now=now,
            )
            session.commit()
    except GenerationLockError as exc:
        session.rollback()
        record_guarded_rejection(reason=exc.reason)
        logger.info("guarded_enqueue_locked", org_id=org_id, resource_id=resource_id, reason=exc.reason)
        raise
    except GenerationRateLimitError as exc:
        session.rollback()
        record_guarded_rejection(reason="rate_limited")
        logger.info(
            "guarded_enqueue_rate_limited",
            org_id=org_id,
            resource_id=resource_id,
            used=exc.used,
            limit=exc.limit,
            retry_after_seconds=exc.retry_after_seconds,
        )
        raise
    except Exception:
        session.rollback()
        raise

    record_job_enqueued(job_type=kind.value)
    logger.info("guarded_job_enqueued", org_id=org_id, job_id=job.id, job_type=kind.value, resource_id=resource_id)
    return job
