"""Job producer: tenant validation, idempotent enqueue and stage-generation requests."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from brandforge.ai.prompts import get_stage_definition, is_valid_stage_key
from brandforge.billing.presets import estimate_tokens, is_valid_preset
from brandforge.billing.usage import check_budget, reset_monthly_usage_if_needed
from brandforge.core.config import get_settings
from brandforge.core.logger import get_logger
from brandforge.core.metrics import record_job_enqueued
from brandforge.jobs.contracts import (
    IDEMPOTENT_JOB_TYPES,
    JobType,
    JobValidationError,
    StageGenerationPayload,
    encode_job_payload,
)
from brandforge.jobs.store import create_job, find_active_job
from brandforge.outputs.service import ensure_output, has_versions
from brandforge.storage.models import Job, Project, Stage


logger = get_logger("brandforge.jobs.producer")

STAGE_JOB_TYPES = IDEMPOTENT_JOB_TYPES


class ResourceNotFoundError(LookupError):
    """Raised when a resource is missing or belongs to another organization."""

    code = "not_found"


@dataclass(frozen=True)
class EnqueueResult:
    job: Job
    created: bool
    idempotent: bool


@dataclass(frozen=True)
class StageEnqueueResult:
    job: Job
    created: bool
    idempotent: bool
    stage_id: str
    output_id: str


def get_project_for_org(session: Session, *, org_id: str, project_id: str) -> Project:
    project = session.get(Project, project_id)
    if project is None or project.org_id != org_id or project.status == "DELETED":
        raise ResourceNotFoundError(f"Project not found: {project_id}")
    return project


def resolve_resource_project(session: Session, *, org_id: str, kind: JobType, resource_id: str) -> Project:
    """Resolve the project a job resource belongs to, failing closed on tenant mismatch.

    Stage jobs are keyed by stage id; every other kind is keyed by project id.
    """

    if not resource_id:
        raise JobValidationError("resource_id is required")
    if kind in STAGE_JOB_TYPES:
        stage = session.get(Stage, resource_id)
        if stage is None:
            raise ResourceNotFoundError(f"Stage not found: {resource_id}")
        return get_project_for_org(session, org_id=org_id, project_id=stage.project_id)
    return get_project_for_org(session, org_id=org_id, project_id=resource_id)


def enqueue(
    session: Session,
    *,
    kind: JobType,
    org_id: str,
    resource_id: str,
    payload: BaseModel,
    stage_key: Optional[str] = None,
) -> EnqueueResult:
    project = resolve_resource_project(session, org_id=org_id, kind=kind, resource_id=resource_id)
    payload_json = encode_job_payload(kind, payload)

    if kind in IDEMPOTENT_JOB_TYPES:
        existing = find_active_job(session, org_id=org_id, resource_id=resource_id, job_types=IDEMPOTENT_JOB_TYPES)
        if existing is not None:
            session.commit()
            logger.info("job_enqueue_idempotent", org_id=org_id, job_id=existing.id, job_type=existing.type)
            return EnqueueResult(job=existing, created=False, idempotent=True)

    try:
        job = create_job(
            session,
            org_id=org_id,
            job_type=kind,
            payload_json=payload_json,
            project_id=project.id,
            resource_id=resource_id,
            stage_key=stage_key,
            max_attempts=get_settings().job_max_attempts,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise

    record_job_enqueued(job_type=kind.value)
    logger.info("job_enqueued", org_id=org_id, job_id=job.id, job_type=kind.value, resource_id=resource_id)
    return EnqueueResult(job=job, created=True, idempotent=False)


def _ensure_stage(session: Session, *, project_id: str, stage_key: str) -> Stage:
    stage = session.scalar(select(Stage).where(Stage.project_id == project_id, Stage.stage_key == stage_key))
    if stage is not None:
        return stage
    definition = get_stage_definition(stage_key)
    stage = Stage(
        project_id=project_id,
        stage_key=stage_key,
        name=definition.name,
        module=definition.module,
        order=definition.order,
        status="NOT_STARTED",
    )
    session.add(stage)
    session.flush()
    return stage


def enqueue_stage_generation(
    session: Session,
    *,
    org_id: str,
    project_id: str,
    stage_key: str,
    requested_by: Optional[str] = None,
    preset: str = "balanced",
    regenerate: bool = False,
) -> StageEnqueueResult:
    """Queue a single-stage generation, reusing an in-flight job for the same stage.

    The job type is REGENERATE_OUTPUT when the stage output already has a version
    (or ``regenerate`` is set), GENERATE_OUTPUT otherwise.
    """

    normalized_key = (stage_key or "").strip().lower()
    if not is_valid_stage_key(normalized_key):
        raise JobValidationError(f"Invalid stage key: {stage_key}")
    normalized_preset = (preset or "").strip().lower()
    if not is_valid_preset(normalized_preset):
        raise JobValidationError(f"Invalid preset: {preset}")

    project = get_project_for_org(session, org_id=org_id, project_id=project_id)
    reset_monthly_usage_if_needed(session, org_id=org_id)
    check_budget(session, org_id=org_id, estimated_tokens=estimate_tokens(normalized_key, normalized_preset))

    try:
        stage = _ensure_stage(session, project_id=project.id, stage_key=normalized_key)
        output, _ = ensure_output(session, org_id=org_id, project_id=project.id, stage_id=stage.id)
    except Exception:
        session.rollback()
        raise

    kind = JobType.REGENERATE_OUTPUT if regenerate or has_versions(session, output_id=output.id) else JobType.GENERATE_OUTPUT
    payload = StageGenerationPayload(
        stage_id=stage.id,
        output_id=output.id,
        stage_key=normalized_key,
        project_name=project.name,
        requested_by=requested_by,
        preset=normalized_preset,
    )
    result = enqueue(
        session,
        kind=kind,
        org_id=org_id,
        resource_id=stage.id,
        payload=payload,
        stage_key=normalized_key,
    )
    return StageEnqueueResult(
        job=result.job,
        created=result.created,
        idempotent=result.idempotent,
        stage_id=stage.id,
        output_id=output.id,
    )
