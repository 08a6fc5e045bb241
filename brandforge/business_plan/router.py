"""Business plan generation routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from brandforge.api.deps import (
    OrgContext,
    get_inline_worker,
    get_lock_manager,
    get_org_context,
    get_org_session,
    process_inline,
)
from brandforge.business_plan.service import enqueue_business_plan_generation, get_generation_status
from brandforge.jobs.store import get_job
from brandforge.jobs.worker import JobWorker
from brandforge.orchestrator.locks import GenerationLockManager
from brandforge.schemas.business_plan import (
    BusinessPlanGenerateRequest,
    BusinessPlanGenerateResponse,
    BusinessPlanStatusResponse,
)


router = APIRouter(prefix="/projects/{project_id}/business-plan", tags=["business-plan"])


@router.post("/generate", response_model=BusinessPlanGenerateResponse, status_code=status.HTTP_202_ACCEPTED)
def generate(
    project_id: str,
    payload: Optional[BusinessPlanGenerateRequest] = None,
    org: OrgContext = Depends(get_org_context),
    session: Session = Depends(get_org_session),
    lock_manager: GenerationLockManager = Depends(get_lock_manager),
    worker: Optional[JobWorker] = Depends(get_inline_worker),
) -> BusinessPlanGenerateResponse:
    request = payload or BusinessPlanGenerateRequest()
    job = enqueue_business_plan_generation(
        session,
        lock_manager,
        org_id=org.org_id,
        project_id=project_id,
        requested_by=org.actor,
        section_keys=request.section_keys,
        preset=request.preset,
    )
    process_inline(worker, job.id)
    job = get_job(session, job.id) or job
    return BusinessPlanGenerateResponse(job_id=job.id, status=job.status, project_id=project_id)


@router.get("/generate/status", response_model=BusinessPlanStatusResponse)
def generation_status(
    project_id: str,
    org: OrgContext = Depends(get_org_context),
    session: Session = Depends(get_org_session),
) -> BusinessPlanStatusResponse:
    view = get_generation_status(session, org_id=org.org_id, project_id=project_id)
    if view is None:
        return BusinessPlanStatusResponse(project_id=project_id)
    result = view.result or {}
    return BusinessPlanStatusResponse(
        project_id=project_id,
        job_id=view.job_id,
        status=view.status,
        progress=view.progress,
        message=view.message,
        error=view.error,
        latest_version=result.get("latestVersion"),
        success_count=result.get("successCount"),
        failure_count=result.get("failureCount"),
    )
