"""Job status and operator routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from brandforge.api.deps import OrgContext, get_org_context, get_org_session, require_org_role
from brandforge.jobs.store import JobStatusView, force_fail_job, get_job_status, job_status_view, retry_job
from brandforge.schemas.jobs import JobStatusResponse


router = APIRouter(tags=["jobs"])


def _status_response(view: JobStatusView) -> JobStatusResponse:
    return JobStatusResponse(
        job_id=view.job_id,
        type=view.type,
        status=view.status,
        progress=view.progress,
        message=view.message,
        error=view.error,
        result=view.result,
    )


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
def get_job(
    job_id: str,
    org: OrgContext = Depends(get_org_context),
    session: Session = Depends(get_org_session),
) -> JobStatusResponse:
    return _status_response(get_job_status(session, org_id=org.org_id, job_id=job_id))


@router.post("/admin/jobs/{job_id}/retry", response_model=JobStatusResponse)
def retry(
    job_id: str,
    org: OrgContext = Depends(require_org_role("owner", "admin")),
    session: Session = Depends(get_org_session),
) -> JobStatusResponse:
    job = retry_job(session, org_id=org.org_id, job_id=job_id, actor=org.actor)
    return _status_response(job_status_view(job))


@router.post("/admin/jobs/{job_id}/fail", response_model=JobStatusResponse)
def force_fail(
    job_id: str,
    org: OrgContext = Depends(require_org_role("owner", "admin")),
    session: Session = Depends(get_org_session),
) -> JobStatusResponse:
    job = force_fail_job(session, org_id=org.org_id, job_id=job_id, actor=org.actor)
    return _status_response(job_status_view(job))
