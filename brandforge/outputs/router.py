"""Stage generation and output version routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from brandforge.api.deps import OrgContext, get_inline_worker, get_org_context, get_org_session, process_inline
from brandforge.jobs.producer import enqueue_stage_generation
from brandforge.jobs.store import get_job
from brandforge.jobs.worker import JobWorker
from brandforge.outputs.service import (
    VersionView,
    approve_latest_version,
    approve_version,
    create_edited_version,
    list_versions,
    version_view,
)
from brandforge.schemas.jobs import StageRunRequest, StageRunResponse
from brandforge.schemas.outputs import OutputEditRequest, OutputVersionItem, OutputVersionListResponse


router = APIRouter(tags=["outputs"])


def _version_item(view: VersionView) -> OutputVersionItem:
    return OutputVersionItem(
        id=view.id,
        output_id=view.output_id,
        version=view.version,
        type=view.type,
        status=view.status,
        provider=view.provider,
        model=view.model,
        prompt_set_version=view.prompt_set_version,
        content=view.content,
        metadata=view.metadata,
        created_by=view.created_by,
    )


@router.post(
    "/projects/{project_id}/stages/{stage_key}/run",
    response_model=StageRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def run_stage(
    project_id: str,
    stage_key: str,
    payload: Optional[StageRunRequest] = None,
    org: OrgContext = Depends(get_org_context),
    session: Session = Depends(get_org_session),
    worker: Optional[JobWorker] = Depends(get_inline_worker),
) -> StageRunResponse:
    request = payload or StageRunRequest()
    result = enqueue_stage_generation(
        session,
        org_id=org.org_id,
        project_id=project_id,
        stage_key=stage_key,
        requested_by=org.actor,
        preset=request.preset,
        regenerate=request.regenerate,
    )
    job = result.job
    if result.created:
        process_inline(worker, job.id)
        job = get_job(session, job.id) or job
    return StageRunResponse(
        job_id=job.id,
        type=job.type,
        status=job.status,
        created=result.created,
        idempotent=result.idempotent,
        stage_id=result.stage_id,
        output_id=result.output_id,
    )


@router.get("/outputs/{output_id}/versions", response_model=OutputVersionListResponse)
def get_versions(
    output_id: str,
    org: OrgContext = Depends(get_org_context),
    session: Session = Depends(get_org_session),
) -> OutputVersionListResponse:
    versions = list_versions(session, org_id=org.org_id, output_id=output_id)
    return OutputVersionListResponse(
        output_id=output_id,
        items=[_version_item(version_view(version)) for version in versions],
    )


@router.post("/outputs/{output_id}/versions/latest/approve", response_model=OutputVersionItem)
def approve_latest(
    output_id: str,
    org: OrgContext = Depends(get_org_context),
    session: Session = Depends(get_org_session),
) -> OutputVersionItem:
    approved = approve_latest_version(session, org_id=org.org_id, output_id=output_id, actor=org.actor)
    return _version_item(version_view(approved))


@router.post("/outputs/{output_id}/versions/{version}/approve", response_model=OutputVersionItem)
def approve(
    output_id: str,
    version: int,
    org: OrgContext = Depends(get_org_context),
    session: Session = Depends(get_org_session),
) -> OutputVersionItem:
    approved = approve_version(session, org_id=org.org_id, output_id=output_id, version=version, actor=org.actor)
    return _version_item(version_view(approved))


@router.post(
    "/outputs/{output_id}/versions",
    response_model=OutputVersionItem,
    status_code=status.HTTP_201_CREATED,
)
def edit(
    output_id: str,
    payload: OutputEditRequest,
    org: OrgContext = Depends(get_org_context),
    session: Session = Depends(get_org_session),
) -> OutputVersionItem:
    edited = create_edited_version(
        session,
        org_id=org.org_id,
        output_id=output_id,
        content=payload.content,
        created_by=org.actor,
    )
    return _version_item(version_view(edited))
