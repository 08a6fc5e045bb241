"""Business plan versions, their sections, and the guarded generate request."""

from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, func, select, update
from sqlalchemy.orm import Session

from brandforge.ai.prompts import BUSINESS_PLAN_SECTION_KEYS, PROMPTSET_VERSION, resolve_section_keys
from brandforge.billing.presets import is_valid_preset
from brandforge.jobs.contracts import BusinessPlanPayload, JobType, JobValidationError
from brandforge.jobs.producer import get_project_for_org
from brandforge.jobs.store import JobStatusView, job_status_view
from brandforge.orchestrator.guarded import try_enqueue_guarded
from brandforge.orchestrator.locks import GenerationLockManager
from brandforge.storage.models import BusinessPlan, BusinessPlanSection, Job


SECTION_PENDING = "PENDING"
SECTION_OK = "OK"
SECTION_ERROR = "ERROR"


@dataclass(frozen=True)
class SectionView:
    key: str
    position: int
    status: str
    content: Dict[str, Any]


@dataclass(frozen=True)
class BusinessPlanView:
    id: str
    project_id: str
    version: int
    prompt_set_version: str
    sections: List[SectionView]


def _json_dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True)


def get_latest_plan(session: Session, *, project_id: str) -> Optional[BusinessPlan]:
    return session.scalar(
        select(BusinessPlan).where(BusinessPlan.project_id == project_id).order_by(desc(BusinessPlan.version)).limit(1)
    )


def create_next_plan(
    session: Session,
    *,
    org_id: str,
    project_id: str,
    created_by: Optional[str] = None,
    carry_forward: bool = False,
) -> BusinessPlan:
    """Create the next plan version seeded with every template section.

    With ``carry_forward`` the previous version's section contents are copied so
    a partial regeneration keeps the sections it does not touch. Flush only.
    """

    previous = get_latest_plan(session, project_id=project_id)
    current_max = session.scalar(select(func.max(BusinessPlan.version)).where(BusinessPlan.project_id == project_id))
    plan = BusinessPlan(
        org_id=org_id,
        project_id=project_id,
        version=int(current_max or 0) + 1,
        prompt_set_version=PROMPTSET_VERSION,
        created_by=created_by,
    )
    session.add(plan)
    session.flush()

    carried: Dict[str, BusinessPlanSection] = {}
    if carry_forward and previous is not None:
        carried = {
            section.key: section
            for section in session.scalars(
                select(BusinessPlanSection).where(BusinessPlanSection.business_plan_id == previous.id)
            ).all()
        }

    for position, key in enumerate(BUSINESS_PLAN_SECTION_KEYS):
        source = carried.get(key)
        session.add(
            BusinessPlanSection(
                business_plan_id=plan.id,
                key=key,
                position=position,
                content_json=source.content_json if source is not None else "{}",
                status=source.status if source is not None else SECTION_PENDING,
            )
        )
    session.flush()
    return plan


def write_section(
    session: Session,
    *,
    business_plan_id: str,
    key: str,
    content: Dict[str, Any],
    status: str,
) -> None:
    """Overwrite one section's content. Flush only; the caller commits."""

    session.execute(
        update(BusinessPlanSection)
        .where(BusinessPlanSection.business_plan_id == business_plan_id, BusinessPlanSection.key == key)
        .values(content_json=_json_dumps(content), status=status)
        .execution_options(synchronize_session=False)
    )


def plan_view(session: Session, plan: BusinessPlan) -> BusinessPlanView:
    sections = session.scalars(
        select(BusinessPlanSection)
        .where(BusinessPlanSection.business_plan_id == plan.id)
        .order_by(BusinessPlanSection.position.asc())
        .execution_options(populate_existing=True)
    ).all()
    return BusinessPlanView(
        id=plan.id,
        project_id=plan.project_id,
        version=plan.version,
        prompt_set_version=plan.prompt_set_version,
        sections=[
            SectionView(
                key=section.key,
                position=section.position,
                status=section.status,
                content=json.loads(section.content_json or "{}"),
            )
            for section in sections
        ],
    )


def enqueue_business_plan_generation(
    session: Session,
    lock_manager: GenerationLockManager,
    *,
    org_id: str,
    project_id: str,
    requested_by: Optional[str] = None,
    section_keys: Optional[List[str]] = None,
    preset: str = "balanced",
) -> Job:
    normalized_preset = (preset or "").strip().lower()
    if not is_valid_preset(normalized_preset):
        raise JobValidationError(f"Invalid preset: {preset}")
    get_project_for_org(session, org_id=org_id, project_id=project_id)
    requested = [str(key).strip().upper() for key in (section_keys or []) if str(key).strip()]
    selected = resolve_section_keys(requested) if requested else []
    payload = BusinessPlanPayload(requested_by=requested_by, section_keys=selected, preset=normalized_preset)
    return try_enqueue_guarded(
        session,
        lock_manager,
        org_id=org_id,
        resource_id=project_id,
        kind=JobType.BUSINESS_PLAN_GENERATE,
        payload=payload,
    )


def get_generation_status(session: Session, *, org_id: str, project_id: str) -> Optional[JobStatusView]:
    get_project_for_org(session, org_id=org_id, project_id=project_id)
    job = session.scalar(
        select(Job)
        .where(
            Job.org_id == org_id,
            Job.resource_id == project_id,
            Job.type == JobType.BUSINESS_PLAN_GENERATE.value,
        )
        .order_by(desc(Job.created_at), desc(Job.id))
        .limit(1)
        .execution_options(populate_existing=True)
    )
    if job is None:
        return None
    return job_status_view(job)
