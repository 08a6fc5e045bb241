"""Multi-section business plan generation with per-section failure isolation."""

from __future__ import annotations

from datetime import datetime, timezone
import math
import random
from typing import Any, Dict, List, Optional

from brandforge.ai.prompts import PROMPTSET_VERSION, build_business_plan_messages, resolve_section_keys
from brandforge.ai.providers.base import CompletionRequest
from brandforge.billing.usage import check_budget, record_usage, reset_monthly_usage_if_needed
from brandforge.business_plan.service import SECTION_ERROR, SECTION_OK, create_next_plan, write_section
from brandforge.core.logger import get_logger
from brandforge.core.metrics import record_section_failure
from brandforge.generation.context import JobContext
from brandforge.generation.section_generator import error_code, is_retryable_error
from brandforge.jobs.contracts import BusinessPlanPayload
from brandforge.jobs.store import mark_done, update_progress
from brandforge.storage.models import Project


logger = get_logger("brandforge.generation.business_plan")

SECTION_FAILED_MARKER = "generation_failed"


def section_progress(index: int, total: int) -> int:
    """Progress after section ``index`` (0-based): 20% setup, 70% sections, rest for finalization."""

    return math.floor(20 + 70 * (index + 1) / total)


def retry_backoff_seconds(retry: int, *, base_ms: int, jitter_ms: int, rng: Optional[random.Random] = None) -> float:
    jitter = (rng or random).uniform(0, jitter_ms) if jitter_ms > 0 else 0.0
    return (base_ms * (2 ** (retry - 1)) + jitter) / 1000.0


def _status_payload(
    message: str,
    *,
    plan_version: int,
    business_plan_id: str,
    success_count: int,
    failure_count: int,
) -> Dict[str, Any]:
    return {
        "message": message,
        "latestVersion": plan_version,
        "businessPlanId": business_plan_id,
        "successCount": success_count,
        "failureCount": failure_count,
    }


def run_business_plan_job(ctx: JobContext, payload: BusinessPlanPayload) -> Dict[str, Any]:
    """Create the next plan version and fill its sections one by one.

    A failing section gets an error marker and the loop moves on; only a failure
    outside the section loop (plan creation, final write) escapes to the worker.
    The job ends DONE even when every section failed.
    """

    session = ctx.session
    settings = ctx.settings
    section_keys: List[str] = resolve_section_keys(payload.section_keys)
    total = len(section_keys)
    max_retries = settings.business_plan_section_retries

    reset_monthly_usage_if_needed(session, org_id=ctx.org_id)
    update_progress(session, job_id=ctx.job_id, progress=10, result={"message": "Creating snapshot"})

    project = session.get(Project, ctx.project_id) if ctx.project_id else None
    if project is None:
        raise LookupError(f"Project not found for job {ctx.job_id}")
    try:
        plan = create_next_plan(
            session,
            org_id=ctx.org_id,
            project_id=project.id,
            created_by=payload.requested_by,
            carry_forward=bool(payload.section_keys),
        )
        session.commit()
    except Exception:
        session.rollback()
        raise

    plan_id = plan.id
    plan_version = plan.version
    update_progress(
        session,
        job_id=ctx.job_id,
        progress=20,
        result=_status_payload(
            "Populating sections",
            plan_version=plan_version,
            business_plan_id=plan_id,
            success_count=0,
            failure_count=0,
        ),
    )

    success_count = 0
    failure_count = 0
    per_section_status: Dict[str, str] = {}

    for index, key in enumerate(section_keys):
        progress = section_progress(index, total)
        retries = 0
        while True:
            suffix = f" (retry {retries}/{max_retries})" if retries > 0 else ""
            update_progress(
                session,
                job_id=ctx.job_id,
                progress=progress,
                result=_status_payload(
                    f"Generating {key}{suffix} ({index + 1}/{total})",
                    plan_version=plan_version,
                    business_plan_id=plan_id,
                    success_count=success_count,
                    failure_count=failure_count,
                ),
            )
            try:
                check_budget(session, org_id=ctx.org_id, estimated_tokens=settings.business_plan_max_tokens)
                outcome = ctx.generator.generate(
                    CompletionRequest(
                        messages=build_business_plan_messages(
                            section_key=key,
                            project_name=project.name,
                            project_description=project.description or "",
                            plan_version=plan_version,
                        ),
                        model=settings.business_plan_model or None,
                        max_tokens=settings.business_plan_max_tokens,
                        temperature=settings.business_plan_temperature,
                    )
                )
                completion = outcome.result
                write_section(
                    session,
                    business_plan_id=plan_id,
                    key=key,
                    content={
                        "text": completion.content.strip(),
                        "generatedAt": datetime.now(timezone.utc).isoformat(),
                        "promptVersion": PROMPTSET_VERSION,
                        "model": completion.model,
                        "provider": completion.provider,
                        "latencyMs": outcome.latency_ms,
                    },
                    status=SECTION_OK,
                )
                record_usage(
                    session,
                    org_id=ctx.org_id,
                    tokens_in=completion.tokens_in,
                    tokens_out=completion.tokens_out,
                    preset=payload.preset,
                    provider=completion.provider,
                    model=completion.model,
                    project_id=project.id,
                    stage_key=f"business_plan:{key}",
                    job_id=ctx.job_id,
                )
                session.commit()
            except Exception as exc:
                session.rollback()
                if is_retryable_error(exc) and retries < max_retries:
                    retries += 1
                    delay = retry_backoff_seconds(
                        retries,
                        base_ms=settings.business_plan_retry_base_ms,
                        jitter_ms=settings.business_plan_retry_jitter_ms,
                    )
                    logger.info(
                        "business_plan_section_retry",
                        job_id=ctx.job_id,
                        section=key,
                        retry=retries,
                        delay_seconds=round(delay, 3),
                        reason=error_code(exc),
                    )
                    ctx.sleep(delay)
                    continue

                reason = error_code(exc)
                failure_count += 1
                per_section_status[key] = "error"
                write_section(
                    session,
                    business_plan_id=plan_id,
                    key=key,
                    content={"error": True, "message": SECTION_FAILED_MARKER, "reason": reason},
                    status=SECTION_ERROR,
                )
                session.commit()
                record_section_failure(section_key=key, reason=reason)
                logger.warning(
                    "business_plan_section_failed",
                    job_id=ctx.job_id,
                    section=key,
                    reason=reason,
                    error=str(exc)[:240],
                )
                break

            success_count += 1
            per_section_status[key] = "ok"
            break

    result = {
        "message": "Completed",
        "latestVersion": plan_version,
        "businessPlanId": plan_id,
        "successCount": success_count,
        "failureCount": failure_count,
        "perSectionStatus": per_section_status,
    }
    if not mark_done(session, job_id=ctx.job_id, result=result):
        raise RuntimeError("job_not_processing")
    logger.info(
        "business_plan_generated",
        job_id=ctx.job_id,
        business_plan_id=plan_id,
        version=plan_version,
        success_count=success_count,
        failure_count=failure_count,
    )
    return result
