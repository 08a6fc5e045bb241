"""Single-step stage generation: one completion, one output version."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import update

from brandforge.ai.prompts import build_stage_messages, get_stage_definition, parse_stage_output
from brandforge.ai.providers.base import CompletionRequest
from brandforge.billing.presets import billed_tokens, estimate_tokens, max_output_tokens, preset_multiplier
from brandforge.billing.usage import check_budget, record_usage, reset_monthly_usage_if_needed
from brandforge.core.logger import get_logger
from brandforge.generation.context import JobContext
from brandforge.jobs.contracts import JobType, StageGenerationPayload
from brandforge.jobs.store import mark_done, update_progress
from brandforge.outputs.service import create_generated_version
from brandforge.storage.models import Stage


logger = get_logger("brandforge.generation.stage")


def run_stage_job(ctx: JobContext, payload: StageGenerationPayload) -> Dict[str, Any]:
    """Generate one stage output.

    The output version, the usage ledger entry, the stage status and the DONE
    transition commit together; any failure before that leaves no version.
    """

    session = ctx.session
    definition = get_stage_definition(payload.stage_key)
    is_regenerate = ctx.job_type == JobType.REGENERATE_OUTPUT.value

    reset_monthly_usage_if_needed(session, org_id=ctx.org_id)
    check_budget(
        session,
        org_id=ctx.org_id,
        estimated_tokens=estimate_tokens(payload.stage_key, payload.preset),
    )
    update_progress(
        session,
        job_id=ctx.job_id,
        progress=20,
        result={"message": f"Generating {payload.stage_key}", "stageKey": payload.stage_key},
    )

    request = CompletionRequest(
        messages=build_stage_messages(
            stage_key=payload.stage_key,
            project_name=payload.project_name,
            is_regenerate=is_regenerate,
        ),
        max_tokens=max_output_tokens(payload.stage_key, payload.preset),
        temperature=ctx.settings.stage_temperature,
    )
    outcome = ctx.generator.generate(request)
    completion = outcome.result
    content = parse_stage_output(completion.content)
    billed = billed_tokens(completion.total_tokens, payload.preset)

    metadata = {
        "latencyMs": outcome.latency_ms,
        "tokensIn": completion.tokens_in,
        "tokensOut": completion.tokens_out,
        "totalTokens": completion.total_tokens,
        "preset": payload.preset,
        "multiplier": preset_multiplier(payload.preset),
        "billedTokens": billed,
        "parsed": "raw" not in content,
    }

    try:
        version = create_generated_version(
            session,
            output_id=payload.output_id,
            content=content,
            provider=completion.provider,
            model=completion.model,
            prompt_set_version=definition.prompt_set_version,
            metadata=metadata,
            created_by=payload.requested_by,
        )
        record_usage(
            session,
            org_id=ctx.org_id,
            tokens_in=completion.tokens_in,
            tokens_out=completion.tokens_out,
            preset=payload.preset,
            provider=completion.provider,
            model=completion.model,
            project_id=ctx.project_id,
            stage_key=payload.stage_key,
            job_id=ctx.job_id,
        )
        session.execute(
            update(Stage)
            .where(Stage.id == payload.stage_id)
            .values(status="REGENERATED" if is_regenerate else "GENERATED", updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        result = {
            "outputId": payload.output_id,
            "versionNumber": version.version,
            "stageKey": payload.stage_key,
            "provider": completion.provider,
            "latencyMs": outcome.latency_ms,
            "billedTokens": billed,
            "message": "Completed",
        }
        if not mark_done(session, job_id=ctx.job_id, result=result, commit=False):
            raise RuntimeError("job_not_processing")
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info(
        "stage_generated",
        job_id=ctx.job_id,
        stage_key=payload.stage_key,
        output_id=payload.output_id,
        version=version.version,
        latency_ms=outcome.latency_ms,
        billed_tokens=billed,
    )
    return result
