"""Trailing-window cap on finished generations per (organization, resource)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import math
from typing import Optional

from sqlalchemy.orm import Session

from brandforge.jobs.contracts import JobType
from brandforge.jobs.store import count_finished_jobs_since, oldest_finished_job_since


@dataclass(frozen=True)
class RateWindowDecision:
    allowed: bool
    limit: int
    used: int
    window_minutes: int
    retry_after_seconds: int


class GenerationRateLimitError(RuntimeError):
    """Raised when the resource already used its generations for the window."""

    code = "generation_rate_limited"

    def __init__(self, decision: RateWindowDecision):
        self.decision = decision
        self.limit = decision.limit
        self.used = decision.used
        self.retry_after_seconds = decision.retry_after_seconds
        super().__init__(
            f"Generation limit reached ({decision.used}/{decision.limit} in {decision.window_minutes} minutes)"
        )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def check_generation_window(
    session: Session,
    *,
    org_id: str,
    resource_id: str,
    job_type: JobType,
    max_generations: int,
    window_minutes: int,
    now: Optional[datetime] = None,
) -> RateWindowDecision:
    """Count DONE/FAILED jobs created inside the window and decide admission.

    When blocked, ``retry_after_seconds`` is the time until the oldest counted
    job leaves the window.
    """

    if max_generations <= 0:
        raise ValueError("max_generations must be positive")
    if window_minutes <= 0:
        raise ValueError("window_minutes must be positive")

    reference_time = _as_utc(now or datetime.now(timezone.utc))
    window = timedelta(minutes=window_minutes)
    since = reference_time - window
    used = count_finished_jobs_since(
        session,
        org_id=org_id,
        resource_id=resource_id,
        job_type=job_type,
        since=since,
    )
    if used < max_generations:
        return RateWindowDecision(
            allowed=True,
            limit=max_generations,
            used=used,
            window_minutes=window_minutes,
            retry_after_seconds=0,
        )

    oldest = oldest_finished_job_since(
        session,
        org_id=org_id,
        resource_id=resource_id,
        job_type=job_type,
        since=since,
    )
    retry_after = window.total_seconds()
    if oldest is not None:
        retry_after = (_as_utc(oldest) + window - reference_time).total_seconds()
    return RateWindowDecision(
        allowed=False,
        limit=max_generations,
        used=used,
        window_minutes=window_minutes,
        retry_after_seconds=max(1, math.ceil(retry_after)),
    )
