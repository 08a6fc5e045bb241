"""Token budget checks and metered usage recording per organization."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from brandforge.billing.plans import plan_can_purchase_addons
from brandforge.billing.presets import billed_tokens, normalize_preset, preset_multiplier
from brandforge.core.config import get_settings
from brandforge.core.logger import get_logger
from brandforge.core.metrics import record_tokens_billed
from brandforge.storage.models import Organization, UsageEntry


logger = get_logger("brandforge.billing.usage")


class OrganizationNotFoundError(LookupError):
    code = "not_found"


@dataclass(frozen=True)
class TokenBudget:
    allowed: bool
    org_id: str
    plan: str
    requested: int
    remaining: int
    limit: int
    used: int
    bonus_tokens: int
    can_purchase_more: bool
    suggest_upgrade: bool
    reset_date: datetime
    days_until_reset: int


class BudgetExceededError(RuntimeError):
    """Raised when the organization cannot afford the estimated tokens."""

    code = "budget_exceeded"

    def __init__(self, budget: TokenBudget):
        self.budget = budget
        super().__init__(
            f"Token budget exceeded for org={budget.org_id} "
            f"(requested={budget.requested}, remaining={budget.remaining}, plan={budget.plan})"
        )


@dataclass(frozen=True)
class UsageSummary:
    org_id: str
    plan: str
    limit: int
    used: int
    remaining: int
    bonus_tokens: int
    percent_used: float
    raw_used: int
    billed_used: int
    reset_date: datetime
    days_until_reset: int
    can_purchase_more: bool


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _get_organization(session: Session, org_id: str) -> Organization:
    organization = session.get(Organization, org_id, populate_existing=True)
    if organization is None:
        raise OrganizationNotFoundError(f"Organization not found: {org_id}")
    return organization


def _next_reset(organization: Organization) -> datetime:
    cycle = timedelta(days=get_settings().token_reset_cycle_days)
    return _as_utc(organization.token_reset_date) + cycle


def _days_until(target: datetime, now: datetime) -> int:
    seconds = (target - now).total_seconds()
    if seconds <= 0:
        return 0
    return int(-(-seconds // 86400))


def remaining_tokens(organization: Organization) -> int:
    available = int(organization.monthly_token_limit) + int(organization.bonus_tokens)
    return available - int(organization.monthly_tokens_used)


def check_budget(
    session: Session,
    *,
    org_id: str,
    estimated_tokens: int,
    now: Optional[datetime] = None,
) -> TokenBudget:
    """Return the budget decision or raise ``BudgetExceededError``. Never mutates."""

    if estimated_tokens < 0:
        raise ValueError("estimated_tokens must be zero or positive")

    reference_time = now or _now_utc()
    organization = _get_organization(session, org_id)
    remaining = remaining_tokens(organization)
    allowed = estimated_tokens <= remaining
    reset_date = _next_reset(organization)
    budget = TokenBudget(
        allowed=allowed,
        org_id=org_id,
        plan=organization.plan,
        requested=estimated_tokens,
        remaining=remaining,
        limit=int(organization.monthly_token_limit) + int(organization.bonus_tokens),
        used=int(organization.monthly_tokens_used),
        bonus_tokens=int(organization.bonus_tokens),
        can_purchase_more=plan_can_purchase_addons(organization.plan),
        suggest_upgrade=not allowed and organization.plan.upper() == "BASIC",
        reset_date=reset_date,
        days_until_reset=_days_until(reset_date, reference_time),
    )
    if not allowed:
        logger.info(
            "token_budget_exceeded",
            org_id=org_id,
            requested=estimated_tokens,
            remaining=remaining,
            plan=organization.plan,
        )
        raise BudgetExceededError(budget)
    return budget


def record_usage(
    session: Session,
    *,
    org_id: str,
    tokens_in: int,
    tokens_out: int,
    preset: str,
    provider: str,
    model: str,
    project_id: Optional[str] = None,
    stage_key: Optional[str] = None,
    job_id: Optional[str] = None,
) -> UsageEntry:
    """Append one ledger entry and increment the budget counter by billed tokens.

    Flush only: the caller commits together with the effect being metered.
    """

    if tokens_in < 0 or tokens_out < 0:
        raise ValueError("Token counts must be zero or positive")

    normalized_preset = normalize_preset(preset)
    total = int(tokens_in) + int(tokens_out)
    billed = billed_tokens(total, normalized_preset)

    _get_organization(session, org_id)
    session.execute(
        update(Organization)
        .where(Organization.id == org_id)
        .values(monthly_tokens_used=Organization.monthly_tokens_used + billed)
        .execution_options(synchronize_session=False)
    )
    entry = UsageEntry(
        org_id=org_id,
        project_id=project_id,
        job_id=job_id,
        stage_key=stage_key,
        provider=provider,
        model=model,
        preset=normalized_preset,
        multiplier=f"{preset_multiplier(normalized_preset):g}",
        tokens_in=int(tokens_in),
        tokens_out=int(tokens_out),
        total_tokens=total,
        billed_tokens=billed,
    )
    session.add(entry)
    session.flush()
    record_tokens_billed(preset=normalized_preset, tokens=billed)
    logger.info(
        "usage_recorded",
        org_id=org_id,
        job_id=job_id,
        stage_key=stage_key,
        raw_tokens=total,
        billed_tokens=billed,
        preset=normalized_preset,
    )
    return entry


def reset_monthly_usage_if_needed(
    session: Session,
    *,
    org_id: str,
    now: Optional[datetime] = None,
) -> bool:
    """Start a new usage cycle once ``token_reset_cycle_days`` have elapsed.

    Usage beyond the monthly limit in the closing cycle was drawn from bonus
    tokens, so that overage is deducted from ``bonus_tokens`` here.
    """

    reference_time = now or _now_utc()
    organization = _get_organization(session, org_id)
    next_reset = _next_reset(organization)
    if reference_time < next_reset:
        return False

    overage = max(0, int(organization.monthly_tokens_used) - int(organization.monthly_token_limit))
    cycle = timedelta(days=get_settings().token_reset_cycle_days)
    # Inactive for more than one full cycle: restart the cycle from now.
    effective_reset = next_reset if next_reset + cycle > reference_time else reference_time
    try:
        organization.bonus_tokens = max(0, int(organization.bonus_tokens) - overage)
        organization.monthly_tokens_used = 0
        organization.token_reset_date = effective_reset
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info(
        "usage_cycle_reset",
        org_id=org_id,
        bonus_consumed=overage,
        reset_date=effective_reset.isoformat(),
    )
    return True


def get_usage_summary(
    session: Session,
    *,
    org_id: str,
    now: Optional[datetime] = None,
) -> UsageSummary:
    reference_time = now or _now_utc()
    organization = _get_organization(session, org_id)
    totals = session.execute(
        select(
            func.coalesce(func.sum(UsageEntry.total_tokens), 0),
            func.coalesce(func.sum(UsageEntry.billed_tokens), 0),
        ).where(
            UsageEntry.org_id == org_id,
            UsageEntry.created_at >= _as_utc(organization.token_reset_date),
        )
    ).one()
    limit = int(organization.monthly_token_limit)
    used = int(organization.monthly_tokens_used)
    reset_date = _next_reset(organization)
    return UsageSummary(
        org_id=org_id,
        plan=organization.plan,
        limit=limit,
        used=used,
        remaining=remaining_tokens(organization),
        bonus_tokens=int(organization.bonus_tokens),
        percent_used=round((used / limit) * 100, 1) if limit > 0 else 0.0,
        raw_used=int(totals[0] or 0),
        billed_used=int(totals[1] or 0),
        reset_date=reset_date,
        days_until_reset=_days_until(reset_date, reference_time),
        can_purchase_more=plan_can_purchase_addons(organization.plan),
    )
