"""Token usage and add-on purchase routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from brandforge.api.deps import OrgContext, get_org_context, get_org_session, require_org_role
from brandforge.billing.purchases import confirm_purchase_intent, create_purchase_intent
from brandforge.billing.usage import get_usage_summary, reset_monthly_usage_if_needed
from brandforge.schemas.usage import (
    AddonConfirmRequest,
    AddonConfirmResponse,
    AddonIntentRequest,
    AddonIntentResponse,
    UsageSummaryResponse,
)


router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("", response_model=UsageSummaryResponse)
def usage(
    org: OrgContext = Depends(get_org_context),
    session: Session = Depends(get_org_session),
) -> UsageSummaryResponse:
    reset_monthly_usage_if_needed(session, org_id=org.org_id)
    summary = get_usage_summary(session, org_id=org.org_id)
    return UsageSummaryResponse(
        org_id=summary.org_id,
        plan=summary.plan,
        limit=summary.limit,
        used=summary.used,
        remaining=summary.remaining,
        bonus_tokens=summary.bonus_tokens,
        percent_used=summary.percent_used,
        raw_used=summary.raw_used,
        billed_used=summary.billed_used,
        reset_date=summary.reset_date,
        days_until_reset=summary.days_until_reset,
        can_purchase_more=summary.can_purchase_more,
    )


@router.post("/addon/intent", response_model=AddonIntentResponse)
def addon_intent(
    payload: AddonIntentRequest,
    org: OrgContext = Depends(require_org_role("owner", "admin")),
    session: Session = Depends(get_org_session),
) -> AddonIntentResponse:
    result = create_purchase_intent(
        session,
        org_id=org.org_id,
        idempotency_key=payload.idempotency_key,
        requested_by=org.actor,
    )
    purchase = result.purchase
    return AddonIntentResponse(
        intent_id=purchase.id,
        status=purchase.status,
        tokens=purchase.tokens,
        price_usd_cents=purchase.price_usd_cents,
        created=result.created,
    )


@router.post("/addon/confirm", response_model=AddonConfirmResponse)
def addon_confirm(
    payload: AddonConfirmRequest,
    org: OrgContext = Depends(require_org_role("owner", "admin")),
    session: Session = Depends(get_org_session),
) -> AddonConfirmResponse:
    result = confirm_purchase_intent(
        session,
        org_id=org.org_id,
        intent_id=payload.intent_id,
        confirmed_by=org.actor,
    )
    return AddonConfirmResponse(
        intent_id=result.purchase_id,
        status=result.status,
        tokens=result.tokens,
        already_completed=result.already_completed,
        bonus_tokens=result.bonus_tokens,
    )
