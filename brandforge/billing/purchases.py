"""Bonus-token add-on purchases with idempotent intent creation and confirmation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from brandforge.billing.plans import plan_can_purchase_addons
from brandforge.core.config import get_settings
from brandforge.core.logger import get_logger
from brandforge.storage.audit import record_audit_event
from brandforge.storage.models import Organization, TokenPurchase


logger = get_logger("brandforge.billing.purchases")

PURCHASE_PENDING = "PENDING"
PURCHASE_COMPLETED = "COMPLETED"


class PurchaseIntentError(RuntimeError):
    """Raised when an intent cannot be created or confirmed."""

    code = "purchase_invalid"


class AddonNotAllowedError(PurchaseIntentError):
    code = "addon_not_allowed"


class PurchaseNotFoundError(LookupError):
    code = "not_found"


class IdempotencyConflictError(RuntimeError):
    """Raised when an idempotency key is already bound to another organization."""

    code = "idempotency_conflict"


@dataclass(frozen=True)
class PurchaseIntentResult:
    purchase: TokenPurchase
    created: bool


@dataclass(frozen=True)
class PurchaseConfirmResult:
    purchase_id: str
    status: str
    tokens: int
    already_completed: bool
    bonus_tokens: int


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _find_by_key(session: Session, idempotency_key: str) -> Optional[TokenPurchase]:
    return session.scalar(select(TokenPurchase).where(TokenPurchase.idempotency_key == idempotency_key))


def _existing_intent(session: Session, *, org_id: str, idempotency_key: str) -> Optional[TokenPurchase]:
    existing = _find_by_key(session, idempotency_key)
    if existing is None:
        return None
    if existing.org_id != org_id:
        raise IdempotencyConflictError("Idempotency key already used by another organization")
    return existing


def create_purchase_intent(
    session: Session,
    *,
    org_id: str,
    idempotency_key: str,
    requested_by: Optional[str] = None,
) -> PurchaseIntentResult:
    key = (idempotency_key or "").strip()
    if not key:
        raise PurchaseIntentError("idempotency_key is required")

    organization = session.get(Organization, org_id)
    if organization is None:
        raise PurchaseNotFoundError(f"Organization not found: {org_id}")
    if not plan_can_purchase_addons(organization.plan):
        raise AddonNotAllowedError(f"Plan {organization.plan} cannot purchase add-ons")

    existing = _existing_intent(session, org_id=org_id, idempotency_key=key)
    if existing is not None:
        return PurchaseIntentResult(purchase=existing, created=False)

    settings = get_settings()
    purchase = TokenPurchase(
        org_id=org_id,
        idempotency_key=key,
        tokens=settings.addon_tokens,
        price_usd_cents=settings.addon_price_usd_cents,
        status=PURCHASE_PENDING,
        requested_by=requested_by,
    )
    session.add(purchase)
    try:
        session.flush()
        record_audit_event(
            session,
            org_id=org_id,
            actor=requested_by,
            action="ADDON_INTENT_CREATED",
            target_type="token_purchase",
            target_id=purchase.id,
            details={"tokens": purchase.tokens, "price_usd_cents": purchase.price_usd_cents},
        )
        session.commit()
    except IntegrityError:
        session.rollback()
        raced = _existing_intent(session, org_id=org_id, idempotency_key=key)
        if raced is None:
            raise
        return PurchaseIntentResult(purchase=raced, created=False)

    logger.info("addon_intent_created", org_id=org_id, purchase_id=purchase.id, tokens=purchase.tokens)
    return PurchaseIntentResult(purchase=purchase, created=True)


def confirm_purchase_intent(
    session: Session,
    *,
    org_id: str,
    intent_id: str,
    confirmed_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PurchaseConfirmResult:
    """Credit bonus tokens exactly once for a PENDING intent.

    The PENDING -> COMPLETED flip is a conditional UPDATE so a concurrent or
    repeated confirmation observes COMPLETED and becomes a no-op.
    """

    purchase = session.get(TokenPurchase, intent_id, populate_existing=True)
    if purchase is None or purchase.org_id != org_id:
        raise PurchaseNotFoundError(f"Purchase intent not found: {intent_id}")

    try:
        flipped = session.execute(
            update(TokenPurchase)
            .where(TokenPurchase.id == intent_id, TokenPurchase.status == PURCHASE_PENDING)
            .values(status=PURCHASE_COMPLETED, completed_at=now or _now_utc(), confirmed_by=confirmed_by)
            .execution_options(synchronize_session=False)
        )
        if int(flipped.rowcount or 0) != 1:
            session.rollback()
            current = session.get(TokenPurchase, intent_id, populate_existing=True)
            organization = session.get(Organization, org_id, populate_existing=True)
            if current is not None and current.status == PURCHASE_COMPLETED:
                return PurchaseConfirmResult(
                    purchase_id=intent_id,
                    status=PURCHASE_COMPLETED,
                    tokens=current.tokens,
                    already_completed=True,
                    bonus_tokens=int(organization.bonus_tokens) if organization is not None else 0,
                )
            status = current.status if current is not None else "missing"
            raise PurchaseIntentError(f"Invalid purchase status: {status}")

        session.execute(
            update(Organization)
            .where(Organization.id == org_id)
            .values(bonus_tokens=Organization.bonus_tokens + purchase.tokens)
            .execution_options(synchronize_session=False)
        )
        organization = session.get(Organization, org_id, populate_existing=True)
        record_audit_event(
            session,
            org_id=org_id,
            actor=confirmed_by,
            action="ADDON_PURCHASED",
            target_type="token_purchase",
            target_id=intent_id,
            details={"tokens": purchase.tokens, "new_balance": int(organization.bonus_tokens)},
        )
        session.commit()
    except (PurchaseIntentError, PurchaseNotFoundError):
        raise
    except Exception:
        session.rollback()
        raise

    logger.info(
        "addon_purchased",
        org_id=org_id,
        purchase_id=intent_id,
        tokens=purchase.tokens,
        bonus_tokens=int(organization.bonus_tokens),
    )
    return PurchaseConfirmResult(
        purchase_id=intent_id,
        status=PURCHASE_COMPLETED,
        tokens=purchase.tokens,
        already_completed=False,
        bonus_tokens=int(organization.bonus_tokens),
    )
