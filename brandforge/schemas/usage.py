"""Schemas for token usage and add-on purchase endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class UsageSummaryResponse(BaseModel):
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


class AddonIntentRequest(BaseModel):
    idempotency_key: str = Field(min_length=8, max_length=80)


class AddonIntentResponse(BaseModel):
    intent_id: str
    status: str
    tokens: int
    price_usd_cents: int
    created: bool


class AddonConfirmRequest(BaseModel):
    intent_id: str = Field(min_length=1, max_length=36)


class AddonConfirmResponse(BaseModel):
    intent_id: str
    status: str
    tokens: int
    already_completed: bool
    bonus_tokens: int
