from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from brandforge.billing.plans import load_plans, plan_can_purchase_addons, plan_token_limit
from brandforge.billing.presets import billed_tokens, estimate_tokens, max_output_tokens, normalize_preset
from brandforge.billing.usage import (
    BudgetExceededError,
    OrganizationNotFoundError,
    check_budget,
    get_usage_summary,
    record_usage,
    reset_monthly_usage_if_needed,
)
from brandforge.storage.models import Organization, UsageEntry
from tests.conftest import build_sqlite_session_factory, configure_test_env, create_org, reset_test_env


NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def test_billed_tokens_round_up_by_preset_multiplier() -> None:
    assert billed_tokens(151, "fast") == 151
    assert billed_tokens(151, "balanced") == 227
    assert billed_tokens(151, "quality") == 302
    assert billed_tokens(0, "quality") == 0
    assert estimate_tokens("naming", "balanced") == 1150
    assert estimate_tokens("manifesto", "fast") == 650
    assert max_output_tokens("voice", "quality") == 6000
    with pytest.raises(ValueError):
        normalize_preset("turbo")


def test_plans_are_loaded_from_yaml(monkeypatch) -> None:
    configure_test_env(monkeypatch)

    plans = load_plans()

    assert set(plans) == {"BASIC", "MID", "PRO"}
    assert plan_token_limit("mid") == 500_000
    assert plan_can_purchase_addons("BASIC") is False
    assert plan_can_purchase_addons("PRO") is True
    with pytest.raises(ValueError):
        plan_token_limit("ENTERPRISE")
    reset_test_env()


def test_record_usage_appends_entry_and_increments_counter(monkeypatch) -> None:
    configure_test_env(monkeypatch)
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        org = create_org(session)

        entry = record_usage(
            session,
            org_id=org.id,
            tokens_in=100,
            tokens_out=51,
            preset="Balanced",
            provider="openai",
            model="gpt-4o-mini",
            stage_key="naming",
            job_id="job-1",
        )
        session.commit()

        assert entry.total_tokens == 151
        assert entry.billed_tokens == 227
        assert entry.multiplier == "1.5"
        assert entry.preset == "balanced"
        assert session.get(Organization, org.id, populate_existing=True).monthly_tokens_used == 227

        with pytest.raises(ValueError):
            record_usage(
                session,
                org_id=org.id,
                tokens_in=-1,
                tokens_out=0,
                preset="fast",
                provider="openai",
                model="gpt-4o-mini",
            )
    reset_test_env()


def test_check_budget_counts_bonus_tokens_and_never_mutates(monkeypatch) -> None:
    configure_test_env(monkeypatch)
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        org = create_org(session, plan="MID", used=500_000, bonus=2_000, reset_date=NOW - timedelta(days=10))

        budget = check_budget(session, org_id=org.id, estimated_tokens=1_500, now=NOW)
        assert budget.allowed is True
        assert budget.remaining == 2_000
        assert budget.days_until_reset == 20

        with pytest.raises(BudgetExceededError) as exc_info:
            check_budget(session, org_id=org.id, estimated_tokens=2_001, now=NOW)
        assert exc_info.value.budget.can_purchase_more is True
        assert exc_info.value.budget.suggest_upgrade is False

        refreshed = session.get(Organization, org.id, populate_existing=True)
        assert refreshed.monthly_tokens_used == 500_000
        assert refreshed.bonus_tokens == 2_000

        with pytest.raises(OrganizationNotFoundError):
            check_budget(session, org_id="missing-org", estimated_tokens=1)
    reset_test_env()


def test_reset_deducts_overage_from_bonus_tokens(monkeypatch) -> None:
    configure_test_env(monkeypatch)
    session_factory = build_sqlite_session_factory()
    cycle_start = NOW - timedelta(days=31)
    with session_factory() as session:
        org = create_org(session, plan="BASIC", used=120_000, bonus=50_000, reset_date=cycle_start)

        assert reset_monthly_usage_if_needed(session, org_id=org.id, now=NOW) is True

        refreshed = session.get(Organization, org.id, populate_existing=True)
        assert refreshed.monthly_tokens_used == 0
        assert refreshed.bonus_tokens == 30_000
        reset_at = refreshed.token_reset_date.replace(tzinfo=timezone.utc)
        assert reset_at == cycle_start + timedelta(days=30)

        assert reset_monthly_usage_if_needed(session, org_id=org.id, now=NOW) is False
    reset_test_env()


def test_reset_after_long_inactivity_restarts_cycle_from_now(monkeypatch) -> None:
    configure_test_env(monkeypatch)
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        org = create_org(session, plan="MID", used=10, reset_date=NOW - timedelta(days=95))

        assert reset_monthly_usage_if_needed(session, org_id=org.id, now=NOW) is True

        refreshed = session.get(Organization, org.id, populate_existing=True)
        assert refreshed.token_reset_date.replace(tzinfo=timezone.utc) == NOW
        assert refreshed.bonus_tokens == 0
    reset_test_env()


def test_usage_summary_reports_raw_and_billed_totals(monkeypatch) -> None:
    configure_test_env(monkeypatch)
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        org = create_org(session, plan="BASIC", reset_date=datetime.now(timezone.utc) - timedelta(days=1))
        for preset in ("fast", "quality"):
            record_usage(
                session,
                org_id=org.id,
                tokens_in=600,
                tokens_out=400,
                preset=preset,
                provider="mock",
                model="mock-v1",
            )
        session.commit()

        summary = get_usage_summary(session, org_id=org.id)

        assert summary.raw_used == 2_000
        assert summary.billed_used == 3_000
        assert summary.used == 3_000
        assert summary.remaining == 97_000
        assert summary.percent_used == 3.0
        assert summary.can_purchase_more is False
        assert len(session.scalars(select(UsageEntry)).all()) == 2
    reset_test_env()
