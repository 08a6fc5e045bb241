from __future__ import annotations

from pathlib import Path


MIGRATION_PATH = Path(__file__).resolve().parents[1] / "migrations" / "versions" / "20261019_0001_generation_core.py"


def test_generation_migration_declares_tables_and_constraints() -> None:
    source = MIGRATION_PATH.read_text(encoding="utf-8")

    for table in (
        "organizations",
        "projects",
        "stages",
        "jobs",
        "outputs",
        "output_versions",
        "usage_entries",
        "token_purchases",
        "business_plans",
        "business_plan_sections",
        "audit_logs",
        "worker_heartbeats",
    ):
        assert f'"{table}"' in source

    assert "ck_jobs_progress_range" in source
    assert "ck_jobs_status" in source
    assert "ix_jobs_status_created_at" in source
    assert "ix_jobs_org_resource_type_status" in source
    assert "uq_output_versions_output_version" in source
    assert "uq_token_purchases_idempotency_key" in source
    assert "uq_business_plan_sections_plan_key" in source


def test_generation_migration_enforces_org_isolation() -> None:
    source = MIGRATION_PATH.read_text(encoding="utf-8")

    assert "ENABLE ROW LEVEL SECURITY" in source
    assert "FORCE ROW LEVEL SECURITY" in source
    assert "app_current_org_id" in source
    assert "app.current_org_id" in source
    assert 'down_revision = None' in source
