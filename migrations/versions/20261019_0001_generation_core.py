"""generation core: jobs, outputs, usage metering, business plans

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


ORG_SCOPED_TABLES = [
    "projects",
    "jobs",
    "outputs",
    "usage_entries",
    "token_purchases",
    "business_plans",
    "audit_logs",
]


def _is_postgresql() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("plan", sa.String(length=16), nullable=False, server_default="BASIC"),
        sa.Column("monthly_token_limit", sa.Integer(), nullable=False, server_default="100000"),
        sa.Column("monthly_tokens_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bonus_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "token_reset_date",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "projects",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="ACTIVE"),
        _created_at(),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_projects_org_created_at", "projects", ["org_id", "created_at"], unique=False)

    op.create_table(
        "stages",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("project_id", sa.String(length=36), nullable=False),
        sa.Column("stage_key", sa.String(length=40), nullable=False),
        sa.Column("name", sa.String(length=80), nullable=False),
        sa.Column("module", sa.String(length=8), nullable=False),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        _created_at(),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("project_id", "stage_key", name="uq_stages_project_stage_key"),
    )

    op.create_table(
        "jobs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("project_id", sa.String(length=36), nullable=True),
        sa.Column("resource_id", sa.String(length=36), nullable=True),
        sa.Column("stage_key", sa.String(length=40), nullable=True),
        sa.Column("type", sa.String(length=40), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="QUEUED"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        _created_at(),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(length=80), nullable=True),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_jobs_progress_range"),
        sa.CheckConstraint(
            "status IN ('QUEUED', 'PROCESSING', 'DONE', 'FAILED')",
            name="ck_jobs_status",
        ),
    )
    op.create_index("ix_jobs_status_created_at", "jobs", ["status", "created_at"], unique=False)
    op.create_index(
        "ix_jobs_org_resource_type_status",
        "jobs",
        ["org_id", "resource_id", "type", "status"],
        unique=False,
    )
    op.create_index("ix_jobs_org_created_at", "jobs", ["org_id", "created_at"], unique=False)

    op.create_table(
        "outputs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("project_id", sa.String(length=36), nullable=False),
        sa.Column("stage_id", sa.String(length=36), nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["stage_id"], ["stages.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("project_id", "stage_id", name="uq_outputs_project_stage"),
    )

    op.create_table(
        "output_versions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("output_id", sa.String(length=36), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("content_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("provider", sa.String(length=32), nullable=True),
        sa.Column("model", sa.String(length=80), nullable=True),
        sa.Column("prompt_set_version", sa.String(length=32), nullable=True),
        sa.Column("type", sa.String(length=16), nullable=False, server_default="GENERATED"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="GENERATED"),
        sa.Column("metadata_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_by", sa.String(length=80), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["output_id"], ["outputs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("output_id", "version", name="uq_output_versions_output_version"),
    )
    op.create_index(
        "ix_output_versions_output_status",
        "output_versions",
        ["output_id", "status"],
        unique=False,
    )

    op.create_table(
        "usage_entries",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("project_id", sa.String(length=36), nullable=True),
        sa.Column("job_id", sa.String(length=36), nullable=True),
        sa.Column("stage_key", sa.String(length=40), nullable=True),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("model", sa.String(length=80), nullable=False),
        sa.Column("preset", sa.String(length=16), nullable=False, server_default="balanced"),
        sa.Column("multiplier", sa.String(length=16), nullable=False, server_default="1"),
        sa.Column("tokens_in", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tokens_out", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("billed_tokens", sa.Integer(), nullable=False, server_default="0"),
        _created_at(),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_usage_entries_org_created_at", "usage_entries", ["org_id", "created_at"], unique=False)

    op.create_table(
        "token_purchases",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("idempotency_key", sa.String(length=120), nullable=False),
        sa.Column("tokens", sa.Integer(), nullable=False),
        sa.Column("price_usd_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.Column("requested_by", sa.String(length=80), nullable=True),
        sa.Column("confirmed_by", sa.String(length=80), nullable=True),
        _created_at(),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key", name="uq_token_purchases_idempotency_key"),
    )
    op.create_index(
        "ix_token_purchases_org_created_at",
        "token_purchases",
        ["org_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "business_plans",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("project_id", sa.String(length=36), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("prompt_set_version", sa.String(length=32), nullable=False),
        sa.Column("created_by", sa.String(length=80), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("project_id", "version", name="uq_business_plans_project_version"),
    )

    op.create_table(
        "business_plan_sections",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("business_plan_id", sa.String(length=36), nullable=False),
        sa.Column("key", sa.String(length=40), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("content_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["business_plan_id"], ["business_plans.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("business_plan_id", "key", name="uq_business_plan_sections_plan_key"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("actor", sa.String(length=80), nullable=True),
        sa.Column("action", sa.String(length=48), nullable=False),
        sa.Column("target_type", sa.String(length=32), nullable=False),
        sa.Column("target_id", sa.String(length=36), nullable=False),
        sa.Column("details_json", sa.Text(), nullable=False, server_default="{}"),
        _created_at(),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_org_created_at", "audit_logs", ["org_id", "created_at"], unique=False)

    op.create_table(
        "worker_heartbeats",
        sa.Column("worker_id", sa.String(length=80), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="running"),
        sa.Column(
            "last_seen_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("jobs_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("worker_id"),
    )

    if _is_postgresql():
        op.execute(
            """
            CREATE OR REPLACE FUNCTION app_current_org_id()
            RETURNS text
            LANGUAGE sql
            STABLE
            AS $$
                SELECT NULLIF(current_setting('app.current_org_id', true), '');
            $$;
            """
        )

        # No org context (worker claim loop, operator sweeps) sees every row.
        op.execute("ALTER TABLE organizations ENABLE ROW LEVEL SECURITY;")
        op.execute("ALTER TABLE organizations FORCE ROW LEVEL SECURITY;")
        op.execute(
            """
            CREATE POLICY organizations_isolation_policy ON organizations
            USING (app_current_org_id() IS NULL OR id = app_current_org_id())
            WITH CHECK (app_current_org_id() IS NULL OR id = app_current_org_id());
            """
        )

        for table_name in ORG_SCOPED_TABLES:
            op.execute(f"ALTER TABLE {table_name} ENABLE ROW LEVEL SECURITY;")
            op.execute(f"ALTER TABLE {table_name} FORCE ROW LEVEL SECURITY;")
            op.execute(
                f"""
                CREATE POLICY {table_name}_isolation_policy ON {table_name}
                USING (app_current_org_id() IS NULL OR org_id = app_current_org_id())
                WITH CHECK (app_current_org_id() IS NULL OR org_id = app_current_org_id());
                """
            )


def downgrade() -> None:
    if _is_postgresql():
        for table_name in reversed(ORG_SCOPED_TABLES):
            op.execute(f"DROP POLICY IF EXISTS {table_name}_isolation_policy ON {table_name};")
        op.execute("DROP POLICY IF EXISTS organizations_isolation_policy ON organizations;")
        op.execute("DROP FUNCTION IF EXISTS app_current_org_id;")

    op.drop_table("worker_heartbeats")

    op.drop_index("ix_audit_logs_org_created_at", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_table("business_plan_sections")
    op.drop_table("business_plans")

    op.drop_index("ix_token_purchases_org_created_at", table_name="token_purchases")
    op.drop_table("token_purchases")

    op.drop_index("ix_usage_entries_org_created_at", table_name="usage_entries")
    op.drop_table("usage_entries")

    op.drop_index("ix_output_versions_output_status", table_name="output_versions")
    op.drop_table("output_versions")
    op.drop_table("outputs")

    op.drop_index("ix_jobs_org_created_at", table_name="jobs")
    op.drop_index("ix_jobs_org_resource_type_status", table_name="jobs")
    op.drop_index("ix_jobs_status_created_at", table_name="jobs")
    op.drop_table("jobs")

    op.drop_table("stages")

    op.drop_index("ix_projects_org_created_at", table_name="projects")
    op.drop_table("projects")
    op.drop_table("organizations")
