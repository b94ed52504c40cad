"""monthly_report_pipeline

Create the monthly report lifecycle and document pipeline tables:
monthly_reports, monthly_report_fields, monthly_report_versions,
report_generation_jobs, monthly_report_documents, report_access_logs,
legacy_reports, audit_logs, scheduled_jobs.

Revision ID: 5d1e2f3a4b60
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "5d1e2f3a4b60"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "monthly_reports" not in existing_tables:
        op.create_table(
            "monthly_reports",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("organization_id", sa.String(length=64), nullable=True),
            sa.Column("project_id", sa.String(length=64), nullable=False),
            sa.Column("beneficiary_user_id", sa.String(length=64), nullable=False),
            sa.Column("period_year", sa.Integer(), nullable=False),
            sa.Column("period_month", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("under_review_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("reviewed_by_user_id", sa.String(length=64), nullable=True),
            sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("approved_by_user_id", sa.String(length=64), nullable=True),
            sa.Column("returned_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("returned_by_user_id", sa.String(length=64), nullable=True),
            sa.Column("return_reason", sa.Text(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("cancelled_by_user_id", sa.String(length=64), nullable=True),
            sa.Column("pdf_sha256", sa.String(length=64), nullable=True,
                      comment="SHA-256 of the latest generated plaintext PDF"),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "beneficiary_user_id", "project_id", "period_year", "period_month",
                name="uq_monthly_report_subject_period",
            ),
            sa.CheckConstraint("period_month BETWEEN 1 AND 12", name="ck_monthly_report_month"),
            sa.CheckConstraint(
                "status IN ('draft','submitted','under_review','approved','returned','cancelled')",
                name="ck_monthly_report_status",
            ),
        )
        op.create_index("ix_monthly_reports_organization_id", "monthly_reports", ["organization_id"])
        op.create_index("ix_monthly_reports_project_id", "monthly_reports", ["project_id"])
        op.create_index("ix_monthly_reports_beneficiary_user_id", "monthly_reports", ["beneficiary_user_id"])
        op.create_index("idx_monthly_report_org_status", "monthly_reports", ["organization_id", "status"])
        op.create_index("idx_monthly_report_period", "monthly_reports", ["period_year", "period_month"])

    if "monthly_report_fields" not in existing_tables:
        op.create_table(
            "monthly_report_fields",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("report_id", sa.String(length=36), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=False),
            sa.Column("last_saved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["report_id"], ["monthly_reports.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("report_id"),
        )

    if "monthly_report_versions" not in existing_tables:
        op.create_table(
            "monthly_report_versions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("report_id", sa.String(length=36), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=False),
            sa.Column("change_summary", sa.String(length=255), nullable=True),
            sa.Column("changed_by_user_id", sa.String(length=64), nullable=False),
            sa.Column("changed_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["report_id"], ["monthly_reports.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("report_id", "version", name="uq_monthly_report_version"),
        )
        op.create_index("ix_monthly_report_versions_report_id", "monthly_report_versions", ["report_id"])

    if "report_generation_jobs" not in existing_tables:
        op.create_table(
            "report_generation_jobs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("report_id", sa.String(length=36), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="processing"),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("requested_by_user_id", sa.String(length=64), nullable=False),
            sa.Column("document_id", sa.String(length=36), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["report_id"], ["monthly_reports.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint(
                "status IN ('processing','success','error')", name="ck_report_job_status",
            ),
        )
        op.create_index("idx_report_job_report_status", "report_generation_jobs", ["report_id", "status"])

    if "monthly_report_documents" not in existing_tables:
        op.create_table(
            "monthly_report_documents",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("report_id", sa.String(length=36), nullable=False),
            sa.Column("job_id", sa.String(length=36), nullable=True),
            sa.Column("type", sa.String(length=30), nullable=False, server_default="official_pdf"),
            sa.Column("storage_path", sa.String(length=512), nullable=False),
            sa.Column("sha256", sa.String(length=64), nullable=False),
            sa.Column("encrypted", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("generated_by_user_id", sa.String(length=64), nullable=False),
            sa.Column("generated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("superseded_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=False),
            sa.ForeignKeyConstraint(["report_id"], ["monthly_reports.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["job_id"], ["report_generation_jobs.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_id"),
            sa.UniqueConstraint("storage_path"),
        )
        op.create_index("idx_report_doc_report", "monthly_report_documents", ["report_id", "generated_at"])

    if "report_access_logs" not in existing_tables:
        op.create_table(
            "report_access_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("report_id", sa.String(length=36), nullable=False),
            sa.Column("document_id", sa.String(length=36), nullable=True),
            sa.Column("user_id", sa.String(length=64), nullable=True),
            sa.Column("action", sa.String(length=20), nullable=False, server_default="view"),
            sa.Column("ip_address", sa.String(length=45), nullable=True),
            sa.Column("accessed_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["report_id"], ["monthly_reports.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_report_access_logs_report_id", "report_access_logs", ["report_id"])

    if "legacy_reports" not in existing_tables:
        op.create_table(
            "legacy_reports",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("project_id", sa.String(length=64), nullable=True),
            sa.Column("reference_month", sa.String(length=7), nullable=False, comment="YYYY-MM"),
            sa.Column("installment_number", sa.Integer(), nullable=True),
            sa.Column("file_name", sa.String(length=255), nullable=False),
            sa.Column("file_url", sa.String(length=512), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("feedback", sa.Text(), nullable=True),
            sa.Column("resubmission_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("resubmission_requested_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("resubmission_deadline", sa.DateTime(timezone=True), nullable=True),
            sa.Column("monthly_report_id", sa.String(length=36), nullable=True),
            sa.Column("superseded_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["monthly_report_id"], ["monthly_reports.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_legacy_report_user_month", "legacy_reports", ["user_id", "reference_month"])
        op.create_index("ix_legacy_reports_monthly_report_id", "legacy_reports", ["monthly_report_id"])

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.String(length=64), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_org", "audit_logs", ["organization_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])

    if "scheduled_jobs" not in existing_tables:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("schedule_type", sa.String(length=30), nullable=True),
            sa.Column("schedule_config", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    for table in (
        "scheduled_jobs",
        "audit_logs",
        "legacy_reports",
        "report_access_logs",
        "monthly_report_documents",
        "report_generation_jobs",
        "monthly_report_versions",
        "monthly_report_fields",
        "monthly_reports",
    ):
        if table in existing_tables:
            op.drop_table(table)
