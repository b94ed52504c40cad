"""
Grant Reporting Platform
Monthly report domain models.

Models:
    - MonthlyReport: one structured report per (beneficiary, project, period)
    - MonthlyReportFields: editable payload, one-to-one with MonthlyReport
    - MonthlyReportVersion: immutable payload snapshot taken on every submit
    - ReportGenerationJob: durable handle for a background PDF generation
    - MonthlyReportDocument: generated artifact record (hash, storage path)
    - ReportAccessLog: who opened which artifact, and how
"""

import uuid
from datetime import datetime, timezone

from app.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


# ── Constants ────────────────────────────────────────────────────────────────

REPORT_STATUSES = (
    "draft", "submitted", "under_review", "approved", "returned", "cancelled",
)
EDITABLE_STATUSES = frozenset({"draft", "returned"})

# action → {from: [...], to: status}
REPORT_TRANSITIONS = {
    "submit": {"from": ["draft", "returned"], "to": "submitted"},
    "start_review": {"from": ["submitted"], "to": "under_review"},
    "approve": {"from": ["under_review"], "to": "approved"},
    "return": {"from": ["under_review"], "to": "returned"},
    "reopen": {"from": ["returned"], "to": "draft"},
    "cancel": {"from": ["draft", "submitted", "under_review", "returned"], "to": "cancelled"},
}

JOB_STATUSES = ("processing", "success", "error")
ACCESS_ACTIONS = frozenset({"view", "download"})


def _status_check(values) -> str:
    return "status IN (" + ",".join(f"'{v}'" for v in values) + ")"


class MonthlyReport(db.Model):
    """
    Structured monthly activity report of a beneficiary.

    Lifecycle: draft → submitted → under_review → approved, with
    under_review → returned → (reopen) draft → submitted cycles and
    cancelled reachable from every non-terminal status.

    The ``version`` column is the optimistic-concurrency guard: every
    UPDATE carries ``WHERE version = :seen`` so a concurrent writer that
    read an older row fails instead of overwriting.
    """

    __tablename__ = "monthly_reports"
    __table_args__ = (
        db.UniqueConstraint(
            "beneficiary_user_id", "project_id", "period_year", "period_month",
            name="uq_monthly_report_subject_period",
        ),
        db.CheckConstraint("period_month BETWEEN 1 AND 12", name="ck_monthly_report_month"),
        db.CheckConstraint(_status_check(REPORT_STATUSES), name="ck_monthly_report_status"),
        db.Index("idx_monthly_report_org_status", "organization_id", "status"),
        db.Index("idx_monthly_report_period", "period_year", "period_month"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    organization_id = db.Column(db.String(64), nullable=True, index=True)
    project_id = db.Column(db.String(64), nullable=False, index=True)
    beneficiary_user_id = db.Column(db.String(64), nullable=False, index=True)
    period_year = db.Column(db.Integer, nullable=False)
    period_month = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(20), nullable=False, default="draft")

    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    locked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    under_review_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reviewed_by_user_id = db.Column(db.String(64), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_by_user_id = db.Column(db.String(64), nullable=True)
    returned_at = db.Column(db.DateTime(timezone=True), nullable=True)
    returned_by_user_id = db.Column(db.String(64), nullable=True)
    return_reason = db.Column(db.Text, nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by_user_id = db.Column(db.String(64), nullable=True)

    pdf_sha256 = db.Column(
        db.String(64), nullable=True,
        comment="SHA-256 of the latest generated plaintext PDF",
    )

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    fields = db.relationship(
        "MonthlyReportFields", uselist=False, back_populates="report",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def period_label(self) -> str:
        return f"{self.period_month:02d}/{self.period_year}"

    @property
    def period_key(self) -> str:
        """``YYYY-MM`` — the reference-month format used by legacy records."""
        return f"{self.period_year}-{self.period_month:02d}"

    @property
    def is_editable(self) -> bool:
        return self.status in EDITABLE_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "project_id": self.project_id,
            "beneficiary_user_id": self.beneficiary_user_id,
            "period_year": self.period_year,
            "period_month": self.period_month,
            "status": self.status,
            "submitted_at": _iso(self.submitted_at),
            "locked_at": _iso(self.locked_at),
            "under_review_at": _iso(self.under_review_at),
            "reviewed_by_user_id": self.reviewed_by_user_id,
            "approved_at": _iso(self.approved_at),
            "approved_by_user_id": self.approved_by_user_id,
            "returned_at": _iso(self.returned_at),
            "returned_by_user_id": self.returned_by_user_id,
            "return_reason": self.return_reason,
            "cancelled_at": _iso(self.cancelled_at),
            "cancelled_by_user_id": self.cancelled_by_user_id,
            "pdf_sha256": self.pdf_sha256,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<MonthlyReport {self.id} {self.beneficiary_user_id} {self.period_key} {self.status}>"


class MonthlyReportFields(db.Model):
    """Editable payload of a report. Written only through the draft service."""

    __tablename__ = "monthly_report_fields"

    id = db.Column(db.Integer, primary_key=True)
    report_id = db.Column(
        db.String(36),
        db.ForeignKey("monthly_reports.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    payload = db.Column(db.JSON, nullable=False, default=dict)
    last_saved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    report = db.relationship("MonthlyReport", back_populates="fields")

    def __repr__(self):
        return f"<MonthlyReportFields report={self.report_id}>"


class MonthlyReportVersion(db.Model):
    """Append-only payload snapshot, one per successful submit."""

    __tablename__ = "monthly_report_versions"
    __table_args__ = (
        db.UniqueConstraint("report_id", "version", name="uq_monthly_report_version"),
    )

    id = db.Column(db.Integer, primary_key=True)
    report_id = db.Column(
        db.String(36),
        db.ForeignKey("monthly_reports.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version = db.Column(db.Integer, nullable=False)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    change_summary = db.Column(db.String(255), nullable=True)
    changed_by_user_id = db.Column(db.String(64), nullable=False)
    changed_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "report_id": self.report_id,
            "version": self.version,
            "payload": self.payload,
            "change_summary": self.change_summary,
            "changed_by_user_id": self.changed_by_user_id,
            "changed_at": _iso(self.changed_at),
        }


class ReportGenerationJob(db.Model):
    """
    Durable status row of a background PDF generation.

    Created as ``processing`` before the worker starts; the worker moves it
    to ``success`` together with the document insert, or to ``error`` with
    a message. Polling reads only this table, so results survive restarts.
    """

    __tablename__ = "report_generation_jobs"
    __table_args__ = (
        db.Index("idx_report_job_report_status", "report_id", "status"),
        db.CheckConstraint(_status_check(JOB_STATUSES), name="ck_report_job_status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    report_id = db.Column(
        db.String(36),
        db.ForeignKey("monthly_reports.id", ondelete="CASCADE"),
        nullable=False,
    )
    status = db.Column(db.String(20), nullable=False, default="processing")
    error_message = db.Column(db.Text, nullable=True)
    requested_by_user_id = db.Column(db.String(64), nullable=False)
    document_id = db.Column(db.String(36), nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    finished_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "report_id": self.report_id,
            "status": self.status,
            "error_message": self.error_message,
            "requested_by_user_id": self.requested_by_user_id,
            "document_id": self.document_id,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
        }

    def __repr__(self):
        return f"<ReportGenerationJob {self.id} report={self.report_id} {self.status}>"


class MonthlyReportDocument(db.Model):
    """
    Generated official PDF of a report.

    Exactly one row per successful job. A later generation for the same
    report sets ``superseded_at`` on the previous row instead of deleting it.
    """

    __tablename__ = "monthly_report_documents"
    __table_args__ = (
        db.Index("idx_report_doc_report", "report_id", "generated_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    report_id = db.Column(
        db.String(36),
        db.ForeignKey("monthly_reports.id", ondelete="CASCADE"),
        nullable=False,
    )
    job_id = db.Column(
        db.String(36),
        db.ForeignKey("report_generation_jobs.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    type = db.Column(db.String(30), nullable=False, default="official_pdf")
    storage_path = db.Column(db.String(512), nullable=False, unique=True)
    sha256 = db.Column(db.String(64), nullable=False)
    encrypted = db.Column(db.Boolean, nullable=False, default=False)
    generated_by_user_id = db.Column(db.String(64), nullable=False)
    generated_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    superseded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    meta = db.Column("metadata", db.JSON, nullable=False, default=dict)

    @property
    def is_current(self) -> bool:
        return self.superseded_at is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "report_id": self.report_id,
            "job_id": self.job_id,
            "type": self.type,
            "storage_path": self.storage_path,
            "sha256": self.sha256,
            "encrypted": self.encrypted,
            "generated_by_user_id": self.generated_by_user_id,
            "generated_at": _iso(self.generated_at),
            "superseded_at": _iso(self.superseded_at),
            "metadata": self.meta or {},
        }

    def __repr__(self):
        return f"<MonthlyReportDocument {self.id} report={self.report_id}>"


class ReportAccessLog(db.Model):
    """One row per artifact view/download."""

    __tablename__ = "report_access_logs"

    id = db.Column(db.Integer, primary_key=True)
    report_id = db.Column(
        db.String(36),
        db.ForeignKey("monthly_reports.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    document_id = db.Column(db.String(36), nullable=True)
    user_id = db.Column(db.String(64), nullable=True)
    action = db.Column(db.String(20), nullable=False, default="view")
    ip_address = db.Column(db.String(45), nullable=True)
    accessed_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "report_id": self.report_id,
            "document_id": self.document_id,
            "user_id": self.user_id,
            "action": self.action,
            "ip_address": self.ip_address,
            "accessed_at": _iso(self.accessed_at),
        }


def _iso(value):
    return value.isoformat() if value else None
