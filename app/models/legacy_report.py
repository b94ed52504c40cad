"""
Grant Reporting Platform
Legacy (unstructured) report uploads.

Before structured monthly reports existed, beneficiaries uploaded a free-form
PDF per reference month. Reviewers could flag an upload for resubmission; once
a structured report is submitted for the same user and month, the flagged row
is linked to it and marked superseded.
"""

from datetime import datetime, timezone

from app.models import db


class LegacyReport(db.Model):
    __tablename__ = "legacy_reports"
    __table_args__ = (
        db.Index("idx_legacy_report_user_month", "user_id", "reference_month"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False)
    project_id = db.Column(db.String(64), nullable=True)
    reference_month = db.Column(
        db.String(7), nullable=False,
        comment="YYYY-MM",
    )
    installment_number = db.Column(db.Integer, nullable=True)
    file_name = db.Column(db.String(255), nullable=False)
    file_url = db.Column(db.String(512), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    feedback = db.Column(db.Text, nullable=True)

    resubmission_requested = db.Column(db.Boolean, nullable=False, default=False)
    resubmission_requested_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resubmission_deadline = db.Column(db.DateTime(timezone=True), nullable=True)

    monthly_report_id = db.Column(
        db.String(36),
        db.ForeignKey("monthly_reports.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    superseded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    submitted_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "project_id": self.project_id,
            "reference_month": self.reference_month,
            "installment_number": self.installment_number,
            "file_name": self.file_name,
            "status": self.status,
            "resubmission_requested": self.resubmission_requested,
            "monthly_report_id": self.monthly_report_id,
            "superseded_at": self.superseded_at.isoformat() if self.superseded_at else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
        }

    def __repr__(self):
        return f"<LegacyReport {self.id} {self.user_id} {self.reference_month} {self.status}>"
