"""
Legacy report linkage.

When a structured monthly report is submitted, legacy uploads for the same
beneficiary and reference month that a reviewer flagged for resubmission are
linked to it and marked superseded. The step runs after the submit commit and
is best effort: a failure is logged and rolled back, never surfaced to the
submitter. Rows left unlinked are picked up again by the next submission of
the same period or by the ``legacy_linkage_retry`` scheduled job.
"""

import logging
from datetime import datetime, timezone

from app.models import db
from app.models.audit import write_audit
from app.models.legacy_report import LegacyReport
from app.models.monthly_report import MonthlyReport

logger = logging.getLogger(__name__)

LINKABLE_REPORT_STATUSES = ("submitted", "under_review", "approved")


def _pending_legacy_query(report: MonthlyReport):
    q = LegacyReport.query.filter(
        LegacyReport.user_id == report.beneficiary_user_id,
        LegacyReport.reference_month == report.period_key,
        LegacyReport.resubmission_requested.is_(True),
        LegacyReport.monthly_report_id.is_(None),
    )
    # legacy rows without a project predate per-project uploads
    return q.filter(
        db.or_(LegacyReport.project_id.is_(None), LegacyReport.project_id == report.project_id)
    )


def link_legacy_reports(report: MonthlyReport) -> int:
    """Link pending legacy rows to *report*. Returns how many were linked.

    Idempotent: already linked rows are not selected again.
    """
    report_id = report.id
    try:
        rows = _pending_legacy_query(report).all()
        if not rows:
            return 0

        now = datetime.now(timezone.utc)
        for legacy in rows:
            previous_status = legacy.status
            legacy.monthly_report_id = report_id
            legacy.superseded_at = now
            legacy.status = "superseded"
            write_audit(
                entity_type="legacy_report",
                entity_id=str(legacy.id),
                action="legacy_report.linked",
                actor="system",
                organization_id=report.organization_id,
                diff={
                    "monthly_report_id": report_id,
                    "reference_month": legacy.reference_month,
                    "status": {"old": previous_status, "new": "superseded"},
                },
            )
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Legacy linkage failed for report %s; will retry later", report_id)
        return 0

    logger.info("Linked %d legacy report(s) to monthly report %s", len(rows), report_id,
                extra={"event_type": "legacy_linked"})
    return len(rows)


def _has_pending_legacy():
    period_key = (
        db.cast(MonthlyReport.period_year, db.String) + "-"
        + db.case((MonthlyReport.period_month < 10, "0"), else_="")
        + db.cast(MonthlyReport.period_month, db.String)
    )
    return (
        db.select(LegacyReport.id)
        .where(
            LegacyReport.user_id == MonthlyReport.beneficiary_user_id,
            LegacyReport.reference_month == period_key,
            LegacyReport.resubmission_requested.is_(True),
            LegacyReport.monthly_report_id.is_(None),
            db.or_(LegacyReport.project_id.is_(None),
                   LegacyReport.project_id == MonthlyReport.project_id),
        )
        .exists()
    )


def retry_pending_linkage(limit: int = 500) -> dict:
    """Link legacy rows for every submitted report that still has some pending.

    Only reports with at least one pending row are selected, so ``limit``
    bounds the work of one run without starving newer reports.
    """
    reports = (
        MonthlyReport.query
        .filter(MonthlyReport.status.in_(LINKABLE_REPORT_STATUSES), _has_pending_legacy())
        .order_by(MonthlyReport.submitted_at.asc())
        .limit(limit)
        .all()
    )
    checked = linked = 0
    for report in reports:
        checked += 1
        linked += link_legacy_reports(report)
    return {"reports_checked": checked, "legacy_linked": linked}
