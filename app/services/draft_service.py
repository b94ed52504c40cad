"""
Draft Coordinator — the only write path for report payloads.

Responsibilities:
  - open_draft: idempotent get-or-create per (subject, project, year, month).
    Concurrent callers race on the unique constraint; the loser rolls back
    and reads the winner's row, so exactly one report exists per key.
  - save_draft: wholesale payload overwrite, allowed only while the report
    is in draft or returned. Saving also touches the report row so a save
    racing a submit is serialized by the report version column.
  - autosave_draft: same guarded path, but a rejection is reported as
    ``saved=False`` and logged instead of raised; the editor keeps working.

Clients call autosave every AUTOSAVE_INTERVAL_SECONDS (15 s by default)
while a report is editable and open, in addition to explicit saves.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, NotEditableError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.monthly_report import MonthlyReport, MonthlyReportFields
from app.services.report_lifecycle import (
    available_actions,
    get_report_or_404,
    report_write,
)
from app.services.report_payload import ReportPayload, load_stored_payload

logger = logging.getLogger(__name__)

DEFAULT_AUTOSAVE_INTERVAL_SECONDS = 15
MIN_PERIOD_YEAR = 2000
MAX_PERIOD_YEAR = 2100


def autosave_interval() -> int:
    return int(current_app.config.get("AUTOSAVE_INTERVAL_SECONDS", DEFAULT_AUTOSAVE_INTERVAL_SECONDS))


def _validate_key(subject_id, project_id, year, month) -> None:
    errors = {}
    if not subject_id:
        errors["subject_id"] = "required"
    if not project_id:
        errors["project_id"] = "required"
    if isinstance(year, bool) or not isinstance(year, int) or not MIN_PERIOD_YEAR <= year <= MAX_PERIOD_YEAR:
        errors["year"] = f"must be an integer between {MIN_PERIOD_YEAR} and {MAX_PERIOD_YEAR}"
    if isinstance(month, bool) or not isinstance(month, int) or not 1 <= month <= 12:
        errors["month"] = "must be an integer between 1 and 12"
    if errors:
        raise ValidationError("Invalid report period key", details=errors)


def _find(subject_id, project_id, year, month) -> MonthlyReport | None:
    return MonthlyReport.query.filter_by(
        beneficiary_user_id=str(subject_id),
        project_id=str(project_id),
        period_year=year,
        period_month=month,
    ).first()


def open_draft(
    subject_id: str,
    project_id: str,
    year: int,
    month: int,
    *,
    organization_id: str | None = None,
) -> MonthlyReport:
    """Return the report for the key, creating an empty draft on first open."""
    _validate_key(subject_id, project_id, year, month)

    existing = _find(subject_id, project_id, year, month)
    if existing:
        return existing

    report = MonthlyReport(
        beneficiary_user_id=str(subject_id),
        project_id=str(project_id),
        organization_id=str(organization_id) if organization_id else None,
        period_year=year,
        period_month=month,
        status="draft",
    )
    report.fields = MonthlyReportFields(payload=ReportPayload().to_dict())
    db.session.add(report)
    try:
        db.session.flush()
        write_audit(
            entity_type="monthly_report",
            entity_id=report.id,
            action="monthly_report.open",
            actor=str(subject_id),
            organization_id=report.organization_id,
            diff={"period": report.period_key},
        )
        db.session.commit()
    except IntegrityError:
        # Another request created the same key first
        db.session.rollback()
        winner = _find(subject_id, project_id, year, month)
        if winner is None:
            raise
        logger.debug("open_draft race resolved to existing report %s", winner.id)
        return winner

    logger.info("Draft %s opened for subject=%s project=%s period=%s",
                report.id, subject_id, project_id, report.period_key)
    return report


def save_draft(report_id: str, payload: dict | ReportPayload, *, user_id: str | None = None) -> datetime:
    """Overwrite the payload of an editable report.

    Returns:
        The new ``last_saved_at`` timestamp.

    Raises:
        NotFoundError, NotEditableError, ValidationError, ConflictError
    """
    if not isinstance(payload, ReportPayload):
        payload = ReportPayload.from_dict(payload)

    report = get_report_or_404(report_id)
    if not report.is_editable:
        raise NotEditableError("save", report.status)

    seen_version = report.version
    now = datetime.now(timezone.utc)
    with report_write(report_id, seen_version):
        if report.fields is None:
            report.fields = MonthlyReportFields(payload={})
        report.fields.payload = payload.to_dict()
        report.fields.last_saved_at = now
        # bumps report.version, so a save racing a submit conflicts
        report.updated_at = now

    logger.debug("Draft %s saved by %s", report_id, user_id or report.beneficiary_user_id)
    return now


def autosave_draft(report_id: str, payload: dict, *, user_id: str | None = None) -> dict:
    """Non-blocking variant of save_draft for the periodic autosave timer."""
    try:
        saved_at = save_draft(report_id, payload, user_id=user_id)
    except (NotEditableError, ValidationError, ConflictError) as exc:
        logger.warning("Autosave skipped for report %s: %s", report_id, exc)
        return {"saved": False, "reason": str(exc)}
    return {"saved": True, "saved_at": saved_at.isoformat()}


def get_draft(report_id: str) -> dict:
    """Report + payload view used by the editor."""
    report = get_report_or_404(report_id)
    return serialize_report(report)


def serialize_report(report: MonthlyReport) -> dict:
    fields = report.fields
    payload = load_stored_payload(fields.payload if fields else None)
    return {
        "report_id": report.id,
        "status": report.status,
        "report": report.to_dict(),
        "payload": payload.to_dict(),
        "last_saved_at": fields.last_saved_at.isoformat() if fields and fields.last_saved_at else None,
        "editable": report.is_editable,
        "available_actions": available_actions(report),
        "autosave_interval_seconds": autosave_interval(),
    }
