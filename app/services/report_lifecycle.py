"""
Monthly Report Lifecycle Service.

Manages report status transitions with:
  - Transition validation (REPORT_TRANSITIONS)
  - Guards (mandatory payload fields on submit, reason on return)
  - Side effects (timestamps + acting user per transition, version snapshot)
  - Optimistic concurrency: a stale writer gets ConflictError
  - Audit trail via write_audit

6 actions:
  submit, start_review, approve, return, reopen, cancel

Usage:
    from app.services.report_lifecycle import submit_report, transition_report

    result = submit_report(report_id="abc", user_id="scholar-1")
    result = transition_report("abc", "return", user_id="manager-1", reason="fix dates")
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import ConflictError, InvalidTransitionError, NotFoundError
from app.models import db
from app.models.audit import write_audit
from app.models.monthly_report import (
    REPORT_TRANSITIONS,
    MonthlyReport,
    MonthlyReportVersion,
)
from app.services.report_payload import load_stored_payload

logger = logging.getLogger(__name__)


def get_report_or_404(report_id: str) -> MonthlyReport:
    report = db.session.get(MonthlyReport, report_id)
    if not report:
        raise NotFoundError(resource="MonthlyReport", resource_id=report_id)
    return report


def available_actions(report: MonthlyReport) -> list[str]:
    """Actions whose source status matches the report's current status."""
    return [
        action for action, rule in REPORT_TRANSITIONS.items()
        if report.status in rule["from"]
    ]


def validate_transition(report: MonthlyReport, action: str) -> dict:
    """
    Validate whether an action is valid for the current state.

    Returns:
        {"valid": bool, "from": str, "to": str|None, "reason": str|None}
    """
    rule = REPORT_TRANSITIONS.get(action)
    if not rule:
        return {"valid": False, "from": report.status, "to": None,
                "reason": f"Unknown action: {action}"}

    if report.status not in rule["from"]:
        return {"valid": False, "from": report.status, "to": rule["to"],
                "reason": f"Cannot '{action}' from status '{report.status}'"}

    return {"valid": True, "from": report.status, "to": rule["to"], "reason": None}


def transition_report(
    report_id: str,
    action: str,
    user_id: str,
    *,
    reason: str | None = None,
) -> dict:
    """
    Execute a lifecycle transition as one guarded UPDATE and commit it.

    Args:
        report_id: UUID of the report
        action: One of REPORT_TRANSITIONS
        user_id: Who is performing the action
        reason: Required for 'return'

    Returns:
        {"report_id", "action", "previous_status", "new_status", "available_actions"}

    Raises:
        NotFoundError, InvalidTransitionError, ConflictError
    """
    report = get_report_or_404(report_id)
    seen_version = report.version

    validation = validate_transition(report, action)
    if not validation["valid"]:
        raise InvalidTransitionError(
            action, report.status, validation["reason"], available_actions(report),
        )

    previous_status = report.status
    payload = None
    if action == "submit":
        payload = load_stored_payload(report.fields.payload if report.fields else None)
        missing = payload.missing_required()
        if missing:
            raise InvalidTransitionError(
                action, report.status,
                f"required fields are empty: {', '.join(missing)}",
                available_actions(report),
            )
    elif action == "return":
        reason = (reason or "").strip()
        if not reason:
            raise InvalidTransitionError(
                action, report.status, "reason is required", available_actions(report),
            )

    now = datetime.now(timezone.utc)
    diff = {"status": {"old": previous_status, "new": validation["to"]}}

    with report_write(report_id, seen_version):
        if action == "submit":
            report.submitted_at = now
            report.locked_at = now
            if report.return_reason:
                diff["return_reason"] = {"old": report.return_reason, "new": None}
            report.return_reason = None
            _snapshot_version(report, payload.to_dict(), user_id, previous_status)
        elif action == "start_review":
            report.under_review_at = now
            report.reviewed_by_user_id = user_id
        elif action == "approve":
            report.approved_at = now
            report.approved_by_user_id = user_id
        elif action == "return":
            report.returned_at = now
            report.returned_by_user_id = user_id
            report.return_reason = reason
            report.locked_at = None
            diff["return_reason"] = {"old": None, "new": reason}
        elif action == "reopen":
            # payload is kept; only the editing lock and the reason go away
            report.locked_at = None
            if report.return_reason:
                diff["return_reason"] = {"old": report.return_reason, "new": None}
            report.return_reason = None
        elif action == "cancel":
            report.cancelled_at = now
            report.cancelled_by_user_id = user_id

        report.status = validation["to"]

        write_audit(
            entity_type="monthly_report",
            entity_id=report_id,
            action=f"monthly_report.{action}",
            actor=user_id,
            organization_id=report.organization_id,
            diff=diff,
        )

    logger.info(
        "Report %s: %s → %s (%s)", report_id, previous_status, report.status, action,
        extra={"event_type": "report_transition", "report_id": report_id},
    )
    return {
        "report_id": report_id,
        "action": action,
        "previous_status": previous_status,
        "new_status": report.status,
        "available_actions": available_actions(report),
    }


@contextmanager
def report_write(report_id: str, seen_version: int):
    """Scope of one guarded write to a report; commits on a clean exit.

    Every UPDATE of the report row flushed inside the block carries
    ``WHERE version = seen_version``. Zero matched rows means another
    writer committed first, which surfaces as ConflictError.
    """
    try:
        yield
        db.session.commit()
    except (StaleDataError, IntegrityError) as exc:
        db.session.rollback()
        logger.warning("Concurrent update lost on report %s (version %s)",
                       report_id, seen_version)
        raise ConflictError("MonthlyReport", "version", str(seen_version)) from exc
    except OperationalError as exc:
        db.session.rollback()
        # SQLite reports a contended write lock as OperationalError
        if "locked" not in str(exc.orig).lower():
            raise
        logger.warning("Write lock contention on report %s", report_id)
        raise ConflictError("MonthlyReport", "version", str(seen_version)) from exc
    except Exception:
        db.session.rollback()
        raise


def _snapshot_version(report, payload: dict, user_id: str, previous_status: str) -> None:
    last = (
        db.session.query(db.func.max(MonthlyReportVersion.version))
        .filter(MonthlyReportVersion.report_id == report.id)
        .scalar()
    ) or 0
    db.session.add(MonthlyReportVersion(
        report_id=report.id,
        version=last + 1,
        payload=payload,
        changed_by_user_id=user_id,
        change_summary="initial submission" if last == 0 else f"resubmission after {previous_status}",
    ))


# ── Orchestration ────────────────────────────────────────────────────────────


def submit_report(report_id: str, user_id: str) -> dict:
    """
    Submit a report and kick off its side effects, in order:

      1. the status transition commits (synchronous, may raise);
      2. legacy records for the same subject/period are linked (best effort);
      3. PDF generation starts in the background (fire and forget).

    Returns the transition result plus ``job_id``. Once step 1 has
    committed the submit is reported as done: if the job cannot be queued
    ``job_id`` is None and ``retry`` names the manual generate endpoint.
    """
    from app.services.legacy_linkage import link_legacy_reports
    from app.services.report_job_runner import RETRY_HINT, get_job_runner

    result = transition_report(report_id, "submit", user_id)

    report = get_report_or_404(report_id)
    link_legacy_reports(report)

    runner = get_job_runner()
    for attempt in (1, 2):
        try:
            result["job_id"] = runner.start(report_id, user_id)
            return result
        except ConflictError:
            if attempt == 2:
                break
            logger.info("Report %s changed while queueing its PDF job; retrying", report_id)
        except InvalidTransitionError as exc:
            # cancelled right after the submit
            logger.warning("PDF job for report %s not queued: %s", report_id, exc)
            break

    logger.warning("Submitted report %s has no PDF job; manual generation required", report_id,
                   extra={"event_type": "report_job_not_queued", "report_id": report_id})
    result["job_id"] = None
    result["retry"] = RETRY_HINT
    return result


def list_versions(report_id: str) -> list[dict]:
    get_report_or_404(report_id)
    rows = (
        MonthlyReportVersion.query
        .filter_by(report_id=report_id)
        .order_by(MonthlyReportVersion.version.asc())
        .all()
    )
    return [r.to_dict() for r in rows]
