"""
Monthly Report Blueprint.

HTTP surface of the monthly report lifecycle and its document pipeline.

Endpoints:
    POST   /api/v1/monthly-reports/open
           Body: { subject_id, project_id, year, month, organization_id? }
    GET    /api/v1/monthly-reports/<id>
    PUT    /api/v1/monthly-reports/<id>/draft          Body: { payload }
    POST   /api/v1/monthly-reports/<id>/autosave       Body: { payload }
    POST   /api/v1/monthly-reports/<id>/submit         Body: { user_id }
    POST   /api/v1/monthly-reports/<id>/transition     Body: { action, user_id, reason? }
    POST   /api/v1/monthly-reports/<id>/reopen         Body: { user_id }
    GET    /api/v1/monthly-reports/jobs/<job_id>
    POST   /api/v1/monthly-reports/<id>/documents/generate
    GET    /api/v1/monthly-reports/<id>/documents
    GET    /api/v1/monthly-reports/<id>/documents/latest/url?action=view|download
    GET    /api/v1/monthly-reports/artifacts/<token>
    POST   /api/v1/monthly-reports/<id>/verify
    GET    /api/v1/monthly-reports/<id>/versions
    GET    /api/v1/monthly-reports/<id>/audit

Authentication happens upstream. The acting user is taken from the JSON
body (``user_id``) or the ``X-User-Id`` header.

Layer contract:
    - Blueprint: parse input, resolve the actor, call the service, shape JSON.
    - NO db.session calls here; services own every write and commit.
    - Service exceptions are mapped once, in the error handlers below.
"""

import logging

import jwt
from flask import Blueprint, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from app.core.exceptions import (
    ConflictError,
    IntegrityMismatchError,
    InvalidTransitionError,
    NotEditableError,
    NotFoundError,
    ValidationError,
)
from app.models.audit import list_audit
from app.services import draft_service, report_documents, report_lifecycle
from app.services.artifact_storage import StorageError
from app.services.report_job_runner import get_job_runner
from app.utils.crypto import EncryptionUnavailableError
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

monthly_report_bp = Blueprint("monthly_reports", __name__, url_prefix="/api/v1/monthly-reports")


# ── Helpers ──────────────────────────────────────────────────────────────────


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _actor(data: dict | None = None) -> tuple[str | None, tuple | None]:
    """Resolve the acting user id. Returns (user_id, err_response)."""
    data = data if data is not None else _body()
    user_id = data.get("user_id") or request.headers.get("X-User-Id")
    user_id = str(user_id).strip() if user_id is not None else ""
    if not user_id:
        return None, api_error(E.VALIDATION_REQUIRED, "user_id is required")
    return user_id, None


def _int_field(data: dict, name: str) -> int:
    value = data.get(name)
    if isinstance(value, (bool, float)):
        raise ValidationError(f"{name} must be an integer", details={name: "must be an integer"})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer", details={name: "must be an integer"})


# ── Error handlers ───────────────────────────────────────────────────────────


@monthly_report_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@monthly_report_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@monthly_report_bp.errorhandler(InvalidTransitionError)
def _handle_invalid_transition(error: InvalidTransitionError):
    return api_error(
        E.INVALID_TRANSITION, str(error),
        extra={"current_status": error.current_status, "available_actions": error.available_actions},
    )


@monthly_report_bp.errorhandler(NotEditableError)
def _handle_not_editable(error: NotEditableError):
    return api_error(
        E.NOT_EDITABLE, str(error),
        extra={"current_status": error.current_status, "action": error.action},
    )


@monthly_report_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_STATE, str(error))


@monthly_report_bp.errorhandler(IntegrityMismatchError)
def _handle_integrity_mismatch(error: IntegrityMismatchError):
    logger.critical("SECURITY: refused to serve tampered artifact: %s", error,
                    extra={"event_type": "integrity_mismatch"})
    return api_error(E.INTEGRITY_MISMATCH, "Stored document failed its integrity check")


@monthly_report_bp.errorhandler(jwt.ExpiredSignatureError)
def _handle_expired_token(error):
    return api_error(E.FORBIDDEN, "Access link has expired; request a new one")


@monthly_report_bp.errorhandler(jwt.InvalidTokenError)
def _handle_invalid_token(error):
    return api_error(E.FORBIDDEN, "Invalid access link")


@monthly_report_bp.errorhandler(StorageError)
def _handle_storage(error: StorageError):
    logger.error("Artifact storage error: %s", error)
    return api_error(E.NOT_FOUND, "Stored document is not available")


@monthly_report_bp.errorhandler(EncryptionUnavailableError)
def _handle_encryption_unavailable(error: EncryptionUnavailableError):
    logger.error("Encrypted artifact requested without a configured key: %s", error)
    return api_error(E.UNAVAILABLE, "Document encryption is not configured")


@monthly_report_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in monthly_report_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Drafts
# ═════════════════════════════════════════════════════════════════════════


@monthly_report_bp.route("/open", methods=["POST"])
def open_report():
    """Open (or create) the report for subject + project + period.

    Idempotent: concurrent opens of the same key return the same report.
    """
    data = _body()
    subject_id = data.get("subject_id")
    project_id = data.get("project_id")
    if not subject_id or not project_id:
        return api_error(E.VALIDATION_REQUIRED, "subject_id and project_id are required")
    if data.get("year") is None or data.get("month") is None:
        return api_error(E.VALIDATION_REQUIRED, "year and month are required")

    report = draft_service.open_draft(
        subject_id, project_id,
        _int_field(data, "year"), _int_field(data, "month"),
        organization_id=data.get("organization_id"),
    )
    return jsonify(draft_service.serialize_report(report)), 200


@monthly_report_bp.route("/<report_id>", methods=["GET"])
def get_report(report_id):
    return jsonify(draft_service.get_draft(report_id)), 200


@monthly_report_bp.route("/<report_id>/draft", methods=["PUT"])
def save_draft(report_id):
    data = _body()
    if "payload" not in data:
        return api_error(E.VALIDATION_REQUIRED, "payload is required")
    saved_at = draft_service.save_draft(
        report_id, data["payload"], user_id=data.get("user_id") or request.headers.get("X-User-Id"),
    )
    return jsonify({"report_id": report_id, "saved_at": saved_at.isoformat()}), 200


@monthly_report_bp.route("/<report_id>/autosave", methods=["POST"])
def autosave(report_id):
    """Timer-driven save. A rejected save reports ``saved: false`` with 200."""
    data = _body()
    if not isinstance(data.get("payload"), dict):
        # an empty tick must not overwrite the stored draft
        return jsonify({"saved": False, "reason": "payload is required"}), 200
    result = draft_service.autosave_draft(
        report_id, data["payload"],
        user_id=data.get("user_id") or request.headers.get("X-User-Id"),
    )
    return jsonify(result), 200


# ═════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═════════════════════════════════════════════════════════════════════════


@monthly_report_bp.route("/<report_id>/submit", methods=["POST"])
def submit(report_id):
    """Submit the report; PDF generation starts in the background."""
    user_id, err = _actor()
    if err:
        return err
    result = report_lifecycle.submit_report(report_id, user_id)
    result["status"] = result["new_status"]
    return jsonify(result), 200


@monthly_report_bp.route("/<report_id>/transition", methods=["POST"])
def transition(report_id):
    data = _body()
    user_id, err = _actor(data)
    if err:
        return err
    action = (data.get("action") or "").strip()
    if not action:
        return api_error(E.VALIDATION_REQUIRED, "action is required")

    if action == "submit":
        result = report_lifecycle.submit_report(report_id, user_id)
    else:
        result = report_lifecycle.transition_report(
            report_id, action, user_id, reason=data.get("reason"),
        )
    result["status"] = result["new_status"]
    return jsonify(result), 200


@monthly_report_bp.route("/<report_id>/reopen", methods=["POST"])
def reopen(report_id):
    user_id, err = _actor()
    if err:
        return err
    result = report_lifecycle.transition_report(report_id, "reopen", user_id)
    result["status"] = result["new_status"]
    return jsonify(result), 200


@monthly_report_bp.route("/<report_id>/versions", methods=["GET"])
def list_versions(report_id):
    versions = report_lifecycle.list_versions(report_id)
    return jsonify({"items": versions, "total": len(versions)}), 200


@monthly_report_bp.route("/<report_id>/audit", methods=["GET"])
def list_report_audit(report_id):
    report_lifecycle.get_report_or_404(report_id)
    rows = list_audit("monthly_report", report_id)
    return jsonify({"items": rows, "total": len(rows)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Documents
# ═════════════════════════════════════════════════════════════════════════


@monthly_report_bp.route("/jobs/<job_id>", methods=["GET"])
def poll_job(job_id):
    return jsonify(get_job_runner().poll(job_id)), 200


@monthly_report_bp.route("/<report_id>/documents/generate", methods=["POST"])
def generate_document(report_id):
    """Manual (re)generation; returns the job id to poll."""
    user_id, err = _actor()
    if err:
        return err
    job_id = get_job_runner().start(report_id, user_id)
    return jsonify({"job_id": job_id, "status_url": f"{monthly_report_bp.url_prefix}/jobs/{job_id}"}), 202


@monthly_report_bp.route("/<report_id>/documents", methods=["GET"])
def list_documents(report_id):
    documents = report_documents.list_documents(report_id)
    return jsonify({"items": documents, "total": len(documents)}), 200


@monthly_report_bp.route("/<report_id>/documents/latest/url", methods=["GET"])
def latest_document_url(report_id):
    action = request.args.get("action", "view")
    access = report_documents.issue_document_url(
        report_id, action=action, user_id=request.headers.get("X-User-Id"),
    )
    return jsonify(access), 200


@monthly_report_bp.route("/artifacts/<token>", methods=["GET"])
def serve_artifact(token):
    """Stream the decrypted PDF behind a signed handle. Never cached."""
    pdf_bytes, filename, action = report_documents.open_artifact(
        token, ip_address=request.remote_addr,
    )
    disposition = "attachment" if action == "download" else "inline"
    return Response(
        pdf_bytes,
        mimetype="application/pdf",
        headers={
            "Content-Disposition": f'{disposition}; filename="{filename}"',
            "Cache-Control": "no-store",
        },
    )


@monthly_report_bp.route("/<report_id>/verify", methods=["POST"])
def verify(report_id):
    """Recompute the stored artifact hash. TAMPERED is a result, not an error."""
    user_id, err = _actor()
    if err:
        return err
    return jsonify(report_documents.verify_report_integrity(report_id, user_id)), 200
