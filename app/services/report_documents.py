"""
Report document service — everything that happens to a generated artifact
after the job runner stored it.

    - build_report_context: descriptors printed on the PDF
    - list_documents / get_current_document: document history
    - issue_document_url: short-lived signed handle for view/download
    - open_artifact: resolve a handle, unseal, re-check the hash, log access
    - verify_report_integrity: on-demand tamper check of the current artifact

Subject, project and organization descriptors come from directories this
service does not own. Register a provider with
``app.extensions["report_context_provider"] = fn(report) -> dict``; without
one the stored identifiers are printed.
"""

import logging
from datetime import timezone

from flask import current_app

from app.core.exceptions import IntegrityMismatchError, NotFoundError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.monthly_report import (
    ACCESS_ACTIONS,
    MonthlyReport,
    MonthlyReportDocument,
    ReportAccessLog,
)
from app.services.artifact_storage import StorageError, get_artifact_store
from app.services.jwt_service import decode_artifact_token, generate_artifact_token, get_url_expires
from app.services.report_lifecycle import get_report_or_404
from app.services.report_pdf import ReportContext
from app.utils.crypto import EncryptionUnavailableError, recompute_artifact_hash

logger = logging.getLogger(__name__)

ARTIFACT_URL_PREFIX = "/api/v1/monthly-reports/artifacts"

_CONTEXT_FIELDS = set(ReportContext.__dataclass_fields__) - {"report_id", "period_label", "submitted_at"}


def get_cipher():
    """Process-wide artifact cipher, or None in degraded (plaintext) mode."""
    return current_app.extensions.get("artifact_cipher")


def build_report_context(report: MonthlyReport) -> ReportContext:
    submitted_at = report.submitted_at or report.updated_at
    if submitted_at.tzinfo is None:
        submitted_at = submitted_at.replace(tzinfo=timezone.utc)

    values = {
        "subject_name": report.beneficiary_user_id,
        "project_code": report.project_id,
        "organization_name": report.organization_id or "Institution",
        "platform_name": current_app.config.get("PLATFORM_NAME", "Grant Reporting Platform"),
    }
    provider = current_app.extensions.get("report_context_provider")
    if provider is not None:
        extra = provider(report) or {}
        values.update({k: v for k, v in extra.items() if k in _CONTEXT_FIELDS and v})

    return ReportContext(
        report_id=report.id,
        period_label=report.period_label,
        submitted_at=submitted_at,
        **values,
    )


# ── Document history ────────────────────────────────────────────────────────


def list_documents(report_id: str) -> list[dict]:
    get_report_or_404(report_id)
    rows = (
        MonthlyReportDocument.query
        .filter_by(report_id=report_id)
        .order_by(MonthlyReportDocument.generated_at.desc())
        .all()
    )
    return [d.to_dict() for d in rows]


def get_current_document(report_id: str) -> MonthlyReportDocument | None:
    return (
        MonthlyReportDocument.query
        .filter_by(report_id=report_id, superseded_at=None)
        .order_by(MonthlyReportDocument.generated_at.desc())
        .first()
    )


def _require_current_document(report_id: str) -> MonthlyReportDocument:
    document = get_current_document(report_id)
    if document is None:
        raise NotFoundError(resource="MonthlyReportDocument", resource_id=f"report={report_id}")
    return document


# ── Signed access ───────────────────────────────────────────────────────────


def artifact_url(token: str) -> str:
    return f"{ARTIFACT_URL_PREFIX}/{token}"


def issue_document_url(
    report_id: str,
    *,
    action: str = "view",
    user_id: str | None = None,
    document: MonthlyReportDocument | None = None,
) -> dict:
    """Signed URL for the current document of a report."""
    if action not in ACCESS_ACTIONS:
        raise ValidationError("Invalid access action", details={"action": f"must be one of {sorted(ACCESS_ACTIONS)}"})
    if document is None:
        get_report_or_404(report_id)
        document = _require_current_document(report_id)
    token = generate_artifact_token(document.id, report_id, action, user_id)
    return {
        "url": artifact_url(token),
        "expires_in": get_url_expires(),
        "document_id": document.id,
        "action": action,
    }


def _load_plaintext(document: MonthlyReportDocument) -> bytes:
    """Read, unseal and hash-check a stored document.

    Raises:
        IntegrityMismatchError: the tag fails or the hash differs.
    """
    stored = get_artifact_store().read(document.storage_path)
    if document.encrypted:
        cipher = get_cipher()
        if cipher is None:
            raise EncryptionUnavailableError("Artifact is encrypted but no encryption key is configured")
        plaintext = cipher.unseal(stored)
    else:
        plaintext = stored
    computed = recompute_artifact_hash(plaintext, encrypted=False)
    if computed != document.sha256:
        raise IntegrityMismatchError(
            f"Stored artifact for report {document.report_id} does not match its hash",
            expected=document.sha256,
            computed=computed,
        )
    return plaintext


def open_artifact(token: str, *, ip_address: str | None = None) -> tuple[bytes, str, str]:
    """Resolve a signed handle to the decrypted PDF.

    Returns ``(pdf_bytes, filename, action)``. Token errors propagate as
    ``jwt`` exceptions; the blueprint maps them to 403.
    """
    claims = decode_artifact_token(token)
    document = db.session.get(MonthlyReportDocument, claims["sub"])
    if document is None or document.report_id != claims.get("rid"):
        raise NotFoundError(resource="MonthlyReportDocument", resource_id=claims.get("sub"))

    action = claims.get("act", "view")
    user_id = claims.get("uid")
    try:
        plaintext = _load_plaintext(document)
    except IntegrityMismatchError:
        _record_integrity_result(document, user_id, valid=False, ip_address=ip_address)
        raise

    report = db.session.get(MonthlyReport, document.report_id)
    db.session.add(ReportAccessLog(
        report_id=document.report_id,
        document_id=document.id,
        user_id=user_id,
        action=action,
        ip_address=ip_address,
    ))
    write_audit(
        entity_type="monthly_report",
        entity_id=document.report_id,
        action="monthly_report.artifact_access",
        actor=user_id or "anonymous",
        organization_id=report.organization_id if report else None,
        diff={"document_id": document.id, "action": action},
    )
    db.session.commit()

    filename = f"relatorio_oficial_{report.period_key if report else document.report_id}.pdf"
    return plaintext, filename, action


# ── Integrity verification ──────────────────────────────────────────────────


def _record_integrity_result(document, user_id, *, valid: bool, computed: str | None = None,
                             ip_address: str | None = None) -> None:
    report = db.session.get(MonthlyReport, document.report_id)
    if not valid:
        logger.critical(
            "SECURITY: integrity mismatch on report %s document %s (stored=%s computed=%s)",
            document.report_id, document.id, document.sha256, computed,
            extra={"event_type": "integrity_mismatch", "report_id": document.report_id},
        )
    write_audit(
        entity_type="monthly_report",
        entity_id=document.report_id,
        action="monthly_report.integrity_check",
        actor=user_id or "system",
        organization_id=report.organization_id if report else None,
        diff={
            "document_id": document.id,
            "status": "VALID" if valid else "TAMPERED",
            "stored_hash": document.sha256,
            "computed_hash": computed,
            "ip_address": ip_address,
        },
    )
    db.session.commit()


def verify_report_integrity(report_id: str, user_id: str | None = None) -> dict:
    """
    Recompute the hash of the current stored artifact and compare it with
    the hash recorded at generation time.

    Returns:
        {"status": "VALID"|"TAMPERED", "computed_hash", "stored_hash", "document_id"}

    A TAMPERED result is logged at CRITICAL and audited; it is never repaired.
    """
    report = get_report_or_404(report_id)
    document = _require_current_document(report_id)
    stored_hash = document.sha256

    try:
        stored = get_artifact_store().read(document.storage_path)
    except StorageError:
        logger.error("Artifact %s of report %s is missing from storage",
                     document.storage_path, report_id)
        computed = None
    else:
        computed = recompute_artifact_hash(stored, encrypted=document.encrypted, cipher=get_cipher())
    valid = computed is not None and computed == stored_hash and stored_hash == report.pdf_sha256

    _record_integrity_result(document, user_id, valid=valid, computed=computed)
    return {
        "status": "VALID" if valid else "TAMPERED",
        "computed_hash": computed,
        "stored_hash": stored_hash,
        "document_id": document.id,
    }
