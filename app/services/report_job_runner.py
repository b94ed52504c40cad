"""
Background PDF generation for submitted monthly reports.

Fire-and-forget with durable status: ``start`` commits a ``processing`` row
in report_generation_jobs and hands the pipeline to a worker thread, then
returns the job id. Clients poll ``poll(job_id)``; nobody has to be
listening for the job to finish.

Pipeline (one worker, own app context):
    load report + payload → build PDF → SHA-256 over plaintext
    → seal with AES-256-GCM (or store plaintext in degraded mode)
    → write artifact → one transaction: insert document, supersede the
      previous one, record report.pdf_sha256, mark job success, audit.

Any failure rolls back, removes an already written artifact, and marks the
job ``error`` with a message. The report status is never touched here.
"""

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    ConflictError,
    GenerationFailedError,
    InvalidTransitionError,
    NotFoundError,
)
from app.models import db
from app.models.audit import write_audit
from app.models.monthly_report import (
    MonthlyReport,
    MonthlyReportDocument,
    ReportGenerationJob,
)
from app.services.artifact_storage import StorageError, build_storage_path, get_artifact_store
from app.services.report_documents import (
    build_report_context,
    get_cipher,
    issue_document_url,
)
from app.services.report_lifecycle import available_actions, get_report_or_404, report_write
from app.services.report_payload import load_stored_payload
from app.services.report_pdf import render_monthly_report
from app.utils.crypto import sha256_hex

logger = logging.getLogger(__name__)

GENERATABLE_STATUSES = frozenset({"submitted", "under_review", "approved"})
RETRY_HINT = "POST /api/v1/monthly-reports/<id>/documents/generate"
FINALIZE_ATTEMPTS = 3
DEFAULT_WORKERS = 2
DEFAULT_STALE_MINUTES = 30


class ReportJobRunner:
    """Runs report generation jobs on a small thread pool."""

    def __init__(self, app, *, max_workers: int = DEFAULT_WORKERS, run_async: bool = True):
        self.app = app
        self.max_workers = max_workers
        self.run_async = run_async
        self._executor: ThreadPoolExecutor | None = None
        self._futures: dict = {}
        self._lock = threading.Lock()

    # ── Public API ────────────────────────────────────────────────────────

    def start(self, report_id: str, user_id: str) -> str:
        """
        Register a generation job and schedule it. Returns immediately.

        A job already ``processing`` for the report is returned as-is.

        Raises:
            NotFoundError, InvalidTransitionError (draft, returned or cancelled report)
        """
        report = get_report_or_404(report_id)
        if report.status not in GENERATABLE_STATUSES:
            raise InvalidTransitionError(
                "generate_pdf", report.status,
                "a document can only be generated for a submitted report",
                available_actions(report),
            )

        running = self._processing_job(report_id)
        if running:
            logger.info("Report %s already has job %s processing", report_id, running.id)
            return running.id

        seen_version = report.version
        job_id = str(uuid.uuid4())
        try:
            with report_write(report_id, seen_version):
                db.session.add(ReportGenerationJob(
                    id=job_id, report_id=report_id, requested_by_user_id=user_id, status="processing",
                ))
                # touching the report row serializes concurrent starts on its version
                report.updated_at = datetime.now(timezone.utc)
                write_audit(
                    entity_type="monthly_report",
                    entity_id=report_id,
                    action="monthly_report.pdf_requested",
                    actor=user_id,
                    organization_id=report.organization_id,
                    diff={"job_id": job_id},
                )
        except ConflictError:
            running = self._processing_job(report_id)
            if running is None:
                raise
            return running.id

        logger.info("Queued PDF job %s for report %s", job_id, report_id,
                    extra={"event_type": "report_job_queued", "job_id": job_id})
        self._dispatch(job_id)
        return job_id

    def poll(self, job_id: str) -> dict:
        """
        Current state of a job:
            {"status": "processing"}
            {"status": "success", "location", "contentHash"}
            {"status": "error", "message", "retry"}
        """
        job = db.session.get(ReportGenerationJob, job_id)
        if not job:
            raise NotFoundError(resource="ReportGenerationJob", resource_id=job_id)

        if job.status == "processing":
            return {"status": "processing", "job_id": job.id}
        if job.status == "error":
            return {"status": "error", "job_id": job.id, "message": job.error_message,
                    "retry": RETRY_HINT}

        report = db.session.get(MonthlyReport, job.report_id)
        if report is None or report.status == "cancelled":
            return {"status": "error", "job_id": job.id, "message": "report cancelled"}

        document = db.session.get(MonthlyReportDocument, job.document_id)
        access = issue_document_url(job.report_id, document=document,
                                    user_id=job.requested_by_user_id)
        return {
            "status": "success",
            "job_id": job.id,
            "location": access["url"],
            "expires_in": access["expires_in"],
            "contentHash": document.sha256,
        }

    def wait(self, job_id: str, timeout: float | None = None) -> dict:
        """Block until an in-process job finishes, then poll it."""
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        db.session.expire_all()
        return self.poll(job_id)

    def sweep_stale_jobs(self, max_age_minutes: int | None = None) -> int:
        """Mark jobs orphaned by a dead worker as ``error``. Returns the count."""
        if max_age_minutes is None:
            max_age_minutes = current_app.config.get("REPORT_JOB_STALE_MINUTES", DEFAULT_STALE_MINUTES)
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=max_age_minutes)

        stale = (
            ReportGenerationJob.query
            .filter(ReportGenerationJob.status == "processing")
            .filter(ReportGenerationJob.started_at < cutoff)
            .all()
        )
        swept = 0
        for job in stale:
            with self._lock:
                future = self._futures.get(job.id)
            if future is not None and not future.done():
                continue
            job.status = "error"
            job.error_message = "worker lost"
            job.finished_at = datetime.now(timezone.utc)
            write_audit(
                entity_type="monthly_report",
                entity_id=job.report_id,
                action="monthly_report.pdf_failed",
                actor="system",
                diff={"job_id": job.id, "error": "worker lost"},
            )
            swept += 1
        db.session.commit()
        if swept:
            logger.warning("Swept %d stale report generation job(s)", swept)
        return swept

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    # ── Internal ──────────────────────────────────────────────────────────

    @staticmethod
    def _processing_job(report_id: str):
        return ReportGenerationJob.query.filter_by(report_id=report_id, status="processing").first()

    def _dispatch(self, job_id: str) -> None:
        if not self.run_async:
            self._execute(job_id)
            return
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers, thread_name_prefix="report-job",
                )
            future = self._executor.submit(self._execute, job_id)
            self._futures[job_id] = future
        future.add_done_callback(lambda _f: self._forget(job_id))

    def _forget(self, job_id: str) -> None:
        with self._lock:
            self._futures.pop(job_id, None)

    def _execute(self, job_id: str) -> None:
        """Run the pipeline in a fresh app context and record the outcome."""
        with self.app.app_context():
            try:
                self._run_pipeline(job_id)
            except Exception as exc:
                logger.exception("PDF job %s failed", job_id,
                                 extra={"event_type": "report_job_failed", "job_id": job_id})
                db.session.rollback()
                self._mark_failed(job_id, exc)
            finally:
                db.session.remove()

    def _run_pipeline(self, job_id: str) -> None:
        job = db.session.get(ReportGenerationJob, job_id)
        if job is None:
            raise GenerationFailedError(f"job {job_id} disappeared")
        report = db.session.get(MonthlyReport, job.report_id)
        if report is None:
            raise GenerationFailedError(f"report {job.report_id} not found")

        payload = load_stored_payload(report.fields.payload if report.fields else None)
        context = build_report_context(report)
        pdf_bytes, pages = render_monthly_report(payload, context)
        content_hash = sha256_hex(pdf_bytes)

        cipher = get_cipher()
        if cipher is not None:
            stored = cipher.seal(pdf_bytes)
        else:
            logger.warning(
                "Storing report %s artifact WITHOUT encryption (no valid CRYPTO_KEK)",
                report.id, extra={"event_type": "degraded_encryption"},
            )
            stored = pdf_bytes
        encrypted = cipher is not None

        storage_path = build_storage_path(report, job_id, encrypted=encrypted)
        try:
            get_artifact_store().write(storage_path, stored)
        except StorageError as exc:
            raise GenerationFailedError(f"storage write failed: {exc}") from exc

        try:
            self._finalize(job_id, storage_path, content_hash, encrypted, pages, len(pdf_bytes))
        except Exception:
            db.session.rollback()
            try:
                get_artifact_store().delete(storage_path)
            except StorageError:
                logger.error("Could not remove orphaned artifact %s", storage_path)
            raise

    def _finalize(self, job_id, storage_path, content_hash, encrypted, pages, size) -> None:
        """Record the document and job outcome atomically, retrying lost races."""
        for attempt in range(1, FINALIZE_ATTEMPTS + 1):
            try:
                report_id, superseded = self._record_document(
                    job_id, storage_path, content_hash, encrypted, pages, size,
                )
                db.session.commit()
            except (StaleDataError, IntegrityError, OperationalError):
                db.session.rollback()
                if attempt == FINALIZE_ATTEMPTS:
                    raise
                logger.info("Report changed while job %s finished; retrying (%d)", job_id, attempt)
                continue
            logger.info("PDF job %s succeeded for report %s (sha256=%s, encrypted=%s, superseded=%d)",
                        job_id, report_id, content_hash, encrypted, superseded,
                        extra={"event_type": "report_job_success", "job_id": job_id,
                               "report_id": report_id})
            return

    @staticmethod
    def _record_document(job_id, storage_path, content_hash, encrypted, pages, size):
        job = db.session.get(ReportGenerationJob, job_id)
        report = db.session.get(MonthlyReport, job.report_id)
        now = datetime.now(timezone.utc)

        previous = (
            MonthlyReportDocument.query
            .filter_by(report_id=report.id, superseded_at=None)
            .all()
        )
        for doc in previous:
            doc.superseded_at = now

        document_id = str(uuid.uuid4())
        db.session.add(MonthlyReportDocument(
            id=document_id,
            report_id=report.id,
            job_id=job_id,
            type="official_pdf",
            storage_path=storage_path,
            sha256=content_hash,
            encrypted=encrypted,
            generated_by_user_id=job.requested_by_user_id,
            meta={"pages": pages, "period": report.period_label, "size_bytes": size},
        ))

        report.pdf_sha256 = content_hash
        job.status = "success"
        job.document_id = document_id
        job.finished_at = now
        job.error_message = None
        write_audit(
            entity_type="monthly_report",
            entity_id=report.id,
            action="monthly_report.pdf_generated",
            actor=job.requested_by_user_id,
            organization_id=report.organization_id,
            diff={
                "job_id": job_id,
                "document_id": document_id,
                "sha256": content_hash,
                "encrypted": encrypted,
                "superseded": [d.id for d in previous],
            },
        )
        return report.id, len(previous)

    def _mark_failed(self, job_id: str, exc: Exception) -> None:
        try:
            job = db.session.get(ReportGenerationJob, job_id)
            if job is None:
                return
            message = str(exc) if isinstance(exc, GenerationFailedError) else f"{type(exc).__name__}: {exc}"
            job.status = "error"
            job.error_message = message[:2000]
            job.finished_at = datetime.now(timezone.utc)
            write_audit(
                entity_type="monthly_report",
                entity_id=job.report_id,
                action="monthly_report.pdf_failed",
                actor=job.requested_by_user_id,
                diff={"job_id": job_id, "error": job.error_message},
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception("Could not record failure of PDF job %s", job_id)


def get_job_runner() -> ReportJobRunner:
    """The runner bound to the current app, created on first use."""
    app = current_app._get_current_object()
    runner = app.extensions.get("report_job_runner")
    if runner is None:
        runner = ReportJobRunner(
            app,
            max_workers=app.config.get("REPORT_JOB_WORKERS", DEFAULT_WORKERS),
            run_async=app.config.get("REPORT_JOBS_ASYNC", True),
        )
        app.extensions["report_job_runner"] = runner
    return runner
