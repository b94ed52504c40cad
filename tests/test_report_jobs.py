"""
Background job runner tests — ``app/services/report_job_runner.py``.

TESTING runs the pipeline inline right after ``start`` commits, so every
job here has finished by the time ``start`` returns.
"""

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from app.core.exceptions import InvalidTransitionError, NotFoundError
from app.models import db
from app.models.audit import AuditLog
from app.models.monthly_report import MonthlyReport, MonthlyReportDocument, ReportGenerationJob
from app.services import draft_service
from app.services.artifact_storage import LocalArtifactStore, StorageError, build_storage_path
from app.services.report_documents import get_current_document, list_documents, verify_report_integrity
from app.services.report_job_runner import ReportJobRunner, get_job_runner
from app.services.report_lifecycle import transition_report


def _submitted(month=6) -> MonthlyReport:
    report = draft_service.open_draft("scholar-5", "proj-5", 2026, month, organization_id="org-5")
    draft_service.save_draft(report.id, {"activities": "Wrote chapter two", "results": "Draft ready"})
    transition_report(report.id, "submit", "scholar-5")
    return db.session.get(MonthlyReport, report.id)


def _artifact_path(app, storage_path) -> Path:
    return Path(app.config["ARTIFACT_STORAGE_ROOT"]) / storage_path


def _audit_actions(report_id):
    return [a.action for a in AuditLog.query.filter_by(entity_id=report_id).order_by(AuditLog.id)]


class TestSuccessfulGeneration:
    def test_poll_reports_location_and_hash(self, app):
        report = _submitted()
        job_id = get_job_runner().start(report.id, "scholar-5")

        result = get_job_runner().poll(job_id)
        assert result["status"] == "success"
        assert result["location"].startswith("/api/v1/monthly-reports/artifacts/")
        assert result["expires_in"] == 900

        fresh = db.session.get(MonthlyReport, report.id)
        assert result["contentHash"] == fresh.pdf_sha256
        document = get_current_document(report.id)
        assert document.sha256 == fresh.pdf_sha256
        assert document.meta["pages"] == 1
        assert document.meta["period"] == "06/2026"

    def test_degraded_mode_stores_plaintext_and_warns(self, app, caplog):
        report = _submitted()
        with caplog.at_level(logging.WARNING):
            get_job_runner().start(report.id, "scholar-5")

        document = get_current_document(report.id)
        assert document.encrypted is False
        assert document.storage_path.endswith(".pdf")
        assert _artifact_path(app, document.storage_path).read_bytes().startswith(b"%PDF-")
        assert any("WITHOUT encryption" in r.getMessage() for r in caplog.records)

    def test_encrypted_artifact_is_sealed(self, app, cipher):
        report = _submitted()
        get_job_runner().start(report.id, "scholar-5")

        document = get_current_document(report.id)
        assert document.encrypted is True
        assert document.storage_path.endswith(".pdf.enc")
        stored = _artifact_path(app, document.storage_path).read_bytes()
        assert not stored.startswith(b"%PDF-")
        assert cipher.unseal(stored).startswith(b"%PDF-")
        assert verify_report_integrity(report.id, "auditor-1")["status"] == "VALID"

    def test_regeneration_supersedes_previous_document(self):
        report = _submitted()
        runner = get_job_runner()
        first_job = runner.start(report.id, "scholar-5")
        second_job = runner.start(report.id, "manager-1")
        assert first_job != second_job

        documents = list_documents(report.id)
        assert len(documents) == 2
        current = [d for d in documents if d["superseded_at"] is None]
        assert len(current) == 1
        assert current[0]["job_id"] == second_job
        # same payload and submission time render the same bytes
        assert documents[0]["sha256"] == documents[1]["sha256"]

    def test_generation_never_touches_status(self):
        report = _submitted()
        get_job_runner().start(report.id, "scholar-5")
        assert db.session.get(MonthlyReport, report.id).status == "submitted"

    def test_audit_trail(self):
        report = _submitted()
        get_job_runner().start(report.id, "scholar-5")
        actions = _audit_actions(report.id)
        assert actions[-2:] == ["monthly_report.pdf_requested", "monthly_report.pdf_generated"]


class TestStartGuards:
    def test_draft_cannot_generate(self):
        report = draft_service.open_draft("scholar-5", "proj-5", 2026, 7)
        with pytest.raises(InvalidTransitionError) as exc:
            get_job_runner().start(report.id, "scholar-5")
        assert exc.value.action == "generate_pdf"
        assert ReportGenerationJob.query.count() == 0

    def test_cancelled_report_cannot_generate(self):
        report = _submitted()
        transition_report(report.id, "cancel", "manager-1")
        with pytest.raises(InvalidTransitionError):
            get_job_runner().start(report.id, "manager-1")

    def test_returned_report_keeps_its_submitted_document(self):
        report = _submitted()
        get_job_runner().start(report.id, "scholar-5")
        submitted_hash = db.session.get(MonthlyReport, report.id).pdf_sha256

        transition_report(report.id, "start_review", "manager-1")
        transition_report(report.id, "return", "manager-1", reason="fix dates")
        draft_service.save_draft(report.id, {"activities": "unsubmitted edit", "results": "B"})

        with pytest.raises(InvalidTransitionError) as exc:
            get_job_runner().start(report.id, "manager-1")
        assert exc.value.current_status == "returned"
        assert db.session.get(MonthlyReport, report.id).pdf_sha256 == submitted_hash
        assert MonthlyReportDocument.query.filter_by(report_id=report.id).count() == 1

    def test_running_job_is_returned_as_is(self):
        report = _submitted()
        running = ReportGenerationJob(report_id=report.id, requested_by_user_id="scholar-5",
                                      status="processing")
        db.session.add(running)
        db.session.commit()

        assert get_job_runner().start(report.id, "scholar-5") == running.id
        assert ReportGenerationJob.query.filter_by(report_id=report.id).count() == 1

    def test_unknown_report(self):
        with pytest.raises(NotFoundError):
            get_job_runner().start("missing", "scholar-5")


class TestFailures:
    def test_render_failure_is_reported_by_poll(self, monkeypatch):
        def boom(payload, context):
            raise RuntimeError("font cache corrupted")

        monkeypatch.setattr("app.services.report_job_runner.render_monthly_report", boom)
        report = _submitted()
        job_id = get_job_runner().start(report.id, "scholar-5")

        result = get_job_runner().poll(job_id)
        assert result["status"] == "error"
        assert "font cache corrupted" in result["message"]
        assert result["retry"].endswith("/documents/generate")
        assert MonthlyReportDocument.query.filter_by(report_id=report.id).count() == 0
        assert db.session.get(MonthlyReport, report.id).status == "submitted"
        assert "monthly_report.pdf_failed" in _audit_actions(report.id)

    def test_storage_failure_is_reported(self, monkeypatch):
        def refuse(self, storage_path, content):
            raise StorageError("disk full")

        monkeypatch.setattr(LocalArtifactStore, "write", refuse)
        report = _submitted()
        job_id = get_job_runner().start(report.id, "scholar-5")

        result = get_job_runner().poll(job_id)
        assert result["status"] == "error"
        assert result["message"] == "storage write failed: disk full"

    def test_failed_finalize_removes_artifact(self, app, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr(ReportJobRunner, "_record_document", staticmethod(broken))
        report = _submitted()
        job_id = get_job_runner().start(report.id, "scholar-5")

        assert get_job_runner().poll(job_id)["status"] == "error"
        orphan = build_storage_path(db.session.get(MonthlyReport, report.id), job_id, encrypted=False)
        assert not _artifact_path(app, orphan).exists()
        assert db.session.get(MonthlyReport, report.id).pdf_sha256 is None

    def test_retry_after_failure_succeeds(self, monkeypatch):
        calls = {"n": 0}
        from app.services import report_job_runner as module
        real_render = module.render_monthly_report

        def flaky(payload, context):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("transient")
            return real_render(payload, context)

        monkeypatch.setattr(module, "render_monthly_report", flaky)
        report = _submitted()
        failed = get_job_runner().start(report.id, "scholar-5")
        retried = get_job_runner().start(report.id, "scholar-5")

        assert get_job_runner().poll(failed)["status"] == "error"
        assert get_job_runner().poll(retried)["status"] == "success"


class TestPolling:
    def test_unknown_job(self):
        with pytest.raises(NotFoundError):
            get_job_runner().poll("no-such-job")

    def test_cancelled_after_generation(self):
        report = _submitted()
        job_id = get_job_runner().start(report.id, "scholar-5")
        transition_report(report.id, "cancel", "manager-1")

        result = get_job_runner().poll(job_id)
        assert result == {"status": "error", "job_id": job_id, "message": "report cancelled"}

    def test_processing_job(self):
        report = _submitted()
        job = ReportGenerationJob(report_id=report.id, requested_by_user_id="scholar-5")
        db.session.add(job)
        db.session.commit()
        assert get_job_runner().poll(job.id) == {"status": "processing", "job_id": job.id}


class TestStaleSweep:
    def test_old_processing_jobs_marked_failed(self):
        report = _submitted()
        stale = ReportGenerationJob(
            report_id=report.id, requested_by_user_id="scholar-5", status="processing",
            started_at=datetime.now(timezone.utc) - timedelta(hours=2),
        )
        fresh = ReportGenerationJob(report_id=report.id, requested_by_user_id="scholar-5",
                                    status="processing")
        db.session.add_all([stale, fresh])
        db.session.commit()

        assert get_job_runner().sweep_stale_jobs(max_age_minutes=30) == 1
        assert db.session.get(ReportGenerationJob, stale.id).status == "error"
        assert db.session.get(ReportGenerationJob, stale.id).error_message == "worker lost"
        assert db.session.get(ReportGenerationJob, fresh.id).status == "processing"

    def test_nothing_to_sweep(self):
        assert get_job_runner().sweep_stale_jobs() == 0
