"""
Concurrency tests — racing writers against one report.

These run against a file-backed SQLite database: the shared in-memory
connection used elsewhere cannot host real concurrent transactions.
Each thread pushes its own app context and therefore owns its session.
"""

import threading

import pytest

from app import create_app
from app.core.exceptions import ConflictError, InvalidTransitionError
from app.models import db
from app.models.monthly_report import MonthlyReport, MonthlyReportVersion, ReportGenerationJob
from app.services import draft_service
from app.services.report_job_runner import get_job_runner
from app.services.report_lifecycle import submit_report

WORKERS = 4


@pytest.fixture()
def file_app(tmp_path):
    application = create_app("testing", {
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'concurrency.db'}",
        "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 15}},
        "ARTIFACT_STORAGE_ROOT": str(tmp_path / "artifacts"),
    })
    yield application
    with application.app_context():
        db.session.remove()
        db.engine.dispose()


def _race(app, fn, count=WORKERS):
    """Run *fn* in *count* threads released together; collect outcomes."""
    barrier = threading.Barrier(count)
    outcomes = []
    lock = threading.Lock()

    def worker():
        with app.app_context():
            barrier.wait()
            try:
                result = fn()
            except Exception as exc:
                result = exc
            finally:
                db.session.remove()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return outcomes


def _filled_draft(app) -> str:
    with app.app_context():
        report = draft_service.open_draft("scholar-9", "proj-9", 2026, 2)
        draft_service.save_draft(report.id, {"activities": "A", "results": "B"})
        report_id = report.id
        db.session.remove()
    return report_id


class TestConcurrentOpen:
    def test_single_report_per_key(self, file_app):
        outcomes = _race(
            file_app, lambda: draft_service.open_draft("scholar-9", "proj-9", 2026, 2).id,
        )
        assert not [o for o in outcomes if isinstance(o, Exception)], outcomes
        assert len(set(outcomes)) == 1

        with file_app.app_context():
            assert MonthlyReport.query.count() == 1


class TestConcurrentSubmit:
    def test_exactly_one_submit_wins(self, file_app):
        report_id = _filled_draft(file_app)

        outcomes = _race(file_app, lambda: submit_report(report_id, "scholar-9"))

        winners = [o for o in outcomes if isinstance(o, dict)]
        losers = [o for o in outcomes if isinstance(o, Exception)]
        assert len(winners) == 1
        assert len(losers) == WORKERS - 1
        assert all(isinstance(o, (ConflictError, InvalidTransitionError)) for o in losers), losers

        with file_app.app_context():
            report = db.session.get(MonthlyReport, report_id)
            assert report.status == "submitted"
            assert MonthlyReportVersion.query.filter_by(report_id=report_id).count() == 1

    def test_save_racing_submit_never_edits_locked_report(self, file_app):
        report_id = _filled_draft(file_app)
        barrier = threading.Barrier(2)
        outcomes = {}

        def submit():
            with file_app.app_context():
                barrier.wait()
                try:
                    outcomes["submit"] = submit_report(report_id, "scholar-9")
                except Exception as exc:
                    outcomes["submit"] = exc
                finally:
                    db.session.remove()

        def save():
            with file_app.app_context():
                barrier.wait()
                try:
                    outcomes["save"] = draft_service.save_draft(
                        report_id, {"activities": "late edit", "results": "B"},
                    )
                except Exception as exc:
                    outcomes["save"] = exc
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=submit), threading.Thread(target=save)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        with file_app.app_context():
            report = db.session.get(MonthlyReport, report_id)
            version = MonthlyReportVersion.query.filter_by(report_id=report_id).first()
            if report.status == "submitted":
                # whatever was submitted is exactly what the payload holds now
                assert version.payload == report.fields.payload


class TestAsyncRunner:
    def test_background_job_completes(self, tmp_path):
        app = create_app("testing", {
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'async.db'}",
            "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 15}},
            "ARTIFACT_STORAGE_ROOT": str(tmp_path / "artifacts"),
            "REPORT_JOBS_ASYNC": True,
        })
        report_id = _filled_draft(app)
        with app.app_context():
            job_id = submit_report(report_id, "scholar-9")["job_id"]
            result = get_job_runner().wait(job_id, timeout=60)
            assert result["status"] == "success"
            assert ReportGenerationJob.query.filter_by(report_id=report_id).count() == 1
            db.session.remove()
        app.extensions["report_job_runner"].shutdown()
