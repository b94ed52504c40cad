"""
Application factory and ``flask`` CLI command tests.
"""

import json
import logging

import pytest
from flask import g

from app import create_app
from app.middleware.logging_config import JSONFormatter, ReadableFormatter, RequestContextFilter
from app.services.scheduler_service import SchedulerService

BASE = "/api/v1/monthly-reports"
TEST_KEK = "Kq7!vR2#pX9$mT4&wZ6*bN1@cF8^hJ3%"


class TestCreateApp:
    def test_missing_key_fails_closed(self, tmp_path):
        with pytest.raises(RuntimeError, match="CRYPTO_KEK"):
            create_app("testing", {
                "REPORT_ENCRYPTION_KEY": None,
                "ALLOW_PLAINTEXT_ARTIFACTS": False,
                "ARTIFACT_STORAGE_ROOT": str(tmp_path),
            })

    def test_short_key_fails_closed(self, tmp_path):
        with pytest.raises(RuntimeError):
            create_app("testing", {
                "REPORT_ENCRYPTION_KEY": "not-32-chars",
                "ALLOW_PLAINTEXT_ARTIFACTS": False,
                "ARTIFACT_STORAGE_ROOT": str(tmp_path),
            })

    def test_valid_key_enables_encryption(self, tmp_path):
        application = create_app("testing", {
            "REPORT_ENCRYPTION_KEY": TEST_KEK,
            "ALLOW_PLAINTEXT_ARTIFACTS": False,
            "ARTIFACT_STORAGE_ROOT": str(tmp_path),
        })
        assert application.extensions["artifact_cipher"] is not None
        res = application.test_client().get("/api/v1/health")
        assert res.get_json()["encryption"] == "enabled"


class TestCli:
    def test_verify_report_valid(self, app, client, submitted_report):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["verify-report", submitted_report["report_id"]])
        assert result.exit_code == 0
        assert result.output.startswith("VALID")

    def test_verify_report_without_document(self, app, draft):
        result = app.test_cli_runner().invoke(args=["verify-report", draft["report_id"]])
        assert result.exit_code != 0

    def test_validate_kek_unset(self, app):
        result = app.test_cli_runner().invoke(args=["validate-kek"])
        assert result.exit_code == 1
        assert "Key is not set" in result.output

    def test_validate_kek_strong(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "REPORT_ENCRYPTION_KEY", TEST_KEK)
        result = app.test_cli_runner().invoke(args=["validate-kek"])
        assert result.exit_code == 0
        assert "acceptable" in result.output

    def test_run_job(self, app):
        SchedulerService.init_app(app)
        result = app.test_cli_runner().invoke(args=["run-job", "stale_report_job_sweeper"])
        assert result.exit_code == 0
        assert "jobs_swept" in result.output

    def test_run_unknown_job(self, app):
        SchedulerService.init_app(app)
        result = app.test_cli_runner().invoke(args=["run-job", "nope"])
        assert result.exit_code == 1

    def test_list_jobs(self, app):
        SchedulerService.init_app(app)
        result = app.test_cli_runner().invoke(args=["list-jobs"])
        assert result.exit_code == 0
        assert "legacy_linkage_retry" in result.output
        assert "stale_report_job_sweeper" in result.output


def test_submitted_fixture_generates_document(client, submitted_report):
    docs = client.get(f"{BASE}/{submitted_report['report_id']}/documents").get_json()
    assert docs["total"] == 1


class TestLogging:
    @staticmethod
    def _record(msg="job %s failed", args=("j-1",), **attrs):
        record = logging.LogRecord("app.services.report_job_runner", logging.WARNING,
                                   __file__, 10, msg, args, None)
        for key, value in attrs.items():
            setattr(record, key, value)
        return record

    def test_json_line_carries_report_context(self):
        record = self._record(report_id="r-1", job_id="j-1", event_type="report_job_failed")
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "job j-1 failed"
        assert entry["level"] == "WARNING"
        assert entry["report_id"] == "r-1"
        assert entry["job_id"] == "j-1"
        assert entry["event_type"] == "report_job_failed"
        assert "status" not in entry

    def test_request_id_and_route_ids_are_stamped(self, app):
        record = self._record()
        with app.test_request_context(f"{BASE}/r-9/submit", method="POST"):
            g.request_id = "req-1"
            assert RequestContextFilter().filter(record)
        assert record.request_id == "req-1"
        assert record.report_id == "r-9"

    def test_explicit_ids_win_over_route(self, app):
        record = self._record(report_id="r-explicit")
        with app.test_request_context(f"{BASE}/r-9/submit", method="POST"):
            RequestContextFilter().filter(record)
        assert record.report_id == "r-explicit"

    def test_readable_line_shows_ids(self):
        record = self._record(report_id="r-1", job_id="j-1", duration_ms=12.4)
        line = ReadableFormatter(color=False).format(record)
        assert line.endswith("app.services.report_job_runner: job j-1 failed [report=r-1 job=j-1 12ms]")
