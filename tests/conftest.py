"""
Shared pytest fixtures for the Grant Reporting Platform test suite.

Provides:
    - app: Flask application (session-scoped, in-memory SQLite, tmp artifact root)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - valid_payload: payload dict that passes the submit guard
    - cipher: installs an AES-256-GCM artifact cipher for one test
    - draft / filled_draft / submitted_report: reports at a given stage
"""

import pytest

from app import create_app
from app.models import db as _db
from app.utils.crypto import ArtifactCipher

BASE = "/api/v1/monthly-reports"

TEST_KEK = "Kq7!vR2#pX9$mT4&wZ6*bN1@cF8^hJ3%"

VALID_PAYLOAD = {
    "activities": "Collected field samples and calibrated the sensors.",
    "results": "Dataset for the first quarter is complete.",
    "difficulties": "Two days lost to equipment maintenance.",
    "next_steps": "Start the statistical analysis.",
    "remarks": "",
    "hours": 160,
    "deliverables": ["Sample inventory", "Calibration log"],
}


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app(tmp_path_factory):
    """Create the Flask application once per test session."""
    artifact_root = tmp_path_factory.mktemp("artifacts")
    application = create_app("testing", {"ARTIFACT_STORAGE_ROOT": str(artifact_root)})
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def valid_payload():
    """A payload that passes the submit guard."""
    return {**VALID_PAYLOAD, "deliverables": list(VALID_PAYLOAD["deliverables"])}


@pytest.fixture()
def cipher(app, monkeypatch):
    """Run one test with artifact encryption enabled."""
    c = ArtifactCipher(TEST_KEK.encode("utf-8"))
    monkeypatch.setitem(app.extensions, "artifact_cipher", c)
    return c


# ── Report fixtures ──────────────────────────────────────────────────────


def open_report(client, subject="scholar-1", project="proj-1", year=2026, month=3, **extra):
    """Open a report via the API and return the JSON body."""
    res = client.post(f"{BASE}/open", json={
        "subject_id": subject, "project_id": project, "year": year, "month": month, **extra,
    })
    assert res.status_code == 200, res.get_json()
    return res.get_json()


@pytest.fixture()
def draft(client):
    """An empty draft opened through the API."""
    return open_report(client, organization_id="org-1")


@pytest.fixture()
def filled_draft(client, draft):
    """A draft whose mandatory fields are filled."""
    res = client.put(f"{BASE}/{draft['report_id']}/draft", json={"payload": VALID_PAYLOAD})
    assert res.status_code == 200, res.get_json()
    return draft


@pytest.fixture()
def submitted_report(client, filled_draft):
    """A submitted report; its PDF job ran inline (TESTING)."""
    res = client.post(f"{BASE}/{filled_draft['report_id']}/submit", json={"user_id": "scholar-1"})
    assert res.status_code == 200, res.get_json()
    return res.get_json()
