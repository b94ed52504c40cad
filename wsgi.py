"""
WSGI entry point and Flask-Migrate / Alembic target.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi verify-report <report_id>
"""

import atexit

from app import create_app

app = create_app()


@atexit.register
def _drain_report_jobs():
    runner = app.extensions.get("report_job_runner")
    if runner is not None:
        runner.shutdown(wait=True)
