"""
Startup diagnostics — runs once when the Flask app starts.

Checks critical dependencies and logs a summary banner.
"""

import logging
import os
import sys

from flask import Flask

from app.models import db

logger = logging.getLogger(__name__)


def run_startup_diagnostics(app: Flask):
    """Run diagnostic checks during app startup (inside app context)."""
    if app.config.get("TESTING"):
        return  # skip during tests for speed

    issues: list[str] = []

    with app.app_context():
        # ── Python version ───────────────────────────────────────────
        py = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"

        # ── Database connectivity ────────────────────────────────────
        db_status = "ok"
        db_uri = str(app.config.get("SQLALCHEMY_DATABASE_URI", ""))
        db_type = "PostgreSQL" if "postgresql" in db_uri else "SQLite" if "sqlite" in db_uri else "unknown"
        try:
            db.session.execute(db.text("SELECT 1"))
        except Exception as exc:
            db_status = f"FAILED ({exc})"
            issues.append(f"Database unreachable: {exc}")

        # ── Table count ──────────────────────────────────────────────
        try:
            from sqlalchemy import inspect as sa_inspect
            table_count = len(sa_inspect(db.engine).get_table_names())
            if table_count == 0:
                issues.append("No tables found, run 'flask db upgrade'")
        except Exception:
            table_count = "?"

        # ── Artifact encryption ──────────────────────────────────────
        if app.extensions.get("artifact_cipher") is not None:
            encryption = "AES-256-GCM"
        else:
            encryption = "DEGRADED (plaintext)"
            issues.append("CRYPTO_KEK missing or invalid: report PDFs are stored unencrypted")

        # ── Artifact storage ─────────────────────────────────────────
        storage_root = app.config.get("ARTIFACT_STORAGE_ROOT", "")
        if os.path.isdir(storage_root):
            storage_status = "ok" if os.access(storage_root, os.W_OK) else "NOT WRITABLE"
        else:
            storage_status = "will be created"
        if storage_status == "NOT WRITABLE":
            issues.append(f"Artifact storage root is not writable: {storage_root}")

        # ── Job runner ───────────────────────────────────────────────
        workers = app.config.get("REPORT_JOB_WORKERS", 2)
        jobs_mode = f"async, {workers} worker(s)" if app.config.get("REPORT_JOBS_ASYNC", True) else "inline"

        # ── Banner ───────────────────────────────────────────────────
        banner = f"""
╔══════════════════════════════════════════════════════════════╗
║  {app.config.get('PLATFORM_NAME', 'Grant Reporting Platform') + ' — Startup Diagnostics':<60s}║
╠══════════════════════════════════════════════════════════════╣
║  Python      : {py:<46s}║
║  Debug       : {str(app.debug):<46s}║
║  Database    : {db_type} ({db_status}){' ' * max(0, 46 - len(db_type) - len(str(db_status)) - 3)}║
║  Tables      : {str(table_count):<46s}║
║  Encryption  : {encryption:<46s}║
║  Storage     : {storage_status:<46s}║
║  PDF jobs    : {jobs_mode:<46s}║
╚══════════════════════════════════════════════════════════════╝"""
        logger.info(banner)

        if issues:
            logger.warning("Startup issues detected:")
            for issue in issues:
                logger.warning("  ⚠ %s", issue)
        else:
            logger.info("✅ All startup checks passed")
