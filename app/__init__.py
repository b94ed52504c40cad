"""
Grant Reporting Platform
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
    app = create_app("testing", {"ARTIFACT_STORAGE_ROOT": "/tmp/a"})
"""

import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from app.config import config
from app.models import db
from app.middleware.logging_config import configure_logging
from app.middleware.timing import init_request_timing
from app.middleware.diagnostics import run_startup_diagnostics
from app.middleware.rate_limiter import init_rate_limits
from app.utils.crypto import load_artifact_cipher, validate_kek_strength

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # limits are applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def _init_artifact_cipher(app):
    """Build the artifact cipher once per process.

    Without a valid key the app either refuses to start or, when
    ALLOW_PLAINTEXT_ARTIFACTS is set, runs in degraded mode.
    """
    cipher = load_artifact_cipher(app.config.get("REPORT_ENCRYPTION_KEY"))
    if cipher is None:
        if not app.config.get("ALLOW_PLAINTEXT_ARTIFACTS"):
            raise RuntimeError(
                "CRYPTO_KEK must be a 32-character key; set ALLOW_PLAINTEXT_ARTIFACTS=true "
                "to run without artifact encryption"
            )
        app.logger.warning(
            "No valid CRYPTO_KEK configured: report PDFs will be stored WITHOUT encryption",
        )
    app.extensions["artifact_cipher"] = cipher


def create_app(config_name=None, config_overrides=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        config_overrides: Optional mapping applied on top of the config
                     class (tests point storage and databases at tmp dirs).

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())
    if config_overrides:
        app.config.update(config_overrides)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Artifact encryption (fail closed unless degraded mode allowed) ───
    _init_artifact_cipher(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    @app.before_request
    def _guard_request():
        from flask import request as _req, abort
        # Content-Type validation for mutating methods
        if _req.method in ("POST", "PUT", "PATCH") and _req.path.startswith("/api/"):
            ct = _req.content_type or ""
            if _req.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from app.models import monthly_report as _monthly_report_models  # noqa: F401
    from app.models import legacy_report as _legacy_report_models    # noqa: F401
    from app.models import audit as _audit_models                    # noqa: F401
    from app.models import scheduling as _scheduling_models          # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ──
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints.monthly_report_bp import monthly_report_bp

    app.register_blueprint(monthly_report_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    import click

    @app.cli.command("verify-report")
    @click.argument("report_id")
    def verify_report_cmd(report_id):
        """Recompute and compare the stored PDF hash of a report."""
        from app.services.report_documents import verify_report_integrity
        result = verify_report_integrity(report_id, user_id="cli")
        click.echo(f"{result['status']}  stored={result['stored_hash']}  computed={result['computed_hash']}")
        if result["status"] != "VALID":
            raise SystemExit(1)

    @app.cli.command("validate-kek")
    def validate_kek_cmd():
        """Check the configured CRYPTO_KEK for strength problems."""
        problems = validate_kek_strength(app.config.get("REPORT_ENCRYPTION_KEY"))
        if not problems:
            click.echo("CRYPTO_KEK is acceptable")
            return
        for problem in problems:
            click.echo(f"  - {problem}")
        raise SystemExit(1)

    @app.cli.command("run-job")
    @click.argument("job_name")
    def run_job_cmd(job_name):
        """Run one scheduled maintenance job now."""
        from app.services.scheduler_service import SchedulerService
        result = SchedulerService.run_job(job_name)
        click.echo(result)
        if result.get("status") != "success":
            raise SystemExit(1)

    @app.cli.command("list-jobs")
    def list_jobs_cmd():
        """Show registered maintenance jobs and their last run."""
        from app.services.scheduler_service import SchedulerService
        SchedulerService.ensure_jobs_registered()
        for job in SchedulerService.list_jobs():
            record = job["db_record"] or {}
            click.echo(f"{job['job_name']:<28} last_run={record.get('last_run_at')} "
                       f"status={record.get('last_run_status')}")

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {
            "status": "ok",
            "app": app.config.get("PLATFORM_NAME"),
            "encryption": "enabled" if app.extensions.get("artifact_cipher") else "degraded",
        }

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"error": e.description}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Startup diagnostics ──────────────────────────────────────────────
    run_startup_diagnostics(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    from app.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)

    return app
