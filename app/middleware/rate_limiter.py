"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in app/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Autosave fires every few seconds per open editor, so the report API
# gets a generous ceiling; artifact downloads are tighter.
REPORT_API_LIMIT = "240/minute"
ARTIFACT_LIMIT = "30/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Monthly report API:  240/minute
        - Artifact download:   30/minute
        - Health check:        exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("monthly_reports")
    if bp:
        limiter.limit(REPORT_API_LIMIT)(bp)

    serve = app.view_functions.get("monthly_reports.serve_artifact")
    if serve:
        app.view_functions["monthly_reports.serve_artifact"] = limiter.limit(ARTIFACT_LIMIT)(serve)

    # Health check is exempt
    health = app.view_functions.get("health")
    if health:
        limiter.exempt(health)

    app.logger.info(
        "Rate limiter configured — reports: %s, artifacts: %s",
        REPORT_API_LIMIT, ARTIFACT_LIMIT,
    )
