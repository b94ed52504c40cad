"""
Scheduled reconciliation jobs.

Jobs:
    - legacy_linkage_retry: links legacy uploads that a failed post-submit
      linkage left behind
    - stale_report_job_sweeper: fails generation jobs whose worker died
"""

from __future__ import annotations

import logging
from typing import Any

from app.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("legacy_linkage_retry")
def retry_legacy_linkage(app) -> dict[str, Any]:
    """Link pending legacy reports to already submitted monthly reports."""
    from app.services.legacy_linkage import retry_pending_linkage

    results = retry_pending_linkage()
    logger.info("Legacy linkage retry: %s", results)
    return results


@register_job("stale_report_job_sweeper")
def sweep_stale_report_jobs(app) -> dict[str, Any]:
    """Mark PDF generation jobs stuck in processing as failed."""
    from app.services.report_job_runner import get_job_runner

    max_age = app.config.get("REPORT_JOB_STALE_MINUTES", 30)
    swept = get_job_runner().sweep_stale_jobs(max_age)
    return {"jobs_swept": swept, "max_age_minutes": max_age}
