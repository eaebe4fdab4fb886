"""
HoldingManager — Approval Workflow & Alerts
Scheduled Jobs.

Jobs:
    - alert_scan: runs every alert rule (overdue / due-soon invoices,
      expiring contracts, workflow event backfill)
"""

from __future__ import annotations

import logging
from typing import Any

from holdingmanager.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("alert_scan")
def alert_scan(app) -> dict[str, Any]:
    """Scan invoices, contracts and workflow events and create missing alerts."""
    from holdingmanager.services.alert_generator import run_alert_scan

    summary = run_alert_scan()
    if summary["errors"]:
        logger.warning("Alert scan finished with %d rule error(s)", len(summary["errors"]),
                       extra={"job_name": "alert_scan"})
    return summary
