"""
Matasa incident pipeline
Scheduled Jobs.

Jobs:
    - confidence_rescore: re-scores open incidents from the last 24 h
    - ussd_session_cleanup: deletes abandoned USSD sessions after retention
    - alert_expiry: marks alerts past valid_until as expired
    - notification_retry: sends pending (deferred, broadcast) and queued SMS
"""

from __future__ import annotations

import logging
from typing import Any

from matasa.services import get_services
from matasa.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("confidence_rescore", interval_minutes=60)
def rescore_confidence(app) -> dict[str, Any]:
    """Recompute confidence scores for open incidents from the last 24 hours."""
    return get_services().confidence.batch_update_scores(hours_back=24)


@register_job("ussd_session_cleanup", interval_minutes=60)
def cleanup_ussd_sessions(app) -> dict[str, Any]:
    """Delete USSD sessions that never completed and have been idle past retention."""
    retention = app.config.get("SESSION_RETENTION_HOURS", 24)
    removed = get_services().ussd.cleanup_sessions(retention_hours=retention)
    return {"removed": removed, "retention_hours": retention}


@register_job("alert_expiry", interval_minutes=5)
def expire_alerts(app) -> dict[str, Any]:
    """Mark community alerts whose validity window has passed as expired."""
    return {"expired": get_services().alerts.expire_alerts()}


@register_job("notification_retry", interval_minutes=2)
def retry_notifications(app) -> dict[str, Any]:
    """Retry SMS messages that could not be delivered inline."""
    services = get_services()
    summary = services.dispatcher.process_queue()
    summary["still_queued"] = services.dispatcher.queued_count()
    if summary["still_queued"]:
        logger.warning("%d SMS message(s) still awaiting delivery", summary["still_queued"],
                       extra={"event_type": "notification_backlog"})
    return summary
