"""
Operations dashboard: aggregates for the admin console.

  - dashboard(period):       incidents, confidence, alerts, escalations, response
  - live_incidents():        last 24 h of unresolved incidents with their escalation path
  - response_status(period): workload by status / type / assignee and SLA compliance

An incident counts against its SLA once a response took longer than
``escalation_sla_minutes`` (or 30 minutes per escalation level when no rule
set one). Escalated incidents with no response yet are measured against the
time elapsed since escalation.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import timedelta
from typing import Callable

from matasa.core.exceptions import ValidationError
from matasa.models.incident import INCIDENT_STATUSES
from matasa.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

PERIODS = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}
DEFAULT_PERIOD = "24h"

LIVE_WINDOW = timedelta(hours=24)
LIVE_EXCLUDED_STATUSES = ("resolved", "closed", "expired", "false_alarm", "merged")
LIVE_MAX_LIMIT = 200

RESOLVED_STATUSES = ("resolved", "closed")
SLA_MINUTES_PER_LEVEL = 30


def _average(values) -> int:
    values = list(values)
    return round(sum(values) / len(values)) if values else 0


class DashboardService:

    def __init__(self, store, ingestion, confidence, escalation, alerts, *, clock: Callable = utcnow) -> None:
        self.store = store
        self.ingestion = ingestion
        self.confidence = confidence
        self.escalation = escalation
        self.alerts = alerts
        self.clock = clock

    def _since(self, period: str | None):
        period = period or DEFAULT_PERIOD
        if period not in PERIODS:
            raise ValidationError(
                f"Unknown period: {period}",
                details={"period": f"must be one of {', '.join(PERIODS)}"},
            )
        return period, self.clock() - PERIODS[period]

    def dashboard(self, period: str | None = None) -> dict:
        period, since = self._since(period)
        incidents = self.ingestion.get_statistics(date_from=since)
        escalated = incidents["by_status"].get("escalated", 0)
        resolved = [
            i for i in self.store.incidents_between({"date_from": since})
            if i.status in RESOLVED_STATUSES
        ]
        return {
            "period": period,
            "since": since.isoformat(),
            "incidents": incidents,
            "confidence": self.confidence.get_confidence_stats(since),
            "alerts": self.alerts.get_alert_stats(since),
            "escalations": {
                "total": escalated,
                "rate": round(escalated / incidents["total"] * 100) if incidents["total"] else 0,
            },
            "response": {
                "resolved": len(resolved),
                "average_response_time": _average(
                    i.response_time_minutes for i in resolved if i.response_time_minutes
                ),
            },
        }

    def live_incidents(self, *, limit: int = 50, status: str | None = None) -> list[dict]:
        if status and status not in INCIDENT_STATUSES:
            raise ValidationError(f"Unknown status: {status}", details={"status": "unknown status"})
        if not 1 <= limit <= LIVE_MAX_LIMIT:
            raise ValidationError("limit out of range", details={"limit": f"must be 1-{LIVE_MAX_LIMIT}"})
        incidents = self.store.live_incidents(
            self.clock() - LIVE_WINDOW,
            excluded_statuses=LIVE_EXCLUDED_STATUSES,
            status=status,
            limit=limit,
        )
        items = []
        for incident in incidents:
            item = incident.to_dict()
            item["escalation"] = self.escalation.escalation_path(incident)
            items.append(item)
        return items

    def _sla_met(self, incident, now) -> bool:
        sla = incident.escalation_sla_minutes or max(incident.escalation_level or 0, 1) * SLA_MINUTES_PER_LEVEL
        if incident.response_time_minutes is not None:
            return incident.response_time_minutes <= sla
        escalated_at = as_utc(incident.escalation_escalated_at) or as_utc(incident.created_at)
        return now - escalated_at <= timedelta(minutes=sla)

    def response_status(self, period: str | None = None) -> dict:
        period, since = self._since(period)
        now = self.clock()
        incidents = [
            i for i in self.store.incidents_between({"date_from": since})
            if i.status != "received"
        ]
        escalated = [i for i in incidents if i.status == "escalated"]
        on_time = sum(1 for i in escalated if self._sla_met(i, now))
        return {
            "period": period,
            "total_incidents": len(incidents),
            "by_status": dict(Counter(i.status for i in incidents)),
            "by_type": dict(Counter(i.incident_type for i in incidents)),
            "by_assignee": dict(Counter(i.escalation_assigned_to_name or "Unassigned" for i in incidents)),
            "average_response_time": _average(
                i.response_time_minutes for i in incidents if i.response_time_minutes
            ),
            "sla_compliance": {
                "total": len(escalated),
                "on_time": on_time,
                "rate": round(on_time / len(escalated) * 100) if escalated else 100,
            },
        }
