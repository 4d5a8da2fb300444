"""
Community alerts: creation, SMS broadcast, cancellation, expiry and the
USSD "read alerts" menu text (cached per language for ALERT_CACHE_SECONDS).

A broadcast only writes outbox rows, one per subscriber, in the same
transaction as the alert; the ``notification_retry`` job sends them.
Subscribers are reporters who gave callback consent within the last
ALERT_SUBSCRIBER_DAYS, narrowed to the alert's target state / LGA.
"""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Callable

from matasa.core.exceptions import BusinessRuleViolation, NotFoundError, ValidationError
from matasa.models.alert import ALERT_SEVERITIES, ALERT_STATUSES, ALERT_TYPES, Alert
from matasa.services.notification import format_alert_message, normalize_phone
from matasa.utils.helpers import parse_datetime, utcnow

logger = logging.getLogger(__name__)

USSD_ALERT_LIMIT = 3


class AlertService:

    def __init__(
        self,
        store,
        dispatcher,
        *,
        clock: Callable = utcnow,
        cache_seconds: int = 30,
        subscriber_days: int = 7,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock
        self.cache_seconds = cache_seconds
        self.subscriber_days = subscriber_days
        self._cache: dict[str, tuple[float, list[str]]] = {}

    def create_alert(self, payload: dict, *, created_by: str | None = None) -> Alert:
        """Validate and store an alert; broadcast it unless ``broadcast`` is false."""
        errors = {}
        if payload.get("alert_type") not in ALERT_TYPES:
            errors["alert_type"] = f"must be one of {', '.join(ALERT_TYPES)}"
        severity = payload.get("severity", "info")
        if severity not in ALERT_SEVERITIES:
            errors["severity"] = f"must be one of {', '.join(ALERT_SEVERITIES)}"
        for field in ("title_hausa", "content_hausa"):
            if not (payload.get(field) or "").strip():
                errors[field] = "required"
        valid_until = parse_datetime(payload.get("valid_until"))
        if payload.get("valid_until") and valid_until is None:
            errors["valid_until"] = "invalid datetime"
        broadcast = payload.get("broadcast", True)
        if not isinstance(broadcast, bool):
            errors["broadcast"] = "must be a boolean"
        if errors:
            raise ValidationError("Invalid alert", details=errors)

        now = self.clock()
        alert = Alert(
            alert_type=payload["alert_type"],
            severity=severity,
            title_hausa=payload["title_hausa"].strip(),
            title_english=payload.get("title_english"),
            content_hausa=payload["content_hausa"].strip(),
            content_english=payload.get("content_english"),
            target_state=payload.get("target_state"),
            target_lga=payload.get("target_lga"),
            valid_from=parse_datetime(payload.get("valid_from")) or now,
            valid_until=valid_until,
            created_by=created_by,
            created_at=now,
            stats_recipient_count=0,
        )
        try:
            self.store.add(alert)
            self.store.flush()
            if broadcast:
                self._enqueue_broadcast(alert)
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        self._cache.clear()
        logger.info("Alert %s created (%s/%s)", alert.alert_id, alert.alert_type, alert.severity)
        return alert

    # ── Broadcast ────────────────────────────────────────────────────────

    def find_subscribers(self, alert: Alert) -> list[str]:
        """Normalised, de-duplicated phones that should receive ``alert``."""
        since = self.clock() - timedelta(days=self.subscriber_days)
        phones = self.store.subscriber_phones(since, state=alert.target_state, lga=alert.target_lga)
        seen: dict[str, None] = {}
        for raw in phones:
            phone = normalize_phone(raw, self.dispatcher.country_code)
            if phone:
                seen.setdefault(phone)
        return list(seen)

    def _enqueue_broadcast(self, alert: Alert) -> int:
        message = format_alert_message(alert)
        recipients = self.find_subscribers(alert)
        for phone in recipients:
            self.dispatcher.enqueue(phone, message, kind="alert", alert_id=alert.alert_id)
        alert.stats_recipient_count = len(recipients)
        alert.broadcast_at = self.clock()
        logger.info("Alert %s queued for %d subscriber(s)", alert.alert_id, len(recipients),
                    extra={"event_type": "alert_broadcast"})
        return len(recipients)

    def broadcast_alert(self, alert_id: str) -> Alert:
        """Queue the SMS broadcast for an alert created with ``broadcast: false``."""
        alert = self.store.get_alert(alert_id)
        if alert is None:
            raise NotFoundError(resource="Alert", resource_id=alert_id)
        if alert.status != "active":
            raise BusinessRuleViolation(f"Alert {alert_id} is {alert.status}")
        if alert.broadcast_at is not None:
            raise BusinessRuleViolation(f"Alert {alert_id} was already broadcast")
        try:
            self._enqueue_broadcast(alert)
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        return alert

    # ── Lifecycle ────────────────────────────────────────────────────────

    def get_active_alerts(self, *, state: str | None = None, limit: int | None = None) -> list[Alert]:
        return self.store.active_alerts(self.clock(), state=state, limit=limit)

    def cancel_alert(self, alert_id: str) -> Alert:
        alert = self.store.get_alert(alert_id)
        if alert is None:
            raise NotFoundError(resource="Alert", resource_id=alert_id)
        if alert.status != "active":
            raise BusinessRuleViolation(f"Alert {alert_id} is already {alert.status}")
        alert.status = "cancelled"
        self.store.commit()
        self._cache.clear()
        return alert

    def expire_alerts(self) -> int:
        """Mark alerts past valid_until as expired. Idempotent."""
        alerts = self.store.expirable_alerts(self.clock())
        for alert in alerts:
            alert.status = "expired"
        if alerts:
            self.store.commit()
            self._cache.clear()
        return len(alerts)

    def get_alert_stats(self, date_from=None) -> dict:
        alerts = self.store.alerts_created_since(date_from)
        by_status = {status: 0 for status in ALERT_STATUSES}
        by_type: dict[str, int] = {}
        by_severity: dict[str, int] = {}
        for alert in alerts:
            by_status[alert.status] = by_status.get(alert.status, 0) + 1
            by_type[alert.alert_type] = by_type.get(alert.alert_type, 0) + 1
            by_severity[alert.severity] = by_severity.get(alert.severity, 0) + 1

        messages = self.store.count_alert_messages([a.alert_id for a in alerts])
        total_messages = sum(messages.values())
        return {
            "total": len(alerts),
            "by_status": by_status,
            "by_type": by_type,
            "by_severity": by_severity,
            "total_recipients": sum(a.stats_recipient_count or 0 for a in alerts),
            "messages": messages,
            "delivery_rate": round(messages.get("sent", 0) / total_messages * 100) if total_messages else 0,
        }

    # ── USSD ─────────────────────────────────────────────────────────────

    def ussd_alert_titles(self, language: str, limit: int = USSD_ALERT_LIMIT) -> list[str]:
        """Titles of the newest active alerts, cached per language."""
        cached = self._cache.get(language)
        if cached and time.monotonic() - cached[0] < self.cache_seconds:
            return cached[1]
        titles = [a.title_for(language) for a in self.get_active_alerts(limit=limit)]
        self._cache[language] = (time.monotonic(), titles)
        return titles

    def clear_cache(self) -> None:
        self._cache.clear()
