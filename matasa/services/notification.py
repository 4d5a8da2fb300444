"""
Notification dispatcher: SMS outbox for escalations, reporter confirmations
and alert broadcasts.

Messages are enqueued as OutboundMessage rows inside the caller's unit of
work and delivered after commit. Request paths use ``deliver_within_budget``:
every attempt shares one deadline (SMS_REQUEST_BUDGET_SECONDS), and rows the
budget does not reach stay ``pending``. Alert broadcasts only enqueue.

A failed delivery never rolls back the escalation that caused it; the row
moves to ``queued`` and the ``notification_retry`` job picks up pending and
queued rows. ``queued_count()`` exposes the not-yet-delivered backlog.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Callable

from matasa.models.notification import OutboundMessage
from matasa.utils.helpers import utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_REQUEST_BUDGET_SECONDS = 2.5
UNDELIVERED_STATUSES = ("pending", "queued")
ALERT_SMS_MAX_LENGTH = 150

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: str | None, country_code: str = "234") -> str | None:
    """Rewrite a phone number to +<country><digits>.

    "08012345678" -> "+2348012345678"
    "2348012345678" -> "+2348012345678"
    "8012345678" -> "+2348012345678"
    """
    if not phone:
        return None
    digits = _NON_DIGITS.sub("", str(phone))
    if not digits:
        return None
    if digits.startswith(country_code):
        return f"+{digits}"
    if digits.startswith("0"):
        return f"+{country_code}{digits[1:]}"
    if len(digits) == 10:
        return f"+{country_code}{digits}"
    return f"+{digits}"


def format_escalation_message(incident, sla_minutes: int | None) -> str:
    description = (incident.description_text or "")[:100]
    return (
        f"ESCALATION {(incident.severity or '').upper()}\n"
        f"Type: {(incident.incident_type or '').upper()}\n"
        f"ID: {incident.incident_id}\n"
        f"Location: {incident.location_label()}\n"
        f"Desc: {description}\n"
        f"SLA: {sla_minutes}min"
    )


def format_reporter_confirmation(incident) -> str:
    if incident.description_language == "english":
        return (
            f"Thank you. Your report {incident.incident_id} has been received. "
            f"A responder may call you back."
        )
    return (
        f"Na gode. An karbi rahotonka {incident.incident_id}. "
        f"Mai agaji zai iya kiranka."
    )


def format_alert_message(alert, max_length: int = ALERT_SMS_MAX_LENGTH) -> str:
    """``[SEVERITY] title`` then the Hausa content, cut to one SMS."""
    message = f"[{(alert.severity or '').upper()}] {alert.title_hausa or ''}\n{alert.content_hausa or ''}"
    if len(message) > max_length:
        message = message[:max_length - 3] + "..."
    return message


class NotificationDispatcher:

    def __init__(
        self,
        store,
        gateway,
        *,
        clock: Callable = utcnow,
        country_code: str = "234",
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        request_budget_seconds: float = DEFAULT_REQUEST_BUDGET_SECONDS,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.clock = clock
        self.country_code = country_code
        self.max_attempts = max_attempts
        self.request_budget_seconds = request_budget_seconds
        self.timer = timer

    def enqueue(self, phone_number: str | None, message: str, *, kind: str,
                incident_id: str | None = None, alert_id: str | None = None) -> OutboundMessage:
        """Add an outbox row to the current transaction (no network I/O)."""
        normalized = normalize_phone(phone_number, self.country_code)
        row = OutboundMessage(
            phone_number=normalized,
            message=message,
            kind=kind,
            incident_id=incident_id,
            alert_id=alert_id,
            status="pending" if normalized else "failed",
            attempts=0,
            last_error=None if normalized else "Invalid phone number",
            created_at=self.clock(),
        )
        self.store.add(row)
        if not normalized:
            logger.warning("Undeliverable %s message for %s: bad phone %r",
                           kind, incident_id or alert_id, phone_number,
                           extra={"incident_id": incident_id, "event_type": "sms_invalid_phone"})
        return row

    def _attempt(self, row: OutboundMessage, deadline: float | None) -> bool:
        row.attempts = (row.attempts or 0) + 1
        try:
            result = self.gateway.send(row.phone_number, row.message, deadline=deadline)
        except Exception as exc:
            # Row stays queued for the retry job.
            logger.exception("SMS gateway raised for message %s", row.id)
            success, message_id, error = False, None, str(exc)[:500]
        else:
            success, message_id, error = result.success, result.message_id, result.error

        if success:
            row.status = "sent"
            row.provider_message_id = message_id
            row.sent_at = self.clock()
            row.last_error = None
            return True

        row.last_error = (error or "Unknown error")[:500]
        row.status = "failed" if row.attempts >= self.max_attempts else "queued"
        logger.warning(
            "SMS delivery failed (attempt %d/%d) for %s: %s",
            row.attempts, self.max_attempts, row.incident_id, row.last_error,
            extra={"incident_id": row.incident_id, "event_type": "sms_failed"},
        )
        return False

    def deliver(self, messages, *, budget_seconds: float | None = None) -> dict:
        """One delivery attempt per undelivered message, then commit.

        With ``budget_seconds`` all attempts share one deadline; rows not
        reached before it stay ``pending`` (counted as ``deferred``) for the
        retry job. Call only after the transaction that created the rows has
        committed.
        """
        deadline = self.timer() + budget_seconds if budget_seconds is not None else None
        summary = {"sent": 0, "queued": 0, "failed": 0, "deferred": 0}
        for row in messages or []:
            if row.status not in UNDELIVERED_STATUSES:
                continue
            if deadline is not None and self.timer() >= deadline:
                summary["deferred"] += 1
                continue
            self._attempt(row, deadline)
            summary[row.status] += 1
        if summary["sent"] or summary["queued"] or summary["failed"]:
            self.store.commit()
        if summary["deferred"]:
            logger.info("SMS time budget spent; %d message(s) left for the retry job", summary["deferred"],
                        extra={"event_type": "sms_deferred"})
        return summary

    def deliver_within_budget(self, messages) -> dict:
        """Deliver from a request path without holding the response past the budget."""
        return self.deliver(messages, budget_seconds=self.request_budget_seconds)

    def process_queue(self, limit: int = 100) -> dict:
        """Retry pending and queued messages. Safe to re-run: sent rows are never touched."""
        rows = self.store.messages_with_status(UNDELIVERED_STATUSES, limit=limit)
        summary = self.deliver(rows)
        summary["processed"] = len(rows)
        logger.info("Notification queue processed: %s", summary,
                    extra={"event_type": "notification_retry"})
        return summary

    def queued_count(self) -> int:
        return self.store.count_messages(UNDELIVERED_STATUSES)
