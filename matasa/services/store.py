"""
Record store: the single persistence seam used by the pipeline services.

Wraps ``db.session`` so that services never build queries inline and so
that the confirmation step can run several writes as one unit of work.

Stale optimistic-lock writes surface as ConflictError and a lost database
connection as TransientInfrastructureError.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from matasa.core.exceptions import ConflictError, NotFoundError, TransientInfrastructureError
from matasa.models import db
from matasa.models.alert import Alert
from matasa.models.escalation import EscalationRule, Responder
from matasa.models.incident import Incident
from matasa.models.notification import OutboundMessage
from matasa.models.ussd import UssdSession, UssdState

INCIDENT_FILTER_FIELDS = {
    "incident_type": Incident.incident_type,
    "severity": Incident.severity,
    "status": Incident.status,
    "channel": Incident.channel,
    "state": Incident.location_state,
    "lga": Incident.location_lga,
}


class RecordStore:
    """Thin repository over the Flask-SQLAlchemy session."""

    def __init__(self, session=None) -> None:
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    # ── Transactions ─────────────────────────────────────────────────────

    def add(self, obj):
        self.session.add(obj)
        return obj

    def delete(self, obj) -> None:
        self.session.delete(obj)

    def flush(self) -> None:
        try:
            self.session.flush()
        except StaleDataError as exc:
            raise ConflictError("UssdSession", "version_id", str(exc)) from exc
        except OperationalError as exc:
            raise TransientInfrastructureError(f"Record store unavailable: {exc.orig}") from exc

    def commit(self) -> None:
        try:
            self.session.commit()
        except StaleDataError as exc:
            self.session.rollback()
            raise ConflictError("UssdSession", "version_id", str(exc)) from exc
        except OperationalError as exc:
            self.session.rollback()
            raise TransientInfrastructureError(f"Record store unavailable: {exc.orig}") from exc

    def rollback(self) -> None:
        self.session.rollback()

    # ── Incidents ────────────────────────────────────────────────────────

    def get_incident(self, incident_id: str) -> Incident | None:
        return self.session.execute(
            select(Incident).where(Incident.incident_id == incident_id)
        ).scalar_one_or_none()

    def require_incident(self, incident_id: str) -> Incident:
        incident = self.get_incident(incident_id)
        if incident is None:
            raise NotFoundError(resource="Incident", resource_id=incident_id)
        return incident

    def _filtered(self, stmt, filters: dict):
        for key, column in INCIDENT_FILTER_FIELDS.items():
            value = filters.get(key)
            if value:
                stmt = stmt.where(column == value)
        if filters.get("date_from"):
            stmt = stmt.where(Incident.created_at >= filters["date_from"])
        if filters.get("date_to"):
            stmt = stmt.where(Incident.created_at <= filters["date_to"])
        return stmt

    def query_incidents(self, filters: dict | None = None, *, page: int = 1, per_page: int = 20):
        """Filtered, newest-first page of incidents.

        Returns:
            (items, total)
        """
        filters = filters or {}
        stmt = self._filtered(select(Incident), filters)
        total = self.session.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar_one()
        items = self.session.execute(
            stmt.order_by(Incident.created_at.desc(), Incident.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        ).scalars().all()
        return items, total

    def incidents_between(self, filters: dict | None = None) -> list[Incident]:
        stmt = self._filtered(select(Incident), filters or {})
        return self.session.execute(stmt).scalars().all()

    def count_incidents_by(self, column_name: str, filters: dict | None = None) -> dict:
        column = getattr(Incident, column_name)
        stmt = self._filtered(select(column, func.count(Incident.id)), filters or {})
        rows = self.session.execute(stmt.group_by(column)).all()
        return {key: count for key, count in rows}

    def recent_candidates(
        self,
        incident_type: str,
        since: datetime,
        *,
        exclude_id: int | None,
        excluded_statuses,
        limit: int,
    ) -> list[Incident]:
        """Newest ``limit`` incidents of one type created at or after ``since``."""
        stmt = select(Incident).where(
            Incident.incident_type == incident_type,
            Incident.created_at >= since,
            Incident.status.notin_(list(excluded_statuses)),
        )
        if exclude_id is not None:
            stmt = stmt.where(Incident.id != exclude_id)
        stmt = stmt.order_by(Incident.created_at.desc(), Incident.id.desc()).limit(limit)
        return self.session.execute(stmt).scalars().all()

    def incidents_with_status_since(self, status: str, since: datetime) -> list[Incident]:
        stmt = (
            select(Incident)
            .where(Incident.status == status, Incident.created_at >= since)
            .order_by(Incident.created_at.desc(), Incident.id.desc())
        )
        return self.session.execute(stmt).scalars().all()

    def open_incidents_since(self, since: datetime, excluded_statuses) -> list[Incident]:
        stmt = (
            select(Incident)
            .where(Incident.created_at >= since, Incident.status.notin_(list(excluded_statuses)))
            .order_by(Incident.id)
        )
        return self.session.execute(stmt).scalars().all()

    def count_reports_by_phone(self, phone: str, since: datetime, *, exclude_id: int | None = None) -> int:
        stmt = select(func.count(Incident.id)).where(
            Incident.reporter_phone_number == phone,
            Incident.created_at >= since,
        )
        if exclude_id is not None:
            stmt = stmt.where(Incident.id != exclude_id)
        return self.session.execute(stmt).scalar_one()

    def live_incidents(self, since: datetime, *, excluded_statuses, status: str | None = None,
                       limit: int = 50) -> list[Incident]:
        """Newest incidents since ``since``; one status, or every status not excluded."""
        stmt = select(Incident).where(Incident.created_at >= since)
        if status:
            stmt = stmt.where(Incident.status == status)
        else:
            stmt = stmt.where(Incident.status.notin_(list(excluded_statuses)))
        stmt = stmt.order_by(Incident.created_at.desc(), Incident.id.desc()).limit(limit)
        return self.session.execute(stmt).scalars().all()

    def subscriber_phones(self, since: datetime, *, state: str | None = None,
                          lga: str | None = None) -> list[str]:
        """Distinct phones of reporters who agreed to be contacted since ``since``."""
        stmt = select(Incident.reporter_phone_number).where(
            Incident.reporter_callback_consent.is_(True),
            Incident.reporter_phone_number.is_not(None),
            Incident.created_at >= since,
        )
        if state:
            stmt = stmt.where(Incident.location_state == state)
        if lga:
            stmt = stmt.where(Incident.location_lga == lga)
        stmt = stmt.group_by(Incident.reporter_phone_number).order_by(Incident.reporter_phone_number)
        return self.session.execute(stmt).scalars().all()

    # ── Escalation configuration ────────────────────────────────────────

    def active_rules(self) -> list[EscalationRule]:
        stmt = (
            select(EscalationRule)
            .where(EscalationRule.is_active.is_(True))
            .order_by(EscalationRule.priority, EscalationRule.created_at, EscalationRule.id)
        )
        return self.session.execute(stmt).scalars().all()

    def list_rules(self) -> list[EscalationRule]:
        stmt = select(EscalationRule).order_by(EscalationRule.priority, EscalationRule.id)
        return self.session.execute(stmt).scalars().all()

    def get_rule(self, rule_id: str) -> EscalationRule | None:
        return self.session.execute(
            select(EscalationRule).where(EscalationRule.rule_id == rule_id)
        ).scalar_one_or_none()

    def rules_by_ids(self, rule_ids) -> dict[str, EscalationRule]:
        if not rule_ids:
            return {}
        rows = self.session.execute(
            select(EscalationRule).where(EscalationRule.rule_id.in_(list(rule_ids)))
        ).scalars().all()
        return {rule.rule_id: rule for rule in rows}

    def active_responders(self, responder_type: str | None = None) -> list[Responder]:
        stmt = select(Responder).where(Responder.status == "active")
        if responder_type:
            stmt = stmt.where(Responder.responder_type == responder_type)
        return self.session.execute(stmt.order_by(Responder.id)).scalars().all()

    def list_responders(self) -> list[Responder]:
        return self.session.execute(select(Responder).order_by(Responder.id)).scalars().all()

    # ── USSD sessions ───────────────────────────────────────────────────

    def get_ussd_session(self, session_id: str) -> UssdSession | None:
        return self.session.execute(
            select(UssdSession).where(UssdSession.session_id == session_id)
        ).scalar_one_or_none()

    def stale_ussd_sessions(self, before: datetime) -> list[UssdSession]:
        """Sessions that never completed and have been idle since before ``before``."""
        stmt = select(UssdSession).where(
            UssdSession.last_activity_at < before,
            UssdSession.state != UssdState.COMPLETED,
        )
        return self.session.execute(stmt).scalars().all()

    # ── Outbox ──────────────────────────────────────────────────────────

    def messages_with_status(self, statuses, *, limit: int = 100) -> list[OutboundMessage]:
        stmt = (
            select(OutboundMessage)
            .where(OutboundMessage.status.in_(list(statuses)))
            .order_by(OutboundMessage.id)
            .limit(limit)
        )
        return self.session.execute(stmt).scalars().all()

    def count_messages(self, statuses) -> int:
        return self.session.execute(
            select(func.count(OutboundMessage.id)).where(OutboundMessage.status.in_(list(statuses)))
        ).scalar_one()

    # ── Alerts ──────────────────────────────────────────────────────────

    def get_alert(self, alert_id: str) -> Alert | None:
        return self.session.execute(
            select(Alert).where(Alert.alert_id == alert_id)
        ).scalar_one_or_none()

    def active_alerts(self, now: datetime, *, state: str | None = None, limit: int | None = None) -> list[Alert]:
        stmt = select(Alert).where(
            Alert.status == "active",
            Alert.valid_from <= now,
            (Alert.valid_until.is_(None)) | (Alert.valid_until > now),
        )
        if state:
            stmt = stmt.where((Alert.target_state.is_(None)) | (Alert.target_state == state))
        stmt = stmt.order_by(Alert.created_at.desc(), Alert.id.desc())
        if limit:
            stmt = stmt.limit(limit)
        return self.session.execute(stmt).scalars().all()

    def expirable_alerts(self, now: datetime) -> list[Alert]:
        stmt = select(Alert).where(
            Alert.status == "active",
            Alert.valid_until.is_not(None),
            Alert.valid_until <= now,
        )
        return self.session.execute(stmt).scalars().all()

    def alerts_created_since(self, since: datetime | None) -> list[Alert]:
        stmt = select(Alert)
        if since is not None:
            stmt = stmt.where(Alert.created_at >= since)
        return self.session.execute(stmt.order_by(Alert.id)).scalars().all()

    def count_alert_messages(self, alert_ids) -> dict:
        """Outbox rows per status for the given alerts."""
        if not alert_ids:
            return {}
        rows = self.session.execute(
            select(OutboundMessage.status, func.count(OutboundMessage.id))
            .where(OutboundMessage.alert_id.in_(list(alert_ids)))
            .group_by(OutboundMessage.status)
        ).all()
        return {status: count for status, count in rows}
