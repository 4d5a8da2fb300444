"""
Matasa incident pipeline
Incident model: one community report, from any channel.

Models:
    - Incident: classification, location, confidence, escalation and
      response fields for a single report.

Status machine (INCIDENT_TRANSITIONS):
    received    -> processing | assigned | escalated | false_alarm | expired | merged | closed
    processing  -> assigned | escalated | false_alarm | merged | closed
    assigned    -> in_progress | escalated | resolved | false_alarm | closed
    in_progress -> resolved | escalated | closed
    escalated   -> assigned | in_progress | resolved | escalated | closed | false_alarm | merged
    resolved    -> closed
    closed, false_alarm, expired, merged -> (terminal)
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import event
from sqlalchemy.orm import validates

from matasa.core.exceptions import BusinessRuleViolation
from matasa.models import db
from matasa.utils.geo import encode_geohash
from matasa.utils.helpers import as_utc

# ── Constants ────────────────────────────────────────────────────────────

CHANNELS = ("ussd", "web", "mobile", "api")
API_CHANNELS = ("web", "mobile", "api")

INCIDENT_TYPES = (
    "suspicious_activity",
    "incident_in_progress",
    "fire",
    "theft",
    "violence",
    "gunshot",
    "fight",
    "kidnap",
    "explosion",
    "medical_emergency",
    "other",
)

SEVERITIES = ("low", "medium", "high", "critical")

LANGUAGES = ("hausa", "english")

INCIDENT_STATUSES = (
    "received",
    "processing",
    "assigned",
    "in_progress",
    "resolved",
    "escalated",
    "closed",
    "false_alarm",
    "expired",
    "merged",
)

TERMINAL_STATUSES = frozenset({"closed", "false_alarm", "expired", "merged"})

MAX_ESCALATION_LEVEL = 5

INCIDENT_TRANSITIONS = {
    "received": {"processing", "assigned", "escalated", "false_alarm", "expired", "merged", "closed"},
    "processing": {"assigned", "escalated", "false_alarm", "merged", "closed"},
    "assigned": {"in_progress", "escalated", "resolved", "false_alarm", "closed"},
    "in_progress": {"resolved", "escalated", "closed"},
    "escalated": {"assigned", "in_progress", "resolved", "escalated", "closed", "false_alarm", "merged"},
    "resolved": {"closed"},
    "closed": set(),
    "false_alarm": set(),
    "expired": set(),
    "merged": set(),
}


def validate_incident_transition(current: str, target: str) -> bool:
    """Return True if ``current -> target`` is an allowed status change."""
    return target in INCIDENT_TRANSITIONS.get(current, set())


def generate_incident_id() -> str:
    """INC- followed by the first 8 hex chars of a uuid4, upper-cased."""
    return f"INC-{uuid.uuid4().hex[:8].upper()}"


class Incident(db.Model):
    """A single community incident report."""

    __tablename__ = "incidents"

    id = db.Column(db.Integer, primary_key=True)
    incident_id = db.Column(
        db.String(20), unique=True, nullable=False, index=True,
        default=generate_incident_id,
        comment="Public identifier, INC-XXXXXXXX",
    )
    channel = db.Column(db.String(10), nullable=False, default="ussd",
                        comment="ussd | web | mobile | api")

    # Reporter
    reporter_phone_number = db.Column(db.String(20), nullable=True, index=True)
    reporter_anonymous = db.Column(db.Boolean, nullable=False, default=True)
    reporter_callback_consent = db.Column(db.Boolean, nullable=False, default=False)
    reporter_session_id = db.Column(db.String(100), nullable=True)

    # Classification
    incident_type = db.Column(db.String(30), nullable=False, index=True)
    severity = db.Column(db.String(10), nullable=False, default="medium",
                         comment="low | medium | high | critical")

    # Location
    location_latitude = db.Column(db.Float, nullable=True)
    location_longitude = db.Column(db.Float, nullable=True)
    location_accuracy = db.Column(db.Float, nullable=True, comment="GPS accuracy in metres")
    location_cell_tower_id = db.Column(db.String(50), nullable=True)
    location_cell_tower_lac = db.Column(db.String(20), nullable=True)
    location_state = db.Column(db.String(50), nullable=True, index=True)
    location_lga = db.Column(db.String(80), nullable=True, index=True)
    location_ward = db.Column(db.String(80), nullable=True)
    location_village = db.Column(db.String(120), nullable=True)
    location_manual = db.Column(db.String(255), nullable=True, comment="Free-text location")
    location_geohash = db.Column(db.String(12), nullable=True, index=True)

    # Description
    description_text = db.Column(db.Text, nullable=True)
    description_language = db.Column(db.String(10), nullable=False, default="hausa")
    description_audio_url = db.Column(db.String(500), nullable=True)
    description_photo_urls = db.Column(db.JSON, nullable=False, default=list)

    # Confidence
    confidence_score = db.Column(db.Float, nullable=False, default=50)
    confidence_deduplication_score = db.Column(
        db.Float, nullable=True, comment="Top similarity to a recent report, 0-100",
    )
    confidence_source_reliability = db.Column(db.Float, nullable=True)

    # Lifecycle
    status = db.Column(db.String(20), nullable=False, default="received", index=True)
    merged_into = db.Column(db.String(20), nullable=True, comment="Primary incident_id after merge")

    # Escalation
    escalation_level = db.Column(db.Integer, nullable=False, default=0,
                                 comment="0-5, never decreases")
    escalation_rules_triggered = db.Column(db.JSON, nullable=False, default=list)
    escalation_assigned_to_type = db.Column(db.String(30), nullable=True)
    escalation_assigned_to_name = db.Column(db.String(120), nullable=True)
    escalation_assigned_to_phone = db.Column(db.String(20), nullable=True)
    escalation_assigned_to_organization = db.Column(db.String(120), nullable=True)
    escalation_escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    escalation_sla_minutes = db.Column(db.Integer, nullable=True)

    # Response
    response_first_responder = db.Column(db.String(120), nullable=True)
    response_time_minutes = db.Column(db.Integer, nullable=True)
    response_arrival_time = db.Column(db.DateTime(timezone=True), nullable=True)
    response_resolution = db.Column(db.Text, nullable=True)
    response_resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Source
    source_ip = db.Column(db.String(45), nullable=True)
    source_user_agent = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc), index=True)
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    @validates("escalation_level")
    def _guard_escalation_level(self, key, value):
        current = self.escalation_level
        if current is not None and value is not None and value < current:
            raise BusinessRuleViolation(
                f"Escalation level cannot decrease ({current} -> {value})",
                details={"incident_id": self.incident_id},
            )
        return value

    @property
    def reported_at(self) -> datetime | None:
        return as_utc(self.created_at)

    @property
    def has_gps(self) -> bool:
        return self.location_latitude is not None and self.location_longitude is not None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def refresh_geohash(self) -> None:
        if self.has_gps:
            self.location_geohash = encode_geohash(self.location_latitude, self.location_longitude, 6)

    def location_label(self) -> str:
        return self.location_village or self.location_lga or "Unknown"

    def to_dict(self):
        def _iso(value):
            value = as_utc(value)
            return value.isoformat() if value else None

        return {
            "incident_id": self.incident_id,
            "channel": self.channel,
            "reporter": {
                "phone_number": None if self.reporter_anonymous else self.reporter_phone_number,
                "anonymous": self.reporter_anonymous,
                "callback_consent": self.reporter_callback_consent,
            },
            "incident_type": self.incident_type,
            "severity": self.severity,
            "location": {
                "latitude": self.location_latitude,
                "longitude": self.location_longitude,
                "accuracy": self.location_accuracy,
                "cell_tower_id": self.location_cell_tower_id,
                "state": self.location_state,
                "lga": self.location_lga,
                "ward": self.location_ward,
                "village": self.location_village,
                "manual": self.location_manual,
                "geohash": self.location_geohash,
            },
            "description": {
                "text": self.description_text,
                "language": self.description_language,
                "audio_url": self.description_audio_url,
                "photo_urls": list(self.description_photo_urls or []),
            },
            "confidence": {
                "score": self.confidence_score,
                "deduplication_score": self.confidence_deduplication_score,
                "source_reliability": self.confidence_source_reliability,
            },
            "status": self.status,
            "merged_into": self.merged_into,
            "escalation": {
                "level": self.escalation_level,
                "rules_triggered": list(self.escalation_rules_triggered or []),
                "assigned_to_type": self.escalation_assigned_to_type,
                "assigned_to_name": self.escalation_assigned_to_name,
                "assigned_to_phone": self.escalation_assigned_to_phone,
                "assigned_to_organization": self.escalation_assigned_to_organization,
                "escalated_at": _iso(self.escalation_escalated_at),
                "sla_minutes": self.escalation_sla_minutes,
            },
            "response": {
                "first_responder": self.response_first_responder,
                "response_time_minutes": self.response_time_minutes,
                "arrival_time": _iso(self.response_arrival_time),
                "resolution": self.response_resolution,
                "resolved_at": _iso(self.response_resolved_at),
            },
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Incident {self.incident_id} {self.incident_type}/{self.severity} [{self.status}]>"


@event.listens_for(Incident, "before_insert")
@event.listens_for(Incident, "before_update")
def _derive_geohash(mapper, connection, target):
    target.refresh_geohash()
