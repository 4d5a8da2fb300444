"""
Matasa incident pipeline
Escalation configuration models.

Models:
    - EscalationRule: condition set + action. Rules are evaluated in ascending
      priority; the first match is applied to the incident.
    - Responder: contact directory used when a rule does not hardcode an
      assignee, and for default (severity-based) escalation.
"""

import uuid
from datetime import datetime, timezone

from matasa.models import db
from matasa.utils.helpers import as_utc

ASSIGNEE_TYPES = ("security_team", "community_focal", "agency_liaison")
NOTIFICATION_METHODS = ("sms", "call", "multiple")


def generate_rule_id() -> str:
    return f"RULE-{uuid.uuid4().hex[:8].upper()}"


class EscalationRule(db.Model):
    """Single-level escalation rule.

    Every populated condition list must hold for the rule to match; an empty
    list is a wildcard for that dimension. Days of week (Sunday=0) are only
    checked together with a time window.

    ``cooldown_minutes`` is stored and reported but not enforced by the engine.
    """

    __tablename__ = "escalation_rules"

    id = db.Column(db.Integer, primary_key=True)
    rule_id = db.Column(db.String(20), unique=True, nullable=False, index=True,
                        default=generate_rule_id)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    priority = db.Column(db.Integer, nullable=False, default=100,
                         comment="Lower = evaluated first")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Conditions
    condition_incident_types = db.Column(db.JSON, nullable=False, default=list)
    condition_severities = db.Column(db.JSON, nullable=False, default=list)
    condition_states = db.Column(db.JSON, nullable=False, default=list)
    condition_lgas = db.Column(db.JSON, nullable=False, default=list)
    condition_channels = db.Column(db.JSON, nullable=False, default=list)
    condition_days_of_week = db.Column(db.JSON, nullable=False, default=list,
                                       comment="0-6, Sunday=0")
    condition_time_start = db.Column(db.String(5), nullable=True, comment="HH:MM local")
    condition_time_end = db.Column(db.String(5), nullable=True, comment="HH:MM local")
    condition_min_confidence = db.Column(db.Float, nullable=True)

    # Action
    action_escalation_level = db.Column(db.Integer, nullable=False, default=1)
    action_assignee_type = db.Column(db.String(30), nullable=False, default="community_focal")
    action_assignee_name = db.Column(db.String(120), nullable=True)
    action_assignee_phone = db.Column(db.String(20), nullable=True)
    action_assignee_organization = db.Column(db.String(120), nullable=True)
    action_notification_method = db.Column(db.String(10), nullable=False, default="sms")
    action_sla_minutes = db.Column(db.Integer, nullable=False, default=30)

    cooldown_minutes = db.Column(db.Integer, nullable=False, default=30)

    # Trigger statistics
    last_triggered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    trigger_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def record_trigger(self, now: datetime) -> None:
        self.trigger_count = (self.trigger_count or 0) + 1
        self.last_triggered_at = now

    def to_dict(self):
        last = as_utc(self.last_triggered_at)
        return {
            "rule_id": self.rule_id,
            "name": self.name,
            "description": self.description,
            "priority": self.priority,
            "is_active": self.is_active,
            "conditions": {
                "incident_types": list(self.condition_incident_types or []),
                "severities": list(self.condition_severities or []),
                "states": list(self.condition_states or []),
                "lgas": list(self.condition_lgas or []),
                "channels": list(self.condition_channels or []),
                "days_of_week": list(self.condition_days_of_week or []),
                "time_start": self.condition_time_start,
                "time_end": self.condition_time_end,
                "min_confidence": self.condition_min_confidence,
            },
            "action": {
                "escalation_level": self.action_escalation_level,
                "assignee_type": self.action_assignee_type,
                "assignee_name": self.action_assignee_name,
                "assignee_phone": self.action_assignee_phone,
                "assignee_organization": self.action_assignee_organization,
                "notification_method": self.action_notification_method,
                "sla_minutes": self.action_sla_minutes,
            },
            "cooldown_minutes": self.cooldown_minutes,
            "cooldown_enforced": False,
            "trigger_count": self.trigger_count,
            "last_triggered_at": last.isoformat() if last else None,
        }

    def __repr__(self):
        return f"<EscalationRule {self.rule_id} p={self.priority} {self.name!r}>"


class Responder(db.Model):
    """Contact who can be assigned an escalated incident."""

    __tablename__ = "responders"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    organization = db.Column(db.String(120), nullable=True)
    phone_number = db.Column(db.String(20), nullable=False)
    responder_type = db.Column(db.String(30), nullable=False, index=True,
                               comment="security_team | community_focal | agency_liaison")
    status = db.Column(db.String(10), nullable=False, default="active",
                       comment="active | inactive")
    state = db.Column(db.String(50), nullable=True, comment="State affinity")
    lga = db.Column(db.String(80), nullable=True, comment="LGA affinity")

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "organization": self.organization,
            "phone_number": self.phone_number,
            "responder_type": self.responder_type,
            "status": self.status,
            "state": self.state,
            "lga": self.lga,
        }

    def __repr__(self):
        return f"<Responder {self.id} {self.name!r} ({self.responder_type})>"


# ═════════════════════════════════════════════════════════════════════════════
# Seed defaults
# ═════════════════════════════════════════════════════════════════════════════

COMMUNITY_FOCAL_CONTACT = {
    "type": "community_focal",
    "name": "Community Focal Point",
    "phone": "+2348000000002",
    "organization": "Community",
}

_DEFAULT_RULES = [
    {
        "name": "Critical Incident - All Channels",
        "description": "Immediate escalation for critical incidents",
        "priority": 1,
        "condition_incident_types": ["fire", "explosion", "kidnap"],
        "condition_severities": ["critical"],
        "action_escalation_level": 3,
        "action_assignee_type": "agency_liaison",
        "action_assignee_name": "Police Emergency Response",
        "action_assignee_phone": "+2348000000001",
        "action_assignee_organization": "Police",
        "action_notification_method": "multiple",
        "action_sla_minutes": 15,
        "cooldown_minutes": 30,
    },
    {
        "name": "High Severity - USSD Reports",
        "description": "Escalate high severity USSD reports to community focal points",
        "priority": 10,
        "condition_incident_types": ["fire", "theft", "violence", "gunshot"],
        "condition_severities": ["high"],
        "condition_channels": ["ussd"],
        "action_escalation_level": 2,
        "action_assignee_type": "community_focal",
        "action_assignee_name": COMMUNITY_FOCAL_CONTACT["name"],
        "action_assignee_phone": COMMUNITY_FOCAL_CONTACT["phone"],
        "action_assignee_organization": COMMUNITY_FOCAL_CONTACT["organization"],
        "action_notification_method": "sms",
        "action_sla_minutes": 30,
        "cooldown_minutes": 60,
    },
    {
        "name": "Medium Severity - All Channels",
        "description": "Standard escalation for medium severity incidents",
        "priority": 50,
        "condition_severities": ["medium"],
        "action_escalation_level": 1,
        "action_assignee_type": "community_focal",
        "action_assignee_name": COMMUNITY_FOCAL_CONTACT["name"],
        "action_assignee_phone": COMMUNITY_FOCAL_CONTACT["phone"],
        "action_assignee_organization": COMMUNITY_FOCAL_CONTACT["organization"],
        "action_notification_method": "sms",
        "action_sla_minutes": 60,
        "cooldown_minutes": 120,
    },
]


def seed_default_escalation_rules() -> list[EscalationRule]:
    """Insert the default rules that are not present yet (matched by name).

    Caller owns the commit.
    """
    existing = {name for (name,) in db.session.execute(db.select(EscalationRule.name))}
    created = []
    for fields in _DEFAULT_RULES:
        if fields["name"] in existing:
            continue
        rule = EscalationRule(**fields)
        db.session.add(rule)
        created.append(rule)
    db.session.flush()
    return created
