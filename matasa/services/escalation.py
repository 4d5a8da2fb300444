"""
Escalation Rule Engine.

process_incident(incident):
    1. Status that cannot move to ``escalated`` or level >= 5 -> no-op.
    2. Active rules by (priority, created_at, id); first full match wins.
       A rule already recorded on the incident is skipped, so re-running is
       harmless.
    3. No match -> default escalation by severity:
         low -> none, medium -> 1, high -> 2, critical -> 3
       assignee type agency_liaison at level >= 3, else community_focal,
       resolved through the responder directory.

escalate_to_level(incident_id, level):
    Manual step up. De-escalation (level <= current) is rejected.

Rule cooldown_minutes is stored but not enforced here; the per-incident
triggered-rules list is what prevents repeat triggering.

Notifications are enqueued into the outbox; with ``commit=True`` the engine
commits and then delivers within the request time budget. Delivery failures
never undo the escalation.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Callable
from zoneinfo import ZoneInfo

from matasa.core.exceptions import BusinessRuleViolation, NotFoundError, ValidationError
from matasa.models.escalation import (
    ASSIGNEE_TYPES,
    COMMUNITY_FOCAL_CONTACT,
    NOTIFICATION_METHODS,
    EscalationRule,
    Responder,
)
from matasa.models.incident import MAX_ESCALATION_LEVEL, validate_incident_transition
from matasa.services.notification import format_escalation_message
from matasa.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_LEVEL_BY_SEVERITY = {"low": 0, "medium": 1, "high": 2, "critical": 3}
DEFAULT_RULE_MARKER = "default_severity"
DEFAULT_MISSING_CONFIDENCE = 50
SLA_MINUTES_PER_LEVEL = 30


@dataclass
class EscalationOutcome:
    escalated: bool
    level: int
    rule_id: str | None = None
    reason: str | None = None
    notifications: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "escalated": self.escalated,
            "level": self.level,
            "rule_id": self.rule_id,
            "reason": self.reason,
        }


def js_weekday(moment) -> int:
    """Day of week with Sunday=0 .. Saturday=6."""
    return (moment.weekday() + 1) % 7


def _in_window(now_hhmm: str, start: str, end: str) -> bool:
    if start <= end:
        return start <= now_hhmm <= end
    # Window wraps midnight, e.g. 22:00-05:00
    return now_hhmm >= start or now_hhmm <= end


class EscalationEngine:

    def __init__(
        self,
        store,
        dispatcher,
        *,
        clock: Callable = utcnow,
        rng: random.Random | None = None,
        local_timezone: str = "Africa/Lagos",
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock
        self.rng = rng or random.Random()
        self.tz = ZoneInfo(local_timezone)

    # ── Matching ─────────────────────────────────────────────────────────

    def match_rule(self, rule, incident, now=None) -> bool:
        """True iff every populated condition on ``rule`` holds for ``incident``."""
        now = now or self.clock()

        checks = (
            (rule.condition_incident_types, incident.incident_type),
            (rule.condition_severities, incident.severity),
            (rule.condition_states, incident.location_state),
            (rule.condition_lgas, incident.location_lga),
            (rule.condition_channels, incident.channel),
        )
        for allowed, value in checks:
            if allowed and value not in allowed:
                return False

        if rule.condition_time_start and rule.condition_time_end:
            local = as_utc(now).astimezone(self.tz)
            if not _in_window(local.strftime("%H:%M"), rule.condition_time_start, rule.condition_time_end):
                return False
            days = rule.condition_days_of_week
            if days and js_weekday(local) not in days:
                return False

        if rule.condition_min_confidence is not None:
            confidence = incident.confidence_score
            if confidence is None:
                confidence = DEFAULT_MISSING_CONFIDENCE
            if confidence < rule.condition_min_confidence:
                return False

        return True

    def find_matching_rules(self, incident, now=None) -> list:
        now = now or self.clock()
        return [rule for rule in self.store.active_rules() if self.match_rule(rule, incident, now)]

    # ── Responder lookup ─────────────────────────────────────────────────

    def resolve_assignee(self, assignee_type: str, incident) -> dict:
        """Pick a responder: state+LGA, then state, then no affinity.

        Uniform random choice within the first non-empty tier; hardcoded
        community focal contact when the directory has nobody.
        """
        responders = self.store.active_responders(assignee_type)
        state, lga = incident.location_state, incident.location_lga

        tiers = (
            [r for r in responders if state and lga and r.state == state and r.lga == lga],
            [r for r in responders if state and r.state == state and not r.lga],
            [r for r in responders if not r.state and not r.lga],
        )
        for tier in tiers:
            if tier:
                chosen = self.rng.choice(tier)
                return {
                    "type": chosen.responder_type,
                    "name": chosen.name,
                    "phone": chosen.phone_number,
                    "organization": chosen.organization,
                }
        return dict(COMMUNITY_FOCAL_CONTACT)

    # ── Mutation helpers ─────────────────────────────────────────────────

    def _escalate(self, incident, *, level: int, marker: str, assignee: dict,
                  sla_minutes: int, now) -> list:
        incident.status = "escalated"
        incident.escalation_level = max(incident.escalation_level or 0, level)
        incident.escalation_rules_triggered = list(incident.escalation_rules_triggered or []) + [marker]
        incident.escalation_escalated_at = now
        incident.escalation_sla_minutes = sla_minutes
        incident.escalation_assigned_to_type = assignee.get("type")
        incident.escalation_assigned_to_name = assignee.get("name")
        incident.escalation_assigned_to_phone = assignee.get("phone")
        incident.escalation_assigned_to_organization = assignee.get("organization")

        notifications = []
        if assignee.get("phone"):
            notifications.append(self.dispatcher.enqueue(
                assignee["phone"],
                format_escalation_message(incident, sla_minutes),
                kind="escalation",
                incident_id=incident.incident_id,
            ))
        return notifications

    def apply_rule(self, incident, rule, now=None) -> EscalationOutcome:
        now = now or self.clock()
        if rule.action_assignee_name and rule.action_assignee_phone:
            assignee = {
                "type": rule.action_assignee_type,
                "name": rule.action_assignee_name,
                "phone": rule.action_assignee_phone,
                "organization": rule.action_assignee_organization,
            }
        else:
            assignee = self.resolve_assignee(rule.action_assignee_type, incident)

        notifications = self._escalate(
            incident,
            level=min(rule.action_escalation_level, MAX_ESCALATION_LEVEL),
            marker=rule.rule_id,
            assignee=assignee,
            sla_minutes=rule.action_sla_minutes,
            now=now,
        )
        rule.record_trigger(now)

        logger.info(
            "Incident %s escalated by rule %s to level %d (%s)",
            incident.incident_id, rule.rule_id, incident.escalation_level, assignee.get("organization"),
            extra={"incident_id": incident.incident_id, "rule_id": rule.rule_id, "event_type": "escalation"},
        )
        return EscalationOutcome(
            escalated=True,
            level=incident.escalation_level,
            rule_id=rule.rule_id,
            reason=rule.name,
            notifications=notifications,
        )

    def apply_default(self, incident, now=None) -> EscalationOutcome:
        now = now or self.clock()
        level = DEFAULT_LEVEL_BY_SEVERITY.get(incident.severity, 0)
        current = incident.escalation_level or 0
        if level == 0:
            return EscalationOutcome(escalated=False, level=current, reason="severity below threshold")
        if current >= level:
            return EscalationOutcome(escalated=False, level=current, reason="already at or above default level")

        assignee_type = "agency_liaison" if level >= 3 else "community_focal"
        assignee = self.resolve_assignee(assignee_type, incident)
        notifications = self._escalate(
            incident,
            level=level,
            marker=DEFAULT_RULE_MARKER,
            assignee=assignee,
            sla_minutes=level * SLA_MINUTES_PER_LEVEL,
            now=now,
        )
        logger.info(
            "Incident %s default-escalated to level %d",
            incident.incident_id, level,
            extra={"incident_id": incident.incident_id, "event_type": "escalation"},
        )
        return EscalationOutcome(
            escalated=True, level=incident.escalation_level, reason=DEFAULT_RULE_MARKER,
            notifications=notifications,
        )

    def _finish(self, outcome: EscalationOutcome, commit: bool) -> EscalationOutcome:
        if commit and outcome.escalated:
            self.store.commit()
            self.dispatcher.deliver_within_budget(outcome.notifications)
        return outcome

    # ── Public operations ────────────────────────────────────────────────

    def process_incident(self, incident, *, commit: bool = True) -> EscalationOutcome:
        current = incident.escalation_level or 0
        if not validate_incident_transition(incident.status, "escalated"):
            return EscalationOutcome(escalated=False, level=current, reason=f"status {incident.status}")
        if current >= MAX_ESCALATION_LEVEL:
            return EscalationOutcome(escalated=False, level=current, reason="max level reached")

        now = self.clock()
        already = set(incident.escalation_rules_triggered or [])
        for rule in self.store.active_rules():
            if not self.match_rule(rule, incident, now):
                continue
            if rule.rule_id in already:
                # First match in priority order was already applied.
                return EscalationOutcome(escalated=False, level=current, rule_id=rule.rule_id,
                                         reason="rule already applied")
            return self._finish(self.apply_rule(incident, rule, now), commit)

        return self._finish(self.apply_default(incident, now), commit)

    def escalate_to_level(self, incident_id: str, target_level, *, reason: str | None = None,
                          commit: bool = True) -> EscalationOutcome:
        """Manually raise an incident to ``target_level``.

        Raises:
            NotFoundError: unknown incident.
            ValidationError: level outside 1..5.
            BusinessRuleViolation: target <= current level, or terminal status.
        """
        incident = self.store.require_incident(incident_id)
        try:
            target = int(target_level)
        except (TypeError, ValueError):
            raise ValidationError("level must be an integer", details={"level": "invalid"})
        if not 1 <= target <= MAX_ESCALATION_LEVEL:
            raise ValidationError(
                f"level must be between 1 and {MAX_ESCALATION_LEVEL}", details={"level": "out of range"},
            )

        current = incident.escalation_level or 0
        if target <= current:
            raise BusinessRuleViolation(
                f"Cannot escalate {incident_id} to level {target}: current level is {current}",
                details={"current_level": current, "target_level": target},
            )
        if not validate_incident_transition(incident.status, "escalated"):
            raise BusinessRuleViolation(f"Incident {incident_id} is {incident.status} and cannot be escalated")

        now = self.clock()
        assignee_type = "agency_liaison" if target >= 3 else "community_focal"
        assignee = self.resolve_assignee(assignee_type, incident)
        notifications = self._escalate(
            incident,
            level=target,
            marker=f"manual_level_{target}",
            assignee=assignee,
            sla_minutes=target * SLA_MINUTES_PER_LEVEL,
            now=now,
        )
        logger.info(
            "Incident %s manually escalated %d -> %d%s",
            incident_id, current, target, f" ({reason})" if reason else "",
            extra={"incident_id": incident_id, "event_type": "manual_escalation"},
        )
        outcome = EscalationOutcome(escalated=True, level=target, reason=reason or "manual",
                                    notifications=notifications)
        return self._finish(outcome, commit)

    def get_escalation_path(self, incident_id: str) -> dict:
        return self.escalation_path(self.store.require_incident(incident_id))

    def escalation_path(self, incident) -> dict:
        triggered = list(incident.escalation_rules_triggered or [])
        rules = self.store.rules_by_ids(triggered)
        escalated_at = as_utc(incident.escalation_escalated_at)
        return {
            "incident_id": incident.incident_id,
            "current_level": incident.escalation_level,
            "status": incident.status,
            "rules_triggered": [
                {"rule_id": rid, "name": rules[rid].name if rid in rules else None}
                for rid in triggered
            ],
            "assigned_to": {
                "type": incident.escalation_assigned_to_type,
                "name": incident.escalation_assigned_to_name,
                "phone": incident.escalation_assigned_to_phone,
                "organization": incident.escalation_assigned_to_organization,
            },
            "sla_minutes": incident.escalation_sla_minutes,
            "escalated_at": escalated_at.isoformat() if escalated_at else None,
        }

    # ── Rule / responder administration ──────────────────────────────────

    def _apply_rule_payload(self, rule, payload: dict) -> None:
        errors = {}
        conditions = payload.get("conditions") or {}
        action = payload.get("action") or {}
        if not isinstance(conditions, dict) or not isinstance(action, dict):
            raise ValidationError("conditions and action must be objects")

        for key in ("name", "description", "priority", "is_active", "cooldown_minutes"):
            if key in payload:
                setattr(rule, key, payload[key])
        if not isinstance(rule.name, str) or not rule.name.strip():
            errors["name"] = "required"
        if not _is_int(rule.priority):
            errors["priority"] = "must be an integer"
        if not isinstance(rule.is_active, bool):
            errors["is_active"] = "must be true or false"
        if not _is_int(rule.cooldown_minutes) or rule.cooldown_minutes < 0:
            errors["cooldown_minutes"] = "must be a non-negative integer"

        for key in ("incident_types", "severities", "states", "lgas", "channels", "days_of_week"):
            if key in conditions:
                value = conditions[key] or []
                if not isinstance(value, list):
                    errors[f"conditions.{key}"] = "must be a list"
                    continue
                setattr(rule, f"condition_{key}", value)
        for key in ("incident_types", "severities", "states", "lgas", "channels"):
            if any(not isinstance(v, str) for v in getattr(rule, f"condition_{key}") or []):
                errors.setdefault(f"conditions.{key}", "must be a list of strings")
        if any(not _is_int(d) or not 0 <= d <= 6 for d in rule.condition_days_of_week or []):
            errors.setdefault("conditions.days_of_week", "must be integers 0-6 (Sunday=0)")
        for key in ("time_start", "time_end", "min_confidence"):
            if key in conditions:
                setattr(rule, f"condition_{key}", conditions[key])
        for key in ("time_start", "time_end"):
            value = getattr(rule, f"condition_{key}")
            if value is not None and not _is_hhmm(value):
                errors[f"conditions.{key}"] = "must be HH:MM"
        min_confidence = rule.condition_min_confidence
        if min_confidence is not None and (not _is_number(min_confidence) or not 0 <= min_confidence <= 100):
            errors["conditions.min_confidence"] = "must be a number between 0 and 100"

        for key in ("escalation_level", "assignee_type", "assignee_name", "assignee_phone",
                    "assignee_organization", "notification_method", "sla_minutes"):
            if key in action:
                setattr(rule, f"action_{key}", action[key])
        level = rule.action_escalation_level
        if not _is_int(level) or not 1 <= level <= MAX_ESCALATION_LEVEL:
            errors["action.escalation_level"] = f"must be between 1 and {MAX_ESCALATION_LEVEL}"
        if rule.action_assignee_type not in ASSIGNEE_TYPES:
            errors["action.assignee_type"] = f"must be one of {', '.join(ASSIGNEE_TYPES)}"
        if rule.action_notification_method not in NOTIFICATION_METHODS:
            errors["action.notification_method"] = f"must be one of {', '.join(NOTIFICATION_METHODS)}"
        if not _is_int(rule.action_sla_minutes) or rule.action_sla_minutes < 1:
            errors["action.sla_minutes"] = "must be a positive integer"
        for key in ("assignee_name", "assignee_phone", "assignee_organization"):
            value = getattr(rule, f"action_{key}")
            if value is not None and not isinstance(value, str):
                errors[f"action.{key}"] = "must be a string"

        if errors:
            raise ValidationError("Invalid escalation rule", details=errors)

    def create_rule(self, payload: dict) -> EscalationRule:
        rule = EscalationRule(
            name=payload.get("name"),
            priority=payload.get("priority", 100),
            is_active=True,
            condition_incident_types=[],
            condition_severities=[],
            condition_states=[],
            condition_lgas=[],
            condition_channels=[],
            condition_days_of_week=[],
            action_escalation_level=1,
            action_assignee_type="community_focal",
            action_notification_method="sms",
            action_sla_minutes=30,
            cooldown_minutes=30,
            trigger_count=0,
            created_at=self.clock(),
        )
        self._apply_rule_payload(rule, payload)
        self.store.add(rule)
        self.store.commit()
        logger.info("Escalation rule %s created: %s", rule.rule_id, rule.name,
                    extra={"rule_id": rule.rule_id, "event_type": "rule_created"})
        return rule

    def update_rule(self, rule_id: str, payload: dict) -> EscalationRule:
        rule = self.store.get_rule(rule_id)
        if rule is None:
            raise NotFoundError(resource="EscalationRule", resource_id=rule_id)
        try:
            self._apply_rule_payload(rule, payload)
        except ValidationError:
            self.store.rollback()
            raise
        self.store.commit()
        logger.info("Escalation rule %s updated", rule_id,
                    extra={"rule_id": rule_id, "event_type": "rule_updated"})
        return rule

    def create_responder(self, payload: dict) -> Responder:
        errors = {}
        for key in ("name", "phone_number"):
            if not (payload.get(key) or "").strip():
                errors[key] = "required"
        if payload.get("responder_type") not in ASSIGNEE_TYPES:
            errors["responder_type"] = f"must be one of {', '.join(ASSIGNEE_TYPES)}"
        if errors:
            raise ValidationError("Invalid responder", details=errors)

        responder = Responder(
            name=payload["name"].strip(),
            organization=payload.get("organization"),
            phone_number=payload["phone_number"].strip(),
            responder_type=payload["responder_type"],
            status=payload.get("status", "active"),
            state=payload.get("state"),
            lga=payload.get("lga"),
        )
        self.store.add(responder)
        self.store.commit()
        return responder


def _is_hhmm(value) -> bool:
    if not isinstance(value, str) or len(value) != 5 or value[2] != ":":
        return False
    hours, minutes = value[:2], value[3:]
    return hours.isdigit() and minutes.isdigit() and int(hours) < 24 and int(minutes) < 60


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == value
