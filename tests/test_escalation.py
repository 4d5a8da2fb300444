"""
Escalation rule engine: matching, first-match-wins ordering, default
severity escalation, responder lookup, manual step-up and the
never-decrease guard.
"""

from datetime import timedelta

import pytest

from matasa.core.exceptions import BusinessRuleViolation, NotFoundError, ValidationError
from matasa.models import db
from matasa.models.escalation import (
    COMMUNITY_FOCAL_CONTACT,
    EscalationRule,
    Responder,
    seed_default_escalation_rules,
)
from matasa.models.notification import OutboundMessage
from matasa.services.escalation import js_weekday

from conftest import NOW


# ═════════════════════════════════════════════════════════════════════════════
# ORM Helper Factories
# ═════════════════════════════════════════════════════════════════════════════


def _rule(**kw) -> EscalationRule:
    fields = {
        "name": "Test rule",
        "priority": 100,
        "is_active": True,
        "condition_incident_types": [],
        "condition_severities": [],
        "condition_states": [],
        "condition_lgas": [],
        "condition_channels": [],
        "condition_days_of_week": [],
        "action_escalation_level": 2,
        "action_assignee_type": "security_team",
        "action_assignee_name": "Rapid Response",
        "action_assignee_phone": "08030000000",
        "action_assignee_organization": "Vigilante",
        "action_sla_minutes": 20,
        "created_at": NOW,
    }
    fields.update(kw)
    rule = EscalationRule(**fields)
    db.session.add(rule)
    db.session.flush()
    return rule


def _responder(**kw) -> Responder:
    fields = {
        "name": "Responder",
        "phone_number": "08031111111",
        "responder_type": "community_focal",
        "status": "active",
    }
    fields.update(kw)
    responder = Responder(**fields)
    db.session.add(responder)
    db.session.flush()
    return responder


# ═════════════════════════════════════════════════════════════════════════════
# Rule matching
# ═════════════════════════════════════════════════════════════════════════════


class TestMatching:
    def test_empty_conditions_match_everything(self, services, make_incident):
        assert services.escalation.match_rule(_rule(), make_incident())

    def test_every_populated_condition_must_hold(self, services, make_incident):
        rule = _rule(condition_incident_types=["fire"], condition_severities=["critical"],
                     condition_states=["Kano"], condition_channels=["ussd"])
        engine = services.escalation
        assert engine.match_rule(rule, make_incident(severity="critical", channel="ussd"))
        assert not engine.match_rule(rule, make_incident(severity="high", channel="ussd"))
        assert not engine.match_rule(rule, make_incident(severity="critical", channel="web"))
        assert not engine.match_rule(rule, make_incident(severity="critical", channel="ussd",
                                                         location_state="Kaduna"))

    def test_min_confidence(self, services, make_incident):
        rule = _rule(condition_min_confidence=70)
        assert services.escalation.match_rule(rule, make_incident(confidence_score=75))
        assert not services.escalation.match_rule(rule, make_incident(confidence_score=60))

    def test_time_window_wraps_midnight_in_local_time(self, services, make_incident):
        rule = _rule(condition_time_start="22:00", condition_time_end="05:00")
        incident = make_incident()
        engine = services.escalation
        # 22:30 UTC is 23:30 in Lagos
        assert engine.match_rule(rule, incident, NOW.replace(hour=22, minute=30))
        assert engine.match_rule(rule, incident, NOW.replace(hour=3))
        assert not engine.match_rule(rule, incident, NOW)

    def test_days_only_checked_with_a_window(self, services, make_incident):
        incident = make_incident()
        engine = services.escalation
        assert js_weekday(NOW) == 2  # Tuesday
        tuesday_window = _rule(condition_time_start="00:00", condition_time_end="23:59",
                               condition_days_of_week=[2])
        sunday_window = _rule(condition_time_start="00:00", condition_time_end="23:59",
                              condition_days_of_week=[0])
        sunday_no_window = _rule(condition_days_of_week=[0])
        assert engine.match_rule(tuesday_window, incident, NOW)
        assert not engine.match_rule(sunday_window, incident, NOW)
        assert engine.match_rule(sunday_no_window, incident, NOW)


# ═════════════════════════════════════════════════════════════════════════════
# process_incident
# ═════════════════════════════════════════════════════════════════════════════


class TestProcessIncident:
    def test_critical_fire_hits_seeded_rule(self, services, sms, make_incident):
        seed_default_escalation_rules()
        incident = make_incident(severity="critical", location_village="Kura")

        outcome = services.escalation.process_incident(incident)

        assert outcome.escalated and outcome.level == 3
        assert incident.status == "escalated"
        assert incident.escalation_level == 3
        assert incident.escalation_assigned_to_organization == "Police"
        assert incident.escalation_sla_minutes == 15
        assert incident.escalation_rules_triggered == [outcome.rule_id]
        assert sms.recipients == ["+2348000000001"]
        assert "Kura" in sms.sent[0][1]

    def test_rerun_is_a_no_op(self, services, sms, make_incident):
        seed_default_escalation_rules()
        incident = make_incident(severity="critical")
        services.escalation.process_incident(incident)

        again = services.escalation.process_incident(incident)

        assert not again.escalated
        assert incident.escalation_level == 3
        assert len(incident.escalation_rules_triggered) == 1
        assert len(sms.sent) == 1

    def test_first_match_by_priority_then_creation(self, services, make_incident):
        later = _rule(name="later", priority=5, action_escalation_level=4, created_at=NOW)
        earlier = _rule(name="earlier", priority=5, action_escalation_level=1,
                        created_at=NOW - timedelta(days=1))
        _rule(name="low priority", priority=50, action_escalation_level=5)
        incident = make_incident()

        outcome = services.escalation.process_incident(incident)

        assert outcome.rule_id == earlier.rule_id
        assert incident.escalation_level == 1
        assert later.rule_id not in incident.escalation_rules_triggered

    def test_rule_trigger_stats(self, services, make_incident):
        rule = _rule()
        services.escalation.process_incident(make_incident())
        assert rule.trigger_count == 1
        assert rule.last_triggered_at is not None

    def test_default_escalation_by_severity(self, services, make_incident):
        high = make_incident(severity="high")
        low = make_incident(severity="low")

        high_outcome = services.escalation.process_incident(high)
        low_outcome = services.escalation.process_incident(low)

        assert high_outcome.escalated and high.escalation_level == 2
        assert high.escalation_rules_triggered == ["default_severity"]
        assert high.escalation_sla_minutes == 60
        assert high.escalation_assigned_to_name == COMMUNITY_FOCAL_CONTACT["name"]
        assert not low_outcome.escalated
        assert low.status == "received" and low.escalation_level == 0

    def test_terminal_and_maxed_incidents_are_left_alone(self, services, make_incident):
        _rule()
        closed = make_incident(status="closed")
        maxed = make_incident(status="escalated", escalation_level=5)
        assert not services.escalation.process_incident(closed).escalated
        assert not services.escalation.process_incident(maxed).escalated
        assert closed.escalation_level == 0

    def test_rule_never_lowers_level(self, services, make_incident):
        _rule(action_escalation_level=1)
        incident = make_incident(status="escalated", escalation_level=3)
        services.escalation.process_incident(incident)
        assert incident.escalation_level == 3

    def test_sms_failure_keeps_escalation_and_queues(self, services, sms, make_incident):
        _rule()
        sms.fail = True
        incident = make_incident()

        services.escalation.process_incident(incident)

        db.session.expire_all()
        assert incident.escalation_level == 2
        row = db.session.execute(db.select(OutboundMessage)).scalar_one()
        assert row.status == "queued" and row.attempts == 1
        assert services.dispatcher.queued_count() == 1


# ═════════════════════════════════════════════════════════════════════════════
# Responder lookup
# ═════════════════════════════════════════════════════════════════════════════


class TestResolveAssignee:
    def test_prefers_state_and_lga(self, services, make_incident):
        _responder(name="Anywhere")
        _responder(name="Kano", state="Kano")
        _responder(name="Kura", state="Kano", lga="Kura")
        incident = make_incident(location_lga="Kura")
        assert services.escalation.resolve_assignee("community_focal", incident)["name"] == "Kura"

    def test_falls_back_to_state_then_global(self, services, make_incident):
        _responder(name="Anywhere")
        _responder(name="Kano", state="Kano")
        incident = make_incident(location_lga="Dala")
        assert services.escalation.resolve_assignee("community_focal", incident)["name"] == "Kano"
        other_state = make_incident(location_state="Kaduna")
        assert services.escalation.resolve_assignee("community_focal", other_state)["name"] == "Anywhere"

    def test_inactive_and_empty_directory_use_focal_contact(self, services, make_incident):
        _responder(name="Off duty", status="inactive")
        assignee = services.escalation.resolve_assignee("community_focal", make_incident())
        assert assignee == COMMUNITY_FOCAL_CONTACT


# ═════════════════════════════════════════════════════════════════════════════
# Manual escalation & level guard
# ═════════════════════════════════════════════════════════════════════════════


class TestManualEscalation:
    def test_step_up(self, services, sms, make_incident):
        incident = make_incident(status="escalated", escalation_level=2)
        outcome = services.escalation.escalate_to_level(incident.incident_id, 4, reason="armed group")
        assert outcome.escalated and outcome.level == 4
        assert incident.escalation_level == 4
        assert incident.escalation_rules_triggered[-1] == "manual_level_4"
        assert incident.escalation_sla_minutes == 120
        assert incident.escalation_assigned_to_type == "community_focal"
        assert len(sms.sent) == 1

    @pytest.mark.parametrize("target", [1, 2])
    def test_not_above_current_is_rejected(self, services, make_incident, target):
        incident = make_incident(status="escalated", escalation_level=2)
        with pytest.raises(BusinessRuleViolation):
            services.escalation.escalate_to_level(incident.incident_id, target)
        assert incident.escalation_level == 2

    @pytest.mark.parametrize("target", [0, 6, "high"])
    def test_invalid_level(self, services, make_incident, target):
        incident = make_incident()
        with pytest.raises(ValidationError):
            services.escalation.escalate_to_level(incident.incident_id, target)

    def test_terminal_incident_cannot_be_escalated(self, services, make_incident):
        incident = make_incident(status="resolved")
        with pytest.raises(BusinessRuleViolation):
            services.escalation.escalate_to_level(incident.incident_id, 1)

    def test_unknown_incident(self, services):
        with pytest.raises(NotFoundError):
            services.escalation.escalate_to_level("INC-00000000", 2)

    def test_model_refuses_to_lower_level(self, make_incident):
        incident = make_incident(escalation_level=3)
        with pytest.raises(BusinessRuleViolation):
            incident.escalation_level = 1

    def test_escalation_path(self, services, make_incident):
        seed_default_escalation_rules()
        incident = make_incident(severity="critical")
        services.escalation.process_incident(incident)
        path = services.escalation.get_escalation_path(incident.incident_id)
        assert path["current_level"] == 3
        assert path["rules_triggered"][0]["name"] == "Critical Incident - All Channels"
        assert path["assigned_to"]["organization"] == "Police"
