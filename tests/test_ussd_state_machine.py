"""
USSD session state machine.

Drives whole dialogues through ``UssdService.handle_turn`` with a fixed
clock and a recording SMS gateway:

    - every non-terminal state has a handler
    - invalid input re-prompts without touching state or draft
    - end-to-end report, help request, cancel, alerts
    - inactivity timeout and terminal sessions
    - failed submission rolls back and returns to the main menu
"""

import threading
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
import requests

from matasa.integrations.sms_gateway import AfricasTalkingGateway
from matasa.models import db
from matasa.models.alert import Alert
from matasa.models.escalation import seed_default_escalation_rules
from matasa.models.incident import Incident
from matasa.models.notification import OutboundMessage
from matasa.models.ussd import TERMINAL_USSD_STATES, UssdState
from matasa.services import ussd_menus as menus
from matasa.services.ussd_service import KeyedLock

from conftest import NOW, ManualTimer

SESSION = "ATUid_test_1"
PHONE = "08012345678"

# Inputs that reach each state from a fresh session
PATHS = {
    UssdState.MAIN_MENU: [""],
    UssdState.INCIDENT_CATEGORY: ["", "1"],
    UssdState.SEVERITY_SELECTION: ["", "1", "2"],
    UssdState.LOCATION_SELECTION: ["", "1", "2", "3"],
    UssdState.DESCRIPTION: ["", "1", "2", "3", "1"],
    UssdState.CALLBACK_CONSENT: ["", "1", "2", "3", "1", "Two men fighting"],
    UssdState.CONFIRMATION: ["", "1", "2", "3", "1", "Two men fighting", "2"],
}


def _turn(services, text, session_id=SESSION, **kw):
    return services.ussd.handle_turn(session_id, PHONE, text, **kw)


def _drive(services, inputs, session_id=SESSION, **kw):
    response = None
    for text in inputs:
        response = _turn(services, text, session_id=session_id, **kw)
    return response


def _prompt(key, **params):
    return menus.truncate(menus.get_prompt(key, "hausa", **params), 182)


class TestStateCoverage:
    def test_every_non_terminal_state_has_a_handler(self, services):
        assert services.ussd.handled_states == frozenset(UssdState) - TERMINAL_USSD_STATES

    @pytest.mark.parametrize("state", list(PATHS))
    def test_paths_reach_expected_state(self, services, state):
        _drive(services, PATHS[state])
        assert services.ussd.get_session(SESSION).state == state


class TestInvalidInput:
    @pytest.mark.parametrize("state", list(PATHS))
    def test_invalid_choice_reprompts_without_mutation(self, services, state):
        _drive(services, PATHS[state])
        session = services.ussd.get_session(SESSION)
        draft_before = session.draft()
        bad = "x" * 161 if state == UssdState.DESCRIPTION else "9"

        response = _turn(services, bad)

        session = services.ussd.get_session(SESSION)
        expected = menus.truncate(
            menus.get_prompt("invalid", "hausa") + "\n" + services.ussd.current_prompt(session), 182,
        )
        assert response.action == "continue"
        assert response.message == expected
        assert session.state == state
        assert session.draft() == draft_before

    def test_empty_village_name_is_invalid(self, services):
        _drive(services, PATHS[UssdState.LOCATION_SELECTION] + ["2"])
        response = _turn(services, "")
        session = services.ussd.get_session(SESSION)
        assert response.message.startswith(menus.get_prompt("invalid", "hausa"))
        assert session.state == UssdState.LOCATION_SELECTION
        assert session.draft_location_village is None

    def test_over_long_input_is_invalid_everywhere(self, services):
        _drive(services, [""])
        response = _turn(services, "1" * 161)
        assert response.message.startswith(menus.get_prompt("invalid", "hausa"))
        assert services.ussd.get_session(SESSION).state == UssdState.MAIN_MENU


class TestDialogues:
    def test_first_turn_shows_welcome(self, services):
        response = _turn(services, "")
        assert response.action == "continue"
        assert response.message == _prompt("welcome")
        assert response.to_text().startswith("CON ")

    def test_english_session(self, services):
        response = _turn(services, "", language="english")
        assert response.message.startswith("Welcome to Community Safety")

    def test_fire_critical_in_kura_escalates_to_police(self, services, sms):
        seed_default_escalation_rules()
        db.session.commit()

        response = _drive(services, ["", "2", "1", "4", "2", "Kura", "0", "2", "1"])

        session = services.ussd.get_session(SESSION)
        assert session.state == UssdState.COMPLETED
        assert response.ends_session
        assert response.message == _prompt("thank_you", incident_id=session.incident_id)

        incident = db.session.execute(
            db.select(Incident).where(Incident.incident_id == session.incident_id)
        ).scalar_one()
        assert incident.channel == "ussd"
        assert incident.incident_type == "fire"
        assert incident.severity == "critical"
        assert incident.location_village == "Kura"
        assert incident.location_state == "Kano"
        assert incident.reporter_session_id == SESSION
        assert incident.escalation_level == 3
        assert incident.escalation_assigned_to_organization == "Police"
        assert sms.recipients == ["+2348000000001"]

    def test_callback_consent_sends_reporter_confirmation(self, services, sms):
        _drive(services, ["", "1", "2", "1", "2", "Dala", "Shouting", "1", "1"])
        session = services.ussd.get_session(SESSION)
        assert session.state == UssdState.COMPLETED
        assert "+2348012345678" in sms.recipients

    def test_help_request_pins_severity_high(self, services):
        _drive(services, ["", "3", "2", "1", "1", "Help us", "2", "1"], cell_tower_id="CT-0042")

        session = services.ussd.get_session(SESSION)
        incident = db.session.execute(
            db.select(Incident).where(Incident.incident_id == session.incident_id)
        ).scalar_one()
        assert session.draft_help_service == "fire_service"
        assert incident.incident_type == "fire"
        assert incident.severity == "high"
        assert incident.location_cell_tower_id == "CT-0042"
        assert incident.description_text == "Help us"

    def test_cancel_returns_to_main_menu_with_clean_draft(self, services):
        response = _drive(services, PATHS[UssdState.CONFIRMATION] + ["2"])
        session = services.ussd.get_session(SESSION)
        assert response.message == _prompt("welcome")
        assert session.state == UssdState.MAIN_MENU
        assert all(value is None for value in session.draft().values())
        assert db.session.execute(db.select(Incident)).first() is None

    def test_repeat_menu(self, services):
        response = _drive(services, ["", "5"])
        assert response.message == _prompt("welcome")
        assert services.ussd.get_session(SESSION).state == UssdState.MAIN_MENU

    def test_read_alerts_ends_session(self, services):
        db.session.add(Alert(alert_type="security", title_hausa="Hattara a Kura",
                             content_hausa="...", valid_from=NOW - timedelta(hours=1),
                             created_at=NOW))
        db.session.commit()

        response = _drive(services, ["", "4"])

        assert response.ends_session
        assert response.message == menus.get_prompt("alerts_header", "hausa") + "\n1. Hattara a Kura"
        assert services.ussd.get_session(SESSION).state == UssdState.ABORTED

    def test_no_alerts(self, services):
        response = _drive(services, ["", "4"])
        assert response.ends_session
        assert response.message == _prompt("no_alerts")

    def test_step_count(self, services):
        _drive(services, ["", "1", "9"])
        assert services.ussd.get_session(SESSION).step_count == 3


class TestTimeoutAndTerminal:
    def test_inactivity_times_out(self, services, clock):
        _drive(services, ["", "1"])
        clock.advance(seconds=121)

        response = _turn(services, "1")

        session = services.ussd.get_session(SESSION)
        assert response.ends_session
        assert response.message == _prompt("timeout")
        assert session.state == UssdState.TIMEOUT
        assert session.ended_at is not None

    def test_exactly_timeout_seconds_is_still_active(self, services, clock):
        _drive(services, ["", "1"])
        clock.advance(seconds=120)
        response = _turn(services, "1")
        assert response.action == "continue"
        assert services.ussd.get_session(SESSION).state == UssdState.SEVERITY_SELECTION

    def test_timed_out_session_stays_ended(self, services, clock):
        _drive(services, [""])
        clock.advance(minutes=5)
        _turn(services, "1")
        response = _turn(services, "1")
        assert response.ends_session
        assert response.message == _prompt("timeout")

    def test_completed_session_repeats_thank_you(self, services):
        _drive(services, PATHS[UssdState.CONFIRMATION] + ["1"])
        session = services.ussd.get_session(SESSION)
        response = _turn(services, "1")
        assert response.ends_session
        assert response.message == _prompt("thank_you", incident_id=session.incident_id)
        assert db.session.execute(db.select(db.func.count(Incident.id))).scalar_one() == 1


class TestSubmitFailure:
    def test_failed_submission_rolls_back_to_main_menu(self, services):
        _drive(services, PATHS[UssdState.CONFIRMATION])

        with patch.object(services.ingestion, "create_from_ussd", side_effect=RuntimeError("db down")):
            response = _turn(services, "1")

        session = services.ussd.get_session(SESSION)
        assert response.action == "continue"
        assert response.message == (
            menus.get_prompt("submit_failed", "hausa") + "\n" + menus.get_prompt("welcome", "hausa")
        )
        assert session.state == UssdState.MAIN_MENU
        assert session.incident_id is None
        assert all(value is None for value in session.draft().values())
        assert db.session.execute(db.select(Incident)).first() is None

        # The caller can start over in the same session
        assert _turn(services, "1").message == _prompt("suspicious_activity")

    @pytest.mark.parametrize("language", ["hausa", "english"])
    def test_failure_message_keeps_the_whole_menu(self, services, language):
        _drive(services, PATHS[UssdState.CONFIRMATION], language=language)

        with patch.object(services.ingestion, "create_from_ussd", side_effect=RuntimeError("db down")):
            response = _turn(services, "1", language=language)

        assert len(response.message) <= 182
        assert not response.message.endswith("...")
        assert response.message.endswith(menus.get_prompt("welcome", language).splitlines()[-1])


class TestSlowSmsProvider:
    """A hanging provider must not hold the final USSD response."""

    REPORT_WITH_CALLBACK = ["", "2", "1", "4", "2", "Kura", "0", "1"]

    @pytest.fixture()
    def hanging(self, services):
        timer = ManualTimer()
        http = MagicMock()

        def hang_until_timeout(url, data, headers, timeout):
            timer.advance(timeout)
            raise requests.Timeout()

        http.post.side_effect = hang_until_timeout
        services.dispatcher.gateway = AfricasTalkingGateway(
            "key-123", "sandbox", url="https://sms.example/messaging", session=http, timer=timer,
        )
        services.dispatcher.timer = timer
        return timer, http

    @patch("matasa.integrations.sms_gateway.time.sleep")
    def test_submit_stays_within_sms_budget(self, sleep, services, hanging):
        timer, http = hanging
        seed_default_escalation_rules()
        db.session.commit()
        _drive(services, self.REPORT_WITH_CALLBACK)
        started = timer.now

        response = _turn(services, "1")

        assert response.ends_session
        assert services.ussd.get_session(SESSION).state == UssdState.COMPLETED
        assert timer.now - started <= services.dispatcher.request_budget_seconds
        assert http.post.call_count == 1
        sleep.assert_not_called()
        rows = db.session.execute(
            db.select(OutboundMessage).order_by(OutboundMessage.id)
        ).scalars().all()
        assert [(row.kind, row.status) for row in rows] == [
            ("escalation", "queued"),
            ("reporter_confirmation", "pending"),
        ]

    @patch("matasa.integrations.sms_gateway.time.sleep")
    def test_retry_job_delivers_what_the_request_left(self, sleep, services, hanging):
        timer, http = hanging
        seed_default_escalation_rules()
        db.session.commit()
        _drive(services, self.REPORT_WITH_CALLBACK + ["1"])

        accepted = MagicMock(ok=True, status_code=201)
        accepted.json.return_value = {"SMSMessageData": {"Recipients": [
            {"status": "Success", "messageId": "ATXid_9"}]}}
        http.post.side_effect = None
        http.post.return_value = accepted

        summary = services.dispatcher.process_queue()

        assert summary["processed"] == 2
        assert summary["sent"] == 2
        assert services.dispatcher.queued_count() == 0


class TestCleanup:
    def test_cleanup_removes_only_stale_unfinished_sessions(self, services, clock):
        _drive(services, [""], session_id="old-open")
        _drive(services, PATHS[UssdState.CONFIRMATION] + ["1"], session_id="old-done")
        clock.advance(hours=25)
        _drive(services, [""], session_id="fresh")

        removed = services.ussd.cleanup_sessions(retention_hours=24)

        assert removed == 1
        assert services.ussd.get_session("old-done").state == UssdState.COMPLETED
        assert services.ussd.get_session("fresh").state == UssdState.MAIN_MENU


class TestKeyedLock:
    def test_same_key_is_serialised(self):
        locks = KeyedLock()
        entered = threading.Event()

        def _worker():
            with locks.hold("s1"):
                entered.set()

        with locks.hold("s1"):
            thread = threading.Thread(target=_worker)
            thread.start()
            assert not entered.wait(0.2)
            with locks.hold("s2"):
                pass
        thread.join(2)
        assert entered.is_set()
        assert locks._locks == {}
