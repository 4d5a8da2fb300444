"""
SMS notifications: phone normalisation, the outbox dispatcher and the
Africa's Talking gateway (retry + circuit breaker, mocked HTTP session).
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from matasa.integrations.sms_gateway import (
    AfricasTalkingGateway,
    LogOnlySmsGateway,
    SendResult,
    build_sms_gateway,
)
from matasa.models import db
from matasa.services.notification import (
    format_escalation_message,
    format_reporter_confirmation,
    normalize_phone,
)

from conftest import ManualTimer


# ═════════════════════════════════════════════════════════════════════════════
# normalize_phone / message formats
# ═════════════════════════════════════════════════════════════════════════════


class TestNormalizePhone:
    @pytest.mark.parametrize("raw", [
        "08012345678",
        "2348012345678",
        "+234 801 234 5678",
        "8012345678",
        "+234-801-234-5678",
    ])
    def test_nigerian_forms(self, raw):
        assert normalize_phone(raw) == "+2348012345678"

    def test_foreign_number_keeps_its_code(self):
        assert normalize_phone("+447700900123") == "+447700900123"

    @pytest.mark.parametrize("raw", [None, "", "abc"])
    def test_unusable(self, raw):
        assert normalize_phone(raw) is None


class TestMessageFormats:
    def test_escalation_message(self, make_incident):
        incident = make_incident(severity="critical", location_village="Kura",
                                 description_text="x" * 150)
        text = format_escalation_message(incident, 15)
        assert text.startswith("ESCALATION CRITICAL\nType: FIRE\n")
        assert f"ID: {incident.incident_id}" in text
        assert "Location: Kura" in text
        assert "Desc: " + "x" * 100 + "\n" in text
        assert text.endswith("SLA: 15min")

    def test_unknown_location(self, make_incident):
        assert "Location: Unknown" in format_escalation_message(make_incident(), 60)

    def test_reporter_confirmation_language(self, make_incident):
        hausa = make_incident()
        english = make_incident(description_language="english")
        assert format_reporter_confirmation(hausa).startswith("Na gode.")
        assert format_reporter_confirmation(english).startswith("Thank you.")


# ═════════════════════════════════════════════════════════════════════════════
# Dispatcher
# ═════════════════════════════════════════════════════════════════════════════


class _RaisingGateway:
    def send(self, phone_number, message, deadline=None):
        raise RuntimeError("socket closed")


class TestDispatcher:
    def test_enqueue_then_deliver(self, services, sms):
        row = services.dispatcher.enqueue("08012345678", "hello", kind="escalation", incident_id="INC-1")
        assert row.status == "pending"
        assert row.phone_number == "+2348012345678"
        db.session.commit()

        summary = services.dispatcher.deliver([row])

        assert summary == {"sent": 1, "queued": 0, "failed": 0, "deferred": 0}
        assert row.status == "sent"
        assert row.attempts == 1
        assert row.provider_message_id == "msg-1"
        assert row.sent_at is not None
        assert sms.sent == [("+2348012345678", "hello")]

    def test_invalid_phone_is_failed_without_sending(self, services, sms):
        row = services.dispatcher.enqueue("not-a-number", "hello", kind="escalation")
        db.session.commit()

        summary = services.dispatcher.deliver([row])

        assert row.status == "failed"
        assert row.last_error == "Invalid phone number"
        assert summary == {"sent": 0, "queued": 0, "failed": 0, "deferred": 0}
        assert sms.sent == []

    def test_failure_is_queued_then_failed_after_max_attempts(self, services, sms):
        sms.fail = True
        row = services.dispatcher.enqueue("08012345678", "hello", kind="escalation")
        db.session.commit()

        services.dispatcher.deliver([row])
        assert row.status == "queued"
        assert row.last_error == "provider down"
        assert services.dispatcher.queued_count() == 1

        services.dispatcher.process_queue()
        assert row.status == "queued" and row.attempts == 2
        services.dispatcher.process_queue()
        assert row.status == "failed" and row.attempts == 3

        assert services.dispatcher.process_queue()["processed"] == 0
        assert services.dispatcher.queued_count() == 0
        assert len(sms.sent) == 3

    def test_queue_drains_once_gateway_recovers(self, services, sms):
        sms.fail = True
        row = services.dispatcher.enqueue("08012345678", "hello", kind="escalation")
        db.session.commit()
        services.dispatcher.deliver([row])

        sms.fail = False
        summary = services.dispatcher.process_queue()

        assert summary["processed"] == 1 and summary["sent"] == 1
        assert row.status == "sent"
        assert row.last_error is None

    def test_sent_rows_are_never_resent(self, services, sms):
        row = services.dispatcher.enqueue("08012345678", "hello", kind="escalation")
        db.session.commit()
        services.dispatcher.deliver([row])
        services.dispatcher.deliver([row])
        services.dispatcher.process_queue()
        assert len(sms.sent) == 1

    def test_raising_gateway_queues_message(self, services):
        services.dispatcher.gateway = _RaisingGateway()
        row = services.dispatcher.enqueue("08012345678", "hello", kind="escalation")
        db.session.commit()

        services.dispatcher.deliver([row])

        assert row.status == "queued"
        assert row.last_error == "socket closed"


class _SlowGateway:
    """Accepts every message but takes ``seconds`` of the manual timer each."""

    def __init__(self, timer, seconds):
        self.timer = timer
        self.seconds = seconds
        self.deadlines = []

    def send(self, phone_number, message, deadline=None):
        self.deadlines.append(deadline)
        self.timer.advance(self.seconds)
        return SendResult(success=True, message_id="slow-1")


class TestDeliveryBudget:
    def _rows(self, services, count):
        rows = [services.dispatcher.enqueue(f"0801234567{i}", "hello", kind="escalation")
                for i in range(count)]
        db.session.commit()
        return rows

    def test_rows_past_the_deadline_are_left_pending(self, services):
        timer = ManualTimer()
        services.dispatcher.timer = timer
        services.dispatcher.gateway = _SlowGateway(timer, 2.0)
        rows = self._rows(services, 3)

        summary = services.dispatcher.deliver(rows, budget_seconds=3.0)

        assert summary == {"sent": 2, "queued": 0, "failed": 0, "deferred": 1}
        assert [row.status for row in rows] == ["sent", "sent", "pending"]
        assert rows[2].attempts == 0
        assert services.dispatcher.gateway.deadlines == [1003.0, 1003.0]
        assert services.dispatcher.queued_count() == 1

    def test_deferred_rows_go_out_with_the_retry_job(self, services):
        timer = ManualTimer()
        services.dispatcher.timer = timer
        services.dispatcher.gateway = _SlowGateway(timer, 2.0)
        rows = self._rows(services, 3)
        services.dispatcher.deliver(rows, budget_seconds=1.0)

        summary = services.dispatcher.process_queue()

        assert summary["processed"] == 2 and summary["sent"] == 2
        assert services.dispatcher.gateway.deadlines[-2:] == [None, None]
        assert all(row.status == "sent" for row in rows)

    def test_request_paths_use_configured_budget(self, services, sms):
        services.dispatcher.request_budget_seconds = 0.0
        rows = self._rows(services, 2)

        summary = services.dispatcher.deliver_within_budget(rows)

        assert summary["deferred"] == 2
        assert sms.sent == []


# ═════════════════════════════════════════════════════════════════════════════
# Africa's Talking gateway
# ═════════════════════════════════════════════════════════════════════════════


def _response(ok=True, status_code=201, body=None, text=""):
    resp = MagicMock()
    resp.ok = ok
    resp.status_code = status_code
    resp.text = text
    resp.json.return_value = body or {}
    return resp


def _accepted(message_id="ATXid_1"):
    return {"SMSMessageData": {"Message": "Sent to 1/1",
                               "Recipients": [{"status": "Success", "messageId": message_id}]}}


@pytest.fixture()
def http():
    return MagicMock()


@pytest.fixture()
def gateway(http):
    return AfricasTalkingGateway("key-123", "sandbox", url="https://sms.example/messaging",
                                 sender_id="MATASA", session=http)


class TestAfricasTalkingGateway:
    def test_success(self, gateway, http):
        http.post.return_value = _response(body=_accepted())

        result = gateway.send("+2348012345678", "hello")

        assert result.success
        assert result.message_id == "ATXid_1"
        _, kwargs = http.post.call_args
        assert kwargs["data"] == {"username": "sandbox", "to": "+2348012345678",
                                  "message": "hello", "from": "MATASA"}
        assert kwargs["headers"]["apiKey"] == "key-123"
        assert kwargs["timeout"] == 3.0

    def test_rejected_recipient_is_not_retried(self, gateway, http):
        http.post.return_value = _response(body={"SMSMessageData": {
            "Recipients": [{"status": "InvalidPhoneNumber", "messageId": "None"}]}})

        result = gateway.send("+2340000", "hello")

        assert not result.success
        assert result.error == "InvalidPhoneNumber"
        assert http.post.call_count == 1

    def test_no_recipients(self, gateway, http):
        http.post.return_value = _response(body={"SMSMessageData": {"Message": "InvalidSenderId"}})
        result = gateway.send("+2348012345678", "hello")
        assert not result.success
        assert result.error == "InvalidSenderId"

    @patch("matasa.integrations.sms_gateway.time.sleep")
    def test_http_error_is_retried_once(self, sleep, gateway, http):
        http.post.return_value = _response(ok=False, status_code=500, text="boom")

        result = gateway.send("+2348012345678", "hello")

        assert not result.success
        assert result.error == "HTTP 500: boom"
        assert http.post.call_count == 2
        sleep.assert_called_once_with(0.5)

    @patch("matasa.integrations.sms_gateway.time.sleep")
    def test_retry_recovers(self, sleep, gateway, http):
        http.post.side_effect = [requests.ConnectionError("reset"), _response(body=_accepted("ATXid_2"))]

        result = gateway.send("+2348012345678", "hello")

        assert result.success
        assert result.message_id == "ATXid_2"
        assert gateway._cb_state["failures"] == []

    @patch("matasa.integrations.sms_gateway.time.sleep")
    def test_timeout(self, sleep, gateway, http):
        http.post.side_effect = requests.Timeout()
        result = gateway.send("+2348012345678", "hello")
        assert not result.success
        assert "timed out" in result.error

    def test_open_circuit_skips_provider(self, gateway, http):
        now = datetime.now(timezone.utc)
        gateway._cb_state["failures"] = [now] * 5

        result = gateway.send("+2348012345678", "hello")

        assert not result.success
        assert "Circuit breaker" in result.error
        assert gateway._cb_state["open_until"] is not None
        http.post.assert_not_called()

    @patch("matasa.integrations.sms_gateway.time.sleep")
    def test_repeated_failures_open_circuit(self, sleep, gateway, http):
        http.post.return_value = _response(ok=False, status_code=503, text="busy")
        for _ in range(3):
            gateway.send("+2348012345678", "hello")
        calls = http.post.call_count

        result = gateway.send("+2348012345678", "hello")

        assert "Circuit breaker" in result.error
        assert http.post.call_count == calls

    def test_deadline_cuts_request_timeout(self, http):
        timer = ManualTimer()
        gateway = AfricasTalkingGateway("key-123", "sandbox", url="https://sms.example/messaging",
                                        session=http, timer=timer)
        http.post.return_value = _response(body=_accepted())

        gateway.send("+2348012345678", "hello", deadline=timer.now + 1.2)

        _, kwargs = http.post.call_args
        assert kwargs["timeout"] == pytest.approx(1.2)

    @patch("matasa.integrations.sms_gateway.time.sleep")
    def test_no_retry_when_backoff_passes_deadline(self, sleep, http):
        timer = ManualTimer()
        gateway = AfricasTalkingGateway("key-123", "sandbox", url="https://sms.example/messaging",
                                        session=http, timer=timer)
        http.post.return_value = _response(ok=False, status_code=500, text="boom")

        result = gateway.send("+2348012345678", "hello", deadline=timer.now + 0.4)

        assert not result.success
        assert http.post.call_count == 1
        sleep.assert_not_called()

    def test_spent_deadline_skips_provider(self, http):
        timer = ManualTimer()
        gateway = AfricasTalkingGateway("key-123", "sandbox", url="https://sms.example/messaging",
                                        session=http, timer=timer)

        result = gateway.send("+2348012345678", "hello", deadline=timer.now - 0.1)

        assert not result.success
        assert result.error == "Delivery time budget exhausted"
        http.post.assert_not_called()


class TestGatewayFactory:
    def test_without_key_logs_only(self):
        gateway = build_sms_gateway({"AT_API_KEY": ""})
        assert isinstance(gateway, LogOnlySmsGateway)
        assert gateway.send("+2348012345678", "hi").success

    def test_with_key(self):
        gateway = build_sms_gateway({"AT_API_KEY": "k", "AT_USERNAME": "matasa",
                                     "AT_SMS_URL": "https://sms.example/messaging"})
        assert isinstance(gateway, AfricasTalkingGateway)
        assert gateway.username == "matasa"
