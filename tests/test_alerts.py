"""
Community alerts: creation, SMS broadcast to consenting reporters, active
window, cancellation, expiry and the cached USSD title list.
"""

from datetime import timedelta

import pytest

from matasa.core.exceptions import BusinessRuleViolation, NotFoundError, ValidationError
from matasa.models import db
from matasa.models.alert import Alert
from matasa.models.notification import OutboundMessage
from matasa.services.notification import format_alert_message
from matasa.utils.helpers import as_utc

from conftest import NOW


def _alert(**overrides):
    fields = {
        "alert_type": "security",
        "title_hausa": "Hattara",
        "content_hausa": "Ku yi hattara",
        "valid_from": NOW - timedelta(hours=1),
        "created_at": NOW - timedelta(hours=1),
    }
    fields.update(overrides)
    alert = Alert(**fields)
    db.session.add(alert)
    db.session.commit()
    return alert


class TestCreate:
    def test_create(self, services):
        alert = services.alerts.create_alert({
            "alert_type": "weather",
            "severity": "warning",
            "title_hausa": " Ruwan sama ",
            "title_english": "Heavy rain",
            "content_hausa": "Ambaliya na iya faruwa",
            "valid_until": "2026-03-11T00:00:00Z",
        }, created_by="ops@matasa.ng")

        assert alert.alert_id.startswith("ALT-")
        assert alert.status == "active"
        assert alert.title_hausa == "Ruwan sama"
        assert alert.created_by == "ops@matasa.ng"
        assert alert in services.alerts.get_active_alerts()

    @pytest.mark.parametrize("payload, field", [
        ({"alert_type": "gossip", "title_hausa": "a", "content_hausa": "b"}, "alert_type"),
        ({"alert_type": "security", "severity": "mild", "title_hausa": "a", "content_hausa": "b"}, "severity"),
        ({"alert_type": "security", "content_hausa": "b"}, "title_hausa"),
        ({"alert_type": "security", "title_hausa": "a", "content_hausa": "  "}, "content_hausa"),
        ({"alert_type": "security", "title_hausa": "a", "content_hausa": "b", "valid_until": "soon"},
         "valid_until"),
    ])
    def test_validation(self, services, payload, field):
        with pytest.raises(ValidationError) as exc:
            services.alerts.create_alert(payload)
        assert field in exc.value.details


class TestActiveWindow:
    def test_window_and_status(self, services):
        live = _alert(title_hausa="live")
        _alert(title_hausa="future", valid_from=NOW + timedelta(hours=1))
        _alert(title_hausa="over", valid_until=NOW - timedelta(minutes=1))
        _alert(title_hausa="cancelled", status="cancelled")

        assert services.alerts.get_active_alerts() == [live]

    def test_state_targeting(self, services):
        _alert(title_hausa="everyone")
        _alert(title_hausa="kano", target_state="Kano")
        _alert(title_hausa="kaduna", target_state="Kaduna")

        titles = {a.title_hausa for a in services.alerts.get_active_alerts(state="Kano")}
        assert titles == {"everyone", "kano"}


class TestCancelAndExpire:
    def test_cancel(self, services):
        alert = _alert()
        assert services.alerts.cancel_alert(alert.alert_id).status == "cancelled"
        with pytest.raises(BusinessRuleViolation):
            services.alerts.cancel_alert(alert.alert_id)

    def test_cancel_unknown(self, services):
        with pytest.raises(NotFoundError):
            services.alerts.cancel_alert("ALT-NOPE")

    def test_expire_is_idempotent(self, services):
        stale = _alert(valid_until=NOW - timedelta(minutes=5))
        _alert(valid_until=NOW + timedelta(hours=5))
        _alert()

        assert services.alerts.expire_alerts() == 1
        assert stale.status == "expired"
        assert services.alerts.expire_alerts() == 0


class TestUssdTitles:
    def test_newest_three_in_language(self, services):
        for i in range(4):
            _alert(title_hausa=f"h{i}", title_english=f"e{i}" if i != 2 else None,
                   created_at=NOW - timedelta(minutes=10 - i))

        assert services.alerts.ussd_alert_titles("english") == ["e3", "h2", "e1"]
        assert services.alerts.ussd_alert_titles("hausa") == ["h3", "h2", "h1"]

    def test_titles_are_cached_until_a_change(self, services):
        _alert(title_hausa="first")
        assert services.alerts.ussd_alert_titles("hausa") == ["first"]

        _alert(title_hausa="written elsewhere")
        assert services.alerts.ussd_alert_titles("hausa") == ["first"]

        services.alerts.create_alert({"alert_type": "update", "title_hausa": "new",
                                      "content_hausa": "sabon labari"})
        assert services.alerts.ussd_alert_titles("hausa")[0] == "new"


# ═════════════════════════════════════════════════════════════════════════════
# SMS broadcast
# ═════════════════════════════════════════════════════════════════════════════


def _outbox(alert_id):
    return db.session.execute(
        db.select(OutboundMessage).where(OutboundMessage.alert_id == alert_id).order_by(OutboundMessage.id)
    ).scalars().all()


ALERT_PAYLOAD = {
    "alert_type": "security",
    "severity": "critical",
    "title_hausa": "Hattara",
    "content_hausa": "Ku kasance a gida yau da dare",
}


@pytest.fixture()
def reporters(make_incident):
    """Consenting reporters in Kano and Kaduna, plus ones who must not be reached."""
    day_ago = NOW - timedelta(days=1)
    make_incident(reporter_phone_number="08011111111", reporter_callback_consent=True, created_at=day_ago)
    make_incident(reporter_phone_number="+2348011111111", reporter_callback_consent=True, created_at=day_ago)
    make_incident(reporter_phone_number="08022222222", reporter_callback_consent=True, created_at=day_ago)
    make_incident(reporter_phone_number="08033333333", reporter_callback_consent=True,
                  location_state="Kaduna", created_at=day_ago)
    make_incident(reporter_phone_number="08044444444", reporter_callback_consent=False, created_at=day_ago)
    make_incident(reporter_phone_number="08055555555", reporter_callback_consent=True,
                  created_at=NOW - timedelta(days=8))
    db.session.commit()


class TestBroadcast:
    def test_one_queued_message_per_subscriber(self, services, sms, reporters):
        alert = services.alerts.create_alert(dict(ALERT_PAYLOAD, target_state="Kano"))

        rows = _outbox(alert.alert_id)
        assert sorted(row.phone_number for row in rows) == ["+2348011111111", "+2348022222222"]
        assert {(row.kind, row.status) for row in rows} == {("alert", "pending")}
        assert rows[0].message == "[CRITICAL] Hattara\nKu kasance a gida yau da dare"
        assert alert.stats_recipient_count == 2
        assert as_utc(alert.broadcast_at) == NOW
        assert sms.sent == []

    def test_retry_job_delivers_broadcast(self, services, sms, reporters):
        alert = services.alerts.create_alert(ALERT_PAYLOAD)

        summary = services.dispatcher.process_queue()

        assert summary["sent"] == 3
        assert sorted(sms.recipients) == ["+2348011111111", "+2348022222222", "+2348033333333"]
        assert {row.status for row in _outbox(alert.alert_id)} == {"sent"}

    def test_created_without_broadcast_then_sent_once(self, services, reporters):
        alert = services.alerts.create_alert(dict(ALERT_PAYLOAD, broadcast=False))
        assert _outbox(alert.alert_id) == []
        assert alert.broadcast_at is None

        services.alerts.broadcast_alert(alert.alert_id)
        assert len(_outbox(alert.alert_id)) == 3

        with pytest.raises(BusinessRuleViolation):
            services.alerts.broadcast_alert(alert.alert_id)
        assert len(_outbox(alert.alert_id)) == 3

    def test_cancelled_alert_is_not_broadcast(self, services, reporters):
        alert = services.alerts.create_alert(dict(ALERT_PAYLOAD, broadcast=False))
        services.alerts.cancel_alert(alert.alert_id)
        with pytest.raises(BusinessRuleViolation):
            services.alerts.broadcast_alert(alert.alert_id)
        with pytest.raises(NotFoundError):
            services.alerts.broadcast_alert("ALT-NOPE")

    def test_broadcast_flag_must_be_boolean(self, services):
        with pytest.raises(ValidationError) as exc:
            services.alerts.create_alert(dict(ALERT_PAYLOAD, broadcast="no"))
        assert "broadcast" in exc.value.details

    def test_long_alert_fits_one_sms(self):
        alert = Alert(severity="warning", title_hausa="Ruwan sama", content_hausa="x" * 300)
        message = format_alert_message(alert)
        assert len(message) == 150
        assert message.startswith("[WARNING] Ruwan sama\nxxx")
        assert message.endswith("...")

    def test_alert_stats(self, services, sms, reporters):
        services.alerts.create_alert(ALERT_PAYLOAD)
        services.alerts.create_alert(dict(ALERT_PAYLOAD, alert_type="weather", severity="info",
                                          broadcast=False))
        sms.fail = True
        services.dispatcher.process_queue(limit=1)
        sms.fail = False
        services.dispatcher.process_queue(limit=1)

        stats = services.alerts.get_alert_stats(NOW - timedelta(hours=1))

        assert stats["total"] == 2
        assert stats["by_status"]["active"] == 2
        assert stats["by_type"] == {"security": 1, "weather": 1}
        assert stats["by_severity"] == {"critical": 1, "info": 1}
        assert stats["total_recipients"] == 3
        assert stats["messages"] == {"sent": 1, "pending": 2}
        assert stats["delivery_rate"] == 33
