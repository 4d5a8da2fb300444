"""
Shared pytest fixtures for the Matasa test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - clock: Mutable fixed clock (starts at NOW)
    - sms: Recording SMS gateway
    - ManualTimer: monotonic stand-in for SMS time budgets
    - services: Service graph rebuilt with the fixed clock, seeded RNG and sms
"""

import random
from datetime import datetime, timedelta, timezone

import pytest

from matasa import create_app
from matasa.integrations.sms_gateway import SendResult
from matasa.models import db as _db
from matasa.models.incident import Incident, generate_incident_id
from matasa.services import init_services

# Tuesday 12:00 UTC (13:00 in Lagos)
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ManualTimer:
    """Stand-in for time.monotonic that moves only when a test advances it."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingGateway:
    """SMS sink that records every send; set ``fail = True`` to reject."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, phone_number, message, deadline=None):
        self.sent.append((phone_number, message))
        if self.fail:
            return SendResult(success=False, error="provider down")
        return SendResult(success=True, message_id=f"msg-{len(self.sent)}")

    @property
    def recipients(self):
        return [phone for phone, _ in self.sent]


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Pipeline fixtures ────────────────────────────────────────────────────


@pytest.fixture()
def clock():
    return FixedClock()


@pytest.fixture()
def sms():
    return RecordingGateway()


@pytest.fixture()
def services(app, clock, sms):
    """Rebuild the service graph for one test, then restore the default one."""
    svc = init_services(app, clock=clock, rng=random.Random(7), sms_gateway=sms)
    yield svc
    init_services(app)


# ── Factories ────────────────────────────────────────────────────────────


def _make_incident(**overrides):
    """Persist (flush) an incident with sensible defaults."""
    fields = {
        "incident_id": generate_incident_id(),
        "channel": "web",
        "incident_type": "fire",
        "severity": "medium",
        "status": "received",
        "location_state": "Kano",
        "description_language": "hausa",
        "description_photo_urls": [],
        "escalation_level": 0,
        "escalation_rules_triggered": [],
        "reporter_anonymous": True,
        "reporter_callback_consent": False,
        "created_at": NOW,
        "updated_at": NOW,
    }
    fields.update(overrides)
    incident = Incident(**fields)
    _db.session.add(incident)
    _db.session.flush()
    return incident


@pytest.fixture()
def make_incident():
    return _make_incident
