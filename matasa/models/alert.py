"""
Matasa incident pipeline
Community alert model.

Alerts are short bilingual notices read from the USSD main menu. Unless
disabled at creation, each alert is also sent once by SMS to recent
reporters who agreed to be contacted.
Status: active -> expired (valid_until passed) | cancelled (admin action).
"""

import uuid
from datetime import datetime, timezone

from matasa.models import db
from matasa.utils.helpers import as_utc

ALERT_TYPES = ("security", "weather", "health", "community", "emergency", "update")
ALERT_SEVERITIES = ("info", "warning", "alert", "critical")
ALERT_STATUSES = ("active", "expired", "cancelled")


def generate_alert_id() -> str:
    return f"ALT-{uuid.uuid4().hex[:8].upper()}"


class Alert(db.Model):
    __tablename__ = "alerts"

    id = db.Column(db.Integer, primary_key=True)
    alert_id = db.Column(db.String(20), unique=True, nullable=False, index=True,
                         default=generate_alert_id)
    alert_type = db.Column(db.String(20), nullable=False)
    severity = db.Column(db.String(10), nullable=False, default="info")
    title_hausa = db.Column(db.String(200), nullable=False)
    title_english = db.Column(db.String(200), nullable=True)
    content_hausa = db.Column(db.Text, nullable=False)
    content_english = db.Column(db.Text, nullable=True)
    target_state = db.Column(db.String(50), nullable=True)
    target_lga = db.Column(db.String(80), nullable=True)
    status = db.Column(db.String(10), nullable=False, default="active", index=True)
    valid_from = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    valid_until = db.Column(db.DateTime(timezone=True), nullable=True)
    stats_recipient_count = db.Column(db.Integer, nullable=False, default=0,
                                      comment="Outbox rows queued by the broadcast")
    broadcast_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by = db.Column(db.String(120), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def title_for(self, language: str) -> str:
        if language == "english" and self.title_english:
            return self.title_english
        return self.title_hausa

    def to_dict(self):
        def _iso(value):
            value = as_utc(value)
            return value.isoformat() if value else None

        return {
            "alert_id": self.alert_id,
            "alert_type": self.alert_type,
            "severity": self.severity,
            "title_hausa": self.title_hausa,
            "title_english": self.title_english,
            "content_hausa": self.content_hausa,
            "content_english": self.content_english,
            "target_state": self.target_state,
            "target_lga": self.target_lga,
            "status": self.status,
            "valid_from": _iso(self.valid_from),
            "valid_until": _iso(self.valid_until),
            "stats_recipient_count": self.stats_recipient_count or 0,
            "broadcast_at": _iso(self.broadcast_at),
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Alert {self.alert_id} [{self.status}]>"
