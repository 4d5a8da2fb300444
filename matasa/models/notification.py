"""
Matasa incident pipeline
SMS outbox model.

Rows are written inside the same transaction as the escalation that caused
them, then delivered after commit.

Status: pending -> sent | queued (retry later) | failed (attempts exhausted
or undeliverable number).
"""

from datetime import datetime, timezone

from matasa.models import db
from matasa.utils.helpers import as_utc

MESSAGE_KINDS = ("escalation", "reporter_confirmation", "alert")
MESSAGE_STATUSES = ("pending", "sent", "queued", "failed")


class OutboundMessage(db.Model):
    __tablename__ = "outbound_messages"

    id = db.Column(db.Integer, primary_key=True)
    phone_number = db.Column(db.String(20), nullable=True, comment="Normalized +<country><digits>")
    message = db.Column(db.Text, nullable=False)
    kind = db.Column(db.String(30), nullable=False, default="escalation")
    incident_id = db.Column(db.String(20), nullable=True, index=True)
    alert_id = db.Column(db.String(20), nullable=True, index=True)
    status = db.Column(db.String(10), nullable=False, default="pending", index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.String(500), nullable=True)
    provider_message_id = db.Column(db.String(100), nullable=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        sent = as_utc(self.sent_at)
        created = as_utc(self.created_at)
        return {
            "id": self.id,
            "phone_number": self.phone_number,
            "message": self.message,
            "kind": self.kind,
            "incident_id": self.incident_id,
            "alert_id": self.alert_id,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "provider_message_id": self.provider_message_id,
            "sent_at": sent.isoformat() if sent else None,
            "created_at": created.isoformat() if created else None,
        }

    def __repr__(self):
        return f"<OutboundMessage {self.id} {self.kind} -> {self.phone_number} [{self.status}]>"
