"""
Matasa incident pipeline
USSD dialogue session model.

Models:
    - UssdSession: one provider session (keyed by the telco session id),
      holding the dialogue state and the draft report fields collected so far.

States (UssdState):
    idle -> main_menu -> incident_category -> severity_selection
         -> location_selection -> description -> callback_consent
         -> confirmation -> completed
    Any non-terminal state -> timeout (idle too long) | aborted
"""

import enum
from datetime import datetime, timezone

from matasa.models import db
from matasa.utils.helpers import as_utc


class UssdState(str, enum.Enum):
    IDLE = "idle"
    MAIN_MENU = "main_menu"
    INCIDENT_CATEGORY = "incident_category"
    SEVERITY_SELECTION = "severity_selection"
    LOCATION_SELECTION = "location_selection"
    DESCRIPTION = "description"
    CALLBACK_CONSENT = "callback_consent"
    CONFIRMATION = "confirmation"
    COMPLETED = "completed"
    TIMEOUT = "timeout"
    ABORTED = "aborted"


TERMINAL_USSD_STATES = frozenset({UssdState.COMPLETED, UssdState.TIMEOUT, UssdState.ABORTED})

DRAFT_FIELDS = (
    "draft_menu",
    "draft_incident_type",
    "draft_help_service",
    "draft_severity",
    "draft_location_mode",
    "draft_cell_tower_id",
    "draft_location_village",
    "draft_description",
    "draft_callback_consent",
)


class UssdSession(db.Model):
    """Server-side state of a single USSD dialogue."""

    __tablename__ = "ussd_sessions"

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(100), unique=True, nullable=False, index=True,
                           comment="Provider session id")
    phone_number = db.Column(db.String(20), nullable=False, index=True)
    provider = db.Column(db.String(30), nullable=False, default="africastalking")
    language = db.Column(db.String(10), nullable=False, default="hausa")
    state = db.Column(db.Enum(UssdState, native_enum=False, length=30,
                              values_callable=lambda e: [m.value for m in e]),
                      nullable=False, default=UssdState.IDLE)

    # Draft report
    draft_menu = db.Column(db.String(30), nullable=True,
                           comment="suspicious_activity | incident_in_progress | request_help")
    draft_incident_type = db.Column(db.String(30), nullable=True)
    draft_help_service = db.Column(db.String(30), nullable=True)
    draft_severity = db.Column(db.String(10), nullable=True)
    draft_location_mode = db.Column(db.String(10), nullable=True, comment="network | manual")
    draft_cell_tower_id = db.Column(db.String(50), nullable=True)
    draft_location_village = db.Column(db.String(120), nullable=True)
    draft_description = db.Column(db.String(160), nullable=True)
    draft_callback_consent = db.Column(db.Boolean, nullable=True)

    step_count = db.Column(db.Integer, nullable=False, default=0)
    started_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    last_activity_at = db.Column(db.DateTime(timezone=True),
                                 default=lambda: datetime.now(timezone.utc), index=True)
    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)

    incident_id = db.Column(db.String(20), nullable=True, comment="Set on completion")

    version_id = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_USSD_STATES

    def clear_draft(self) -> None:
        for field in DRAFT_FIELDS:
            setattr(self, field, None)

    def draft(self) -> dict:
        return {field[len("draft_"):]: getattr(self, field) for field in DRAFT_FIELDS}

    def to_dict(self):
        def _iso(value):
            value = as_utc(value)
            return value.isoformat() if value else None

        return {
            "session_id": self.session_id,
            "phone_number": self.phone_number,
            "provider": self.provider,
            "language": self.language,
            "state": self.state.value if self.state else None,
            "draft": self.draft(),
            "step_count": self.step_count,
            "started_at": _iso(self.started_at),
            "last_activity_at": _iso(self.last_activity_at),
            "ended_at": _iso(self.ended_at),
            "incident_id": self.incident_id,
        }

    def __repr__(self):
        state = self.state.value if self.state else None
        return f"<UssdSession {self.session_id} [{state}]>"
