"""
Incident Ingestion: the single entry point for new reports.

Both channels run the same pipeline inside one unit of work:

    persist + flush
      -> deduplication (top similarity becomes the dedup sub-score)
      -> confidence score
      -> escalation rules (commit=False)
      -> reporter confirmation SMS (callback consent only)
    commit, then deliver the outbox within the SMS time budget

With ``commit=False`` the caller owns the transaction and must deliver
``IngestionResult.notifications`` after its own commit (the USSD
confirmation step does this so the session link is part of the same unit).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable

from matasa.core.exceptions import BusinessRuleViolation, ValidationError
from matasa.models.incident import (
    API_CHANNELS,
    INCIDENT_STATUSES,
    INCIDENT_TYPES,
    LANGUAGES,
    SEVERITIES,
    Incident,
    generate_incident_id,
    validate_incident_transition,
)
from matasa.services.notification import format_reporter_confirmation
from matasa.utils.helpers import parse_datetime, utcnow

logger = logging.getLogger(__name__)

MAX_PER_PAGE = 100
RESPONSE_FIELDS = {
    "first_responder": "response_first_responder",
    "response_time_minutes": "response_time_minutes",
    "resolution": "response_resolution",
}


@dataclass
class IngestionResult:
    incident: Incident
    duplicates: list = field(default_factory=list)
    confidence: dict = field(default_factory=dict)
    escalation: object = None
    notifications: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "incident": self.incident.to_dict(),
            "duplicates": [
                {"incident_id": d["incident_id"], "similarity": d["similarity"]} for d in self.duplicates
            ],
            "confidence": self.confidence,
            "escalation": self.escalation.to_dict() if self.escalation else None,
        }


def _as_float(value, name: str, low: float, high: float, errors: dict):
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        errors[name] = "must be a number"
        return None
    if math.isnan(number) or not low <= number <= high:
        errors[name] = f"must be between {low} and {high}"
        return None
    return number


class IncidentIngestionService:

    def __init__(
        self,
        store,
        deduplication,
        scoring,
        escalation,
        dispatcher,
        *,
        clock: Callable = utcnow,
        default_state: str = "Kano",
    ) -> None:
        self.store = store
        self.deduplication = deduplication
        self.scoring = scoring
        self.escalation = escalation
        self.dispatcher = dispatcher
        self.clock = clock
        self.default_state = default_state

    # ── Pipeline ─────────────────────────────────────────────────────────

    def _run_pipeline(self, incident: Incident, *, commit: bool) -> IngestionResult:
        try:
            self.store.add(incident)
            self.store.flush()

            duplicates = self.deduplication.find_duplicates(incident)
            if duplicates:
                incident.confidence_deduplication_score = duplicates[0]["similarity"]

            confidence = self.scoring.update_incident_score(incident)
            outcome = self.escalation.process_incident(incident, commit=False)
            notifications = list(outcome.notifications)

            if incident.reporter_callback_consent and incident.reporter_phone_number:
                notifications.append(self.dispatcher.enqueue(
                    incident.reporter_phone_number,
                    format_reporter_confirmation(incident),
                    kind="reporter_confirmation",
                    incident_id=incident.incident_id,
                ))

            if commit:
                self.store.commit()
        except Exception:
            if commit:
                self.store.rollback()
            raise

        result = IngestionResult(
            incident=incident,
            duplicates=duplicates,
            confidence=confidence,
            escalation=outcome,
            notifications=notifications,
        )
        logger.info(
            "Incident %s ingested via %s: %s/%s confidence=%s level=%s",
            incident.incident_id, incident.channel, incident.incident_type, incident.severity,
            incident.confidence_score, incident.escalation_level,
            extra={"incident_id": incident.incident_id, "event_type": "incident_created"},
        )
        if commit:
            self.dispatcher.deliver_within_budget(notifications)
        return result

    def _new_incident(self, **fields) -> Incident:
        now = self.clock()
        fields.setdefault("description_photo_urls", [])
        return Incident(
            incident_id=generate_incident_id(),
            status="received",
            escalation_level=0,
            escalation_rules_triggered=[],
            created_at=now,
            updated_at=now,
            **fields,
        )

    # ── Entry points ─────────────────────────────────────────────────────

    def create_from_ussd(self, session, *, commit: bool = True) -> IngestionResult:
        """Build an incident from a completed USSD draft."""
        if not session.draft_incident_type:
            raise ValidationError("USSD draft has no incident type", details={"incident_type": "required"})

        incident = self._new_incident(
            channel="ussd",
            reporter_phone_number=session.phone_number,
            reporter_anonymous=True,
            reporter_callback_consent=bool(session.draft_callback_consent),
            reporter_session_id=session.session_id,
            incident_type=session.draft_incident_type,
            severity=session.draft_severity or "medium",
            location_state=self.default_state,
            location_village=session.draft_location_village,
            location_cell_tower_id=session.draft_cell_tower_id,
            description_text=session.draft_description,
            description_language=session.language or "hausa",
        )
        return self._run_pipeline(incident, commit=commit)

    def create_from_api(self, payload: dict, *, source_ip: str | None = None,
                        user_agent: str | None = None, commit: bool = True) -> IngestionResult:
        """Validate a web/mobile/API submission and run it through the pipeline.

        Raises:
            ValidationError: with field-level ``details``.
        """
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")

        errors: dict = {}
        incident_type = payload.get("incident_type")
        if not incident_type:
            errors["incident_type"] = "required"
        elif incident_type not in INCIDENT_TYPES:
            errors["incident_type"] = f"must be one of {', '.join(INCIDENT_TYPES)}"

        severity = payload.get("severity") or "medium"
        if severity not in SEVERITIES:
            errors["severity"] = f"must be one of {', '.join(SEVERITIES)}"

        channel = payload.get("channel") or "web"
        if channel not in API_CHANNELS:
            errors["channel"] = f"must be one of {', '.join(API_CHANNELS)}"

        language = payload.get("description_language") or "hausa"
        if language not in LANGUAGES:
            errors["description_language"] = "must be hausa or english"

        location = payload.get("location") or {}
        if not isinstance(location, dict):
            errors["location"] = "must be an object"
            location = {}
        latitude = _as_float(location.get("latitude"), "location.latitude", -90, 90, errors)
        longitude = _as_float(location.get("longitude"), "location.longitude", -180, 180, errors)
        accuracy = _as_float(location.get("accuracy"), "location.accuracy", 0, 1_000_000, errors)
        if (latitude is None) != (longitude is None) and not errors.get("location.latitude") \
                and not errors.get("location.longitude"):
            errors["location"] = "latitude and longitude must be given together"

        photo_urls = payload.get("photo_urls") or []
        if not isinstance(photo_urls, list) or not all(isinstance(u, str) for u in photo_urls):
            errors["photo_urls"] = "must be a list of URLs"

        description = payload.get("description")
        if description is not None and not isinstance(description, str):
            errors["description"] = "must be a string"

        if errors:
            raise ValidationError("Invalid incident report", details=errors)

        incident = self._new_incident(
            channel=channel,
            reporter_phone_number=payload.get("phone_number"),
            reporter_anonymous=payload.get("anonymous") is not False,
            reporter_callback_consent=bool(payload.get("callback_consent")),
            incident_type=incident_type,
            severity=severity,
            location_latitude=latitude,
            location_longitude=longitude,
            location_accuracy=accuracy,
            location_cell_tower_id=location.get("cell_tower_id"),
            location_state=location.get("state"),
            location_lga=location.get("lga"),
            location_ward=location.get("ward"),
            location_village=location.get("village"),
            location_manual=location.get("manual"),
            description_text=(description or "").strip() or None,
            description_language=language,
            description_audio_url=payload.get("audio_url"),
            description_photo_urls=list(photo_urls),
            source_ip=source_ip,
            source_user_agent=(user_agent or "")[:255] or None,
        )
        return self._run_pipeline(incident, commit=commit)

    # ── Lifecycle ────────────────────────────────────────────────────────

    def update_status(self, incident_id: str, status: str, *, response: dict | None = None) -> Incident:
        """Move an incident along INCIDENT_TRANSITIONS.

        ``response`` is validated before anything on the incident changes.

        Raises:
            NotFoundError, ValidationError (unknown status or bad response),
            BusinessRuleViolation (transition not allowed).
        """
        if status not in INCIDENT_STATUSES:
            raise ValidationError(f"Unknown status {status!r}", details={"status": "invalid"})
        response_values = self._parse_response(response)
        incident = self.store.require_incident(incident_id)
        if not validate_incident_transition(incident.status, status):
            raise BusinessRuleViolation(
                f"Cannot move {incident_id} from {incident.status} to {status}",
                details={"current": incident.status, "target": status},
            )

        now = self.clock()
        notifications = []
        if status == "escalated":
            outcome = self.escalation.process_incident(incident, commit=False)
            notifications = outcome.notifications
            if not outcome.escalated:
                incident.status = "escalated"
        else:
            incident.status = status

        for column, value in response_values.items():
            setattr(incident, column, value)
        if status == "resolved":
            incident.response_resolved_at = now
        incident.updated_at = now

        self.store.commit()
        self.dispatcher.deliver_within_budget(notifications)
        logger.info("Incident %s -> %s", incident_id, incident.status,
                    extra={"incident_id": incident_id, "event_type": "status_change"})
        return incident

    @staticmethod
    def _parse_response(response) -> dict:
        """Map a response payload to incident columns, or raise ValidationError."""
        if not response:
            return {}
        if not isinstance(response, dict):
            raise ValidationError("response must be an object", details={"response": "must be an object"})

        errors = {}
        values = {}
        for key, column in RESPONSE_FIELDS.items():
            if response.get(key) is not None:
                values[column] = response[key]
        minutes = response.get("response_time_minutes")
        if minutes is not None and (isinstance(minutes, bool) or not isinstance(minutes, int) or minutes < 0):
            errors["response_time_minutes"] = "must be a non-negative integer"
        if response.get("arrival_time"):
            arrival = parse_datetime(response["arrival_time"])
            if arrival is None:
                errors["arrival_time"] = "invalid datetime"
            values["response_arrival_time"] = arrival
        if errors:
            raise ValidationError("Invalid response details", details=errors)
        return values

    def assign_incident(self, incident_id: str, assignee: dict) -> Incident:
        if not isinstance(assignee, dict) or not assignee.get("name"):
            raise ValidationError("assignee name is required", details={"name": "required"})
        incident = self.store.require_incident(incident_id)
        if not validate_incident_transition(incident.status, "assigned"):
            raise BusinessRuleViolation(f"Cannot assign {incident_id} while {incident.status}")

        incident.status = "assigned"
        incident.escalation_assigned_to_type = assignee.get("type") or incident.escalation_assigned_to_type
        incident.escalation_assigned_to_name = assignee["name"]
        incident.escalation_assigned_to_phone = assignee.get("phone")
        incident.escalation_assigned_to_organization = assignee.get("organization")
        incident.updated_at = self.clock()
        self.store.commit()
        return incident

    # ── Queries ──────────────────────────────────────────────────────────

    def get_by_id(self, incident_id: str) -> Incident:
        return self.store.require_incident(incident_id)

    @staticmethod
    def _parse_filters(raw: dict) -> dict:
        filters = {}
        for key in ("incident_type", "severity", "status", "channel", "state", "lga"):
            if raw.get(key):
                filters[key] = raw[key]
        for key in ("date_from", "date_to"):
            if raw.get(key):
                parsed = parse_datetime(raw[key])
                if parsed is None:
                    raise ValidationError(f"Invalid {key}", details={key: "invalid datetime"})
                filters[key] = parsed
        return filters

    def get_incidents(self, filters: dict | None = None, *, page: int = 1, per_page: int = 20) -> dict:
        page = max(1, int(page or 1))
        per_page = max(1, min(int(per_page or 20), MAX_PER_PAGE))
        items, total = self.store.query_incidents(self._parse_filters(filters or {}),
                                                  page=page, per_page=per_page)
        return {
            "items": items,
            "total": total,
            "page": page,
            "per_page": per_page,
            "pages": (total + per_page - 1) // per_page,
        }

    def get_statistics(self, date_from=None, date_to=None) -> dict:
        filters = self._parse_filters({"date_from": date_from, "date_to": date_to})
        by_status = self.store.count_incidents_by("status", filters)
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_type": self.store.count_incidents_by("incident_type", filters),
            "by_severity": self.store.count_incidents_by("severity", filters),
            "by_channel": self.store.count_incidents_by("channel", filters),
        }
