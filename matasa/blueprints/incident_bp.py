"""
Incident API blueprint.

Endpoints:
    POST /api/v1/incidents                          : submit a report (web/mobile/api)
    GET  /api/v1/incidents                          : filtered, paginated list
    GET  /api/v1/incidents/stats                    : counts by status/type/severity/channel
    GET  /api/v1/incidents/<id>                     : one incident
    PUT  /api/v1/incidents/<id>/status              : lifecycle transition
    POST /api/v1/incidents/<id>/assign              : assign a responder
    GET  /api/v1/incidents/<id>/duplicates          : likely duplicates
    GET  /api/v1/incidents/<id>/confidence          : score breakdown
    GET  /api/v1/incidents/<id>/escalation          : escalation path
    POST /api/v1/incidents/<id>/escalate            : manual step up {level, reason}

Service layer owns all business logic and commits.
"""

import logging

from flask import Blueprint, jsonify, request

from matasa.blueprints import int_arg, json_body, register_error_handlers
from matasa.core.exceptions import ValidationError
from matasa.services import get_services

logger = logging.getLogger(__name__)

incident_bp = Blueprint("incidents", __name__, url_prefix="/api/v1/incidents")
register_error_handlers(incident_bp)


@incident_bp.route("", methods=["POST"])
def create_incident():
    """Submit an incident report.

    Body: {
        incident_type, severity?, channel?, description?, description_language?,
        location?: {latitude, longitude, accuracy, state, lga, ward, village, manual},
        photo_urls?, audio_url?, phone_number?, anonymous?, callback_consent?
    }
    Returns: {incident, duplicates, confidence, escalation} (201).
    """
    payload = json_body()
    result = get_services().ingestion.create_from_api(
        payload,
        source_ip=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
    )
    return jsonify(result.to_dict()), 201


@incident_bp.route("", methods=["GET"])
def list_incidents():
    page = get_services().ingestion.get_incidents(
        request.args.to_dict(),
        page=int_arg("page", 1),
        per_page=int_arg("per_page", 20),
    )
    page["items"] = [incident.to_dict() for incident in page["items"]]
    return jsonify(page), 200


@incident_bp.route("/stats", methods=["GET"])
def incident_stats():
    stats = get_services().ingestion.get_statistics(
        request.args.get("date_from"), request.args.get("date_to"),
    )
    return jsonify(stats), 200


@incident_bp.route("/<incident_id>", methods=["GET"])
def get_incident(incident_id):
    incident = get_services().ingestion.get_by_id(incident_id)
    return jsonify(incident.to_dict()), 200


@incident_bp.route("/<incident_id>/status", methods=["PUT"])
def update_status(incident_id):
    """Body: {status, response?: {first_responder, response_time_minutes, arrival_time, resolution}}"""
    data = json_body()
    status = data.get("status")
    if not status:
        raise ValidationError("status is required", details={"status": "required"})
    response = data.get("response")
    if response is not None and not isinstance(response, dict):
        raise ValidationError("response must be an object", details={"response": "invalid"})
    incident = get_services().ingestion.update_status(incident_id, status, response=response)
    return jsonify(incident.to_dict()), 200


@incident_bp.route("/<incident_id>/assign", methods=["POST"])
def assign_incident(incident_id):
    """Body: {name, type?, phone?, organization?}"""
    incident = get_services().ingestion.assign_incident(incident_id, json_body())
    return jsonify(incident.to_dict()), 200


@incident_bp.route("/<incident_id>/duplicates", methods=["GET"])
def incident_duplicates(incident_id):
    services = get_services()
    incident = services.ingestion.get_by_id(incident_id)
    duplicates = services.deduplication.find_duplicates(incident)
    return jsonify({"incident_id": incident_id, "duplicates": duplicates}), 200


@incident_bp.route("/<incident_id>/confidence", methods=["GET"])
def incident_confidence(incident_id):
    services = get_services()
    incident = services.ingestion.get_by_id(incident_id)
    result = services.confidence.calculate_confidence_score(incident)
    result["incident_id"] = incident_id
    result["stored_score"] = incident.confidence_score
    return jsonify(result), 200


@incident_bp.route("/<incident_id>/escalation", methods=["GET"])
def escalation_path(incident_id):
    return jsonify(get_services().escalation.get_escalation_path(incident_id)), 200


@incident_bp.route("/<incident_id>/escalate", methods=["POST"])
def escalate_incident(incident_id):
    """Body: {level, reason?}. Level must be above the current one."""
    data = json_body()
    if data.get("level") is None:
        raise ValidationError("level is required", details={"level": "required"})
    services = get_services()
    outcome = services.escalation.escalate_to_level(incident_id, data["level"], reason=data.get("reason"))
    incident = services.ingestion.get_by_id(incident_id)
    return jsonify({"outcome": outcome.to_dict(), "incident": incident.to_dict()}), 200
