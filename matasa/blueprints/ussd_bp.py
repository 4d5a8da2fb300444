"""
USSD blueprint.

Endpoints:
    POST /api/v1/ussd                  : telco/aggregator webhook (CON/END text)
    POST /api/v1/ussd/simulate         : JSON turn for testing (non-production)
    GET  /api/v1/ussd/session/<id>     : session snapshot

Africa's Talking posts the cumulative dialogue in ``text`` joined by ``*``;
only the last segment is this turn's input. The webhook always answers 200:
an unexpected failure ends the dialogue with the localized error message.
"""

import logging

from flask import Blueprint, current_app, jsonify, make_response, request

from matasa.blueprints import json_body, register_error_handlers
from matasa.core.exceptions import ValidationError
from matasa.models import db
from matasa.services import get_services, ussd_menus as menus

logger = logging.getLogger(__name__)

ussd_bp = Blueprint("ussd", __name__, url_prefix="/api/v1/ussd")
register_error_handlers(ussd_bp)


def _current_input(text: str | None) -> str:
    if not text:
        return ""
    return text.split("*")[-1]


def _webhook_fields() -> dict:
    if request.is_json:
        data = request.get_json(silent=True) or {}
    else:
        data = request.form
    return {
        "session_id": data.get("sessionId") or data.get("session_id"),
        "phone_number": data.get("phoneNumber") or data.get("phone_number"),
        "text": data.get("text") or "",
        "service_code": data.get("serviceCode") or data.get("service_code"),
        "network_code": data.get("networkCode") or data.get("network_code"),
        "cell_tower_id": data.get("cellTowerId") or data.get("cell_tower_id"),
        "language": data.get("language"),
    }


def _plain(body: str):
    response = make_response(body, 200)
    response.mimetype = "text/plain"
    return response


@ussd_bp.route("", methods=["POST"])
def ussd_webhook():
    fields = _webhook_fields()
    language = fields["language"] or current_app.config.get("USSD_DEFAULT_LANGUAGE", "hausa")
    if not fields["session_id"] or not fields["phone_number"]:
        return _plain("END " + menus.get_prompt("error", language))

    services = get_services()
    limit = services.rate_limiter.check_ussd(fields["phone_number"])
    if limit.limited:
        logger.warning("USSD rate limit hit for session %s", fields["session_id"],
                       extra={"session_id": fields["session_id"], "event_type": "ussd_rate_limited"})
        return _plain("END " + menus.get_prompt("rate_limited", language))

    try:
        result = services.ussd.handle_turn(
            fields["session_id"],
            fields["phone_number"],
            _current_input(fields["text"]),
            provider="africastalking",
            language=fields["language"],
            cell_tower_id=fields["cell_tower_id"],
        )
    except Exception:
        db.session.rollback()
        logger.exception("USSD turn failed for session %s", fields["session_id"],
                         extra={"session_id": fields["session_id"], "event_type": "ussd_error"})
        return _plain("END " + menus.get_prompt("error", language))
    return _plain(result.to_text())


@ussd_bp.route("/simulate", methods=["POST"])
def simulate_turn():
    """Run one turn with the raw input of that turn (no cumulative text)."""
    if current_app.config.get("ENV_NAME") == "production":
        return jsonify({"error": "Not available in production"}), 404

    data = json_body()
    errors = {key: "required" for key in ("session_id", "phone_number") if not data.get(key)}
    if errors:
        raise ValidationError("session_id and phone_number are required", details=errors)

    result = get_services().ussd.handle_turn(
        str(data["session_id"]),
        str(data["phone_number"]),
        str(data.get("input") or ""),
        provider="simulator",
        language=data.get("language"),
        cell_tower_id=data.get("cell_tower_id"),
    )
    return jsonify(result.to_dict()), 200


@ussd_bp.route("/session/<session_id>", methods=["GET"])
def get_session(session_id):
    session = get_services().ussd.get_session(session_id)
    return jsonify(session.to_dict()), 200
