"""
Admin blueprint: escalation configuration, incident curation, alerts,
notification backlog, the operations dashboard and on-demand jobs.

Endpoints:
    GET/POST /api/v1/admin/escalation-rules
    PUT      /api/v1/admin/escalation-rules/<rule_id>
    GET/POST /api/v1/admin/responders
    POST     /api/v1/admin/incidents/merge          : {primary_id, secondary_ids}
    GET      /api/v1/admin/incidents/clusters       : ?window_minutes=
    GET      /api/v1/admin/confidence/stats         : ?date_from=&date_to=
    GET      /api/v1/admin/stats/dashboard          : ?period=1h|24h|7d|30d
    GET      /api/v1/admin/incidents/live           : ?limit=&status=
    GET      /api/v1/admin/response/status          : ?period=
    GET/POST /api/v1/admin/alerts
    POST     /api/v1/admin/alerts/<alert_id>/cancel
    POST     /api/v1/admin/alerts/<alert_id>/broadcast
    GET      /api/v1/admin/notifications/metrics
    GET      /api/v1/admin/jobs
    POST     /api/v1/admin/jobs/<job_name>/run

Authentication is expected in front of this blueprint (reverse proxy).
"""

import logging

from flask import Blueprint, jsonify, request

from matasa.blueprints import int_arg, json_body, register_error_handlers
from matasa.core.exceptions import ValidationError
from matasa.models.notification import MESSAGE_STATUSES
from matasa.services import get_services
from matasa.services.scheduler_service import SchedulerService, get_registered_jobs
from matasa.utils.errors import E, api_error
from matasa.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/api/v1/admin")
register_error_handlers(admin_bp)


def _date_arg(name: str):
    raw = request.args.get(name)
    if not raw:
        return None
    parsed = parse_datetime(raw)
    if parsed is None:
        raise ValidationError(f"Invalid {name}", details={name: "invalid datetime"})
    return parsed


# ═════════════════════════════════════════════════════════════════════════
# Escalation rules & responders
# ═════════════════════════════════════════════════════════════════════════


@admin_bp.route("/escalation-rules", methods=["GET"])
def list_rules():
    rules = get_services().store.list_rules()
    return jsonify({"items": [r.to_dict() for r in rules], "total": len(rules)}), 200


@admin_bp.route("/escalation-rules", methods=["POST"])
def create_rule():
    rule = get_services().escalation.create_rule(json_body())
    return jsonify(rule.to_dict()), 201


@admin_bp.route("/escalation-rules/<rule_id>", methods=["PUT"])
def update_rule(rule_id):
    rule = get_services().escalation.update_rule(rule_id, json_body())
    return jsonify(rule.to_dict()), 200


@admin_bp.route("/responders", methods=["GET"])
def list_responders():
    responders = get_services().store.list_responders()
    return jsonify({"items": [r.to_dict() for r in responders], "total": len(responders)}), 200


@admin_bp.route("/responders", methods=["POST"])
def create_responder():
    responder = get_services().escalation.create_responder(json_body())
    return jsonify(responder.to_dict()), 201


# ═════════════════════════════════════════════════════════════════════════
# Incident curation
# ═════════════════════════════════════════════════════════════════════════


@admin_bp.route("/incidents/merge", methods=["POST"])
def merge_incidents():
    data = json_body()
    primary_id = data.get("primary_id")
    secondary_ids = data.get("secondary_ids")
    if not primary_id or not isinstance(secondary_ids, list) or not secondary_ids:
        raise ValidationError(
            "primary_id and a non-empty secondary_ids list are required",
            details={"primary_id": "required", "secondary_ids": "non-empty list"},
        )
    result = get_services().deduplication.merge_incidents(primary_id, secondary_ids)
    result["primary"] = result["primary"].to_dict()
    return jsonify(result), 200


@admin_bp.route("/incidents/clusters", methods=["GET"])
def incident_clusters():
    window = int_arg("window_minutes", 0)
    clusters = get_services().deduplication.cluster_incidents(window or None)
    return jsonify({"clusters": clusters, "total": len(clusters)}), 200


@admin_bp.route("/confidence/stats", methods=["GET"])
def confidence_stats():
    stats = get_services().confidence.get_confidence_stats(_date_arg("date_from"), _date_arg("date_to"))
    return jsonify(stats), 200


# ═════════════════════════════════════════════════════════════════════════
# Operations dashboard
# ═════════════════════════════════════════════════════════════════════════


@admin_bp.route("/stats/dashboard", methods=["GET"])
def dashboard_stats():
    return jsonify(get_services().dashboard.dashboard(request.args.get("period"))), 200


@admin_bp.route("/incidents/live", methods=["GET"])
def live_incidents():
    items = get_services().dashboard.live_incidents(
        limit=int_arg("limit", 50), status=request.args.get("status") or None,
    )
    return jsonify({"items": items, "total": len(items)}), 200


@admin_bp.route("/response/status", methods=["GET"])
def response_status():
    return jsonify(get_services().dashboard.response_status(request.args.get("period"))), 200


# ═════════════════════════════════════════════════════════════════════════
# Alerts
# ═════════════════════════════════════════════════════════════════════════


@admin_bp.route("/alerts", methods=["GET"])
def list_alerts():
    alerts = get_services().alerts.get_active_alerts(state=request.args.get("state"))
    return jsonify({"items": [a.to_dict() for a in alerts], "total": len(alerts)}), 200


@admin_bp.route("/alerts", methods=["POST"])
def create_alert():
    data = json_body()
    alert = get_services().alerts.create_alert(data, created_by=data.get("created_by"))
    return jsonify(alert.to_dict()), 201


@admin_bp.route("/alerts/<alert_id>/cancel", methods=["POST"])
def cancel_alert(alert_id):
    alert = get_services().alerts.cancel_alert(alert_id)
    return jsonify(alert.to_dict()), 200


@admin_bp.route("/alerts/<alert_id>/broadcast", methods=["POST"])
def broadcast_alert(alert_id):
    alert = get_services().alerts.broadcast_alert(alert_id)
    return jsonify(alert.to_dict()), 202


# ═════════════════════════════════════════════════════════════════════════
# Notifications & jobs
# ═════════════════════════════════════════════════════════════════════════


@admin_bp.route("/notifications/metrics", methods=["GET"])
def notification_metrics():
    store = get_services().store
    by_status = {status: store.count_messages([status]) for status in MESSAGE_STATUSES}
    return jsonify({
        "by_status": by_status,
        "queued": by_status["queued"] + by_status["pending"],
        "total": sum(by_status.values()),
    }), 200


@admin_bp.route("/jobs", methods=["GET"])
def list_jobs():
    return jsonify({"items": SchedulerService.list_jobs()}), 200


@admin_bp.route("/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    if job_name not in get_registered_jobs():
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    result = SchedulerService.run_job(job_name)
    status = 200 if result["status"] == "success" else 500
    return jsonify(result), status
