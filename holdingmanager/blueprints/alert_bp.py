"""
Alert Blueprint — dashboard notification surface.

Routes:
  GET    /alerts                 – list (unresolved, unread, type, severity, limit, offset)
  GET    /alerts/unread-count    – unread, unresolved count for the header badge
  POST   /alerts/<id>/read       – mark as read
  POST   /alerts/<id>/resolve    – mark as resolved (frees the dedup key)
  POST   /alerts/scan            – run the alert generator now
"""

import logging

from flask import Blueprint, g, jsonify, request

from holdingmanager.blueprints import actor_required, paginate_query
from holdingmanager.models.alert import ALERT_SEVERITIES, ALERT_TYPES
from holdingmanager.services.alert_generator import run_alert_scan
from holdingmanager.services.alert_service import AlertService
from holdingmanager.services.permission import check_permission
from holdingmanager.utils.errors import E, api_error, register_domain_error_handlers

logger = logging.getLogger(__name__)

alert_bp = Blueprint("alerts", __name__, url_prefix="/api/v1")
register_domain_error_handlers(alert_bp)


@alert_bp.route("/alerts", methods=["GET"])
@actor_required
def list_alerts():
    check_permission(g.actor, "alertes", "view")

    alert_type = request.args.get("type")
    if alert_type and alert_type not in ALERT_TYPES:
        return api_error(E.VALIDATION_INVALID, f"type must be one of {sorted(ALERT_TYPES)}")
    severity = request.args.get("severity")
    if severity and severity not in ALERT_SEVERITIES:
        return api_error(E.VALIDATION_INVALID, f"severity must be one of {list(ALERT_SEVERITIES)}")

    q = AlertService.list_alerts(
        unresolved_only=request.args.get("unresolved") == "true",
        unread_only=request.args.get("unread") == "true",
        type=alert_type,
        severity=severity,
    )
    items, total = paginate_query(q)
    return jsonify({"items": [a.to_dict() for a in items], "total": total})


@alert_bp.route("/alerts/unread-count", methods=["GET"])
@actor_required
def unread_count():
    check_permission(g.actor, "alertes", "view")
    return jsonify({"unread_count": AlertService.unread_count()})


@alert_bp.route("/alerts/<int:alert_id>/read", methods=["POST"])
@actor_required
def mark_read(alert_id):
    check_permission(g.actor, "alertes", "view")
    return jsonify(AlertService.mark_read(alert_id).to_dict())


@alert_bp.route("/alerts/<int:alert_id>/resolve", methods=["POST"])
@actor_required
def resolve(alert_id):
    check_permission(g.actor, "alertes", "edit")
    return jsonify(AlertService.resolve(alert_id).to_dict())


@alert_bp.route("/alerts/scan", methods=["POST"])
@actor_required
def scan_alerts():
    """Run every alert rule once; per-rule counts and errors in the body."""
    check_permission(g.actor, "alertes", "edit")
    logger.info("Manual alert scan requested by %s", g.actor.user_id,
                extra={"user_id": g.actor.user_id})
    return jsonify(run_alert_scan())
