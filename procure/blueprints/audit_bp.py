"""
Audit blueprint.

Endpoints:
    GET  /api/v1/audit               — list / filter audit logs
    GET  /api/v1/audit/<int:log_id>  — single audit entry
"""

from flask import Blueprint, jsonify, request

from procure.blueprints import paginate_query
from procure.core.exceptions import NotFoundError
from procure.middleware.permission_required import require_permission
from procure.models import db
from procure.models.audit import AuditLog

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")


@audit_bp.route("/audit", methods=["GET"])
@require_permission("audit_log", "read", scope="all")
def list_audit_logs():
    """
    Return audit logs, newest first.

    Query params:
        entity_type  — filter by entity type
        entity_id    — filter by entity PK
        action       — filter by action string (prefix match)
        actor_user_id — filter by acting user
        limit / offset
    """
    q = AuditLog.query

    entity_type = request.args.get("entity_type")
    if entity_type:
        q = q.filter(AuditLog.entity_type == entity_type)

    entity_id = request.args.get("entity_id")
    if entity_id:
        q = q.filter(AuditLog.entity_id == entity_id)

    action = request.args.get("action")
    if action:
        q = q.filter(AuditLog.action.startswith(action))

    actor_user_id = request.args.get("actor_user_id", type=int)
    if actor_user_id is not None:
        q = q.filter(AuditLog.actor_user_id == actor_user_id)

    items, total = paginate_query(q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()))
    return jsonify({"audit_logs": [log.to_dict() for log in items], "total": total})


@audit_bp.route("/audit/<int:log_id>", methods=["GET"])
@require_permission("audit_log", "read", scope="all")
def get_audit_log(log_id):
    log = db.session.get(AuditLog, log_id)
    if log is None:
        raise NotFoundError(resource="AuditLog", resource_id=log_id)
    return jsonify(log.to_dict())
