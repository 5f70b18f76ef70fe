"""
Access Blueprint — decision and role-gate calls over HTTP.

Endpoints:
  POST /api/v1/access/check          — evaluate_permission for a principal
  POST /api/v1/access/check-role     — check_role for a principal
  GET  /api/v1/access/me             — current principal with roles and permissions

Both decision endpoints answer 200 with the Decision body, allowed or not.
Asking on behalf of another user (``user_id``) requires ``user:read:all``.
"""

import logging

from flask import Blueprint, jsonify

from procure.blueprints import request_json
from procure.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from procure.middleware.jwt_auth import current_principal, current_user
from procure.models import db
from procure.models.auth import User
from procure.services.permission_service import (
    check_role,
    evaluate_permission,
    get_user_permissions,
    has_permission,
)
from procure.services.principal import principal_from_user, role_names
from procure.utils.errors import E, api_error

logger = logging.getLogger(__name__)

access_bp = Blueprint("access", __name__, url_prefix="/api/v1/access")


def _subject(data: dict):
    """Principal to decide for: the caller, or ``user_id`` if the caller may look it up."""
    caller = current_principal()
    user_id = data.get("user_id")
    if user_id is None or (caller is not None and caller.id == user_id):
        return caller
    if not has_permission(caller, "user", "read", "all"):
        raise AuthorizationError("Checking another user requires user:read:all",
                                 details={"user_id": user_id})
    try:
        user = db.session.get(User, int(user_id))
    except (TypeError, ValueError):
        raise ValidationError("user_id must be an integer", details={"user_id": user_id}) from None
    if user is None:
        raise NotFoundError(resource="User", resource_id=user_id)
    return principal_from_user(user)


# ═══════════════════════════════════════════════════════════════
# Decision calls
# ═══════════════════════════════════════════════════════════════
@access_bp.route("/check", methods=["POST"])
def api_check_permission():
    """Body: {resource, action, scope?, context?, user_id?}"""
    data = request_json()
    resource = data.get("resource")
    action = data.get("action")
    if not resource or not action:
        raise ValidationError("resource and action are required",
                              details={"resource": resource, "action": action})
    context = data.get("context") or {}
    if not isinstance(context, dict):
        raise ValidationError("context must be an object", details={"context": "object required"})

    decision = evaluate_permission(
        _subject(data), resource, action, data.get("scope") or "own", context,
    )
    return jsonify(decision.to_dict()), 200


@access_bp.route("/check-role", methods=["POST"])
def api_check_role():
    """Body: {roles: [...], user_id?}"""
    data = request_json()
    roles = data.get("roles")
    if isinstance(roles, str):
        roles = [roles]
    if not roles or not isinstance(roles, list):
        raise ValidationError("roles must be a non-empty list", details={"roles": "required"})
    decision = check_role(_subject(data), roles)
    return jsonify(decision.to_dict()), 200


@access_bp.route("/me", methods=["GET"])
def api_me():
    user = current_user()
    if user is None:
        return api_error(E.UNAUTHENTICATED, "Authentication required")
    principal = principal_from_user(user)
    return jsonify({
        "user": user.to_dict(),
        "roles": role_names(principal),
        "permissions": [p.to_dict() for p in get_user_permissions(principal)],
    }), 200
