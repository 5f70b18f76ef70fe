"""
Role & Permission Blueprint — administration of the role graph and the
permission registry.

Endpoints:
  GET    /api/v1/roles                        — List roles
  POST   /api/v1/roles                        — Create role
  GET    /api/v1/roles/:id                    — Role with permissions and effective closure
  PUT    /api/v1/roles/:id                    — Update role (permissions / inherits_from replace)
  DELETE /api/v1/roles/:id                    — Soft-delete role
  POST   /api/v1/roles/:id/permissions        — Add permissions
  DELETE /api/v1/roles/:id/permissions        — Remove permissions
  GET    /api/v1/permissions                  — List permissions
  POST   /api/v1/permissions                  — Create permission
  PUT    /api/v1/permissions/:id              — Update conditions / description
  DELETE /api/v1/permissions/:id              — Soft-delete permission
"""

import logging

from flask import Blueprint, g, jsonify, request

from procure.blueprints import request_json
from procure.middleware.permission_required import require_permission
from procure.models.auth import Permission
from procure.services import role_service
from procure.services.permission_service import role_closure

logger = logging.getLogger(__name__)

role_bp = Blueprint("roles", __name__, url_prefix="/api/v1")


def _flag(name: str, default: str = "false") -> bool:
    return request.args.get(name, default).lower() == "true"


def _actor():
    return getattr(g, "jwt_user_id", None)


# ═══════════════════════════════════════════════════════════════
# Role CRUD
# ═══════════════════════════════════════════════════════════════

@role_bp.route("/roles", methods=["GET"])
@require_permission("role", "read", scope="all")
def api_list_roles():
    roles = role_service.list_roles(
        include_system=_flag("include_system", "true"),
        include_removed=_flag("include_removed"),
    )
    return jsonify({"roles": [r.to_dict() for r in roles], "total": len(roles)}), 200


@role_bp.route("/roles", methods=["POST"])
@require_permission("role", "create", scope="all")
def api_create_role():
    data = request_json()
    role = role_service.create_role(
        name=data.get("name"),
        display_name_zh=data.get("display_name_zh"),
        display_name_en=data.get("display_name_en"),
        description=data.get("description"),
        permissions=data.get("permissions"),
        inherits_from=data.get("inherits_from"),
        grants_full_access=data.get("grants_full_access", False),
        actor_user_id=_actor(),
    )
    return jsonify(role.to_dict(include_permissions=True)), 201


@role_bp.route("/roles/<int:role_id>", methods=["GET"])
@require_permission("role", "read", scope="all")
def api_get_role(role_id):
    """Role details; ``effective_permissions`` is the inherited closure."""
    role = role_service.get_role(role_id)
    result = role.to_dict(include_permissions=True)
    closure = role_closure(role)
    result["effective_permissions"] = sorted(
        p.permission_key
        for p in Permission.query.filter(Permission.id.in_(closure), Permission.removed.is_(False))
    ) if closure else []
    return jsonify(result), 200


@role_bp.route("/roles/<int:role_id>", methods=["PUT"])
@require_permission("role", "update", scope="all")
def api_update_role(role_id):
    role = role_service.update_role(role_id, request_json(), actor_user_id=_actor())
    return jsonify(role.to_dict(include_permissions=True)), 200


@role_bp.route("/roles/<int:role_id>", methods=["DELETE"])
@require_permission("role", "delete", scope="all")
def api_delete_role(role_id):
    role_service.delete_role(role_id, actor_user_id=_actor())
    return jsonify({"message": "Role deleted"}), 200


@role_bp.route("/roles/<int:role_id>/permissions", methods=["POST"])
@require_permission("role", "update", scope="all")
def api_add_role_permissions(role_id):
    role = role_service.add_role_permissions(
        role_id, request_json().get("permissions") or [], actor_user_id=_actor(),
    )
    return jsonify(role.to_dict(include_permissions=True)), 200


@role_bp.route("/roles/<int:role_id>/permissions", methods=["DELETE"])
@require_permission("role", "update", scope="all")
def api_remove_role_permissions(role_id):
    role = role_service.remove_role_permissions(
        role_id, request_json().get("permissions") or [], actor_user_id=_actor(),
    )
    return jsonify(role.to_dict(include_permissions=True)), 200


# ═══════════════════════════════════════════════════════════════
# Permission registry
# ═══════════════════════════════════════════════════════════════

@role_bp.route("/permissions", methods=["GET"])
@require_permission("permission", "read", scope="all")
def api_list_permissions():
    perms = role_service.list_permissions(
        resource=request.args.get("resource"),
        include_removed=_flag("include_removed"),
    )
    return jsonify({"permissions": [p.to_dict() for p in perms], "total": len(perms)}), 200


@role_bp.route("/permissions", methods=["POST"])
@require_permission("permission", "create", scope="all")
def api_create_permission():
    data = request_json()
    perm = role_service.create_permission(
        resource=data.get("resource"),
        action=data.get("action"),
        scope=data.get("scope", "own"),
        conditions=data.get("conditions"),
        description=data.get("description"),
        actor_user_id=_actor(),
    )
    return jsonify(perm.to_dict()), 201


@role_bp.route("/permissions/<int:permission_id>", methods=["PUT"])
@require_permission("permission", "update", scope="all")
def api_update_permission(permission_id):
    perm = role_service.update_permission(permission_id, request_json(), actor_user_id=_actor())
    return jsonify(perm.to_dict()), 200


@role_bp.route("/permissions/<int:permission_id>", methods=["DELETE"])
@require_permission("permission", "delete", scope="all")
def api_delete_permission(permission_id):
    role_service.delete_permission(permission_id, actor_user_id=_actor())
    return jsonify({"message": "Permission deleted"}), 200
