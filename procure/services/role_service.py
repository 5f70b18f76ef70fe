"""
Role & Permission Service — administration of the permission registry
and the role graph.

Features:
  - Role CRUD with strict name format (``^[a-z0-9_]+$``, never coerced)
  - System role protection (no rename, no delete)
  - Inheritance edges validated against cycles before they are written
  - Permission CRUD with enum validation and condition parsing
  - System permission protection (no delete)
  - Soft delete for both (``removed`` flag)
  - Every mutation: audit row + closure cache invalidation

Permission references in payloads may be ids or ``resource:action:scope``
keys; role references may be ids or names.
"""

import logging

from procure.core.exceptions import ConflictError, NotFoundError, ValidationError
from procure.models import db
from procure.models.audit import write_audit
from procure.models.auth import (
    PERMISSION_ACTIONS,
    PERMISSION_SCOPES,
    ROLE_NAME_PATTERN,
    Permission,
    Role,
    User,
    user_roles,
)
from procure.services.conditions import ConditionError, parse_conditions
from procure.services.permission_service import invalidate_all_cache
from procure.services.role_graph import find_cycle

logger = logging.getLogger(__name__)

ROLE_FIELDS = ("display_name_zh", "display_name_en", "description", "grants_full_access")


# ═══════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════
def _validate_role_name(name) -> str:
    if not isinstance(name, str) or not name:
        raise ValidationError("Role name is required", details={"name": "required"})
    if not ROLE_NAME_PATTERN.match(name):
        raise ValidationError(
            f"Invalid role name '{name}'",
            details={"name": "lowercase letters, digits and underscores only"},
        )
    return name


def _lookup_permission(ref) -> Permission | None:
    if isinstance(ref, int) and not isinstance(ref, bool):
        return db.session.get(Permission, ref)
    if isinstance(ref, str):
        parts = ref.split(":")
        if len(parts) == 3:
            resource, action, scope = parts
            return (
                Permission.query_active()
                .filter_by(resource=resource, action=action, scope=scope)
                .order_by(Permission.id)
                .first()
            )
    return None


def resolve_permissions(refs) -> list[Permission]:
    """Load permissions for ids / keys; unknown or removed references fail."""
    found: list[Permission] = []
    missing = []
    for ref in refs or []:
        perm = _lookup_permission(ref)
        if perm is None or perm.removed:
            missing.append(ref)
        elif perm not in found:
            found.append(perm)
    if missing:
        raise ValidationError("Unknown permission reference(s)", details={"permissions": missing})
    return found


def _lookup_role(ref) -> Role | None:
    if isinstance(ref, int) and not isinstance(ref, bool):
        return db.session.get(Role, ref)
    if isinstance(ref, str):
        return Role.query.filter_by(name=ref).first()
    return None


def resolve_parent_roles(refs) -> list[Role]:
    found: list[Role] = []
    missing = []
    for ref in refs or []:
        role = _lookup_role(ref)
        if role is None or role.removed:
            missing.append(ref)
        elif role not in found:
            found.append(role)
    if missing:
        raise ValidationError("Unknown role reference(s)", details={"inherits_from": missing})
    return found


def _set_parents(role: Role, parents: list[Role]) -> None:
    cycle = find_cycle(role, parents)
    if cycle:
        raise ValidationError(
            "Role inheritance would create a cycle",
            details={"cycle": " -> ".join(cycle)},
        )
    role.inherits_from = parents


def _commit_role_change(role: Role, action: str, diff: dict, actor_user_id=None) -> Role:
    write_audit(
        entity_type="role",
        entity_id=role.id,
        action=action,
        actor_user_id=actor_user_id,
        diff=diff,
    )
    db.session.commit()
    invalidate_all_cache()
    logger.info("Role %s: %s", action, role.name, extra={"role_id": role.id})
    return role


# ═══════════════════════════════════════════════════════════════
# Role CRUD
# ═══════════════════════════════════════════════════════════════
def list_roles(include_system: bool = True, include_removed: bool = False) -> list[Role]:
    query = Role.query if include_removed else Role.query_active()
    if not include_system:
        query = query.filter(Role.is_system_role.is_(False))
    return query.order_by(Role.name).all()


def get_role(role_id: int) -> Role:
    role = db.session.get(Role, role_id)
    if role is None or role.removed:
        raise NotFoundError(resource="Role", resource_id=role_id)
    return role


def create_role(
    name: str,
    display_name_zh: str | None = None,
    display_name_en: str | None = None,
    description: str | None = None,
    permissions: list | None = None,
    inherits_from: list | None = None,
    grants_full_access: bool = False,
    is_system_role: bool = False,
    actor_user_id: int | None = None,
) -> Role:
    """Create a role; permissions and parents are validated before the insert."""
    name = _validate_role_name(name)
    if Role.query.filter_by(name=name).first() is not None:
        raise ConflictError(resource="Role", field="name", value=name)

    perms = resolve_permissions(permissions)
    parents = resolve_parent_roles(inherits_from)

    role = Role(
        name=name,
        display_name_zh=display_name_zh,
        display_name_en=display_name_en or name.replace("_", " ").title(),
        description=description,
        grants_full_access=bool(grants_full_access),
        is_system_role=bool(is_system_role),
        permissions=perms,
    )
    _set_parents(role, parents)
    db.session.add(role)
    db.session.flush()
    return _commit_role_change(role, "role.create", {
        "name": name,
        "permissions": [p.permission_key for p in perms],
        "inherits_from": [p.name for p in parents],
        "grants_full_access": role.grants_full_access,
    }, actor_user_id)


def update_role(role_id: int, data: dict, actor_user_id: int | None = None) -> Role:
    """Update role attributes; ``permissions`` / ``inherits_from`` replace wholesale."""
    role = get_role(role_id)
    diff: dict = {}

    if "name" in data and data["name"] != role.name:
        if role.is_system_role:
            raise ValidationError("System roles cannot be renamed", details={"name": role.name})
        new_name = _validate_role_name(data["name"])
        if Role.query.filter(Role.name == new_name, Role.id != role.id).first() is not None:
            raise ConflictError(resource="Role", field="name", value=new_name)
        diff["name"] = {"old": role.name, "new": new_name}
        role.name = new_name

    for key in ROLE_FIELDS:
        if key in data and data[key] != getattr(role, key):
            value = bool(data[key]) if key == "grants_full_access" else data[key]
            diff[key] = {"old": getattr(role, key), "new": value}
            setattr(role, key, value)

    if "permissions" in data and data["permissions"] is not None:
        perms = resolve_permissions(data["permissions"])
        diff["permissions"] = {
            "old": [p.permission_key for p in role.permissions],
            "new": [p.permission_key for p in perms],
        }
        role.permissions = perms

    if "inherits_from" in data and data["inherits_from"] is not None:
        parents = resolve_parent_roles(data["inherits_from"])
        diff["inherits_from"] = {
            "old": [p.name for p in role.inherits_from],
            "new": [p.name for p in parents],
        }
        _set_parents(role, parents)

    return _commit_role_change(role, "role.update", diff, actor_user_id)


def delete_role(role_id: int, actor_user_id: int | None = None) -> Role:
    """Soft-delete a role.  System roles and roles still held by active users are kept."""
    role = get_role(role_id)
    if role.is_system_role:
        raise ValidationError("System roles cannot be deleted", details={"name": role.name})
    holders = (
        User.query
        .join(user_roles, user_roles.c.user_id == User.id)
        .filter(user_roles.c.role_id == role.id, User.removed.is_(False))
        .count()
    )
    if holders:
        raise ValidationError(
            f"Role '{role.name}' is assigned to {holders} user(s)",
            details={"assigned_users": holders},
        )
    role.soft_delete()
    return _commit_role_change(role, "role.delete", {"name": role.name}, actor_user_id)


def add_role_permissions(role_id: int, refs: list, actor_user_id: int | None = None) -> Role:
    role = get_role(role_id)
    added = [p for p in resolve_permissions(refs) if p not in role.permissions]
    role.permissions = list(role.permissions) + added
    return _commit_role_change(role, "role.permission_change", {
        "added": [p.permission_key for p in added],
    }, actor_user_id)


def remove_role_permissions(role_id: int, refs: list, actor_user_id: int | None = None) -> Role:
    role = get_role(role_id)
    to_remove = resolve_permissions(refs)
    role.permissions = [p for p in role.permissions if p not in to_remove]
    return _commit_role_change(role, "role.permission_change", {
        "removed": [p.permission_key for p in to_remove],
    }, actor_user_id)


# ═══════════════════════════════════════════════════════════════
# Permission CRUD
# ═══════════════════════════════════════════════════════════════
def _validate_conditions(conditions):
    if conditions is None:
        return None
    try:
        parse_conditions(conditions)
    except ConditionError as exc:
        raise ValidationError(f"Invalid permission conditions: {exc}",
                              details={"conditions": str(exc)}) from exc
    return conditions


def list_permissions(resource: str | None = None, include_removed: bool = False) -> list[Permission]:
    query = Permission.query if include_removed else Permission.query_active()
    if resource:
        query = query.filter(Permission.resource == resource.lower())
    return query.order_by(Permission.resource, Permission.action, Permission.scope).all()


def get_permission(permission_id: int) -> Permission:
    perm = db.session.get(Permission, permission_id)
    if perm is None or perm.removed:
        raise NotFoundError(resource="Permission", resource_id=permission_id)
    return perm


def create_permission(
    resource: str,
    action: str,
    scope: str = "own",
    conditions: dict | None = None,
    description: str | None = None,
    is_system_permission: bool = False,
    actor_user_id: int | None = None,
) -> Permission:
    errors = {}
    if not resource or not isinstance(resource, str):
        errors["resource"] = "required"
    elif resource != resource.lower():
        errors["resource"] = "must be lowercase"
    if action not in PERMISSION_ACTIONS:
        errors["action"] = f"must be one of {', '.join(PERMISSION_ACTIONS)}"
    if scope not in PERMISSION_SCOPES:
        errors["scope"] = f"must be one of {', '.join(PERMISSION_SCOPES)}"
    if errors:
        raise ValidationError("Invalid permission", details=errors)
    _validate_conditions(conditions)

    if Permission.query_active().filter_by(resource=resource, action=action, scope=scope).first():
        raise ConflictError(resource="Permission", field="key", value=f"{resource}:{action}:{scope}")

    perm = Permission(
        resource=resource,
        action=action,
        scope=scope,
        conditions=conditions,
        description=description,
        is_system_permission=bool(is_system_permission),
    )
    db.session.add(perm)
    db.session.flush()
    write_audit(
        entity_type="permission",
        entity_id=perm.id,
        action="permission.create",
        actor_user_id=actor_user_id,
        diff={"key": perm.permission_key, "conditions": conditions},
    )
    db.session.commit()
    invalidate_all_cache()
    logger.info("Created permission %s", perm.permission_key, extra={"permission_id": perm.id})
    return perm


def update_permission(permission_id: int, data: dict, actor_user_id: int | None = None) -> Permission:
    """Only ``conditions`` and ``description`` are mutable; the tuple is the identity."""
    perm = get_permission(permission_id)
    diff = {}
    if "conditions" in data:
        _validate_conditions(data["conditions"])
        diff["conditions"] = {"old": perm.conditions, "new": data["conditions"]}
        perm.conditions = data["conditions"]
    if "description" in data:
        diff["description"] = {"old": perm.description, "new": data["description"]}
        perm.description = data["description"]
    write_audit(
        entity_type="permission",
        entity_id=perm.id,
        action="permission.update",
        actor_user_id=actor_user_id,
        diff=diff,
    )
    db.session.commit()
    invalidate_all_cache()
    return perm


def delete_permission(permission_id: int, actor_user_id: int | None = None) -> Permission:
    perm = get_permission(permission_id)
    if perm.is_system_permission:
        raise ValidationError("System permissions cannot be deleted",
                              details={"key": perm.permission_key})
    perm.soft_delete()
    write_audit(
        entity_type="permission",
        entity_id=perm.id,
        action="permission.delete",
        actor_user_id=actor_user_id,
        diff={"key": perm.permission_key},
    )
    db.session.commit()
    invalidate_all_cache()
    logger.info("Removed permission %s", perm.permission_key, extra={"permission_id": perm.id})
    return perm
