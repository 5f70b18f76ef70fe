"""
Permission Service — permission resolver and role gate with closure cache.

Scope hierarchy:
  own < team < all      (a broader grant satisfies any narrower request)

Evaluation is deterministic and deny-by-default:
  - a principal must exist, be enabled and carry role references
  - a role with ``grants_full_access`` allows everything
  - otherwise the union of role closures must contain an active permission
    for (resource, action) whose scope covers the request and whose
    conditions hold for the request context
  - lookup failures and condition errors deny

Reason codes (exact, stable for clients and tests):
  Unauthenticated, NoRoles, NoPermissionsAssigned, PermissionNotFound,
  InsufficientScope, ConditionsNotMet, InsufficientRole
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from flask import current_app, has_app_context
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from procure.models.auth import SCOPE_RANK, Permission, Role
from procure.services import role_graph
from procure.services.conditions import matches, parse_conditions
from procure.services.principal import as_principal, resolve_roles, role_names

logger = logging.getLogger(__name__)

CACHE_TTL = 300  # 5 minutes

# Cache key: role_id → (cached_at, permission ids)
_closure_cache: dict[int, tuple[float, frozenset[int]]] = {}
_cache_lock = threading.Lock()


class DenyReason(str, Enum):
    UNAUTHENTICATED = "Unauthenticated"
    NO_ROLES = "NoRoles"
    NO_PERMISSIONS_ASSIGNED = "NoPermissionsAssigned"
    PERMISSION_NOT_FOUND = "PermissionNotFound"
    INSUFFICIENT_SCOPE = "InsufficientScope"
    CONDITIONS_NOT_MET = "ConditionsNotMet"
    INSUFFICIENT_ROLE = "InsufficientRole"


@dataclass(frozen=True)
class Decision:
    """Outcome of a decision call.  Truthy iff allowed."""

    allowed: bool
    matched_scope: str | None = None
    conditions: dict | None = None
    reason_code: DenyReason | None = None
    required_roles: tuple[str, ...] = ()
    actual_roles: tuple[str, ...] = ()
    permission_id: int | None = None
    message: str = ""
    details: dict = field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.allowed

    @classmethod
    def allow(cls, matched_scope=None, conditions=None, permission_id=None, **kw) -> "Decision":
        return cls(True, matched_scope=matched_scope, conditions=conditions,
                   permission_id=permission_id, **kw)

    @classmethod
    def deny(cls, reason: DenyReason, message: str = "", **kw) -> "Decision":
        return cls(False, reason_code=reason, message=message, **kw)

    def to_dict(self) -> dict:
        d = {"allowed": self.allowed}
        if self.allowed:
            d["matched_scope"] = self.matched_scope
            d["conditions"] = self.conditions
        else:
            d["reason_code"] = self.reason_code.value if self.reason_code else None
            d["message"] = self.message
        if self.required_roles or self.actual_roles:
            d["required_roles"] = list(self.required_roles)
            d["actual_roles"] = list(self.actual_roles)
        return d


# ═══════════════════════════════════════════════════════════════
# Closure cache
# ═══════════════════════════════════════════════════════════════
def _cache_ttl() -> int:
    if has_app_context():
        return int(current_app.config.get("PERMISSION_CACHE_TTL", CACHE_TTL))
    return CACHE_TTL


def _get_cached(role_id: int) -> Optional[frozenset[int]]:
    with _cache_lock:
        entry = _closure_cache.get(role_id)
        if entry is None:
            return None
        cached_at, perms = entry
        if time.time() - cached_at > _cache_ttl():
            del _closure_cache[role_id]
            return None
        return perms


def _set_cached(role_id: int, perms: frozenset[int]) -> None:
    with _cache_lock:
        _closure_cache[role_id] = (time.time(), perms)


def invalidate_cache(role_id: int) -> None:
    with _cache_lock:
        _closure_cache.pop(role_id, None)


def invalidate_all_cache() -> None:
    """Drop every cached closure.  Called on any role or permission mutation."""
    with _cache_lock:
        _closure_cache.clear()


def role_closure(role: Role) -> frozenset[int]:
    """Cached ``role_graph.closure``."""
    if role.id is None:
        return role_graph.closure(role)
    cached = _get_cached(role.id)
    if cached is not None:
        return cached
    perms = role_graph.closure(role)
    _set_cached(role.id, perms)
    return perms


def granted_permission_ids(roles: list[Role]) -> frozenset[int]:
    granted: set[int] = set()
    for role in roles:
        granted.update(role_closure(role))
    return frozenset(granted)


# ═══════════════════════════════════════════════════════════════
# Permission resolver
# ═══════════════════════════════════════════════════════════════
def _candidates(permission_ids: frozenset[int], resource: str, action: str) -> list[Permission]:
    rows = (
        Permission.query
        .filter(
            Permission.id.in_(permission_ids),
            Permission.removed.is_(False),
            func.lower(Permission.resource) == resource.lower(),
            func.lower(Permission.action) == action.lower(),
        )
        .all()
    )
    # Broadest scope first, ties by id
    return sorted(rows, key=lambda p: (-SCOPE_RANK.get(p.scope, -1), p.id))


def _deny(reason: DenyReason, message: str, **log_extra) -> Decision:
    logger.info(
        "Permission denied: %s", reason.value,
        extra={"event_type": "permission_denied", "reason_code": reason.value, **log_extra},
    )
    return Decision.deny(reason, message)


def evaluate_permission(
    principal,
    resource: str,
    action: str,
    required_scope: str = "own",
    context: dict | None = None,
) -> Decision:
    """Decide whether *principal* may perform *action* on *resource*.

    Args:
        principal: Principal, User row, or None.
        resource: Resource key, e.g. "purchase_order".
        action: One of the permission actions, e.g. "approve".
        required_scope: "own" (default), "team" or "all".
        context: Flat request context used by permission conditions.

    Returns:
        Decision — ``Allow{matched_scope, conditions}`` or ``Deny{reason_code}``.
    """
    principal = as_principal(principal)
    if principal is None or not principal.enabled or principal.removed:
        return _deny(DenyReason.UNAUTHENTICATED, "Authentication required",
                     resource=resource, action=action)
    if not principal.role_refs:
        return _deny(DenyReason.NO_ROLES, "No roles assigned", user_id=principal.id)

    roles = resolve_roles(principal)

    if any(role.grants_full_access for role in roles):
        return Decision.allow(matched_scope="all", conditions=None)

    try:
        granted = granted_permission_ids(roles)
    except SQLAlchemyError:
        logger.exception("Role closure lookup failed for user %s", principal.id)
        granted = frozenset()
    if not granted:
        return _deny(DenyReason.NO_PERMISSIONS_ASSIGNED, "No permissions assigned",
                     user_id=principal.id)

    try:
        candidates = _candidates(granted, resource, action)
    except SQLAlchemyError:
        logger.exception("Permission lookup failed for %s:%s", resource, action)
        candidates = []
    if not candidates:
        return _deny(DenyReason.PERMISSION_NOT_FOUND,
                     f"Permission {resource}:{action} not granted",
                     user_id=principal.id, resource=resource, action=action)

    if required_scope not in SCOPE_RANK:
        return _deny(DenyReason.INSUFFICIENT_SCOPE, f"Unknown scope '{required_scope}'",
                     user_id=principal.id)
    matched = next((p for p in candidates if p.satisfies_scope(required_scope)), None)
    if matched is None:
        return _deny(DenyReason.INSUFFICIENT_SCOPE,
                     f"Scope '{required_scope}' not covered for {resource}:{action}",
                     user_id=principal.id, resource=resource, action=action)

    if matched.conditions:
        try:
            ok = matches(parse_conditions(matched.conditions), context or {})
        except Exception:
            logger.exception("Condition evaluation failed for permission %s", matched.id)
            ok = False
        if not ok:
            return _deny(DenyReason.CONDITIONS_NOT_MET,
                         f"Conditions of {matched.permission_key} not met",
                         user_id=principal.id, permission_id=matched.id)

    return Decision.allow(
        matched_scope=matched.scope,
        conditions=matched.conditions or None,
        permission_id=matched.id,
    )


def has_permission(principal, resource: str, action: str,
                   required_scope: str = "own", context: dict | None = None) -> bool:
    return evaluate_permission(principal, resource, action, required_scope, context).allowed


def get_user_permissions(principal) -> list[Permission]:
    """Active permissions in the union closure of the principal's roles."""
    principal = as_principal(principal)
    if principal is None:
        return []
    granted = granted_permission_ids(resolve_roles(principal))
    if not granted:
        return []
    return (
        Permission.query
        .filter(Permission.id.in_(granted), Permission.removed.is_(False))
        .order_by(Permission.resource, Permission.action, Permission.scope)
        .all()
    )


# ═══════════════════════════════════════════════════════════════
# Role gate
# ═══════════════════════════════════════════════════════════════
def check_role(principal, required_roles) -> Decision:
    """Allow iff the principal holds at least one of *required_roles* by name."""
    required = tuple(sorted({str(r).lower() for r in required_roles}))
    principal = as_principal(principal)
    if principal is None or not principal.enabled or principal.removed:
        return Decision.deny(DenyReason.UNAUTHENTICATED, "Authentication required",
                             required_roles=required)
    if not principal.role_refs:
        return Decision.deny(DenyReason.NO_ROLES, "No roles assigned", required_roles=required)

    actual = tuple(role_names(principal))
    if set(actual) & set(required):
        return Decision.allow(required_roles=required, actual_roles=actual)

    logger.info(
        "Role gate denied user %s", principal.id,
        extra={"event_type": "role_denied", "reason_code": DenyReason.INSUFFICIENT_ROLE.value},
    )
    return Decision.deny(
        DenyReason.INSUFFICIENT_ROLE,
        f"Requires one of: {', '.join(required)}",
        required_roles=required,
        actual_roles=actual,
    )
