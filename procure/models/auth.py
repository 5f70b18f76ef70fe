"""
Procurement access-control core.
Auth domain models: permission registry, role graph, principal directory.

Models:
    - Permission: (resource, action, scope[, conditions]) capability grant
    - Role: named, inheritable bundle of permissions
    - User: principal directory entry (read-only to the decision functions)

Association tables:
    - role_permissions:  Role ↔ Permission
    - role_inheritance:  Role → parent Role (inheritsFrom edges)
    - user_roles:        User ↔ Role
"""

import re
from datetime import datetime, timezone

from procure.models import db
from procure.models.soft_delete import SoftDeleteMixin

# ── Constants ────────────────────────────────────────────────────────────────

PERMISSION_ACTIONS = (
    "create", "read", "update", "delete",
    "approve", "reject", "export", "import",
    "submit", "recall", "close", "cancel",
)

# Ordered narrowest → broadest
PERMISSION_SCOPES = ("own", "team", "all")
SCOPE_RANK = {scope: rank for rank, scope in enumerate(PERMISSION_SCOPES)}

ROLE_NAME_PATTERN = re.compile(r"^[a-z0-9_]+$")


def _utcnow():
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════
# 1. ASSOCIATION TABLES
# ═══════════════════════════════════════════════════════════════
role_permissions = db.Table(
    "role_permissions",
    db.Column("role_id", db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    db.Column("permission_id", db.Integer, db.ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)

role_inheritance = db.Table(
    "role_inheritance",
    db.Column("role_id", db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    db.Column("parent_id", db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)

user_roles = db.Table(
    "user_roles",
    db.Column("user_id", db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    db.Column("role_id", db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)


# ═══════════════════════════════════════════════════════════════
# 2. PERMISSIONS
# ═══════════════════════════════════════════════════════════════
class Permission(SoftDeleteMixin, db.Model):
    __tablename__ = "permissions"
    __table_args__ = (
        db.Index("ix_permission_tuple", "resource", "action", "scope"),
    )

    id = db.Column(db.Integer, primary_key=True)
    resource = db.Column(db.String(64), nullable=False)   # e.g. "supplier"
    action = db.Column(db.String(20), nullable=False)     # one of PERMISSION_ACTIONS
    scope = db.Column(db.String(10), nullable=False, default="own")
    conditions = db.Column(db.JSON, nullable=True)        # legacy object form, see services.conditions
    description = db.Column(db.Text)
    is_system_permission = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    @property
    def permission_key(self) -> str:
        return f"{self.resource}:{self.action}:{self.scope}"

    def satisfies_scope(self, required_scope: str) -> bool:
        """True when this permission's scope is at least as broad as *required_scope*."""
        if required_scope not in SCOPE_RANK or self.scope not in SCOPE_RANK:
            return False
        return SCOPE_RANK[self.scope] >= SCOPE_RANK[required_scope]

    def to_dict(self):
        return {
            "id": self.id,
            "key": self.permission_key,
            "resource": self.resource,
            "action": self.action,
            "scope": self.scope,
            "conditions": self.conditions,
            "description": self.description,
            "is_system_permission": self.is_system_permission,
            "removed": self.removed,
        }

    def __repr__(self):
        return f"<Permission {self.id}: {self.permission_key}>"


# ═══════════════════════════════════════════════════════════════
# 3. ROLES
# ═══════════════════════════════════════════════════════════════
class Role(SoftDeleteMixin, db.Model):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), unique=True, nullable=False)
    display_name_zh = db.Column(db.String(200))
    display_name_en = db.Column(db.String(200))
    description = db.Column(db.Text)
    is_system_role = db.Column(db.Boolean, nullable=False, default=False)
    # Explicit bypass claim: holders are allowed every (resource, action, scope)
    grants_full_access = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    permissions = db.relationship(
        "Permission", secondary=role_permissions, lazy="selectin", order_by="Permission.id",
    )
    inherits_from = db.relationship(
        "Role",
        secondary=role_inheritance,
        primaryjoin=id == role_inheritance.c.role_id,
        secondaryjoin=id == role_inheritance.c.parent_id,
        lazy="selectin",
        order_by="Role.id",
    )

    @property
    def display_name(self) -> dict:
        return {"zh": self.display_name_zh, "en": self.display_name_en}

    def to_dict(self, include_permissions=False):
        d = {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "is_system_role": self.is_system_role,
            "grants_full_access": self.grants_full_access,
            "inherits_from": [parent.name for parent in self.inherits_from],
            "removed": self.removed,
        }
        if include_permissions:
            d["permissions"] = [p.permission_key for p in self.permissions if not p.removed]
        return d

    def __repr__(self):
        return f"<Role {self.id}: {self.name}>"


# ═══════════════════════════════════════════════════════════════
# 4. PRINCIPAL DIRECTORY
# ═══════════════════════════════════════════════════════════════
class User(SoftDeleteMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), unique=True, nullable=False)
    name = db.Column(db.String(200))
    department = db.Column(db.String(100), index=True)
    enabled = db.Column(db.Boolean, nullable=False, default=True)
    reports_to_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    # Bare role names carried over from the single-role account model
    legacy_role_names = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime, default=_utcnow)

    # Relationships
    roles = db.relationship("Role", secondary=user_roles, lazy="selectin", order_by="Role.id")
    reports_to = db.relationship("User", remote_side=[id], backref="direct_reports")

    @property
    def is_active(self) -> bool:
        return bool(self.enabled) and not self.removed

    def to_dict(self, include_roles=True):
        d = {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "department": self.department,
            "enabled": self.enabled,
            "removed": self.removed,
            "reports_to_id": self.reports_to_id,
        }
        if include_roles:
            d["roles"] = [r.name for r in self.roles]
            d["legacy_role_names"] = list(self.legacy_role_names or [])
        return d

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"
