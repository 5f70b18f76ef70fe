"""
Procurement access-control core.
Audit domain model.

Models:
    - AuditLog: immutable, append-only trail for role/permission/workflow
      mutations and every approval action.
"""

import json
from datetime import UTC, datetime

from procure.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "role", "permission", "workflow_definition", "workflow_instance",
}

AUDIT_ACTIONS = {
    # Role graph
    "role.create",
    "role.update",
    "role.delete",
    "role.permission_change",
    # Permission registry
    "permission.create",
    "permission.update",
    "permission.delete",
    # Workflow definitions
    "workflow.create",
    "workflow.update",
    "workflow.delete",
    # Workflow instances
    "workflow.initiated",
    "workflow.approve",
    "workflow.reject",
    "workflow.recall",
    "workflow.request_changes",
    "workflow.cancelled",
}


class AuditLog(db.Model):
    """
    One row per action.  ``diff_json`` carries either a field-level
    ``{field: {old, new}}`` change set or free-form action metadata.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="role | permission | workflow_definition | workflow_instance",
    )
    entity_id = db.Column(
        db.String(64), nullable=False,
        comment="PK of the referenced entity (int-as-string)",
    )

    # What happened
    action = db.Column(db.String(60), nullable=False)
    actor = db.Column(db.String(150), nullable=False, default="system")
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Change payload
    diff_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor: str = "system",
    actor_user_id: int | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    if actor_user_id is None:
        from flask import g, has_request_context
        if has_request_context():
            actor_user_id = getattr(g, "jwt_user_id", None)

    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor,
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
