"""
Procurement access-control core.
Approval workflow domain models.

Models:
    - WorkflowDefinition: per document-type approval template
    - ApprovalLevel: one stage of approval inside a definition
    - RoutingRule: condition → extra target levels
    - WorkflowInstance: live approval state for one document
    - ApprovalHistoryEntry: append-only action log of an instance

Lifecycle (WorkflowInstance.status):
    pending → approved | rejected | cancelled     (all three terminal)
"""

from datetime import datetime, timezone

from sqlalchemy.orm import column_property

from procure.core.exceptions import ValidationError, WorkflowStateError
from procure.models import db
from procure.models.soft_delete import SoftDeleteMixin

# ── Constants ────────────────────────────────────────────────────────────────

DOCUMENT_TYPES = ("supplier", "material_quotation", "purchase_order", "pre_payment")
APPROVAL_MODES = ("any", "all")
CONDITION_TYPES = ("amount", "supplier_level", "material_category", "custom")
ON_REJECTION_POLICIES = ("return_to_submitter", "return_to_previous_level")

INSTANCE_STATUSES = ("pending", "approved", "rejected", "cancelled")
TERMINAL_STATUSES = frozenset({"approved", "rejected", "cancelled"})

INSTANCE_TRANSITIONS = {
    "pending": frozenset({"approved", "rejected", "cancelled"}),
    "approved": frozenset(),
    "rejected": frozenset(),
    "cancelled": frozenset(),
}

HISTORY_ACTIONS = ("approve", "reject", "recall", "request_changes")


def _utcnow():
    return datetime.now(timezone.utc)


def _aware(dt):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


level_approver_roles = db.Table(
    "level_approver_roles",
    db.Column("level_id", db.Integer, db.ForeignKey("approval_levels.id", ondelete="CASCADE"), primary_key=True),
    db.Column("role_id", db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)


# ═══════════════════════════════════════════════════════════════
# 1. DEFINITIONS
# ═══════════════════════════════════════════════════════════════
class WorkflowDefinition(SoftDeleteMixin, db.Model):
    __tablename__ = "workflow_definitions"
    __table_args__ = (
        db.Index("ix_workflow_def_doc_type", "document_type", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_name = db.Column(db.String(100), unique=True, nullable=False)
    display_name_zh = db.Column(db.String(200))
    display_name_en = db.Column(db.String(200))
    description = db.Column(db.Text)
    document_type = db.Column(db.String(30), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    allow_recall = db.Column(db.Boolean, nullable=False, default=True)
    on_rejection = db.Column(db.String(30), nullable=False, default="return_to_submitter")
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    levels = db.relationship(
        "ApprovalLevel",
        back_populates="definition",
        cascade="all, delete-orphan",
        order_by="ApprovalLevel.level_number",
        lazy="selectin",
    )
    routing_rules = db.relationship(
        "RoutingRule",
        back_populates="definition",
        cascade="all, delete-orphan",
        order_by="RoutingRule.position",
        lazy="selectin",
    )

    def get_level(self, level_number: int):
        for level in self.levels:
            if level.level_number == level_number:
                return level
        return None

    def mandatory_levels(self) -> list[int]:
        return sorted(l.level_number for l in self.levels if l.is_mandatory)

    def to_dict(self, include_levels=True):
        d = {
            "id": self.id,
            "workflow_name": self.workflow_name,
            "display_name": {"zh": self.display_name_zh, "en": self.display_name_en},
            "description": self.description,
            "document_type": self.document_type,
            "is_active": self.is_active,
            "is_default": self.is_default,
            "allow_recall": self.allow_recall,
            "on_rejection": self.on_rejection,
            "removed": self.removed,
            "created_by_id": self.created_by_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_levels:
            d["levels"] = [l.to_dict() for l in self.levels]
            d["routing_rules"] = [r.to_dict() for r in self.routing_rules]
        return d

    def __repr__(self):
        return f"<WorkflowDefinition {self.id}: {self.workflow_name} ({self.document_type})>"


class ApprovalLevel(db.Model):
    __tablename__ = "approval_levels"
    __table_args__ = (
        db.UniqueConstraint("definition_id", "level_number", name="uq_level_definition_number"),
    )

    id = db.Column(db.Integer, primary_key=True)
    definition_id = db.Column(
        db.Integer, db.ForeignKey("workflow_definitions.id", ondelete="CASCADE"), nullable=False
    )
    level_number = db.Column(db.Integer, nullable=False)
    level_name = db.Column(db.String(100), nullable=False)
    approval_mode = db.Column(db.String(10), nullable=False, default="any")
    is_mandatory = db.Column(db.Boolean, nullable=False, default=True)
    approver_user_ids = db.Column(db.JSON, nullable=False, default=list)   # static approvers
    approver_department = db.Column(db.String(100), nullable=True)        # dynamic approvers

    definition = db.relationship("WorkflowDefinition", back_populates="levels")
    approver_roles = db.relationship(
        "Role", secondary=level_approver_roles, lazy="selectin", order_by="Role.id"
    )

    def to_dict(self):
        return {
            "level_number": self.level_number,
            "level_name": self.level_name,
            "approval_mode": self.approval_mode,
            "is_mandatory": self.is_mandatory,
            "approver_roles": [r.name for r in self.approver_roles],
            "approver_user_ids": list(self.approver_user_ids or []),
            "approver_department": self.approver_department,
        }


class RoutingRule(db.Model):
    __tablename__ = "routing_rules"

    id = db.Column(db.Integer, primary_key=True)
    definition_id = db.Column(
        db.Integer, db.ForeignKey("workflow_definitions.id", ondelete="CASCADE"), nullable=False
    )
    position = db.Column(db.Integer, nullable=False, default=0)
    condition_type = db.Column(db.String(30), nullable=False)
    field = db.Column(db.String(64), nullable=True)   # context key, defaults to condition_type
    operator = db.Column(db.String(10), nullable=False)
    comparison_value = db.Column(db.JSON, nullable=True)
    extra_conditions = db.Column(db.JSON, nullable=True)  # additional clauses, object form
    target_levels = db.Column(db.JSON, nullable=False, default=list)
    description = db.Column(db.String(255))

    definition = db.relationship("WorkflowDefinition", back_populates="routing_rules")

    @property
    def context_key(self) -> str:
        return self.field or self.condition_type

    def to_dict(self):
        return {
            "condition_type": self.condition_type,
            "field": self.context_key,
            "operator": self.operator,
            "comparison_value": self.comparison_value,
            "extra_conditions": self.extra_conditions,
            "target_levels": list(self.target_levels or []),
            "description": self.description,
        }


# ═══════════════════════════════════════════════════════════════
# 2. INSTANCES
# ═══════════════════════════════════════════════════════════════
class WorkflowInstance(db.Model):
    """
    Live approval state for one document.

    ``approval_path`` is the router's output frozen at submission:
    ``[{level, level_name, approval_mode, approvers, min_approvals}, ...]``.
    ``level_approvals`` maps a level number (as string) to the distinct
    principals that approved it so far.  JSON columns are always
    reassigned, never mutated in place, so the ORM sees every change.
    """

    __tablename__ = "workflow_instances"
    __table_args__ = (
        db.UniqueConstraint("document_type", "document_id", name="uq_instance_document"),
        db.Index("ix_instance_status", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    definition_id = db.Column(
        db.Integer, db.ForeignKey("workflow_definitions.id", ondelete="RESTRICT"), nullable=False
    )
    document_type = db.Column(db.String(30), nullable=False)
    document_id = db.Column(db.String(64), nullable=False)
    document_number = db.Column(db.String(64))
    status = column_property(
        db.Column(db.String(20), nullable=False, default="pending"), active_history=True
    )
    current_level = db.Column(db.Integer, nullable=False, default=0)
    required_levels = db.Column(db.JSON, nullable=False, default=list)
    completed_levels = db.Column(db.JSON, nullable=False, default=list)
    level_approvals = db.Column(db.JSON, nullable=False, default=dict)
    approval_path = db.Column(db.JSON, nullable=False, default=list)
    context = db.Column(db.JSON, nullable=True)
    submitted_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitted_at = db.Column(db.DateTime, default=_utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)
    version = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    definition = db.relationship("WorkflowDefinition", lazy="joined")
    history = db.relationship(
        "ApprovalHistoryEntry",
        back_populates="instance",
        order_by="ApprovalHistoryEntry.id",
        cascade="save-update, merge",
        lazy="selectin",
    )

    # ── Derived values ──────────────────────────────────────────────────

    @property
    def is_complete(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def next_level(self) -> int | None:
        done = set(self.completed_levels or [])
        remaining = [lvl for lvl in (self.required_levels or []) if lvl not in done]
        return min(remaining) if remaining else None

    @property
    def progress_percentage(self) -> float:
        required = self.required_levels or []
        if not required:
            return 100.0
        return round(100.0 * len(self.completed_levels or []) / len(required), 2)

    @property
    def total_levels(self) -> int:
        return len(self.required_levels or [])

    @property
    def completed_levels_count(self) -> int:
        return len(self.completed_levels or [])

    @property
    def total_approvers(self) -> int:
        return len({h.approver_id for h in self.history if h.action == "approve"})

    @property
    def duration_hours(self) -> float | None:
        if not self.submitted_at:
            return None
        end = _aware(self.completed_at) or _utcnow()
        return round((end - _aware(self.submitted_at)).total_seconds() / 3600, 2)

    # ── Path snapshot helpers ───────────────────────────────────────────

    def path_entry(self, level: int) -> dict | None:
        for entry in self.approval_path or []:
            if entry.get("level") == level:
                return entry
        return None

    def approvers_for(self, level: int) -> list[int]:
        entry = self.path_entry(level)
        return list(entry.get("approvers", [])) if entry else []

    def min_approvals_for(self, level: int) -> int:
        entry = self.path_entry(level)
        if not entry:
            return 1
        return max(int(entry.get("min_approvals", 1)), 1)

    def approved_by(self, level: int) -> list[int]:
        return list((self.level_approvals or {}).get(str(level), []))

    # ── State machine ───────────────────────────────────────────────────

    def _transition(self, new_status: str, action: str) -> None:
        if new_status not in INSTANCE_TRANSITIONS.get(self.status, frozenset()):
            raise WorkflowStateError(self.id, self.status, action)
        self.status = new_status
        if new_status in TERMINAL_STATUSES:
            self.completed_at = _utcnow()

    def record_approval(self, level: int, approver_id: int, action: str,
                        comments: str | None = None, metadata: dict | None = None):
        """Apply one approver action and return the appended history entry.

        ``approve`` counts distinct approvers per level and completes the
        level once the level's minimum is reached.  ``reject`` terminates
        the instance.  ``recall`` and ``request_changes`` only log, but still
        touch ``updated_at`` so the row is rewritten under its version.
        """
        if self.is_complete:
            raise WorkflowStateError(self.id, self.status, action, "instance is closed")
        if action not in HISTORY_ACTIONS:
            raise ValidationError(f"Unknown approval action: {action}",
                                  details={"action": f"must be one of {', '.join(HISTORY_ACTIONS)}"})
        if level not in (self.required_levels or []):
            raise ValidationError(f"Level {level} is not required for this document",
                                  details={"level": level, "required_levels": self.required_levels})

        entry_meta = self.path_entry(level) or {}
        entry = ApprovalHistoryEntry(
            level=level,
            level_name=entry_meta.get("level_name"),
            approver_id=approver_id,
            action=action,
            comments=comments or "",
            details=metadata or {},
            created_at=_utcnow(),
        )
        self.history.append(entry)
        # every action writes the instance row so the version check runs
        self.updated_at = _utcnow()

        if action == "approve":
            approvers = self.approved_by(level)
            if approver_id not in approvers:
                approvers.append(approver_id)
            self.level_approvals = {**(self.level_approvals or {}), str(level): approvers}

            completed = list(self.completed_levels or [])
            if level not in completed and len(approvers) >= self.min_approvals_for(level):
                completed.append(level)
                self.completed_levels = sorted(completed)

            if set(self.completed_levels or []) >= set(self.required_levels or []):
                self._transition("approved", action)
            else:
                self.current_level = self.next_level
        elif action == "reject":
            self._transition("rejected", action)

        return entry

    def cancel(self) -> None:
        """Move to ``cancelled`` regardless of the current level."""
        if self.is_complete:
            raise WorkflowStateError(self.id, self.status, "cancel", "instance is closed")
        self._transition("cancelled", "cancel")

    # ── Serialisation ───────────────────────────────────────────────────

    def stats(self) -> dict:
        return {
            "total_levels": self.total_levels,
            "completed_levels_count": self.completed_levels_count,
            "total_approvers": self.total_approvers,
            "duration_hours": self.duration_hours,
        }

    def to_dict(self, include_history=True):
        d = {
            "id": self.id,
            "definition_id": self.definition_id,
            "document_type": self.document_type,
            "document_id": self.document_id,
            "document_number": self.document_number,
            "status": self.status,
            "current_level": self.current_level,
            "required_levels": list(self.required_levels or []),
            "completed_levels": list(self.completed_levels or []),
            "level_approvals": dict(self.level_approvals or {}),
            "approval_path": list(self.approval_path or []),
            "progress_percentage": self.progress_percentage,
            "next_level": self.next_level,
            "is_complete": self.is_complete,
            "submitted_by_id": self.submitted_by_id,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "version": self.version,
            "stats": self.stats(),
        }
        if include_history:
            d["history"] = [h.to_dict() for h in self.history]
        return d

    def __repr__(self):
        return f"<WorkflowInstance {self.id}: {self.document_type}/{self.document_id} {self.status}>"


class ApprovalHistoryEntry(db.Model):
    """Append-only.  Rows are never updated or deleted once flushed."""

    __tablename__ = "approval_history"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("workflow_instances.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    level = db.Column(db.Integer, nullable=False)
    level_name = db.Column(db.String(100))
    approver_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    action = db.Column(db.String(20), nullable=False)
    comments = db.Column(db.Text, default="")
    details = db.Column("metadata", db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=_utcnow)

    instance = db.relationship("WorkflowInstance", back_populates="history")

    def to_dict(self):
        return {
            "id": self.id,
            "level": self.level,
            "level_name": self.level_name,
            "approver_id": self.approver_id,
            "action": self.action,
            "comments": self.comments,
            "metadata": self.details or {},
            "timestamp": self.created_at.isoformat() if self.created_at else None,
        }
