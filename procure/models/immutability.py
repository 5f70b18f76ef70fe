"""
ORM-level immutability enforcement.

Protected entities:

Entity                  | When immutable
------------------------|------------------------------------
WorkflowInstance        | Once status is approved/rejected/cancelled
ApprovalHistoryEntry    | Always (append-only); no inserts once the instance is closed
AuditLog                | Always (append-only)

SQLAlchemy fires ``before_update`` / ``before_delete`` / ``before_insert``
mapper events during ``session.flush()``, before any SQL is sent.  The
listeners below raise ``WorkflowStateError`` (or ``ValidationError`` for
audit rows), which aborts the flush; the caller must roll back.

A terminal transition itself is allowed: the check looks at the
*previous* status via attribute history, so ``pending → rejected`` in the
same flush passes while any later change is blocked.

Usage (called once by the application factory):

    from procure.models.immutability import register_immutability_listeners
    register_immutability_listeners()
"""

import logging

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from procure.core.exceptions import ValidationError, WorkflowStateError
from procure.models.audit import AuditLog
from procure.models.workflow import (
    TERMINAL_STATUSES,
    ApprovalHistoryEntry,
    WorkflowInstance,
)

logger = logging.getLogger(__name__)

_IGNORED_COLUMNS = {"version", "updated_at"}


def _was_terminal(instance) -> bool:
    """True when the status loaded from the database is terminal."""
    history = get_history(instance, "status")
    previous = list(history.deleted) if history.added else list(history.unchanged)
    return any(status in TERMINAL_STATUSES for status in previous)


def _changed_columns(target) -> list[str]:
    changed = []
    for attr in inspect(target).mapper.column_attrs:
        if attr.key in _IGNORED_COLUMNS:
            continue
        if get_history(target, attr.key).has_changes():
            changed.append(attr.key)
    return changed


def _block(entity_type: str, entity_id, operation: str, status: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
        },
    )
    raise WorkflowStateError(entity_id, status, operation, reason)


# ── WorkflowInstance ─────────────────────────────────────────────────────────

def _check_instance_update(mapper, connection, target):
    if not _was_terminal(target):
        return
    changed = _changed_columns(target)
    if not changed:
        return
    _block(
        "WorkflowInstance", target.id, "update", target.status,
        f"closed workflow instances are immutable (attempted change: {', '.join(sorted(changed))})",
    )


def _check_instance_delete(mapper, connection, target):
    if target.status in TERMINAL_STATUSES or _was_terminal(target):
        _block("WorkflowInstance", target.id, "delete", target.status,
               "closed workflow instances cannot be deleted")


# ── ApprovalHistoryEntry ─────────────────────────────────────────────────────

def _check_history_insert(mapper, connection, target):
    instance = target.instance
    if instance is None:
        return
    if instance.id is not None and _was_terminal(instance):
        _block("ApprovalHistoryEntry", instance.id, "insert", instance.status,
               "cannot append history to a closed workflow instance")


def _check_history_update(mapper, connection, target):
    _block("ApprovalHistoryEntry", target.id, "update", "n/a",
           "approval history is append-only")


def _check_history_delete(mapper, connection, target):
    _block("ApprovalHistoryEntry", target.id, "delete", "n/a",
           "approval history is append-only")


# ── AuditLog ─────────────────────────────────────────────────────────────────

def _check_audit_update(mapper, connection, target):
    logger.error(
        "immutability_violation_blocked",
        extra={"entity_type": "AuditLog", "entity_id": str(target.id), "operation": "update"},
    )
    raise ValidationError("Audit log entries are immutable", details={"audit_log_id": target.id})


def _check_audit_delete(mapper, connection, target):
    logger.error(
        "immutability_violation_blocked",
        extra={"entity_type": "AuditLog", "entity_id": str(target.id), "operation": "delete"},
    )
    raise ValidationError("Audit log entries cannot be deleted", details={"audit_log_id": target.id})


# ── Registration ─────────────────────────────────────────────────────────────

_LISTENERS = (
    (WorkflowInstance, "before_update", _check_instance_update),
    (WorkflowInstance, "before_delete", _check_instance_delete),
    (ApprovalHistoryEntry, "before_insert", _check_history_insert),
    (ApprovalHistoryEntry, "before_update", _check_history_update),
    (ApprovalHistoryEntry, "before_delete", _check_history_delete),
    (AuditLog, "before_update", _check_audit_update),
    (AuditLog, "before_delete", _check_audit_delete),
)


def register_immutability_listeners():
    """Register every listener once; safe to call from repeated app creation."""
    for model, name, fn in _LISTENERS:
        if not event.contains(model, name, fn):
            event.listen(model, name, fn)
    logger.debug("Immutability listeners registered")


def unregister_immutability_listeners():
    """Remove the listeners (used by tests that need to seed closed state directly)."""
    for model, name, fn in _LISTENERS:
        if event.contains(model, name, fn):
            event.remove(model, name, fn)
