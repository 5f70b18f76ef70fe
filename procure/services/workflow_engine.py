"""
Workflow Engine — drives workflow instances for procurement documents.

Responsibilities:
  - initiate an instance for a document (definition pick, routing, path snapshot)
  - apply approver actions with authorization and level checks
  - cancel, query and summarise instances

Concurrency:
    ``WorkflowInstance.version`` is the mapper's version counter, so every
    UPDATE is a compare-and-swap.  A lost race surfaces as ``StaleDataError``
    at commit, which is rolled back and re-raised as ``ConflictError``.
    Callers may additionally send ``expected_version`` to fail fast.

Actions (``record_approval``):
    approve          current level only, approver on the path snapshot
    reject           current level only, approver on the path snapshot; terminal
    request_changes  current level only, approver on the path snapshot; logged
    recall           submitter only, definition allows it, nothing approved yet
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from procure.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
    WorkflowStateError,
)
from procure.models import db
from procure.models.audit import write_audit
from procure.models.auth import User
from procure.models.workflow import (
    DOCUMENT_TYPES,
    HISTORY_ACTIONS,
    TERMINAL_STATUSES,
    WorkflowDefinition,
    WorkflowInstance,
)
from procure.services import workflow_definition_service
from procure.services.approval_router import determine_approval_path, resolve_level_approvers
from procure.services.principal import principal_from_user, resolve_roles
from procure.services.routing import get_required_levels

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════
def get_instance(instance_id: int) -> WorkflowInstance:
    instance = db.session.get(WorkflowInstance, instance_id)
    if instance is None:
        raise NotFoundError(resource="WorkflowInstance", resource_id=instance_id)
    return instance


def _active_user(user_id) -> User | None:
    if user_id is None:
        return None
    user = db.session.get(User, user_id)
    return user if user is not None and user.is_active else None


def _has_full_access(user: User | None) -> bool:
    principal = principal_from_user(user)
    if principal is None:
        return False
    return any(role.grants_full_access for role in resolve_roles(principal))


def _audit_and_commit(instance: WorkflowInstance, action: str, actor_user_id, diff: dict) -> None:
    """Write the audit row and commit; a lost version race becomes ConflictError."""
    instance_id = instance.id
    try:
        write_audit(
            entity_type="workflow_instance",
            entity_id=instance_id,
            action=f"workflow.{action}",
            actor_user_id=actor_user_id,
            diff=diff,
        )
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        logger.warning(
            "Concurrent update lost on workflow instance %s (%s)", instance_id, action,
            extra={"instance_id": instance_id, "event_type": "workflow_conflict"},
        )
        raise ConflictError(
            resource="WorkflowInstance",
            field="version",
            message=f"Workflow instance {instance_id} was modified concurrently; reload and retry",
        ) from None


def _pick_definition(document_type: str, definition_id: int | None) -> WorkflowDefinition:
    if definition_id is not None:
        definition = workflow_definition_service.get_definition(definition_id)
        if definition.document_type != document_type:
            raise ValidationError(
                f"Workflow '{definition.workflow_name}' is for {definition.document_type} documents",
                details={"definition_id": definition_id, "document_type": document_type},
            )
        if not definition.is_active:
            raise ValidationError(f"Workflow '{definition.workflow_name}' is inactive",
                                  details={"definition_id": definition_id})
        return definition
    definition = workflow_definition_service.find_default(document_type)
    if definition is None:
        raise NotFoundError(resource="WorkflowDefinition", resource_id=f"default:{document_type}")
    return definition


# ═══════════════════════════════════════════════════════════════
# Submission
# ═══════════════════════════════════════════════════════════════
def initiate_workflow(
    document_type: str,
    document_id,
    submitted_by_id: int | None = None,
    context: dict | None = None,
    document_number: str | None = None,
    definition_id: int | None = None,
) -> WorkflowInstance:
    """Create the approval instance for a document.

    Raises:
        ValidationError: unknown document type, or a required level with no
            active approvers.
        NotFoundError: no usable definition.
        ConflictError: the document already has an instance.
    """
    if document_type not in DOCUMENT_TYPES:
        raise ValidationError(f"Invalid document_type '{document_type}'",
                              details={"document_type": f"one of {DOCUMENT_TYPES}"})
    if document_id is None or str(document_id).strip() == "":
        raise ValidationError("document_id is required", details={"document_id": "required"})
    document_id = str(document_id)
    context = dict(context or {})

    existing = find_by_document(document_type, document_id)
    if existing is not None:
        raise ConflictError(resource="WorkflowInstance", field="document",
                            value=f"{document_type}/{document_id}")

    definition = _pick_definition(document_type, definition_id)
    required = get_required_levels(definition, context)
    path = determine_approval_path(definition, context)
    unstaffed = [lvl for lvl in required if lvl not in {e["level"] for e in path}]
    if unstaffed:
        raise ValidationError(
            f"No active approvers for level(s) {unstaffed} of '{definition.workflow_name}'",
            details={"unstaffed_levels": unstaffed},
        )

    now = datetime.now(timezone.utc)
    instance = WorkflowInstance(
        definition=definition,
        definition_id=definition.id,
        document_type=document_type,
        document_id=document_id,
        document_number=document_number,
        status="pending" if required else "approved",
        current_level=required[0] if required else 0,
        required_levels=required,
        completed_levels=[],
        level_approvals={},
        approval_path=path,
        context=context,
        submitted_by_id=submitted_by_id,
        submitted_at=now,
        completed_at=None if required else now,
    )
    db.session.add(instance)
    try:
        db.session.flush()
    except IntegrityError as exc:
        # a concurrent submission won the unique (document_type, document_id) key
        db.session.rollback()
        logger.warning("Integrity error on workflow submission: %s", exc.orig,
                       extra={"event_type": "workflow_conflict"})
        raise ConflictError(resource="WorkflowInstance", field="document",
                            value=f"{document_type}/{document_id}") from None

    _audit_and_commit(instance, "initiated", submitted_by_id, {
        "definition": definition.workflow_name,
        "document": f"{document_type}/{document_id}",
        "required_levels": required,
    })
    logger.info(
        "Workflow initiated for %s/%s on %s", document_type, document_id, definition.workflow_name,
        extra={"instance_id": instance.id, "definition_id": definition.id},
    )
    return instance


# ═══════════════════════════════════════════════════════════════
# Actions
# ═══════════════════════════════════════════════════════════════
def _check_recall(instance: WorkflowInstance, actor_id: int) -> None:
    if instance.submitted_by_id is None or actor_id != instance.submitted_by_id:
        raise AuthorizationError("Only the submitter can recall a workflow",
                                 details={"submitted_by_id": instance.submitted_by_id})
    if not instance.definition.allow_recall:
        raise WorkflowStateError(instance.id, instance.status, "recall", "recall is disabled for this workflow")
    if any((instance.level_approvals or {}).values()):
        raise WorkflowStateError(instance.id, instance.status, "recall", "approvals already recorded")


def _check_level_action(instance: WorkflowInstance, level: int, approver_id: int, action: str) -> None:
    if level != instance.current_level:
        raise WorkflowStateError(instance.id, instance.status, action,
                                 f"level {level} is not the current level ({instance.current_level})")
    if approver_id not in instance.approvers_for(level):
        raise AuthorizationError(
            f"User {approver_id} is not an approver for level {level}",
            details={"level": level, "approvers": instance.approvers_for(level)},
        )
    if action in ("approve", "reject"):
        acted = any(
            h.level == level and h.approver_id == approver_id and h.action in ("approve", "reject")
            for h in instance.history
        )
        if acted:
            raise ConflictError(
                resource="WorkflowInstance",
                field="approver",
                value=approver_id,
                message=f"User {approver_id} already acted on level {level}",
            )


def record_approval(
    instance_id: int,
    level: int | None,
    approver_id: int,
    action: str,
    comments: str | None = None,
    metadata: dict | None = None,
    expected_version: int | None = None,
) -> WorkflowInstance:
    """Apply one approver action and persist it.  Returns the updated instance."""
    instance = get_instance(instance_id)
    if expected_version is not None and int(expected_version) != instance.version:
        raise ConflictError(
            resource="WorkflowInstance",
            field="version",
            value=expected_version,
            message=f"Workflow instance {instance.id} is at version {instance.version}, not {expected_version}",
        )
    if instance.is_complete:
        raise WorkflowStateError(instance.id, instance.status, action, "instance is closed")
    if action not in HISTORY_ACTIONS:
        raise ValidationError(f"Unknown approval action: {action}",
                              details={"action": f"must be one of {', '.join(HISTORY_ACTIONS)}"})
    if _active_user(approver_id) is None:
        raise AuthorizationError(f"User {approver_id} is not an active principal",
                                 details={"approver_id": approver_id})
    if level is not None:
        try:
            level = int(level)
        except (TypeError, ValueError):
            raise ValidationError("level must be an integer", details={"level": level}) from None

    if action == "recall":
        _check_recall(instance, approver_id)
        level = instance.current_level if level is None else level
    else:
        if level is None:
            raise ValidationError("level is required", details={"level": "required"})
        _check_level_action(instance, level, approver_id, action)

    instance.record_approval(level, approver_id, action, comments, metadata)
    _audit_and_commit(instance, action, approver_id, {
        "level": level, "status": instance.status, "comments": comments or "",
    })
    logger.info(
        "Workflow %s: %s on level %s by user %s", instance.id, action, level, approver_id,
        extra={"instance_id": instance.id, "level": level, "status": instance.status},
    )
    return instance


def cancel_workflow(instance_id: int, cancelled_by_id: int, reason: str | None = None) -> WorkflowInstance:
    """Cancel a pending instance.  Only the submitter or a full-access user may."""
    instance = get_instance(instance_id)
    if instance.is_complete:
        raise WorkflowStateError(instance.id, instance.status, "cancel", "instance is closed")
    user = _active_user(cancelled_by_id)
    if user is None or (user.id != instance.submitted_by_id and not _has_full_access(user)):
        raise AuthorizationError("Only the submitter or an administrator can cancel a workflow",
                                 details={"submitted_by_id": instance.submitted_by_id})

    instance.cancel()
    _audit_and_commit(instance, "cancelled", cancelled_by_id, {
        "reason": reason or "", "level": instance.current_level,
    })
    logger.info("Workflow %s cancelled by user %s", instance.id, cancelled_by_id,
                extra={"instance_id": instance.id})
    return instance


# ═══════════════════════════════════════════════════════════════
# Queries
# ═══════════════════════════════════════════════════════════════
def get_pending_approvers(instance: WorkflowInstance) -> list[int]:
    """Live approvers of the current level who have not approved it yet."""
    if instance.is_complete or not instance.current_level:
        return []
    level = instance.definition.get_level(instance.current_level)
    if level is None:
        return []
    done = set(instance.approved_by(instance.current_level))
    return [uid for uid in resolve_level_approvers(level) if uid not in done]


def get_pending_approvals_for_user(user_id: int, document_type: str | None = None) -> list[WorkflowInstance]:
    """Pending instances whose current level lists *user_id* and still awaits them."""
    query = WorkflowInstance.query.filter(WorkflowInstance.status == "pending")
    if document_type:
        query = query.filter(WorkflowInstance.document_type == document_type)
    result = []
    for instance in query.order_by(WorkflowInstance.submitted_at, WorkflowInstance.id).all():
        level = instance.current_level
        if user_id in instance.approvers_for(level) and user_id not in instance.approved_by(level):
            result.append(instance)
    return result


def find_by_document(document_type: str, document_id) -> WorkflowInstance | None:
    return WorkflowInstance.query.filter_by(
        document_type=document_type, document_id=str(document_id)
    ).first()


def find_recent_completions(days: int = 7, limit: int = 100) -> list[WorkflowInstance]:
    since = datetime.now(timezone.utc) - timedelta(days=days)
    return (
        WorkflowInstance.query
        .filter(
            WorkflowInstance.status.in_(sorted(TERMINAL_STATUSES)),
            WorkflowInstance.completed_at.isnot(None),
            WorkflowInstance.completed_at >= since,
        )
        .order_by(WorkflowInstance.completed_at.desc())
        .limit(limit)
        .all()
    )


def get_statistics(document_type: str | None = None) -> dict:
    """Instance counts and average duration (hours) grouped by status."""
    query = WorkflowInstance.query
    if document_type:
        query = query.filter(WorkflowInstance.document_type == document_type)

    buckets: dict[str, list] = {}
    for instance in query.all():
        buckets.setdefault(instance.status, []).append(instance.duration_hours)

    by_status = {}
    for status, durations in sorted(buckets.items()):
        known = [d for d in durations if d is not None]
        by_status[status] = {
            "count": len(durations),
            "avg_duration_hours": round(sum(known) / len(known), 2) if known else None,
        }
    return {
        "document_type": document_type,
        "total": sum(b["count"] for b in by_status.values()),
        "by_status": by_status,
    }


def get_approval_summary(instance: WorkflowInstance) -> dict:
    levels = []
    for lvl in instance.required_levels or []:
        entry = instance.path_entry(lvl) or {}
        levels.append({
            "level": lvl,
            "level_name": entry.get("level_name"),
            "approval_mode": entry.get("approval_mode"),
            "approvers": instance.approvers_for(lvl),
            "min_approvals": instance.min_approvals_for(lvl),
            "approved_by": instance.approved_by(lvl),
            "completed": lvl in (instance.completed_levels or []),
            "is_current": lvl == instance.current_level and not instance.is_complete,
        })
    return {
        "instance_id": instance.id,
        "document_type": instance.document_type,
        "document_id": instance.document_id,
        "status": instance.status,
        "progress_percentage": instance.progress_percentage,
        "current_level": instance.current_level,
        "levels": levels,
        "pending_approvers": get_pending_approvers(instance),
        "stats": instance.stats(),
    }
