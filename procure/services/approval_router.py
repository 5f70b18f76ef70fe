"""
Approval Router — turns a workflow definition plus document context into
a concrete, validated approval path.

Path entry shape (also frozen onto the instance at submission):

    {"level": 2, "level_name": "Finance review", "approval_mode": "all",
     "approvers": [7, 9], "min_approvals": 2}

Approver sources per level, merged in this order and deduplicated:
    1. users holding one of the level's approver roles directly
    2. static approver ids configured on the level
    3. users of the level's approver department

Only existing, enabled, non-removed principals survive.  A level left
with no approvers is dropped from the path (and logged).
"""

import logging

from sqlalchemy import func

from procure.models.auth import Role, User, user_roles
from procure.models.workflow import ApprovalLevel, WorkflowDefinition
from procure.services.routing import get_required_levels

logger = logging.getLogger(__name__)


def _active_users():
    return User.query.filter(User.enabled.is_(True), User.removed.is_(False))


# ═══════════════════════════════════════════════════════════════
# Directory lookups
# ═══════════════════════════════════════════════════════════════
def validate_approvers(approver_ids) -> list[int]:
    """Keep ids of existing, enabled, non-removed users; first-seen order."""
    wanted: list[int] = []
    for raw in approver_ids or []:
        try:
            uid = int(raw)
        except (TypeError, ValueError):
            continue
        if uid not in wanted:
            wanted.append(uid)
    if not wanted:
        return []
    valid = {u.id for u in _active_users().filter(User.id.in_(wanted)).all()}
    return [uid for uid in wanted if uid in valid]


def get_approvers_by_role_ids(role_ids) -> list[int]:
    role_ids = [rid for rid in role_ids or [] if rid is not None]
    if not role_ids:
        return []
    rows = (
        _active_users()
        .join(user_roles, user_roles.c.user_id == User.id)
        .join(Role, Role.id == user_roles.c.role_id)
        .filter(Role.id.in_(role_ids), Role.removed.is_(False))
        .order_by(User.id)
        .all()
    )
    seen: list[int] = []
    for user in rows:
        if user.id not in seen:
            seen.append(user.id)
    return seen


def get_approvers_by_role(role_name: str) -> list[int]:
    if not role_name:
        return []
    role = Role.query_active().filter(func.lower(Role.name) == role_name.lower()).first()
    if role is None:
        return []
    return get_approvers_by_role_ids([role.id])


def get_approvers_by_department(department: str) -> list[int]:
    if not department:
        return []
    return [u.id for u in _active_users().filter(User.department == department).order_by(User.id).all()]


def get_direct_reports(manager_id: int) -> list[int]:
    return [
        u.id for u in
        _active_users().filter(User.reports_to_id == manager_id).order_by(User.id).all()
    ]


# ═══════════════════════════════════════════════════════════════
# Path resolution
# ═══════════════════════════════════════════════════════════════
def resolve_level_approvers(level: ApprovalLevel) -> list[int]:
    candidates = get_approvers_by_role_ids([r.id for r in level.approver_roles if not r.removed])
    candidates += list(level.approver_user_ids or [])
    if level.approver_department:
        candidates += get_approvers_by_department(level.approver_department)
    return validate_approvers(candidates)


def determine_approval_path(definition: WorkflowDefinition, context: dict | None = None) -> list[dict]:
    """Ordered path entries for the levels this document requires."""
    required = set(get_required_levels(definition, context))
    path = []
    for level in definition.levels:
        if level.level_number not in required:
            continue
        approvers = resolve_level_approvers(level)
        if not approvers:
            logger.warning(
                "Level %s of workflow %s has no active approvers; dropped",
                level.level_number, definition.workflow_name,
                extra={"definition_id": definition.id, "level": level.level_number},
            )
            continue
        path.append({
            "level": level.level_number,
            "level_name": level.level_name,
            "approval_mode": level.approval_mode,
            "approvers": approvers,
            "min_approvals": len(approvers) if level.approval_mode == "all" else 1,
        })
    return path


def preview_submission(definition: WorkflowDefinition, context: dict | None = None) -> dict:
    """Submission call: required levels and the resolved path, without persisting."""
    required = get_required_levels(definition, context)
    path = determine_approval_path(definition, context)
    covered = {entry["level"] for entry in path}
    return {
        "definition_id": definition.id,
        "required_levels": required,
        "approval_path": path,
        "unstaffed_levels": [lvl for lvl in required if lvl not in covered],
    }

