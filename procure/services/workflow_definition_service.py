"""
Workflow Definition Service — administration of approval templates.

Save-time validation (fail-fast, nothing is persisted on error):
  - document_type / on_rejection / approval modes from their enums
  - at least one level; level numbers form 1..N without gaps or duplicates
  - approver roles exist; routing rules use known condition types and
    operators, parse cleanly and only target existing levels
  - at most one active default definition per document type

Payload shape (create / update):

    {
      "workflow_name": "supplier_onboarding",
      "document_type": "supplier",
      "is_default": true,
      "levels": [
        {"level_number": 1, "level_name": "Procurement", "approver_roles": ["procurement_manager"],
         "approval_mode": "any", "is_mandatory": true},
        {"level_number": 2, "level_name": "Finance", "approver_roles": ["finance_director"],
         "approval_mode": "all", "is_mandatory": false}
      ],
      "routing_rules": [
        {"condition_type": "amount", "operator": "gte", "comparison_value": 50000,
         "target_levels": [2]}
      ]
    }
"""

import logging

from procure.core.exceptions import ConflictError, NotFoundError, ValidationError
from procure.models import db
from procure.models.audit import write_audit
from procure.models.workflow import (
    APPROVAL_MODES,
    CONDITION_TYPES,
    DOCUMENT_TYPES,
    ON_REJECTION_POLICIES,
    ApprovalLevel,
    RoutingRule,
    WorkflowDefinition,
    WorkflowInstance,
)
from procure.services.conditions import ROUTING_OPERATORS, ConditionError
from procure.services.role_service import resolve_parent_roles
from procure.services.routing import rule_clauses

logger = logging.getLogger(__name__)

DEFINITION_FIELDS = (
    "workflow_name", "display_name_zh", "display_name_en", "description",
    "document_type", "is_active", "is_default", "allow_recall", "on_rejection",
)


# ═══════════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════════
def validate_level_numbers(numbers) -> None:
    """Level numbers must be exactly 1..N."""
    numbers = list(numbers)
    if not numbers:
        raise ValidationError("At least one approval level is required", details={"levels": []})
    expected = list(range(1, len(numbers) + 1))
    if sorted(numbers) != expected:
        raise ValidationError(
            "Approval levels must be numbered sequentially from 1",
            details={"levels": sorted(numbers), "expected": expected},
        )


def _build_levels(raw_levels) -> list[ApprovalLevel]:
    if not isinstance(raw_levels, list):
        raise ValidationError("levels must be a list", details={"levels": "list required"})
    numbers = []
    levels = []
    for idx, raw in enumerate(raw_levels):
        try:
            number = int(raw["level_number"])
        except (KeyError, TypeError, ValueError):
            raise ValidationError("Each level needs an integer level_number",
                                  details={f"levels[{idx}]": "level_number required"}) from None
        mode = raw.get("approval_mode", "any")
        if mode not in APPROVAL_MODES:
            raise ValidationError(f"Invalid approval_mode '{mode}'",
                                  details={f"levels[{idx}].approval_mode": f"one of {APPROVAL_MODES}"})
        name = raw.get("level_name") or f"Level {number}"
        static_ids = raw.get("approver_user_ids") or []
        if not all(isinstance(v, int) and not isinstance(v, bool) for v in static_ids):
            raise ValidationError("approver_user_ids must be integers",
                                  details={f"levels[{idx}].approver_user_ids": static_ids})
        roles = resolve_parent_roles(raw.get("approver_roles") or [])
        if not roles and not static_ids and not raw.get("approver_department"):
            raise ValidationError(f"Level {number} has no approver source",
                                  details={f"levels[{idx}]": "approver_roles, approver_user_ids or approver_department"})
        numbers.append(number)
        levels.append(ApprovalLevel(
            level_number=number,
            level_name=name,
            approval_mode=mode,
            is_mandatory=bool(raw.get("is_mandatory", True)),
            approver_user_ids=list(static_ids),
            approver_department=raw.get("approver_department"),
            approver_roles=roles,
        ))
    validate_level_numbers(numbers)
    return sorted(levels, key=lambda l: l.level_number)


def _build_rules(raw_rules, level_numbers: set[int]) -> list[RoutingRule]:
    if raw_rules is None:
        return []
    if not isinstance(raw_rules, list):
        raise ValidationError("routing_rules must be a list", details={"routing_rules": "list required"})
    rules = []
    for idx, raw in enumerate(raw_rules):
        where = f"routing_rules[{idx}]"
        condition_type = raw.get("condition_type")
        if condition_type not in CONDITION_TYPES:
            raise ValidationError(f"Invalid condition_type '{condition_type}'",
                                  details={where: f"one of {CONDITION_TYPES}"})
        if condition_type == "custom" and not raw.get("field"):
            raise ValidationError("Custom routing rules need a field",
                                  details={f"{where}.field": "required"})
        operator = raw.get("operator")
        if operator not in ROUTING_OPERATORS:
            raise ValidationError(f"Invalid operator '{operator}'",
                                  details={f"{where}.operator": f"one of {ROUTING_OPERATORS}"})
        targets = raw.get("target_levels") or []
        unknown = [t for t in targets if t not in level_numbers]
        if not targets or unknown:
            raise ValidationError("Routing rule targets must be existing levels",
                                  details={f"{where}.target_levels": unknown or "required"})
        rule = RoutingRule(
            position=idx,
            condition_type=condition_type,
            field=raw.get("field"),
            operator=operator,
            comparison_value=raw.get("comparison_value"),
            extra_conditions=raw.get("extra_conditions"),
            target_levels=sorted(set(int(t) for t in targets)),
            description=raw.get("description"),
        )
        try:
            rule_clauses(rule)
        except ConditionError as exc:
            raise ValidationError(f"Invalid routing rule: {exc}", details={where: str(exc)}) from exc
        rules.append(rule)
    return rules


def _check_scalar_fields(data: dict) -> None:
    if "document_type" in data and data["document_type"] not in DOCUMENT_TYPES:
        raise ValidationError(f"Invalid document_type '{data['document_type']}'",
                              details={"document_type": f"one of {DOCUMENT_TYPES}"})
    if "on_rejection" in data and data["on_rejection"] not in ON_REJECTION_POLICIES:
        raise ValidationError(f"Invalid on_rejection '{data['on_rejection']}'",
                              details={"on_rejection": f"one of {ON_REJECTION_POLICIES}"})


def _check_single_default(definition: WorkflowDefinition) -> None:
    if not (definition.is_default and definition.is_active):
        return
    query = WorkflowDefinition.query_active().filter(
        WorkflowDefinition.document_type == definition.document_type,
        WorkflowDefinition.is_default.is_(True),
        WorkflowDefinition.is_active.is_(True),
    )
    if definition.id is not None:
        query = query.filter(WorkflowDefinition.id != definition.id)
    with db.session.no_autoflush:
        other = query.first()
    if other is not None:
        raise ConflictError(
            resource="WorkflowDefinition",
            field="is_default",
            value=definition.document_type,
            message=f"'{other.workflow_name}' is already the default workflow for {definition.document_type}",
        )


# ═══════════════════════════════════════════════════════════════
# CRUD
# ═══════════════════════════════════════════════════════════════
def list_definitions(document_type: str | None = None, active_only: bool = False) -> list[WorkflowDefinition]:
    query = WorkflowDefinition.query_active()
    if document_type:
        query = query.filter(WorkflowDefinition.document_type == document_type)
    if active_only:
        query = query.filter(WorkflowDefinition.is_active.is_(True))
    return query.order_by(WorkflowDefinition.document_type, WorkflowDefinition.id).all()


def get_definition(definition_id: int) -> WorkflowDefinition:
    definition = db.session.get(WorkflowDefinition, definition_id)
    if definition is None or definition.removed:
        raise NotFoundError(resource="WorkflowDefinition", resource_id=definition_id)
    return definition


def find_default(document_type: str) -> WorkflowDefinition | None:
    """Default active definition for the document type, else the oldest active one."""
    base = WorkflowDefinition.query_active().filter(
        WorkflowDefinition.document_type == document_type,
        WorkflowDefinition.is_active.is_(True),
    )
    default = base.filter(WorkflowDefinition.is_default.is_(True)).first()
    if default is not None:
        return default
    return base.order_by(WorkflowDefinition.id).first()


def create_definition(data: dict, actor_user_id: int | None = None) -> WorkflowDefinition:
    name = (data.get("workflow_name") or "").strip()
    if not name:
        raise ValidationError("workflow_name is required", details={"workflow_name": "required"})
    if "document_type" not in data:
        raise ValidationError("document_type is required", details={"document_type": "required"})
    _check_scalar_fields(data)
    if WorkflowDefinition.query.filter_by(workflow_name=name).first() is not None:
        raise ConflictError(resource="WorkflowDefinition", field="workflow_name", value=name)

    levels = _build_levels(data.get("levels") or [])
    rules = _build_rules(data.get("routing_rules"), {l.level_number for l in levels})

    definition = WorkflowDefinition(
        workflow_name=name,
        display_name_zh=data.get("display_name_zh"),
        display_name_en=data.get("display_name_en"),
        description=data.get("description"),
        document_type=data["document_type"],
        is_active=bool(data.get("is_active", True)),
        is_default=bool(data.get("is_default", False)),
        allow_recall=bool(data.get("allow_recall", True)),
        on_rejection=data.get("on_rejection", "return_to_submitter"),
        created_by_id=actor_user_id,
    )
    _check_single_default(definition)
    definition.levels = levels
    definition.routing_rules = rules
    db.session.add(definition)
    db.session.flush()

    write_audit(
        entity_type="workflow_definition",
        entity_id=definition.id,
        action="workflow.create",
        actor_user_id=actor_user_id,
        diff={"workflow_name": name, "document_type": definition.document_type,
              "levels": [l.level_number for l in levels], "routing_rules": len(rules)},
    )
    db.session.commit()
    logger.info("Created workflow definition %s", name, extra={"definition_id": definition.id})
    return definition


def update_definition(definition_id: int, data: dict, actor_user_id: int | None = None) -> WorkflowDefinition:
    """Update scalar fields; ``levels`` / ``routing_rules`` are replaced as a whole."""
    definition = get_definition(definition_id)
    _check_scalar_fields(data)

    # Build everything first so a validation error leaves the row untouched
    new_levels = _build_levels(data["levels"]) if "levels" in data else None
    level_numbers = (
        {l.level_number for l in new_levels} if new_levels is not None
        else {l.level_number for l in definition.levels}
    )
    rules_source = (
        data["routing_rules"] if "routing_rules" in data
        else [r.to_dict() for r in definition.routing_rules]
    )
    new_rules = _build_rules(rules_source, level_numbers) if (
        "routing_rules" in data or new_levels is not None
    ) else None

    diff = {}
    with db.session.no_autoflush:
        for key in DEFINITION_FIELDS:
            if key in data and data[key] != getattr(definition, key):
                diff[key] = {"old": getattr(definition, key), "new": data[key]}
                setattr(definition, key, data[key])
        if "workflow_name" in diff:
            clash = WorkflowDefinition.query.filter(
                WorkflowDefinition.workflow_name == definition.workflow_name,
                WorkflowDefinition.id != definition.id,
            ).first()
            if clash is not None:
                db.session.rollback()
                raise ConflictError(resource="WorkflowDefinition", field="workflow_name",
                                    value=data["workflow_name"])
        try:
            _check_single_default(definition)
        except ConflictError:
            db.session.rollback()
            raise

    if new_levels is not None:
        diff["levels"] = {"old": [l.level_number for l in definition.levels],
                          "new": [l.level_number for l in new_levels]}
        definition.levels = []
        db.session.flush()
        definition.levels = new_levels
    if new_rules is not None:
        diff["routing_rules"] = {"old": len(definition.routing_rules), "new": len(new_rules)}
        definition.routing_rules = new_rules

    write_audit(
        entity_type="workflow_definition",
        entity_id=definition.id,
        action="workflow.update",
        actor_user_id=actor_user_id,
        diff=diff,
    )
    db.session.commit()
    logger.info("Updated workflow definition %s", definition.workflow_name,
                extra={"definition_id": definition.id})
    return definition


def delete_definition(definition_id: int, actor_user_id: int | None = None) -> WorkflowDefinition:
    """Soft delete; refused while pending instances still run on the definition."""
    definition = get_definition(definition_id)
    pending = WorkflowInstance.query.filter_by(definition_id=definition.id, status="pending").count()
    if pending:
        raise ValidationError(
            f"Workflow '{definition.workflow_name}' has {pending} pending instance(s)",
            details={"pending_instances": pending},
        )
    definition.soft_delete()
    definition.is_default = False
    write_audit(
        entity_type="workflow_definition",
        entity_id=definition.id,
        action="workflow.delete",
        actor_user_id=actor_user_id,
        diff={"workflow_name": definition.workflow_name},
    )
    db.session.commit()
    logger.info("Removed workflow definition %s", definition.workflow_name,
                extra={"definition_id": definition.id})
    return definition
