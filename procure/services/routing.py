"""
Routing rule evaluation.

A routing rule matches when its primary clause
(``context[field] <operator> comparison_value``) and every extra clause
hold for the document context.  Target levels of *all* matching rules
are combined (union); rule order never changes the outcome.

    required levels = mandatory levels ∪ targets of matching rules
"""

import logging

from procure.core.exceptions import ValidationError
from procure.models.workflow import RoutingRule, WorkflowDefinition
from procure.services.conditions import (
    ConditionError,
    clause_from_operator,
    matches,
    parse_conditions,
)

logger = logging.getLogger(__name__)


def rule_clauses(rule: RoutingRule) -> dict:
    """Parsed ``{context_key: Condition}`` for a rule (primary clause first)."""
    clauses = {rule.context_key: clause_from_operator(rule.operator, rule.comparison_value)}
    for key, cond in parse_conditions(rule.extra_conditions).items():
        if key in clauses:
            raise ConditionError(f"Field '{key}' constrained twice in one rule")
        clauses[key] = cond
    return clauses


def rule_matches(rule: RoutingRule, context: dict | None) -> bool:
    """A malformed stored rule fails the submission instead of skipping levels."""
    try:
        clauses = rule_clauses(rule)
    except ConditionError as exc:
        logger.error("Routing rule %s is malformed: %s", rule.id, exc,
                     extra={"definition_id": rule.definition_id})
        raise ValidationError(f"Routing rule {rule.id} is malformed: {exc}") from exc
    return matches(clauses, context or {})


def evaluate_routing_rules(definition: WorkflowDefinition, context: dict | None) -> list[int]:
    """Sorted union of target levels of every matching rule."""
    levels: set[int] = set()
    for rule in definition.routing_rules:
        if rule_matches(rule, context):
            levels.update(int(lvl) for lvl in rule.target_levels or [])
    return sorted(levels)


def get_required_levels(definition: WorkflowDefinition, context: dict | None) -> list[int]:
    """Mandatory levels plus routed levels, deduplicated and ascending."""
    required = set(definition.mandatory_levels())
    required.update(evaluate_routing_rules(definition, context))
    return sorted(required)
