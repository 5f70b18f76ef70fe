"""
Condition language shared by permission conditions and routing rules.

A condition is a small closed tagged expression type:

    Equals(value)                       context value == value
    OneOf(values)                       context value in values
    Range(min, max, exclusive_min, exclusive_max)
    Not(condition)
    AllOf(conditions)                   every inner condition holds

Stored definitions use the legacy object form and are parsed once:

    {"amount": {"$gte": 1000, "$lt": 50000},   → Range(1000, 50000, exclusive_max=True)
     "department": ["it", "finance"],           → OneOf(("it", "finance"))
     "status": {"$ne": "closed"},               → Not(Equals("closed"))
     "currency": "CNY"}                         → Equals("CNY")

Routing rules carry an (operator, comparison_value) pair instead; see
``clause_from_operator``.

``evaluate`` is the only interpreter.  A missing context key never
satisfies a clause, including negated ones.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Union


class ConditionError(ValueError):
    """Raised when a stored condition cannot be parsed."""


# ═══════════════════════════════════════════════════════════════
# Condition types
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class Equals:
    value: Any


@dataclass(frozen=True)
class OneOf:
    values: tuple


@dataclass(frozen=True)
class Range:
    min: Any = None
    max: Any = None
    exclusive_min: bool = False
    exclusive_max: bool = False


@dataclass(frozen=True)
class Not:
    condition: "Condition"


@dataclass(frozen=True)
class AllOf:
    conditions: tuple


Condition = Union[Equals, OneOf, Range, Not, AllOf]

_MISSING = object()

_RANGE_OPERATORS = frozenset({"$gt", "$gte", "$lt", "$lte"})


# ═══════════════════════════════════════════════════════════════
# Parsing
# ═══════════════════════════════════════════════════════════════
def _operator_clause(op: str, value) -> Condition:
    if op in _RANGE_OPERATORS and value is None:
        raise ConditionError(f"{op} needs a bound, got null")
    if op == "$eq":
        return Equals(value)
    if op == "$ne":
        return Not(Equals(value))
    if op == "$gt":
        return Range(min=value, exclusive_min=True)
    if op == "$gte":
        return Range(min=value)
    if op == "$lt":
        return Range(max=value, exclusive_max=True)
    if op == "$lte":
        return Range(max=value)
    if op in ("$in", "$nin"):
        if not isinstance(value, (list, tuple)):
            raise ConditionError(f"{op} expects a list, got {type(value).__name__}")
        one_of = OneOf(tuple(value))
        return one_of if op == "$in" else Not(one_of)
    raise ConditionError(f"Unsupported condition operator: {op}")


def _merge_ranges(clauses: list[Condition]) -> list[Condition]:
    """Fold the bounds of several Range clauses into one, keep the rest."""
    ranges = [c for c in clauses if isinstance(c, Range)]
    if len(ranges) < 2:
        return clauses
    merged = Range()
    for r in ranges:
        if r.min is not None:
            if merged.min is not None:
                raise ConditionError("Lower bound given twice")
            merged = Range(r.min, merged.max, r.exclusive_min, merged.exclusive_max)
        if r.max is not None:
            if merged.max is not None:
                raise ConditionError("Upper bound given twice")
            merged = Range(merged.min, r.max, merged.exclusive_min, r.exclusive_max)
    return [merged] + [c for c in clauses if not isinstance(c, Range)]


def parse_condition(raw) -> Condition:
    """Parse one stored clause (list, operator object, or scalar) into a Condition."""
    if isinstance(raw, (Equals, OneOf, Range, Not, AllOf)):
        return raw
    if isinstance(raw, (list, tuple)):
        return OneOf(tuple(raw))
    if isinstance(raw, dict):
        if not raw:
            raise ConditionError("Empty operator object")
        clauses = [_operator_clause(op, value) for op, value in raw.items()]
        clauses = _merge_ranges(clauses)
        if len(clauses) == 1:
            return clauses[0]
        return AllOf(tuple(clauses))
    return Equals(raw)


def parse_conditions(raw: Mapping | None) -> dict[str, Condition]:
    """Parse a ``{context_key: clause}`` mapping.  ``None`` means no conditions."""
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConditionError("Conditions must be an object keyed by context field")
    return {str(key): parse_condition(value) for key, value in raw.items()}


ROUTING_OPERATORS = ("gt", "gte", "lt", "lte", "eq", "ne", "in", "not_in")

_ROUTING_TO_OBJECT = {
    "gt": "$gt", "gte": "$gte", "lt": "$lt", "lte": "$lte",
    "eq": "$eq", "ne": "$ne", "in": "$in", "not_in": "$nin",
}


def clause_from_operator(operator: str, value) -> Condition:
    """Translate a routing-rule (operator, comparison_value) pair."""
    try:
        op = _ROUTING_TO_OBJECT[operator]
    except KeyError:
        raise ConditionError(f"Unsupported routing operator: {operator}") from None
    if value is None:
        raise ConditionError(f"Routing operator '{operator}' needs a comparison value")
    if op in _RANGE_OPERATORS and not _is_number(value):
        raise ConditionError(f"Routing operator '{operator}' needs a numeric comparison value, got {value!r}")
    return _operator_clause(op, value)


# ═══════════════════════════════════════════════════════════════
# Evaluation
# ═══════════════════════════════════════════════════════════════
def _is_number(value) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _coerce(value, like):
    """Coerce numeric strings when compared against a number."""
    if _is_number(like) and isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            return value
    return value


def _equals(value, expected) -> bool:
    return _coerce(value, expected) == expected


def _in_range(value, cond: Range) -> bool:
    try:
        if cond.min is not None:
            v = _coerce(value, cond.min)
            if v < cond.min or (cond.exclusive_min and v == cond.min):
                return False
        if cond.max is not None:
            v = _coerce(value, cond.max)
            if v > cond.max or (cond.exclusive_max and v == cond.max):
                return False
    except TypeError:
        # Incomparable types never satisfy a bound
        return False
    return True


def evaluate(condition: Condition, value=_MISSING) -> bool:
    """Evaluate *condition* against a single context value."""
    if value is _MISSING or value is None:
        return False
    if isinstance(condition, Equals):
        return _equals(value, condition.value)
    if isinstance(condition, OneOf):
        if isinstance(value, (list, tuple, set)):
            return any(_equals(v, item) for v in value for item in condition.values)
        return any(_equals(value, item) for item in condition.values)
    if isinstance(condition, Range):
        return _in_range(value, condition)
    if isinstance(condition, Not):
        return not evaluate(condition.condition, value)
    if isinstance(condition, AllOf):
        return all(evaluate(c, value) for c in condition.conditions)
    raise ConditionError(f"Unknown condition type: {type(condition).__name__}")


def matches(conditions: Mapping[str, Condition], context: Mapping | None) -> bool:
    """True when every keyed condition holds for *context* (AND)."""
    context = context or {}
    return all(evaluate(cond, context.get(key, _MISSING)) for key, cond in conditions.items())
