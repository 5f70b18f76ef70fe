"""
Condition language unit tests.

Tests cover:
  - Parsing the stored object form into condition types
  - Routing operator translation
  - Evaluation: ranges, membership, negation, numeric string coercion
  - Missing keys never satisfy a clause
  - Malformed conditions raise ConditionError
"""
from decimal import Decimal

import pytest

from procure.services.conditions import (
    AllOf,
    ConditionError,
    Equals,
    Not,
    OneOf,
    Range,
    clause_from_operator,
    evaluate,
    matches,
    parse_condition,
    parse_conditions,
)


# ═════════════════════════════════════════════════════════════════════════
# PARSING
# ═════════════════════════════════════════════════════════════════════════

class TestParsing:
    def test_scalar_is_equals(self):
        assert parse_condition("CNY") == Equals("CNY")

    def test_list_is_one_of(self):
        assert parse_condition(["it", "finance"]) == OneOf(("it", "finance"))

    def test_bounds_merge_into_one_range(self):
        cond = parse_condition({"$gte": 1000, "$lt": 50000})
        assert cond == Range(min=1000, max=50000, exclusive_max=True)

    def test_ne_is_negated_equals(self):
        assert parse_condition({"$ne": "closed"}) == Not(Equals("closed"))

    def test_nin_is_negated_one_of(self):
        assert parse_condition({"$nin": ["a", "b"]}) == Not(OneOf(("a", "b")))

    def test_mixed_operators_become_all_of(self):
        cond = parse_condition({"$gt": 0, "$ne": 5})
        assert isinstance(cond, AllOf)
        assert Range(min=0, exclusive_min=True) in cond.conditions
        assert Not(Equals(5)) in cond.conditions

    def test_none_means_no_conditions(self):
        assert parse_conditions(None) == {}

    def test_unknown_operator_rejected(self):
        with pytest.raises(ConditionError):
            parse_condition({"$regex": ".*"})

    def test_in_requires_list(self):
        with pytest.raises(ConditionError):
            parse_condition({"$in": "it"})

    def test_empty_operator_object_rejected(self):
        with pytest.raises(ConditionError):
            parse_condition({})

    def test_duplicate_lower_bound_rejected(self):
        with pytest.raises(ConditionError):
            parse_condition({"$gt": 1, "$gte": 2})

    def test_non_mapping_conditions_rejected(self):
        with pytest.raises(ConditionError):
            parse_conditions(["amount"])


class TestRoutingOperators:
    @pytest.mark.parametrize("operator,value,expected", [
        ("gt", 10, Range(min=10, exclusive_min=True)),
        ("gte", 10, Range(min=10)),
        ("lt", 10, Range(max=10, exclusive_max=True)),
        ("lte", 10, Range(max=10)),
        ("eq", "A", Equals("A")),
        ("ne", "A", Not(Equals("A"))),
        ("in", ["A", "B"], OneOf(("A", "B"))),
        ("not_in", ["A"], Not(OneOf(("A",)))),
    ])
    def test_translation(self, operator, value, expected):
        assert clause_from_operator(operator, value) == expected

    def test_unknown_operator(self):
        with pytest.raises(ConditionError):
            clause_from_operator("between", [1, 2])

    @pytest.mark.parametrize("operator", ["gt", "gte", "lt", "lte", "eq", "ne", "in", "not_in"])
    def test_missing_comparison_value(self, operator):
        with pytest.raises(ConditionError):
            clause_from_operator(operator, None)

    @pytest.mark.parametrize("value", ["50000", "high", True, [1]])
    def test_relational_operator_needs_number(self, value):
        with pytest.raises(ConditionError):
            clause_from_operator("gte", value)

    def test_null_bound_in_object_form(self):
        with pytest.raises(ConditionError):
            parse_condition({"$gte": None})


# ═════════════════════════════════════════════════════════════════════════
# EVALUATION
# ═════════════════════════════════════════════════════════════════════════

class TestEvaluate:
    def test_range_bounds(self):
        cond = Range(min=1000, max=50000, exclusive_max=True)
        assert evaluate(cond, 1000)
        assert evaluate(cond, 49999.99)
        assert not evaluate(cond, 50000)
        assert not evaluate(cond, 999)

    def test_exclusive_min(self):
        cond = Range(min=0, exclusive_min=True)
        assert not evaluate(cond, 0)
        assert evaluate(cond, 1)

    def test_numeric_strings_coerced(self):
        assert evaluate(Range(min=50000), "60000")
        assert evaluate(Equals(100), "100.00")
        assert evaluate(OneOf((1, 2)), "2")

    def test_non_numeric_string_against_number_fails(self):
        assert not evaluate(Range(min=10), "lots")

    def test_incomparable_types_fail(self):
        assert not evaluate(Range(min=10), {"amount": 20})

    def test_one_of_against_list_value(self):
        assert evaluate(OneOf(("it", "finance")), ["hr", "it"])
        assert not evaluate(OneOf(("it",)), ["hr"])

    def test_not(self):
        assert evaluate(Not(Equals("closed")), "open")
        assert not evaluate(Not(Equals("closed")), "closed")

    def test_decimal_values(self):
        assert evaluate(Range(max=Decimal("10.5")), Decimal("10.5"))

    def test_missing_value_fails_even_negated(self):
        assert not evaluate(Equals("x"))
        assert not evaluate(Not(Equals("x")))
        assert not evaluate(Not(Equals("x")), None)


class TestMatches:
    def test_all_keys_must_hold(self):
        conds = parse_conditions({"amount": {"$gte": 1000}, "department": ["it"]})
        assert matches(conds, {"amount": 5000, "department": "it"})
        assert not matches(conds, {"amount": 5000, "department": "hr"})

    def test_missing_key_fails(self):
        conds = parse_conditions({"amount": {"$gte": 1000}})
        assert not matches(conds, {})
        assert not matches(conds, None)

    def test_empty_conditions_always_match(self):
        assert matches({}, {})
