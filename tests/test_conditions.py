"""Tests for the shared condition evaluator."""
import pytest

from models.schemas import (
    AllOf, AnyOf, CompareCondition, EntityType, ExistsCondition, MembershipCondition, NotOf,
    WorkflowEntity,
)
from rules.loader import parse_predicate
from utils.conditions import _MISSING, evaluate, get_nested_value, resolve_field


@pytest.fixture
def snapshot():
    entity = WorkflowEntity(
        id="case-101",
        type=EntityType.CASE,
        stage="DOCS_PENDING",
        awaiting_party="Student",
        priority="HIGH",
        metadata={
            "bank": {"name": "Axis", "branch": "Pune"},
            "loan_amount": 2500000,
            "source_type": "META_LEAD_FORM",
            "co_applicant": None,
            "is_priority_bank": True,
        },
    )
    return entity.snapshot()


class TestGetNestedValue:
    def test_flat_key(self):
        assert get_nested_value({"stage": "NEW"}, "stage") == "NEW"

    def test_nested_key(self):
        data = {"bank": {"name": "Axis", "rm": {"phone": "+9180"}}}
        assert get_nested_value(data, "bank.name") == "Axis"
        assert get_nested_value(data, "bank.rm.phone") == "+9180"

    def test_missing_key(self):
        assert get_nested_value({"a": 1}, "b") is _MISSING

    def test_missing_nested_key(self):
        assert get_nested_value({"a": {"b": 1}}, "a.c") is _MISSING

    def test_none_is_a_value(self):
        assert get_nested_value({"a": None}, "a") is None


class TestResolveField:
    def test_metrics_take_precedence(self, snapshot):
        assert resolve_field("stage", snapshot, {"stage": "OVERRIDE"}) == "OVERRIDE"

    def test_snapshot_field(self, snapshot):
        assert resolve_field("awaiting_party", snapshot, {}) == "Student"

    def test_metadata_fallback(self, snapshot):
        assert resolve_field("source_type", snapshot, {}) == "META_LEAD_FORM"
        assert resolve_field("bank.branch", snapshot, {}) == "Pune"

    def test_explicit_metadata_path(self, snapshot):
        assert resolve_field("metadata.bank.name", snapshot, {}) == "Axis"


class TestCompare:
    def test_eq_neq(self, snapshot):
        assert evaluate(CompareCondition(field="stage", value="DOCS_PENDING"), snapshot)
        assert not evaluate(CompareCondition(field="stage", value="NEW"), snapshot)
        assert evaluate(CompareCondition(field="stage", operator="neq", value="NEW"), snapshot)

    @pytest.mark.parametrize("operator,value,expected", [
        ("gt", 24, True),
        ("gt", 30, False),
        ("gte", 30, True),
        ("lt", 31, True),
        ("lte", 29, False),
    ])
    def test_numeric_operators(self, snapshot, operator, value, expected):
        cond = CompareCondition(field="age_hours", operator=operator, value=value)
        assert evaluate(cond, snapshot, {"age_hours": 30}) is expected

    def test_float_metric_against_int_threshold(self, snapshot):
        cond = CompareCondition(field="dwell_days", operator="gte", value=4)
        assert evaluate(cond, snapshot, {"dwell_days": 4.5})

    def test_string_never_equals_number(self, snapshot):
        assert not evaluate(CompareCondition(field="loan_amount", value="2500000"), snapshot)
        assert evaluate(CompareCondition(field="loan_amount", value=2500000), snapshot)

    def test_bool_is_not_a_number(self, snapshot):
        assert not evaluate(CompareCondition(field="is_priority_bank", value=1), snapshot)
        assert evaluate(CompareCondition(field="is_priority_bank", value=True), snapshot)
        cond = CompareCondition(field="is_priority_bank", operator="gt", value=0)
        assert not evaluate(cond, snapshot)

    def test_ordering_on_strings_is_false(self, snapshot):
        cond = CompareCondition(field="stage", operator="gt", value="A")
        assert not evaluate(cond, snapshot)

    def test_unknown_field_is_false(self, snapshot):
        assert not evaluate(CompareCondition(field="no_such_field", value="x"), snapshot)
        assert not evaluate(CompareCondition(field="no_such_field", operator="neq", value="x"),
                            snapshot)


class TestMembershipAndExists:
    def test_in(self, snapshot):
        cond = MembershipCondition(field="stage", values=["DOCS_PENDING", "UNDER_REVIEW"])
        assert evaluate(cond, snapshot)

    def test_not_in(self, snapshot):
        cond = MembershipCondition(field="stage", values=["NEW"], negate=True)
        assert evaluate(cond, snapshot)
        cond = MembershipCondition(field="stage", values=["DOCS_PENDING"], negate=True)
        assert not evaluate(cond, snapshot)

    def test_membership_is_kind_strict(self, snapshot):
        assert not evaluate(MembershipCondition(field="loan_amount", values=["2500000"]), snapshot)

    def test_membership_on_unknown_field(self, snapshot):
        assert not evaluate(MembershipCondition(field="missing", values=["x"], negate=True),
                            snapshot)

    def test_exists(self, snapshot):
        assert evaluate(ExistsCondition(field="bank.name"), snapshot)
        assert not evaluate(ExistsCondition(field="co_applicant"), snapshot)
        assert not evaluate(ExistsCondition(field="missing"), snapshot)


class TestCombinators:
    def test_missing_predicate_matches(self, snapshot):
        assert evaluate(None, snapshot)

    def test_all_of(self, snapshot):
        cond = AllOf(conditions=[
            CompareCondition(field="stage", value="DOCS_PENDING"),
            CompareCondition(field="priority", value="HIGH"),
        ])
        assert evaluate(cond, snapshot)

    def test_any_of(self, snapshot):
        cond = AnyOf(conditions=[
            CompareCondition(field="stage", value="NEW"),
            CompareCondition(field="priority", value="HIGH"),
        ])
        assert evaluate(cond, snapshot)

    def test_empty_combinators(self, snapshot):
        assert evaluate(AllOf(conditions=[]), snapshot)
        assert not evaluate(AnyOf(conditions=[]), snapshot)

    def test_not_of_unknown_field_is_true(self, snapshot):
        assert evaluate(NotOf(condition=CompareCondition(field="missing", value=1)), snapshot)

    def test_nested_tree_from_config(self, snapshot):
        predicate = parse_predicate({
            "kind": "all",
            "conditions": [
                {"kind": "compare", "field": "age_hours", "operator": "gte", "value": 24},
                {"kind": "any", "conditions": [
                    {"kind": "in", "field": "awaiting_party", "values": ["Student", "Bank"]},
                    {"kind": "exists", "field": "escalated_at"},
                ]},
                {"kind": "not", "condition": {"kind": "compare", "field": "stage", "value": "NEW"}},
            ],
        })
        assert evaluate(predicate, snapshot, {"age_hours": 26})
        assert not evaluate(predicate, snapshot, {"age_hours": 3})
