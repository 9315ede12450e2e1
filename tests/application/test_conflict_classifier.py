from __future__ import annotations

from dualsync.application.classifier import ConflictClassifier, evaluate_condition, merged_view
from dualsync.domain.models import (
    ConditionOperator,
    ConflictType,
    DetectionRule,
    ResolutionStrategy,
    RuleCondition,
)


def _rule(*conditions: RuleCondition, enabled: bool = True) -> DetectionRule:
    return DetectionRule(
        id="r1",
        name="r1",
        table="assets",
        conditions=tuple(conditions),
        resolution_strategy=ResolutionStrategy.PRIMARY_WINS,
        enabled=enabled,
    )


def test_identical_records_produce_no_conflicts() -> None:
    classifier = ConflictClassifier()
    record = {"id": "42", "name": "Park", "tags": ["a", "b"], "meta": {"x": 1, "y": 2}}

    drafts = classifier.classify("assets", "42", record, {"meta": {"y": 2, "x": 1}, "tags": ["a", "b"], "name": "Park", "id": "42"})

    assert drafts == []


def test_both_absent_is_not_a_conflict() -> None:
    assert ConflictClassifier().classify("assets", "42", None, None) == []


def test_missing_side_yields_single_deletion_conflict() -> None:
    classifier = ConflictClassifier()

    primary_only = classifier.classify("assets", "42", {"id": "42", "name": "Park"}, None)
    secondary_only = classifier.classify("assets", "42", None, {"id": "42"})

    assert [draft.conflict_type for draft in primary_only] == [ConflictType.DELETION_CONFLICT]
    assert primary_only[0].conflict_fields == ("existence",)
    assert primary_only[0].secondary_data == {}
    assert [draft.conflict_type for draft in secondary_only] == [ConflictType.DELETION_CONFLICT]


def test_field_mismatches_are_bundled_in_one_conflict() -> None:
    drafts = ConflictClassifier().classify(
        "assets",
        "42",
        {"a": 1, "b": 2, "c": 3},
        {"a": 10, "b": 2, "c": 30},
    )

    assert len(drafts) == 1
    assert drafts[0].conflict_type is ConflictType.DATA_MISMATCH
    assert drafts[0].conflict_fields == ("a", "c")


def test_timestamp_drift_beyond_tolerance_adds_timestamp_conflict() -> None:
    drafts = ConflictClassifier().classify(
        "assets",
        "42",
        {"name": "Park", "updated_at": "2024-01-01T10:00:00Z"},
        {"name": "Park", "updated_at": "2024-01-01T10:00:05Z"},
    )

    types = [draft.conflict_type for draft in drafts]
    assert types == [ConflictType.DATA_MISMATCH, ConflictType.TIMESTAMP_CONFLICT]
    assert drafts[1].conflict_fields == ("updated_at",)


def test_timestamp_drift_within_tolerance_is_ignored() -> None:
    classifier = ConflictClassifier()

    fields = classifier.timestamp_drift_fields(
        {"updatedAt": "2024-01-01T10:00:00.000Z"},
        {"updatedAt": 1704103200500},
    )

    assert fields == []


def test_timestamp_drift_reports_both_field_names_when_they_differ() -> None:
    classifier = ConflictClassifier()

    fields = classifier.timestamp_drift_fields(
        {"updated_at": "2024-01-01T10:00:00Z"},
        {"updatedAt": "2024-01-02T10:00:00Z"},
    )

    assert fields == ["updated_at", "updatedAt"]


def test_rule_violation_emits_constraint_conflict() -> None:
    rule = _rule(
        RuleCondition("status", ConditionOperator.EQUALS, "active"),
        RuleCondition("owner", ConditionOperator.EXISTS),
    )

    drafts = ConflictClassifier().classify(
        "assets", "42", {"status": "retired"}, {"status": "retired", "owner": None}, [rule]
    )

    assert [draft.conflict_type for draft in drafts] == [
        ConflictType.DATA_MISMATCH,
        ConflictType.CONSTRAINT_VIOLATION,
    ]
    assert drafts[1].conflict_fields == ("status", "owner")


def test_disabled_rules_are_not_evaluated() -> None:
    rule = _rule(RuleCondition("status", ConditionOperator.EQUALS, "active"), enabled=False)

    assert ConflictClassifier().classify("assets", "42", {"status": "x"}, {"status": "x"}, [rule]) == []


def test_merged_view_prefers_primary_values() -> None:
    assert merged_view({"a": 1}, {"a": 2, "b": 3}) == {"a": 1, "b": 3}


def test_condition_operators() -> None:
    record = {
        "count": 5,
        "name": "Central Park",
        "tags": ["green", "public"],
        "seen": "2024-02-01T00:00:00Z",
        "flag": True,
    }

    assert evaluate_condition(RuleCondition("count", ConditionOperator.GREATER_THAN, 3), record)
    assert not evaluate_condition(RuleCondition("count", ConditionOperator.LESS_THAN, 3), record)
    assert evaluate_condition(RuleCondition("name", ConditionOperator.CONTAINS, "Park"), record)
    assert evaluate_condition(RuleCondition("tags", ConditionOperator.CONTAINS, "green"), record)
    assert evaluate_condition(RuleCondition("name", ConditionOperator.NOT_EQUALS, "Park"), record)
    assert evaluate_condition(
        RuleCondition("seen", ConditionOperator.GREATER_THAN, "2024-01-15T00:00:00+00:00"), record
    )
    assert not evaluate_condition(RuleCondition("flag", ConditionOperator.GREATER_THAN, 0), record)
    assert not evaluate_condition(RuleCondition("missing", ConditionOperator.NOT_EQUALS, 1), record)
    assert evaluate_condition(RuleCondition("missing", ConditionOperator.EXISTS, False), record)
