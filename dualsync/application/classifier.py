from __future__ import annotations

from collections.abc import Mapping, Sequence, Set
from datetime import timedelta
from typing import Any, Iterable

from dualsync.domain.equality import diff_fields, values_equal
from dualsync.domain.models import (
    EXISTENCE_FIELD,
    ConditionOperator,
    ConflictDraft,
    ConflictType,
    DetectionRule,
    Record,
    RuleCondition,
)
from dualsync.domain.timestamps import DEFAULT_TIMESTAMP_FIELDS, extract_modified_at, parse_timestamp

_MISSING = object()


class ConflictClassifier:
    """Compara dos snapshots y produce borradores de conflicto (sin persistir).

    Orden fijo: deletion (cortocircuita) -> data_mismatch (todos los campos en un
    único conflicto) -> timestamp_conflict -> constraint_violation.
    """

    def __init__(
        self,
        *,
        timestamp_fields: Iterable[str] = DEFAULT_TIMESTAMP_FIELDS,
        skew_tolerance: timedelta = timedelta(seconds=1),
    ) -> None:
        self._timestamp_fields = tuple(timestamp_fields)
        self._skew_tolerance = skew_tolerance

    @property
    def timestamp_fields(self) -> tuple[str, ...]:
        return self._timestamp_fields

    def classify(
        self,
        table: str,
        record_id: str,
        primary: Record | None,
        secondary: Record | None,
        rules: Sequence[DetectionRule] = (),
    ) -> list[ConflictDraft]:
        if primary is None and secondary is None:
            return []

        if primary is None or secondary is None:
            return [
                ConflictDraft(
                    table=table,
                    record_id=record_id,
                    conflict_type=ConflictType.DELETION_CONFLICT,
                    primary_data=dict(primary or {}),
                    secondary_data=dict(secondary or {}),
                    conflict_fields=(EXISTENCE_FIELD,),
                )
            ]

        drafts: list[ConflictDraft] = []
        mismatched = diff_fields(primary, secondary)
        if mismatched:
            drafts.append(self._draft(table, record_id, ConflictType.DATA_MISMATCH, primary, secondary, mismatched))

        timestamp_fields = self.timestamp_drift_fields(primary, secondary)
        if timestamp_fields:
            drafts.append(
                self._draft(table, record_id, ConflictType.TIMESTAMP_CONFLICT, primary, secondary, timestamp_fields)
            )

        violated = violated_condition_fields(primary, secondary, rules)
        if violated:
            drafts.append(
                self._draft(table, record_id, ConflictType.CONSTRAINT_VIOLATION, primary, secondary, violated)
            )
        return drafts

    def timestamp_drift_fields(self, primary: Record, secondary: Record) -> list[str]:
        primary_stamp = extract_modified_at(primary, self._timestamp_fields)
        secondary_stamp = extract_modified_at(secondary, self._timestamp_fields)
        if primary_stamp is None or secondary_stamp is None:
            return []
        primary_field, primary_at = primary_stamp
        secondary_field, secondary_at = secondary_stamp
        if abs(primary_at - secondary_at) <= self._skew_tolerance:
            return []
        if primary_field == secondary_field:
            return [primary_field]
        return [primary_field, secondary_field]

    @staticmethod
    def _draft(
        table: str,
        record_id: str,
        conflict_type: ConflictType,
        primary: Record,
        secondary: Record,
        fields: Iterable[str],
    ) -> ConflictDraft:
        return ConflictDraft(
            table=table,
            record_id=record_id,
            conflict_type=conflict_type,
            primary_data=dict(primary),
            secondary_data=dict(secondary),
            conflict_fields=tuple(fields),
        )


def merged_view(primary: Record, secondary: Record) -> Record:
    """Valor del primario si tiene el campo; si no, el del secundario."""
    merged = dict(secondary)
    merged.update(primary)
    return merged


def violated_condition_fields(
    primary: Record,
    secondary: Record,
    rules: Sequence[DetectionRule],
) -> list[str]:
    conditions = [condition for rule in rules if rule.enabled for condition in rule.conditions]
    if not conditions:
        return []
    view = merged_view(primary, secondary)
    violated: list[str] = []
    for condition in conditions:
        if not evaluate_condition(condition, view) and condition.field not in violated:
            violated.append(condition.field)
    return violated


def evaluate_condition(condition: RuleCondition, record: Record) -> bool:
    actual = record.get(condition.field, _MISSING)
    operator = condition.operator
    if operator is ConditionOperator.EXISTS:
        present = actual is not _MISSING and actual is not None
        expected = True if condition.value is None else bool(condition.value)
        return present is expected
    if actual is _MISSING:
        return False
    if operator is ConditionOperator.EQUALS:
        return values_equal(actual, condition.value)
    if operator is ConditionOperator.NOT_EQUALS:
        return not values_equal(actual, condition.value)
    if operator is ConditionOperator.CONTAINS:
        return _contains(actual, condition.value)
    if operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        ordering = _compare(actual, condition.value)
        if ordering is None:
            return False
        return ordering > 0 if operator is ConditionOperator.GREATER_THAN else ordering < 0
    return False


def _contains(container: Any, needle: Any) -> bool:
    if isinstance(container, str):
        return isinstance(needle, str) and needle in container
    if isinstance(container, Mapping):
        return needle in container
    if isinstance(container, (Sequence, Set)):
        return any(values_equal(item, needle) for item in container)
    return False


def _compare(left: Any, right: Any) -> int | None:
    if isinstance(left, bool) or isinstance(right, bool) or left is None or right is None:
        return None
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return (left > right) - (left < right)
    left_at = parse_timestamp(left) if isinstance(left, str) else None
    right_at = parse_timestamp(right) if isinstance(right, str) else None
    if left_at is not None and right_at is not None:
        return (left_at > right_at) - (left_at < right_at)
    if isinstance(left, str) and isinstance(right, str):
        return (left > right) - (left < right)
    return None
