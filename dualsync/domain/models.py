from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from dualsync.domain.timestamps import format_iso, parse_timestamp

Record = dict[str, Any]

EXISTENCE_FIELD = "existence"


class ConflictType(str, Enum):
    DATA_MISMATCH = "data_mismatch"
    TIMESTAMP_CONFLICT = "timestamp_conflict"
    DELETION_CONFLICT = "deletion_conflict"
    CONSTRAINT_VIOLATION = "constraint_violation"


class ConflictStatus(str, Enum):
    DETECTED = "detected"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    FAILED = "failed"
    SUPERSEDED = "superseded"

    @property
    def is_open(self) -> bool:
        return self in (ConflictStatus.DETECTED, ConflictStatus.RESOLVING)


OPEN_STATUSES = (ConflictStatus.DETECTED, ConflictStatus.RESOLVING)
UNRESOLVED_STATUSES = (ConflictStatus.DETECTED, ConflictStatus.RESOLVING, ConflictStatus.FAILED)
CLOSED_STATUSES = (ConflictStatus.RESOLVED, ConflictStatus.SUPERSEDED)

ALLOWED_TRANSITIONS: dict[ConflictStatus, frozenset[ConflictStatus]] = {
    ConflictStatus.DETECTED: frozenset({ConflictStatus.RESOLVING, ConflictStatus.SUPERSEDED}),
    ConflictStatus.RESOLVING: frozenset(
        {ConflictStatus.RESOLVING, ConflictStatus.RESOLVED, ConflictStatus.FAILED, ConflictStatus.SUPERSEDED}
    ),
    ConflictStatus.FAILED: frozenset({ConflictStatus.RESOLVING, ConflictStatus.SUPERSEDED}),
    ConflictStatus.RESOLVED: frozenset(),
    ConflictStatus.SUPERSEDED: frozenset(),
}


def can_transition(current: ConflictStatus, target: ConflictStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class ResolutionStrategy(str, Enum):
    PRIMARY_WINS = "primary_wins"
    SECONDARY_WINS = "secondary_wins"
    TIMESTAMP_WINS = "timestamp_wins"
    MERGE = "merge"
    MANUAL = "manual"

    @property
    def needs_supplied_data(self) -> bool:
        return self in (ResolutionStrategy.MERGE, ResolutionStrategy.MANUAL)


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    EXISTS = "exists"


@dataclass(frozen=True)
class RuleCondition:
    field: str
    operator: ConditionOperator
    value: Any = None


@dataclass(frozen=True)
class DetectionRule:
    id: str
    name: str
    table: str
    conditions: tuple[RuleCondition, ...]
    resolution_strategy: ResolutionStrategy
    enabled: bool = True
    description: str = ""


@dataclass(frozen=True)
class Resolution:
    """Decisión aplicada a un conflicto.

    ``strategy`` se guarda tal cual llega (str o enum) para que el executor pueda
    rechazar estrategias desconocidas después de marcar el conflicto ``resolving``.
    ``delete_record`` indica que el resultado resuelto es "el registro no existe".
    ``winner`` (``primary``/``secondary``) fija el lado ganador de las estrategias
    ``*_wins`` para que un reintento repita la misma escritura sin recalcularla.
    """

    strategy: ResolutionStrategy | str
    resolved_data: Record = field(default_factory=dict)
    resolved_by: str = "system"
    resolved_at: datetime | None = None
    notes: str | None = None
    delete_record: bool = False
    winner: str | None = None

    @property
    def strategy_value(self) -> str:
        if isinstance(self.strategy, ResolutionStrategy):
            return self.strategy.value
        return str(self.strategy)

    def to_payload(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy_value,
            "resolved_data": dict(self.resolved_data),
            "resolved_by": self.resolved_by,
            "resolved_at": format_iso(self.resolved_at),
            "notes": self.notes,
            "delete_record": self.delete_record,
            "winner": self.winner,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Resolution":
        raw_strategy = str(payload.get("strategy", ""))
        try:
            strategy: ResolutionStrategy | str = ResolutionStrategy(raw_strategy)
        except ValueError:
            strategy = raw_strategy
        return cls(
            strategy=strategy,
            resolved_data=dict(payload.get("resolved_data") or {}),
            resolved_by=str(payload.get("resolved_by") or "system"),
            resolved_at=parse_timestamp(payload.get("resolved_at")),
            notes=payload.get("notes"),
            delete_record=bool(payload.get("delete_record", False)),
            winner=payload.get("winner"),
        )

    def same_decision(self, other: "Resolution") -> bool:
        """Compara la decisión ignorando ``resolved_at`` y los datos derivados.

        Los datos de ``primary_wins``/``secondary_wins``/``timestamp_wins`` los
        calcula el executor, así que sólo cuentan si el llamante los aportó.
        """
        if self.strategy_value != other.strategy_value or self.resolved_by != other.resolved_by:
            return False
        if self.resolved_data and dict(self.resolved_data) != dict(other.resolved_data):
            return False
        return self.delete_record == other.delete_record or not self.delete_record


@dataclass(frozen=True)
class ConflictDraft:
    table: str
    record_id: str
    conflict_type: ConflictType
    primary_data: Record
    secondary_data: Record
    conflict_fields: tuple[str, ...]


@dataclass(frozen=True)
class Conflict:
    id: str
    table: str
    record_id: str
    conflict_type: ConflictType
    primary_data: Record
    secondary_data: Record
    conflict_fields: tuple[str, ...]
    detected_at: datetime
    status: ConflictStatus = ConflictStatus.DETECTED
    resolution: Resolution | None = None
    resolved_at: datetime | None = None
    attempts: int = 0
    last_error: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status.is_open

    @property
    def record_key(self) -> tuple[str, str]:
        return self.table, self.record_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "table": self.table,
            "record_id": self.record_id,
            "conflict_type": self.conflict_type.value,
            "primary_data": dict(self.primary_data),
            "secondary_data": dict(self.secondary_data),
            "conflict_fields": list(self.conflict_fields),
            "detected_at": format_iso(self.detected_at),
            "resolved_at": format_iso(self.resolved_at),
            "resolution": self.resolution.to_payload() if self.resolution else None,
            "status": self.status.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class ConflictMetrics:
    total_conflicts: int = 0
    resolved_conflicts: int = 0
    unresolved_conflicts: int = 0
    failed_conflicts: int = 0
    superseded_conflicts: int = 0
    conflicts_by_type: dict[str, int] = field(default_factory=dict)
    conflicts_by_table: dict[str, int] = field(default_factory=dict)
    resolutions_by_strategy: dict[str, int] = field(default_factory=dict)
    average_resolution_seconds: float = 0.0
    max_resolution_seconds: float = 0.0
    last_conflict_detected: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_conflict_detected"] = format_iso(self.last_conflict_detected)
        return payload
