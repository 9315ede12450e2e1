from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable

from dualsync.domain.errors import InvalidResolutionError, UnknownStrategyError
from dualsync.domain.models import (
    Conflict,
    ConflictType,
    Record,
    Resolution,
    ResolutionStrategy,
)
from dualsync.domain.timestamps import DEFAULT_TIMESTAMP_FIELDS, extract_modified_at

PRIMARY = "primary"
SECONDARY = "secondary"


@dataclass(frozen=True)
class StoreWrite:
    target: str
    fields: Record
    delete: bool = False


@dataclass(frozen=True)
class ResolutionPlan:
    resolution: Resolution
    writes: tuple[StoreWrite, ...]


def parse_strategy(resolution: Resolution) -> ResolutionStrategy:
    if isinstance(resolution.strategy, ResolutionStrategy):
        return resolution.strategy
    try:
        return ResolutionStrategy(str(resolution.strategy))
    except ValueError as exc:
        raise UnknownStrategyError(str(resolution.strategy)) from exc


def validate_supplied_data(conflict: Conflict, resolution: Resolution) -> None:
    """``merge``/``manual`` deben cubrir todos los campos en conflicto."""
    if conflict.conflict_type is ConflictType.DELETION_CONFLICT:
        if resolution.delete_record or resolution.resolved_data:
            return
        raise InvalidResolutionError(
            f"El conflicto {conflict.id} es de borrado: aporta datos o marca delete_record."
        )
    if resolution.delete_record:
        return
    missing = [name for name in conflict.conflict_fields if name not in resolution.resolved_data]
    if missing:
        raise InvalidResolutionError(
            f"La resolución de {conflict.id} no cubre los campos en conflicto: {', '.join(missing)}."
        )


def newer_side(
    primary: Record | None,
    secondary: Record | None,
    timestamp_fields: Iterable[str] = DEFAULT_TIMESTAMP_FIELDS,
) -> str:
    """Lado con la marca de modificación más reciente; empates para el primario."""
    fields = tuple(timestamp_fields)
    primary_stamp = extract_modified_at(primary, fields)
    secondary_stamp = extract_modified_at(secondary, fields)
    if primary_stamp and secondary_stamp:
        return SECONDARY if secondary_stamp[1] > primary_stamp[1] else PRIMARY
    if secondary_stamp and not primary_stamp:
        return SECONDARY
    return PRIMARY


def plan_winner(
    conflict: Conflict,
    resolution: Resolution,
    winner: str,
    winner_record: Record | None,
) -> ResolutionPlan:
    """El ganador se copia al otro store; en borrados puede ser un tombstone."""
    target = SECONDARY if winner == PRIMARY else PRIMARY
    if conflict.conflict_type is ConflictType.DELETION_CONFLICT:
        if not winner_record:
            planned = replace(resolution, resolved_data={}, delete_record=True, winner=winner)
            return ResolutionPlan(planned, (StoreWrite(target=target, fields={}, delete=True),))
        data = dict(winner_record)
    else:
        source = winner_record or {}
        data = {name: source.get(name) for name in conflict.conflict_fields}
    planned = replace(resolution, resolved_data=data, delete_record=False, winner=winner)
    return ResolutionPlan(planned, (StoreWrite(target=target, fields=dict(data)),))


def plan_supplied(resolution: Resolution) -> ResolutionPlan:
    data = dict(resolution.resolved_data)
    if resolution.delete_record:
        writes = (
            StoreWrite(target=PRIMARY, fields={}, delete=True),
            StoreWrite(target=SECONDARY, fields={}, delete=True),
        )
    else:
        writes = (StoreWrite(target=PRIMARY, fields=data), StoreWrite(target=SECONDARY, fields=data))
    return ResolutionPlan(replace(resolution, resolved_data=data, winner=None), writes)


def plan_persisted(resolution: Resolution) -> ResolutionPlan:
    """Repite tal cual una resolución ya persistida (reintento tras fallo)."""
    if resolution.winner in (PRIMARY, SECONDARY):
        target = SECONDARY if resolution.winner == PRIMARY else PRIMARY
        write = StoreWrite(
            target=target,
            fields={} if resolution.delete_record else dict(resolution.resolved_data),
            delete=resolution.delete_record,
        )
        return ResolutionPlan(resolution, (write,))
    return plan_supplied(resolution)
