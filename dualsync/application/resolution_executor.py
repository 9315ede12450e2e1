from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable

from dualsync.application.resolution_plan import (
    PRIMARY,
    SECONDARY,
    ResolutionPlan,
    newer_side,
    parse_strategy,
    plan_persisted,
    plan_supplied,
    plan_winner,
    validate_supplied_data,
)
from dualsync.application.snapshot_reader import SnapshotPair, SnapshotReader
from dualsync.core.deadline import Deadline
from dualsync.domain.errors import (
    ConflictAlreadyResolvedError,
    ConflictNotFoundError,
    ConflictSupersededError,
    InvalidResolutionError,
    UnknownStrategyError,
)
from dualsync.domain.models import Conflict, ConflictStatus, ConflictType, Resolution, ResolutionStrategy
from dualsync.domain.ports import ConflictLedger, PrimaryStore, RecordLockProvider, SecondaryStore
from dualsync.domain.timestamps import DEFAULT_TIMESTAMP_FIELDS, utc_now

logger = logging.getLogger(__name__)


class ResolutionExecutor:
    """Aplica una ``Resolution`` a un conflicto abierto bajo el lock del registro.

    Estados: ``resolving`` (con la resolución planificada ya persistida) y luego
    ``resolved`` o ``failed``. En ``failed`` la resolución se conserva para que
    ``resolve(conflict_id)`` sin resolución repita exactamente la misma escritura.

    Las estrategias con ganador releen ambos stores antes de escribir: si el registro
    ya no está como en la detección el conflicto pasa a ``superseded`` sin tocar nada.
    """

    def __init__(
        self,
        ledger: ConflictLedger,
        primary: PrimaryStore,
        secondary: SecondaryStore,
        locks: RecordLockProvider,
        *,
        timestamp_fields: Iterable[str] = DEFAULT_TIMESTAMP_FIELDS,
        lock_timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ledger = ledger
        self._primary = primary
        self._secondary = secondary
        self._reader = SnapshotReader(primary, secondary)
        self._locks = locks
        self._timestamp_fields = tuple(timestamp_fields)
        self._lock_timeout_seconds = lock_timeout_seconds
        self._clock = clock

    def resolve(
        self,
        conflict_id: str,
        resolution: Resolution | None = None,
        *,
        deadline: Deadline | None = None,
    ) -> Conflict:
        deadline = deadline or Deadline.never()
        conflict = self._load(conflict_id)
        timeout = deadline.bounded(self._lock_timeout_seconds)
        with self._locks.hold(conflict.table, conflict.record_id, timeout):
            conflict = self._load(conflict_id)
            if conflict.status is ConflictStatus.RESOLVED:
                return self._already_resolved(conflict, resolution)
            if conflict.status is ConflictStatus.SUPERSEDED:
                raise ConflictSupersededError(conflict.id, conflict.last_error or "cerrado sin resolución")

            requested = resolution if resolution is not None else conflict.resolution
            if requested is None:
                raise InvalidResolutionError(f"El conflicto {conflict_id} no tiene una resolución que reintentar.")

            try:
                strategy = parse_strategy(requested)
            except UnknownStrategyError:
                self._ledger.update_status(conflict.id, ConflictStatus.RESOLVING, requested)
                raise

            snapshot = None
            if self._copies_winner(strategy, resolution, requested):
                snapshot = self._reader.read_both(conflict.table, conflict.record_id, deadline=deadline)
                self._supersede_if_stale(conflict, snapshot)

            if resolution is None:
                plan = plan_persisted(replace(requested, strategy=strategy))
            else:
                plan = self._plan(conflict, replace(requested, strategy=strategy), strategy, snapshot)

            self._ledger.update_status(conflict.id, ConflictStatus.RESOLVING, plan.resolution)
            try:
                self._apply(conflict, plan, deadline)
            except Exception as exc:
                self._ledger.update_status(conflict.id, ConflictStatus.FAILED, plan.resolution, error=str(exc))
                raise

            resolved_at = max(self._clock(), conflict.detected_at)
            return self._ledger.update_status(
                conflict.id,
                ConflictStatus.RESOLVED,
                replace(plan.resolution, resolved_at=resolved_at),
            )

    def _load(self, conflict_id: str) -> Conflict:
        conflict = self._ledger.get(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(conflict_id)
        return conflict

    @staticmethod
    def _already_resolved(conflict: Conflict, resolution: Resolution | None) -> Conflict:
        if resolution is None:
            return conflict
        if conflict.resolution is not None and resolution.same_decision(conflict.resolution):
            logger.info("Conflicto %s ya resuelto con la misma decisión; sin cambios", conflict.id)
            return conflict
        raise ConflictAlreadyResolvedError(conflict.id)

    @staticmethod
    def _copies_winner(
        strategy: ResolutionStrategy,
        resolution: Resolution | None,
        requested: Resolution,
    ) -> bool:
        if resolution is None:
            return requested.winner in (PRIMARY, SECONDARY)
        return not strategy.needs_supplied_data

    def _supersede_if_stale(self, conflict: Conflict, snapshot: SnapshotPair) -> None:
        reason = stale_reason(conflict, snapshot)
        if reason is None:
            return
        self._ledger.update_status(
            conflict.id,
            ConflictStatus.SUPERSEDED,
            error=f"superseded: {reason}",
            closed_at=self._clock(),
        )
        logger.info("Conflicto %s obsoleto (%s); se cierra sin escribir", conflict.id, reason)
        raise ConflictSupersededError(conflict.id, reason, closed_now=True)

    def _plan(
        self,
        conflict: Conflict,
        resolution: Resolution,
        strategy: ResolutionStrategy,
        snapshot: SnapshotPair | None,
    ) -> ResolutionPlan:
        if strategy.needs_supplied_data:
            validate_supplied_data(conflict, resolution)
            return plan_supplied(resolution)
        if snapshot is None:
            raise InvalidResolutionError(f"La estrategia {strategy.value} necesita leer los stores.")
        # El ganador se copia tal como está ahora en su store, no la foto de la detección.
        if strategy is ResolutionStrategy.PRIMARY_WINS:
            winner = PRIMARY
        elif strategy is ResolutionStrategy.SECONDARY_WINS:
            winner = SECONDARY
        else:
            winner = newer_side(snapshot.primary, snapshot.secondary, self._timestamp_fields)
        winner_record = snapshot.primary if winner == PRIMARY else snapshot.secondary
        return plan_winner(conflict, resolution, winner, winner_record)

    def _apply(self, conflict: Conflict, plan: ResolutionPlan, deadline: Deadline) -> None:
        for write in plan.writes:
            store = self._primary if write.target == PRIMARY else self._secondary
            action = "delete" if write.delete else "write"
            deadline.check(f"{store.name}.{action}({conflict.table}/{conflict.record_id})")
            if write.delete:
                store.delete(conflict.table, conflict.record_id, deadline=deadline)
            else:
                store.write(conflict.table, conflict.record_id, dict(write.fields), deadline=deadline)
            logger.debug(
                "Resolución %s: %s en %s para %s/%s",
                conflict.id,
                action,
                write.target,
                conflict.table,
                conflict.record_id,
            )


def stale_reason(conflict: Conflict, snapshot: SnapshotPair) -> str | None:
    """Motivo por el que el conflicto ya no describe los stores, o ``None``."""
    detected = (bool(conflict.primary_data), bool(conflict.secondary_data))
    current = (snapshot.primary_found, snapshot.secondary_found)
    if conflict.conflict_type is ConflictType.DELETION_CONFLICT:
        if current != detected:
            return f"presencia primario/secundario {detected} -> {current}"
        return None
    if not all(current):
        return f"el registro falta en {'primario' if not current[0] else 'secundario'}"
    return None
