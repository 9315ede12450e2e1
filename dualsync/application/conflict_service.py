from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, TypeVar

from dualsync.application.classifier import ConflictClassifier
from dualsync.application.metrics_aggregator import ConflictMetricsAggregator
from dualsync.application.resolution_executor import ResolutionExecutor
from dualsync.application.rule_registry import RuleRegistry
from dualsync.application.snapshot_reader import SnapshotReader
from dualsync.core.deadline import Deadline
from dualsync.core.errors import AppError, InfraError
from dualsync.core.metrics import measure_time, metrics_registry
from dualsync.core.observability import OperationContext, log_event
from dualsync.core.operational_logging import log_operational_error
from dualsync.domain.equality import diff_fields
from dualsync.domain.errors import (
    ConflictNotFoundError,
    ConflictSupersededError,
    DuplicateConflictError,
    InvalidResolutionError,
    StoreUnavailableError,
)
from dualsync.domain.models import (
    Conflict,
    ConflictDraft,
    ConflictMetrics,
    ConflictStatus,
    DetectionRule,
    Resolution,
)
from dualsync.domain.ports import ConflictLedger, PrimaryStore, RecordLockProvider, SecondaryStore
from dualsync.domain.timestamps import DEFAULT_TIMESTAMP_FIELDS, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ServiceOptions:
    detect_timeout_seconds: float = 10.0
    resolve_timeout_seconds: float = 20.0
    lock_timeout_seconds: float = 5.0
    read_retries: int = 2
    retry_backoff_seconds: float = 0.2
    timestamp_fields: tuple[str, ...] = DEFAULT_TIMESTAMP_FIELDS
    timestamp_skew_seconds: float = 1.0


@dataclass(frozen=True)
class DetectionSweep:
    conflicts: list[Conflict] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def records_failed(self) -> int:
        return len(self.failures)


class ConflictService:
    """Fachada del motor: detección, resolución, listados y métricas.

    Cada llamada corre dentro de un ``OperationContext`` con su propio plazo;
    el lock por registro se toma aquí para la detección y en el executor para la
    resolución.
    """

    def __init__(
        self,
        *,
        ledger: ConflictLedger,
        primary: PrimaryStore,
        secondary: SecondaryStore,
        rules: RuleRegistry,
        locks: RecordLockProvider,
        options: ServiceOptions | None = None,
        aggregator: ConflictMetricsAggregator | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._options = options or ServiceOptions()
        self._ledger = ledger
        self._rules = rules
        self._locks = locks
        self._reader = SnapshotReader(primary, secondary)
        self._classifier = ConflictClassifier(
            timestamp_fields=self._options.timestamp_fields,
            skew_tolerance=timedelta(seconds=self._options.timestamp_skew_seconds),
        )
        self._executor = ResolutionExecutor(
            ledger,
            primary,
            secondary,
            locks,
            timestamp_fields=self._options.timestamp_fields,
            lock_timeout_seconds=self._options.lock_timeout_seconds,
            clock=clock,
        )
        self._aggregator = aggregator or ConflictMetricsAggregator()
        self._clock = clock
        self._sleep = sleep

    @property
    def options(self) -> ServiceOptions:
        return self._options

    def rebuild_metrics(self) -> ConflictMetrics:
        return self._aggregator.rebuild(self._ledger.list_all())

    @measure_time("latency.detect_conflicts_ms")
    def detect_conflicts(self, table: str, record_id: str, *, deadline: Deadline | None = None) -> list[Conflict]:
        with OperationContext("detect_conflicts") as operation:
            metrics_registry.increment("detections_run")
            deadline = Deadline(self._options.detect_timeout_seconds, parent=deadline)
            try:
                with self._locks.hold(table, record_id, deadline.bounded(self._options.lock_timeout_seconds)):
                    primary = self._read_with_retries(
                        lambda: self._reader.read_primary(table, record_id, deadline=deadline)[0], deadline
                    )
                    secondary = self._read_with_retries(
                        lambda: self._reader.read_secondary(table, record_id, deadline=deadline)[0], deadline
                    )
                    rules = self._rules.rules_for(table)
                    drafts = self._classifier.classify(table, record_id, primary, secondary, rules)
                    self._supersede_stale(table, record_id, drafts)
                    conflicts = [self._persist(draft) for draft in drafts]
            except InfraError as exc:
                metrics_registry.increment("detections_aborted")
                log_event(
                    logger,
                    "conflict_detection_aborted",
                    {"table": table, "record_id": record_id, "error": str(exc)},
                    operation.correlation_id,
                    level=logging.WARNING,
                )
                log_operational_error(
                    "Detección abortada sin persistir conflictos",
                    exc=exc,
                    extra={"table": table, "record_id": record_id},
                )
                raise
            return conflicts

    def detect_many(self, table: str, record_ids: Iterable[str]) -> DetectionSweep:
        """Barrido del reconciliador: un fallo en un registro no detiene el resto."""
        with OperationContext("detect_many"):
            sweep = DetectionSweep()
            for record_id in record_ids:
                try:
                    sweep.conflicts.extend(self.detect_conflicts(table, record_id))
                except AppError as exc:
                    sweep.failures[record_id] = str(exc)
            log_event(
                logger,
                "detection_sweep_finished",
                {"table": table, "conflicts": len(sweep.conflicts), "failures": sweep.records_failed},
            )
            return sweep

    @measure_time("latency.resolve_conflict_ms")
    def resolve_conflict(
        self,
        conflict_id: str,
        resolution: Resolution | None = None,
        *,
        deadline: Deadline | None = None,
    ) -> Conflict:
        with OperationContext("resolve_conflict") as operation:
            metrics_registry.increment("resolutions_attempted")
            deadline = Deadline(self._options.resolve_timeout_seconds, parent=deadline)
            try:
                conflict = self._executor.resolve(conflict_id, resolution, deadline=deadline)
            except AppError as exc:
                self._register_failure(conflict_id, exc, operation.correlation_id)
                raise
            if conflict.status is ConflictStatus.RESOLVED and conflict.resolved_at is not None:
                elapsed = (conflict.resolved_at - conflict.detected_at).total_seconds()
                self._aggregator.record_resolution(conflict, elapsed)
            log_event(
                logger,
                "conflict_resolved",
                {
                    "conflict_id": conflict.id,
                    "table": conflict.table,
                    "record_id": conflict.record_id,
                    "strategy": conflict.resolution.strategy_value if conflict.resolution else None,
                },
                operation.correlation_id,
            )
            return conflict

    def auto_resolve(self, conflict_id: str, resolved_by: str = "auto") -> Conflict:
        """Aplica la estrategia por defecto de la regla de la tabla."""
        conflict = self.get_conflict(conflict_id)
        strategy = self._rules.default_strategy_for(conflict.table)
        if strategy.needs_supplied_data:
            raise InvalidResolutionError(
                f"La tabla {conflict.table} requiere resolución {strategy.value}; no se puede automatizar."
            )
        return self.resolve_conflict(
            conflict_id,
            Resolution(strategy=strategy, resolved_by=resolved_by, notes="auto_resolve"),
        )

    def retry_failed(self) -> list[Conflict]:
        """Reintenta cada conflicto ``failed`` con su resolución persistida."""
        with OperationContext("retry_failed"):
            outcomes: list[Conflict] = []
            for failed in self._ledger.list_by_status(ConflictStatus.FAILED):
                try:
                    outcomes.append(self.resolve_conflict(failed.id))
                except AppError:
                    outcomes.append(self._ledger.get(failed.id) or failed)
            return outcomes

    def get_unresolved_conflicts(self) -> list[Conflict]:
        return self._ledger.list_unresolved()

    def get_conflict(self, conflict_id: str) -> Conflict:
        conflict = self._ledger.get(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(conflict_id)
        return conflict

    def get_metrics(self) -> ConflictMetrics:
        return self._aggregator.snapshot()

    def get_operational_metrics(self) -> dict[str, dict]:
        return metrics_registry.snapshot()

    def reload_rules(self) -> list[DetectionRule]:
        return self._rules.reload()

    def purge_closed(self, older_than_days: int = 30) -> int:
        cutoff = self._clock() - timedelta(days=older_than_days)
        removed = self._ledger.purge_closed(cutoff)
        if removed:
            self._aggregator.rebuild(self._ledger.list_all())
        logger.info("Conflictos resueltos purgados: %s (anteriores a %s)", removed, cutoff.isoformat())
        return removed

    def _persist(self, draft: ConflictDraft) -> Conflict:
        conflict = Conflict(
            id=f"conflict_{uuid.uuid4().hex}",
            table=draft.table,
            record_id=draft.record_id,
            conflict_type=draft.conflict_type,
            primary_data=dict(draft.primary_data),
            secondary_data=dict(draft.secondary_data),
            conflict_fields=tuple(draft.conflict_fields),
            detected_at=self._clock(),
        )
        try:
            stored = self._ledger.store(conflict)
        except DuplicateConflictError as exc:
            existing = self._find_existing(draft, exc.existing_id)
            logger.info(
                "Conflicto %s ya abierto para %s/%s; se reutiliza %s",
                draft.conflict_type.value,
                draft.table,
                draft.record_id,
                existing.id,
            )
            return existing
        self._aggregator.record_detection(stored)
        metrics_registry.increment("conflicts_detected")
        log_event(
            logger,
            "conflict_detected",
            {
                "conflict_id": stored.id,
                "table": stored.table,
                "record_id": stored.record_id,
                "conflict_type": stored.conflict_type.value,
                "fields": list(stored.conflict_fields),
            },
        )
        return stored

    def _supersede_stale(self, table: str, record_id: str, drafts: list[ConflictDraft]) -> None:
        """Cierra las entradas pendientes que la clasificación actual ya no produce.

        Una entrada ``detected`` o ``failed`` queda obsoleta si no hay borrador de su
        tipo, o si sus campos o sus fotos de los stores cambiaron. Las ``resolving``
        tienen una escritura en curso y se dejan a su reintento.
        """
        fresh = {draft.conflict_type: draft for draft in drafts}
        for entry in self._ledger.find_unresolved(table, record_id):
            if entry.status is ConflictStatus.RESOLVING:
                continue
            reason = _drift_reason(entry, fresh.get(entry.conflict_type))
            if reason is None:
                continue
            superseded = self._ledger.update_status(
                entry.id,
                ConflictStatus.SUPERSEDED,
                error=f"superseded: {reason}",
                closed_at=self._clock(),
            )
            self._record_supersede(superseded, reason)

    def _record_supersede(self, conflict: Conflict, reason: str, correlation_id: str | None = None) -> None:
        self._aggregator.record_supersede(conflict)
        metrics_registry.increment("conflicts_superseded")
        log_event(
            logger,
            "conflict_superseded",
            {
                "conflict_id": conflict.id,
                "table": conflict.table,
                "record_id": conflict.record_id,
                "conflict_type": conflict.conflict_type.value,
                "reason": reason,
            },
            correlation_id,
        )

    def _find_existing(self, draft: ConflictDraft, existing_id: str | None) -> Conflict:
        if existing_id:
            existing = self._ledger.get(existing_id)
            if existing is not None:
                return existing
        for candidate in self._ledger.find_open(draft.table, draft.record_id):
            if candidate.conflict_type is draft.conflict_type:
                return candidate
        raise DuplicateConflictError(draft.table, draft.record_id, draft.conflict_type.value, existing_id)

    def _read_with_retries(self, read: Callable[[], T], deadline: Deadline) -> T:
        attempts = max(0, self._options.read_retries) + 1
        attempt = 0
        while True:
            try:
                return read()
            except StoreUnavailableError as exc:
                metrics_registry.increment("store_read_errors")
                attempt += 1
                if attempt >= attempts or deadline.expired():
                    raise
                delay = deadline.bounded(self._options.retry_backoff_seconds * (2 ** (attempt - 1)))
                logger.warning(
                    "Lectura fallida en %s (intento %s/%s); reintento en %.2fs",
                    exc.store,
                    attempt,
                    attempts,
                    delay,
                )
                self._sleep(delay)

    def _register_failure(self, conflict_id: str, exc: AppError, correlation_id: str) -> None:
        current = self._ledger.get(conflict_id)
        if isinstance(exc, ConflictSupersededError):
            if exc.closed_now and current is not None:
                self._record_supersede(current, exc.reason, correlation_id)
            return
        metrics_registry.increment("resolutions_failed")
        if current is not None and current.status is ConflictStatus.FAILED:
            self._aggregator.record_failure(current)
        log_event(
            logger,
            "conflict_resolution_failed",
            {
                "conflict_id": conflict_id,
                "status": current.status.value if current else None,
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
            correlation_id,
            level=logging.WARNING,
        )
        if isinstance(exc, InfraError):
            log_operational_error(
                "Fallo al aplicar la resolución",
                exc=exc,
                extra={"conflict_id": conflict_id},
            )


def _drift_reason(entry: Conflict, draft: ConflictDraft | None) -> str | None:
    if draft is None:
        return f"la detección ya no produce {entry.conflict_type.value}"
    if set(entry.conflict_fields) != set(draft.conflict_fields):
        return "cambiaron los campos en conflicto"
    for side, before, after in (
        ("primario", entry.primary_data, draft.primary_data),
        ("secundario", entry.secondary_data, draft.secondary_data),
    ):
        if bool(before) != bool(after) or diff_fields(before, after):
            return f"cambió el registro en el {side}"
    return None
