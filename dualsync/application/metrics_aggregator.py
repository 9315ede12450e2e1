from __future__ import annotations

from collections import Counter
from datetime import datetime
from threading import Lock
from typing import Iterable

from dualsync.domain.models import Conflict, ConflictMetrics, ConflictStatus


class ConflictMetricsAggregator:
    """Contadores aditivos de conflictos; el ledger es la fuente de verdad.

    ``rebuild`` recalcula todo desde un escaneo completo del ledger (arranque).
    Las transiciones se registran por id para no contar dos veces el mismo
    conflicto cuando se reintenta.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._reset()

    def _reset(self) -> None:
        self._statuses: dict[str, ConflictStatus] = {}
        self._by_type: Counter[str] = Counter()
        self._by_table: Counter[str] = Counter()
        self._by_strategy: Counter[str] = Counter()
        self._durations: dict[str, float] = {}
        self._last_detected: datetime | None = None

    def record_detection(self, conflict: Conflict) -> None:
        with self._lock:
            self._register(conflict)

    def record_resolution(self, conflict: Conflict, duration_seconds: float) -> None:
        with self._lock:
            self._register(conflict)
            previous = self._statuses.get(conflict.id)
            if previous is not ConflictStatus.RESOLVED and conflict.resolution is not None:
                self._by_strategy[conflict.resolution.strategy_value] += 1
            self._statuses[conflict.id] = ConflictStatus.RESOLVED
            self._durations[conflict.id] = max(0.0, duration_seconds)

    def record_failure(self, conflict: Conflict) -> None:
        with self._lock:
            self._register(conflict)
            if self._statuses.get(conflict.id) is not ConflictStatus.RESOLVED:
                self._statuses[conflict.id] = ConflictStatus.FAILED

    def record_supersede(self, conflict: Conflict) -> None:
        with self._lock:
            self._register(conflict)
            if self._statuses.get(conflict.id) is not ConflictStatus.RESOLVED:
                self._statuses[conflict.id] = ConflictStatus.SUPERSEDED

    def rebuild(self, conflicts: Iterable[Conflict]) -> ConflictMetrics:
        with self._lock:
            self._reset()
            for conflict in conflicts:
                self._register(conflict)
                self._statuses[conflict.id] = conflict.status
                if conflict.status is ConflictStatus.RESOLVED:
                    if conflict.resolution is not None:
                        self._by_strategy[conflict.resolution.strategy_value] += 1
                    if conflict.resolved_at is not None:
                        elapsed = (conflict.resolved_at - conflict.detected_at).total_seconds()
                        self._durations[conflict.id] = max(0.0, elapsed)
        return self.snapshot()

    def snapshot(self) -> ConflictMetrics:
        with self._lock:
            statuses = list(self._statuses.values())
            durations = list(self._durations.values())
            resolved = sum(1 for status in statuses if status is ConflictStatus.RESOLVED)
            failed = sum(1 for status in statuses if status is ConflictStatus.FAILED)
            superseded = sum(1 for status in statuses if status is ConflictStatus.SUPERSEDED)
            return ConflictMetrics(
                total_conflicts=len(statuses),
                resolved_conflicts=resolved,
                unresolved_conflicts=len(statuses) - resolved - superseded,
                failed_conflicts=failed,
                superseded_conflicts=superseded,
                conflicts_by_type=dict(self._by_type),
                conflicts_by_table=dict(self._by_table),
                resolutions_by_strategy=dict(self._by_strategy),
                average_resolution_seconds=(sum(durations) / len(durations)) if durations else 0.0,
                max_resolution_seconds=max(durations) if durations else 0.0,
                last_conflict_detected=self._last_detected,
            )

    def _register(self, conflict: Conflict) -> None:
        if conflict.id in self._statuses:
            return
        self._statuses[conflict.id] = ConflictStatus.DETECTED
        self._by_type[conflict.conflict_type.value] += 1
        self._by_table[conflict.table] += 1
        if self._last_detected is None or conflict.detected_at > self._last_detected:
            self._last_detected = conflict.detected_at
