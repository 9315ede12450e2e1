from __future__ import annotations

from dualsync.core.errors import (
    BusinessError,
    ExternalServiceError,
    NotFoundError,
    TransientExternalError,
    ValidationError,
)


class StoreUnavailableError(TransientExternalError):
    """Lectura o escritura fallida de forma transitoria en uno de los stores."""

    def __init__(self, store: str, message: str) -> None:
        super().__init__(f"[{store}] {message}")
        self.store = store


class StoreWriteError(ExternalServiceError):
    def __init__(self, store: str, message: str) -> None:
        super().__init__(f"[{store}] {message}")
        self.store = store


class RuleValidationError(ValidationError):
    def __init__(self, rule_id: str, message: str) -> None:
        super().__init__(f"Regla {rule_id!r} inválida: {message}")
        self.rule_id = rule_id


class DuplicateConflictError(BusinessError):
    def __init__(self, table: str, record_id: str, conflict_type: str, existing_id: str | None = None) -> None:
        super().__init__(
            f"Ya existe un conflicto abierto {conflict_type} para {table}/{record_id}"
            + (f" ({existing_id})." if existing_id else ".")
        )
        self.table = table
        self.record_id = record_id
        self.conflict_type = conflict_type
        self.existing_id = existing_id


class UnknownStrategyError(BusinessError):
    def __init__(self, strategy: str) -> None:
        super().__init__(f"Estrategia de resolución desconocida: {strategy!r}.")
        self.strategy = strategy


class InvalidResolutionError(ValidationError):
    pass


class ConflictNotFoundError(NotFoundError):
    def __init__(self, conflict_id: str) -> None:
        super().__init__(f"Conflicto {conflict_id} no encontrado.")
        self.conflict_id = conflict_id


class ConflictAlreadyResolvedError(BusinessError):
    def __init__(self, conflict_id: str) -> None:
        super().__init__(f"El conflicto {conflict_id} ya está resuelto con otra resolución.")
        self.conflict_id = conflict_id


class InvalidTransitionError(BusinessError):
    def __init__(self, conflict_id: str, current: str, target: str) -> None:
        super().__init__(f"Transición no permitida para {conflict_id}: {current} -> {target}.")
        self.conflict_id = conflict_id
        self.current = current
        self.target = target


class ConflictSupersededError(BusinessError):
    """El conflicto ya no describe el estado actual de los stores y se cerró sin escribir."""

    def __init__(self, conflict_id: str, reason: str, *, closed_now: bool = False) -> None:
        super().__init__(f"El conflicto {conflict_id} quedó obsoleto: {reason}")
        self.conflict_id = conflict_id
        self.reason = reason
        self.closed_now = closed_now
