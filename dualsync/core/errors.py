from __future__ import annotations


class AppError(Exception):
    pass


class BusinessError(AppError):
    pass


class ValidationError(BusinessError):
    pass


class NotFoundError(BusinessError):
    pass


class InfraError(AppError):
    pass


class PersistenceError(InfraError):
    pass


class ExternalServiceError(InfraError):
    pass


class TransientExternalError(ExternalServiceError):
    pass


class DeadlineExceededError(TransientExternalError):
    """La operación agotó su plazo antes de completar la llamada al store."""


class LockTimeoutError(TransientExternalError):
    def __init__(self, key: str, timeout_seconds: float) -> None:
        super().__init__(f"No se pudo adquirir el lock de {key} en {timeout_seconds:.2f}s.")
        self.key = key
        self.timeout_seconds = timeout_seconds
