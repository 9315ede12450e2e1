from __future__ import annotations

import time
from threading import Event
from typing import Callable

from dualsync.core.errors import DeadlineExceededError

Clock = Callable[[], float]


class Deadline:
    """Plazo absoluto compartido por todas las llamadas a store de una operación.

    Se crea una vez en la fachada y se propaga hacia abajo; cada adaptador llama a
    ``check()`` antes de tocar la red/disco y usa ``remaining()`` como timeout
    cuando la librería lo admite. ``cancel()`` permite al llamante abortar antes.

    Con ``parent`` el plazo vence cuando vence cualquiera de los dos y hereda la
    cancelación del padre: así la fachada acota el plazo que le pasa el llamante
    sin perder su cancelación.
    """

    def __init__(
        self,
        timeout_seconds: float | None,
        *,
        clock: Clock = time.monotonic,
        parent: "Deadline | None" = None,
    ) -> None:
        self._clock = clock
        self._timeout_seconds = timeout_seconds
        self._expires_at = None if timeout_seconds is None else clock() + max(0.0, timeout_seconds)
        self._cancelled = Event()
        self._parent = parent

    @classmethod
    def never(cls) -> "Deadline":
        return cls(None)

    @property
    def timeout_seconds(self) -> float | None:
        return self._timeout_seconds

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def remaining(self) -> float | None:
        own = None if self._expires_at is None else max(0.0, self._expires_at - self._clock())
        inherited = self._parent.remaining() if self._parent is not None else None
        if own is None:
            return inherited
        if inherited is None:
            return own
        return min(own, inherited)

    def expired(self) -> bool:
        if self.cancelled:
            return True
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0

    def check(self, operation: str) -> None:
        if self.cancelled:
            raise DeadlineExceededError(f"Operación cancelada antes de {operation}.")
        if self.expired():
            raise DeadlineExceededError(
                f"Plazo de {self._timeout_seconds}s agotado antes de {operation}."
            )

    def bounded(self, timeout_seconds: float) -> float:
        """Devuelve el menor entre ``timeout_seconds`` y el tiempo restante."""
        remaining = self.remaining()
        if remaining is None:
            return timeout_seconds
        return min(timeout_seconds, remaining)
