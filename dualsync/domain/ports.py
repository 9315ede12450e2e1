from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Protocol

from dualsync.core.deadline import Deadline
from dualsync.domain.models import Conflict, ConflictStatus, Record, Resolution


class RecordStore(Protocol):
    """Contrato get/put de un store (primario o secundario).

    ``read`` devuelve ``None`` cuando el registro no existe; eso no es un error.
    ``write`` es un overwrite de los campos dados (``None`` borra el valor) y crea
    el registro si no existe. ``delete`` sobre un registro ausente no hace nada.
    """

    name: str

    def read(self, table: str, record_id: str, *, deadline: Deadline | None = None) -> Record | None:
        ...

    def write(self, table: str, record_id: str, fields: Record, *, deadline: Deadline | None = None) -> None:
        ...

    def delete(self, table: str, record_id: str, *, deadline: Deadline | None = None) -> None:
        ...


class PrimaryStore(RecordStore, Protocol):
    pass


class SecondaryStore(RecordStore, Protocol):
    pass


class RuleProvider(Protocol):
    def fetch_rules(self) -> list[dict[str, Any]]:
        ...


class ConflictLedger(Protocol):
    def store(self, conflict: Conflict) -> Conflict:
        ...

    def update_status(
        self,
        conflict_id: str,
        status: ConflictStatus,
        resolution: Resolution | None = None,
        *,
        error: str | None = None,
        closed_at: datetime | None = None,
    ) -> Conflict:
        ...

    def get(self, conflict_id: str) -> Conflict | None:
        ...

    def list_unresolved(self) -> list[Conflict]:
        ...

    def list_by_status(self, status: ConflictStatus) -> list[Conflict]:
        ...

    def list_all(self) -> list[Conflict]:
        ...

    def find_open(self, table: str, record_id: str) -> list[Conflict]:
        ...

    def find_unresolved(self, table: str, record_id: str) -> list[Conflict]:
        ...

    def purge_closed(self, older_than: datetime) -> int:
        ...


class RecordLockProvider(Protocol):
    def hold(self, table: str, record_id: str, timeout_seconds: float) -> AbstractContextManager[None]:
        ...
