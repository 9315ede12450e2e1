from __future__ import annotations

from dataclasses import dataclass

from dualsync.core.deadline import Deadline
from dualsync.domain.models import Record
from dualsync.domain.ports import PrimaryStore, SecondaryStore


@dataclass(frozen=True)
class SnapshotPair:
    primary: Record | None
    secondary: Record | None

    @property
    def primary_found(self) -> bool:
        return self.primary is not None

    @property
    def secondary_found(self) -> bool:
        return self.secondary is not None


class SnapshotReader:
    """Una lectura best-effort por store; los reintentos son cosa del servicio."""

    def __init__(self, primary: PrimaryStore, secondary: SecondaryStore) -> None:
        self._primary = primary
        self._secondary = secondary

    def read_primary(
        self, table: str, record_id: str, *, deadline: Deadline | None = None
    ) -> tuple[Record | None, bool]:
        return self._read(self._primary, table, record_id, deadline)

    def read_secondary(
        self, table: str, record_id: str, *, deadline: Deadline | None = None
    ) -> tuple[Record | None, bool]:
        return self._read(self._secondary, table, record_id, deadline)

    def read_both(self, table: str, record_id: str, *, deadline: Deadline | None = None) -> SnapshotPair:
        primary, _ = self.read_primary(table, record_id, deadline=deadline)
        secondary, _ = self.read_secondary(table, record_id, deadline=deadline)
        return SnapshotPair(primary=primary, secondary=secondary)

    @staticmethod
    def _read(
        store: PrimaryStore | SecondaryStore,
        table: str,
        record_id: str,
        deadline: Deadline | None,
    ) -> tuple[Record | None, bool]:
        if deadline is not None:
            deadline.check(f"{store.name}.read({table}/{record_id})")
        record = store.read(table, record_id, deadline=deadline)
        if record is None:
            return None, False
        return dict(record), True
