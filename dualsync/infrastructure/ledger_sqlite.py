from __future__ import annotations

import base64
import json
import logging
import sqlite3
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal
from threading import RLock
from typing import Any

from dualsync.core.errors import PersistenceError
from dualsync.domain.errors import (
    ConflictNotFoundError,
    DuplicateConflictError,
    InvalidResolutionError,
    InvalidTransitionError,
)
from dualsync.domain.models import (
    CLOSED_STATUSES,
    OPEN_STATUSES,
    UNRESOLVED_STATUSES,
    Conflict,
    ConflictStatus,
    ConflictType,
    Resolution,
    can_transition,
)
from dualsync.domain.timestamps import format_iso, parse_timestamp, utc_now
from dualsync.infrastructure.sqlite_uow import transaction

logger = logging.getLogger(__name__)

_COLUMNS = """
    id, table_name, record_id, conflict_type, primary_data, secondary_data, conflict_fields,
    detected_at, resolved_at, resolution, status, attempts, last_error, created_at, updated_at
"""


# Tipos sin equivalente JSON se guardan etiquetados y se recuperan sin pérdida.
TYPE_TAG = "__type__"


def _tagged(kind: str, value: Any) -> dict[str, Any]:
    return {TYPE_TAG: kind, "value": value}


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return _tagged("datetime", value.isoformat())
    if isinstance(value, date):
        return _tagged("date", value.isoformat())
    if isinstance(value, Decimal):
        return _tagged("decimal", str(value))
    if isinstance(value, (set, frozenset)):
        return _tagged("set", list(value))
    if isinstance(value, (bytes, bytearray)):
        return _tagged("bytes", base64.b64encode(bytes(value)).decode("ascii"))
    raise TypeError(f"Tipo no serializable en snapshot: {type(value).__name__}")


def _json_object_hook(obj: dict[str, Any]) -> Any:
    kind = obj.get(TYPE_TAG)
    if kind is None or set(obj) != {TYPE_TAG, "value"}:
        return obj
    value = obj["value"]
    if kind == "datetime":
        return datetime.fromisoformat(value)
    if kind == "date":
        return date.fromisoformat(value)
    if kind == "decimal":
        return Decimal(value)
    if kind == "set":
        return set(value)
    if kind == "bytes":
        return base64.b64decode(value)
    return obj


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=_json_default)


def _loads(raw: str | None, default: str) -> Any:
    return json.loads(raw or default, object_hook=_json_object_hook)


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class SQLiteConflictLedger:
    """Registro durable de conflictos en la tabla ``data_conflicts``.

    El índice único parcial ``idx_data_conflicts_open`` impide dos conflictos
    abiertos del mismo tipo para el mismo registro; ``store`` lo traduce a
    ``DuplicateConflictError``.
    """

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection
        self._lock = RLock()

    def store(self, conflict: Conflict) -> Conflict:
        now = format_iso(utc_now())
        with self._lock:
            try:
                with transaction(self._connection):
                    self._connection.execute(
                        f"INSERT INTO data_conflicts ({_COLUMNS}) VALUES ({_placeholders(15)})",
                        (
                            conflict.id,
                            conflict.table,
                            conflict.record_id,
                            conflict.conflict_type.value,
                            _dumps(conflict.primary_data),
                            _dumps(conflict.secondary_data),
                            _dumps(list(conflict.conflict_fields)),
                            format_iso(conflict.detected_at),
                            format_iso(conflict.resolved_at),
                            _dumps(conflict.resolution.to_payload()) if conflict.resolution else None,
                            conflict.status.value,
                            conflict.attempts,
                            conflict.last_error,
                            now,
                            now,
                        ),
                    )
            except sqlite3.IntegrityError as exc:
                existing = self._open_of_type(conflict.table, conflict.record_id, conflict.conflict_type)
                if existing is None:
                    raise PersistenceError(f"No se pudo guardar el conflicto {conflict.id}: {exc}") from exc
                raise DuplicateConflictError(
                    conflict.table,
                    conflict.record_id,
                    conflict.conflict_type.value,
                    existing.id,
                ) from exc
            except sqlite3.Error as exc:
                raise PersistenceError(f"No se pudo guardar el conflicto {conflict.id}: {exc}") from exc
        logger.debug("Conflicto %s guardado (%s/%s)", conflict.id, conflict.table, conflict.record_id)
        return conflict

    def update_status(
        self,
        conflict_id: str,
        status: ConflictStatus,
        resolution: Resolution | None = None,
        *,
        error: str | None = None,
        closed_at: datetime | None = None,
    ) -> Conflict:
        """Aplica una transición validada.

        ``superseded`` cierra el conflicto sin resolución: ``resolved_at`` toma
        ``closed_at`` (o ahora) y ``last_error`` guarda el motivo.
        """
        with self._lock:
            try:
                with transaction(self._connection):
                    row = self._fetch_row(conflict_id)
                    if row is None:
                        raise ConflictNotFoundError(conflict_id)
                    current = self._row_to_conflict(row)
                    if not can_transition(current.status, status):
                        raise InvalidTransitionError(conflict_id, current.status.value, status.value)

                    effective = resolution if resolution is not None else current.resolution
                    resolved_at = None
                    if status is ConflictStatus.RESOLVED:
                        if effective is None:
                            raise InvalidResolutionError(
                                f"No se puede cerrar {conflict_id} como resuelto sin resolución."
                            )
                        resolved_at = max(effective.resolved_at or utc_now(), current.detected_at)
                        effective = replace(effective, resolved_at=resolved_at)
                    elif status is ConflictStatus.SUPERSEDED:
                        resolved_at = max(closed_at or utc_now(), current.detected_at)

                    if status in (ConflictStatus.FAILED, ConflictStatus.SUPERSEDED):
                        last_error = error
                    elif status is ConflictStatus.RESOLVED:
                        last_error = None
                    else:
                        last_error = current.last_error
                    attempts = current.attempts + (1 if status is ConflictStatus.RESOLVING else 0)

                    self._connection.execute(
                        """
                        UPDATE data_conflicts
                        SET status = ?, resolution = ?, resolved_at = ?, attempts = ?, last_error = ?, updated_at = ?
                        WHERE id = ?
                        """,
                        (
                            status.value,
                            _dumps(effective.to_payload()) if effective is not None else None,
                            format_iso(resolved_at),
                            attempts,
                            last_error,
                            format_iso(utc_now()),
                            conflict_id,
                        ),
                    )
            except sqlite3.IntegrityError as exc:
                # Un failed no puede reabrirse si ya hay otro abierto del mismo tipo para el registro.
                existing = self._open_of_type(current.table, current.record_id, current.conflict_type)
                raise DuplicateConflictError(
                    current.table,
                    current.record_id,
                    current.conflict_type.value,
                    existing.id if existing else None,
                ) from exc
            except sqlite3.Error as exc:
                raise PersistenceError(f"No se pudo actualizar el conflicto {conflict_id}: {exc}") from exc
            updated = self.get(conflict_id)
        if updated is None:
            raise ConflictNotFoundError(conflict_id)
        logger.debug("Conflicto %s: %s -> %s", conflict_id, current.status.value, status.value)
        return updated

    def get(self, conflict_id: str) -> Conflict | None:
        with self._lock:
            row = self._fetch_row(conflict_id)
        return self._row_to_conflict(row) if row is not None else None

    def list_unresolved(self) -> list[Conflict]:
        return self._select_statuses(UNRESOLVED_STATUSES)

    def list_by_status(self, status: ConflictStatus) -> list[Conflict]:
        return self._select_statuses((status,))

    def list_all(self) -> list[Conflict]:
        return self._select(f"SELECT {_COLUMNS} FROM data_conflicts ORDER BY detected_at ASC, rowid ASC", ())

    def find_open(self, table: str, record_id: str) -> list[Conflict]:
        return self._select_for_record(table, record_id, OPEN_STATUSES)

    def find_unresolved(self, table: str, record_id: str) -> list[Conflict]:
        return self._select_for_record(table, record_id, UNRESOLVED_STATUSES)

    def _select_for_record(
        self, table: str, record_id: str, wanted: tuple[ConflictStatus, ...]
    ) -> list[Conflict]:
        statuses = tuple(status.value for status in wanted)
        return self._select(
            f"""
            SELECT {_COLUMNS} FROM data_conflicts
            WHERE table_name = ? AND record_id = ? AND status IN ({_placeholders(len(statuses))})
            ORDER BY detected_at DESC, rowid DESC
            """,
            (table, record_id, *statuses),
        )

    def purge_closed(self, older_than: datetime) -> int:
        """Borra conflictos cerrados (``resolved``/``superseded``) anteriores a ``older_than``.

        Los ``failed`` se conservan: siguen pendientes de reintento.
        """
        closed = tuple(status.value for status in CLOSED_STATUSES)
        with self._lock:
            try:
                with transaction(self._connection):
                    cursor = self._connection.execute(
                        f"DELETE FROM data_conflicts WHERE status IN ({_placeholders(len(closed))}) AND resolved_at < ?",
                        (*closed, format_iso(older_than)),
                    )
            except sqlite3.Error as exc:
                raise PersistenceError(f"No se pudieron purgar conflictos: {exc}") from exc
        return int(cursor.rowcount or 0)

    def _open_of_type(self, table: str, record_id: str, conflict_type: ConflictType) -> Conflict | None:
        for candidate in self.find_open(table, record_id):
            if candidate.conflict_type is conflict_type:
                return candidate
        return None

    def _select_statuses(self, statuses: tuple[ConflictStatus, ...]) -> list[Conflict]:
        values = tuple(status.value for status in statuses)
        return self._select(
            f"""
            SELECT {_COLUMNS} FROM data_conflicts
            WHERE status IN ({_placeholders(len(values))})
            ORDER BY detected_at DESC, rowid DESC
            """,
            values,
        )

    def _select(self, sql: str, params: tuple[Any, ...]) -> list[Conflict]:
        with self._lock:
            try:
                rows = self._connection.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise PersistenceError(f"No se pudo consultar el ledger: {exc}") from exc
        return [self._row_to_conflict(row) for row in rows]

    def _fetch_row(self, conflict_id: str) -> sqlite3.Row | None:
        try:
            return self._connection.execute(
                f"SELECT {_COLUMNS} FROM data_conflicts WHERE id = ?", (conflict_id,)
            ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"No se pudo leer el conflicto {conflict_id}: {exc}") from exc

    @staticmethod
    def _row_to_conflict(row: sqlite3.Row) -> Conflict:
        detected_at = parse_timestamp(row["detected_at"])
        if detected_at is None:
            raise PersistenceError(f"Conflicto {row['id']} con detected_at inválido: {row['detected_at']!r}")
        raw_resolution = row["resolution"]
        return Conflict(
            id=row["id"],
            table=row["table_name"],
            record_id=row["record_id"],
            conflict_type=ConflictType(row["conflict_type"]),
            primary_data=_loads(row["primary_data"], "{}"),
            secondary_data=_loads(row["secondary_data"], "{}"),
            conflict_fields=tuple(_loads(row["conflict_fields"], "[]")),
            detected_at=detected_at,
            status=ConflictStatus(row["status"]),
            resolution=Resolution.from_payload(_loads(raw_resolution, "{}")) if raw_resolution else None,
            resolved_at=parse_timestamp(row["resolved_at"]),
            attempts=int(row["attempts"] or 0),
            last_error=row["last_error"],
        )
