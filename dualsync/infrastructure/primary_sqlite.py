from __future__ import annotations

import json
import logging
import re
import sqlite3
from threading import RLock
from typing import Any, Mapping

from dualsync.core.deadline import Deadline
from dualsync.core.errors import DeadlineExceededError
from dualsync.domain.errors import StoreUnavailableError, StoreWriteError
from dualsync.domain.models import Record
from dualsync.infrastructure.db import deadline_guard, is_interrupted_error, is_locked_error
from dualsync.infrastructure.sqlite_uow import transaction

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def quote_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise StoreWriteError("primary", f"Identificador SQL no válido: {name!r}.")
    return f'"{name}"'


class SQLitePrimaryStore:
    """Store primario relacional: una tabla SQLite por tabla lógica, clave ``id``.

    ``json_fields`` indica, por tabla, columnas que guardan JSON serializado y
    deben devolverse como estructuras al comparar con el secundario.
    """

    name = "primary"

    def __init__(
        self,
        connection: sqlite3.Connection,
        *,
        id_column: str = "id",
        json_fields: Mapping[str, tuple[str, ...]] | None = None,
    ) -> None:
        self._connection = connection
        self._id_column = quote_identifier(id_column)
        self._json_fields = {table: tuple(fields) for table, fields in (json_fields or {}).items()}
        self._lock = RLock()

    def read(self, table: str, record_id: str, *, deadline: Deadline | None = None) -> Record | None:
        sql = f"SELECT * FROM {quote_identifier(table)} WHERE {self._id_column} = ?"
        with self._lock, deadline_guard(self._connection, deadline):
            try:
                row = self._connection.execute(sql, (record_id,)).fetchone()
            except sqlite3.Error as exc:
                raise self._map_error(exc, f"read({table}/{record_id})", transient_default=True) from exc
        if row is None:
            return None
        return self._decode(table, dict(row))

    def write(self, table: str, record_id: str, fields: Record, *, deadline: Deadline | None = None) -> None:
        id_name = self._id_column.strip('"')
        payload = {name: value for name, value in fields.items() if name != id_name}
        encoded = self._encode(table, payload)
        quoted_table = quote_identifier(table)
        with self._lock, deadline_guard(self._connection, deadline):
            try:
                with transaction(self._connection):
                    updated = 0
                    if encoded:
                        assignments = ", ".join(f"{quote_identifier(name)} = ?" for name in encoded)
                        cursor = self._connection.execute(
                            f"UPDATE {quoted_table} SET {assignments} WHERE {self._id_column} = ?",
                            (*encoded.values(), record_id),
                        )
                        updated = cursor.rowcount
                    else:
                        exists = self._connection.execute(
                            f"SELECT 1 FROM {quoted_table} WHERE {self._id_column} = ?", (record_id,)
                        ).fetchone()
                        updated = 1 if exists else 0
                    if not updated:
                        columns = [self._id_column, *(quote_identifier(name) for name in encoded)]
                        placeholders = ", ".join("?" for _ in columns)
                        self._connection.execute(
                            f"INSERT INTO {quoted_table} ({', '.join(columns)}) VALUES ({placeholders})",
                            (record_id, *encoded.values()),
                        )
            except sqlite3.Error as exc:
                raise self._map_error(exc, f"write({table}/{record_id})", transient_default=False) from exc
        logger.debug("Primario: escrito %s/%s (%s campos)", table, record_id, len(encoded))

    def delete(self, table: str, record_id: str, *, deadline: Deadline | None = None) -> None:
        sql = f"DELETE FROM {quote_identifier(table)} WHERE {self._id_column} = ?"
        with self._lock, deadline_guard(self._connection, deadline):
            try:
                with transaction(self._connection):
                    self._connection.execute(sql, (record_id,))
            except sqlite3.Error as exc:
                raise self._map_error(exc, f"delete({table}/{record_id})", transient_default=False) from exc
        logger.debug("Primario: borrado %s/%s", table, record_id)

    def _encode(self, table: str, fields: Record) -> dict[str, Any]:
        json_columns = self._json_fields.get(table, ())
        encoded: dict[str, Any] = {}
        for name, value in fields.items():
            if name in json_columns and value is not None:
                encoded[name] = json.dumps(value, ensure_ascii=False)
            else:
                encoded[name] = value
        return encoded

    def _decode(self, table: str, row: dict[str, Any]) -> Record:
        for name in self._json_fields.get(table, ()):
            raw = row.get(name)
            if isinstance(raw, str):
                try:
                    row[name] = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Columna JSON %s.%s con contenido no válido", table, name)
        return row

    @staticmethod
    def _map_error(exc: sqlite3.Error, operation: str, *, transient_default: bool) -> Exception:
        if is_interrupted_error(exc):
            return DeadlineExceededError(f"Plazo agotado durante primary.{operation}.")
        if is_locked_error(exc) or (transient_default and isinstance(exc, sqlite3.OperationalError)):
            return StoreUnavailableError("primary", f"{operation}: {exc}")
        return StoreWriteError("primary", f"{operation}: {exc}")
