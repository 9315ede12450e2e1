from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
import uuid
from collections.abc import Iterator
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable

from dualsync.core.errors import LockTimeoutError, PersistenceError
from dualsync.domain.timestamps import format_iso, utc_now
from dualsync.infrastructure.sqlite_uow import transaction

logger = logging.getLogger(__name__)


def lock_key(table: str, record_id: str) -> str:
    return f"{table}/{record_id}"


@dataclass
class _LockEntry:
    lock: Lock = field(default_factory=Lock)
    refs: int = 0


class InProcessRecordLocks:
    """Arena de locks por ``(table, record_id)`` para un único proceso.

    Cada entrada lleva un contador de referencias y se elimina cuando nadie la
    usa, así que el mapa no crece con el número de registros tocados.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._entries: dict[str, _LockEntry] = {}

    @contextlib.contextmanager
    def hold(self, table: str, record_id: str, timeout_seconds: float) -> Iterator[None]:
        key = lock_key(table, record_id)
        with self._guard:
            entry = self._entries.setdefault(key, _LockEntry())
            entry.refs += 1
        try:
            if not entry.lock.acquire(timeout=max(0.0, timeout_seconds)):
                raise LockTimeoutError(key, timeout_seconds)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            with self._guard:
                entry.refs -= 1
                if entry.refs == 0:
                    self._entries.pop(key, None)

    def active_keys(self) -> list[str]:
        with self._guard:
            return sorted(self._entries)


class SQLiteLeaseLocks:
    """Lock por registro compartido entre procesos vía la tabla ``record_locks``.

    Cada ``hold`` usa un token de propietario propio; una fila caducada
    (``expires_at`` pasado) se considera libre y puede reclamarse.
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        *,
        lease_seconds: float = 30.0,
        poll_interval_seconds: float = 0.05,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._connection = connection
        self._lease_seconds = lease_seconds
        self._poll_interval_seconds = poll_interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._db_lock = Lock()

    @contextlib.contextmanager
    def hold(self, table: str, record_id: str, timeout_seconds: float) -> Iterator[None]:
        key = lock_key(table, record_id)
        owner = uuid.uuid4().hex
        give_up_at = self._clock() + max(0.0, timeout_seconds)
        while not self._try_acquire(key, owner):
            if self._clock() >= give_up_at:
                raise LockTimeoutError(key, timeout_seconds)
            self._sleep(self._poll_interval_seconds)
        try:
            yield
        finally:
            self._release(key, owner)

    def _try_acquire(self, key: str, owner: str) -> bool:
        now = self._clock()
        with self._db_lock:
            try:
                with transaction(self._connection):
                    row = self._connection.execute(
                        "SELECT owner, expires_at FROM record_locks WHERE lock_key = ?", (key,)
                    ).fetchone()
                    if row is not None and float(row["expires_at"]) > now:
                        return False
                    if row is not None:
                        logger.warning("Lease caducado de %s reclamado (propietario %s)", key, row["owner"])
                    self._connection.execute(
                        """
                        INSERT OR REPLACE INTO record_locks (lock_key, owner, acquired_at, expires_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (key, owner, format_iso(utc_now()), now + self._lease_seconds),
                    )
            except sqlite3.OperationalError as exc:
                if "locked" in str(exc).lower():
                    return False
                raise PersistenceError(f"No se pudo adquirir el lease de {key}: {exc}") from exc
        return True

    def _release(self, key: str, owner: str) -> None:
        with self._db_lock:
            try:
                with transaction(self._connection):
                    self._connection.execute(
                        "DELETE FROM record_locks WHERE lock_key = ? AND owner = ?", (key, owner)
                    )
            except sqlite3.Error as exc:
                raise PersistenceError(f"No se pudo liberar el lease de {key}: {exc}") from exc
