from __future__ import annotations

import contextlib
import sqlite3
from collections.abc import Iterator
from pathlib import Path

from dualsync.core.deadline import Deadline

DB_FILENAME = "dualsync.db"
DB_RUNTIME_DIR = Path("logs") / "runtime"
DEFAULT_BUSY_TIMEOUT_MS = 30000
PROGRESS_HANDLER_STEPS = 1000


def _default_db_path() -> Path:
    root = Path(__file__).resolve().parents[2]
    return root / DB_RUNTIME_DIR / DB_FILENAME


def configure_sqlite_connection(connection: sqlite3.Connection, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA journal_mode=WAL")
    connection.execute("PRAGMA synchronous=NORMAL")
    connection.execute("PRAGMA foreign_keys=ON")
    connection.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")


def get_connection(
    db_path: Path | None = None,
    *,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    check_same_thread: bool = False,
) -> sqlite3.Connection:
    path = db_path or _default_db_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(
        path,
        check_same_thread=check_same_thread,
        timeout=max(1.0, busy_timeout_ms / 1000),
    )
    configure_sqlite_connection(connection, busy_timeout_ms=busy_timeout_ms)
    return connection


@contextlib.contextmanager
def deadline_guard(connection: sqlite3.Connection, deadline: Deadline | None) -> Iterator[None]:
    """Interrumpe la sentencia en curso cuando vence el plazo.

    SQLite llama al handler cada ``PROGRESS_HANDLER_STEPS`` instrucciones de la VM;
    un valor verdadero aborta con ``sqlite3.OperationalError: interrupted``.
    La espera por bloqueo (``busy_timeout``) se recorta al tiempo restante y se
    restaura al salir.
    """
    if deadline is None or (deadline.remaining() is None and not deadline.cancelled):
        yield
        return
    previous_ms = busy_timeout_ms(connection)
    connection.execute(f"PRAGMA busy_timeout={int(deadline.bounded(previous_ms / 1000) * 1000)}")
    connection.set_progress_handler(deadline.expired, PROGRESS_HANDLER_STEPS)
    try:
        yield
    finally:
        connection.set_progress_handler(None, 0)
        connection.execute(f"PRAGMA busy_timeout={previous_ms}")


def busy_timeout_ms(connection: sqlite3.Connection) -> int:
    row = connection.execute("PRAGMA busy_timeout").fetchone()
    return int(row[0])


def is_locked_error(error: Exception) -> bool:
    return isinstance(error, sqlite3.OperationalError) and "locked" in str(error).lower()


def is_interrupted_error(error: Exception) -> bool:
    return isinstance(error, sqlite3.OperationalError) and "interrupted" in str(error).lower()
