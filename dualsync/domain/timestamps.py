from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

DEFAULT_TIMESTAMP_FIELDS: tuple[str, ...] = ("updated_at", "updatedAt", "created_at", "createdAt")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Normaliza a ``datetime`` UTC con zona horaria.

    Acepta ``datetime`` (las naive se asumen UTC), epoch en segundos o
    milisegundos y texto ISO-8601 con o sin sufijo ``Z``. Lo que no se pueda
    interpretar devuelve ``None`` en lugar de fallar.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        seconds = float(value)
        # Epoch en milisegundos (el store secundario los guarda así a veces).
        if abs(seconds) > 1e11:
            seconds = seconds / 1000
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def format_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    aware = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return aware.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def extract_modified_at(
    record: Mapping[str, Any] | None,
    fields: Iterable[str] = DEFAULT_TIMESTAMP_FIELDS,
) -> tuple[str, datetime] | None:
    """Devuelve el primer campo de modificación presente y parseable."""
    if not record:
        return None
    for name in fields:
        if name not in record:
            continue
        parsed = parse_timestamp(record[name])
        if parsed is not None:
            return name, parsed
    return None
