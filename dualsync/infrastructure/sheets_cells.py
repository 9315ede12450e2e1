from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from dualsync.domain.timestamps import format_iso


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_iso(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def encode_cell(value: Any) -> str:
    """Celda vacía para ``None``; el resto como JSON para conservar el tipo."""
    if value is None:
        return ""
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=_json_default)


def decode_cell(raw: Any) -> Any:
    """Inversa de ``encode_cell``; texto escrito a mano se devuelve tal cual."""
    if raw is None:
        return None
    if not isinstance(raw, str):
        return raw
    if raw == "":
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def row_to_record(headers: list[str], row: list[Any]) -> dict[str, Any]:
    record: dict[str, Any] = {}
    for position, header in enumerate(headers):
        if not header:
            continue
        raw = row[position] if position < len(row) else ""
        record[header] = decode_cell(raw)
    return record


def merge_row(headers: list[str], fields: dict[str, Any], current: list[Any] | None = None) -> list[str]:
    """Fila completa en el orden de ``headers``; los campos no dados conservan su celda."""
    existing = list(current or [])
    values: list[str] = []
    for position, header in enumerate(headers):
        if header in fields:
            values.append(encode_cell(fields[header]))
        elif position < len(existing):
            values.append(str(existing[position]))
        else:
            values.append("")
    return values


def ensure_headers(current: list[str], fields: dict[str, Any], id_column: str) -> list[str]:
    headers = list(current)
    if id_column not in headers:
        headers.append(id_column)
    for name in fields:
        if name not in headers:
            headers.append(name)
    return headers
