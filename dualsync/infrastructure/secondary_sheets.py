from __future__ import annotations

import logging
from pathlib import Path
from threading import RLock
from typing import Any, Callable, TypeVar

import gspread
from gspread.utils import rowcol_to_a1

from dualsync.core.deadline import Deadline
from dualsync.domain.models import Record
from dualsync.infrastructure.sheets_cells import ensure_headers, merge_row, row_to_record
from dualsync.infrastructure.sheets_errors import map_gspread_exception

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_NEW_WORKSHEET_ROWS = 100


class SheetsSecondaryStore:
    """Store secundario en Google Sheets: una hoja por tabla, fila 1 = cabeceras.

    Las celdas se escriben con ``value_input_option="RAW"`` codificadas en JSON
    (ver ``sheets_cells``). No reintenta: los errores de cuota se elevan como
    ``StoreUnavailableError`` y el reintento lo decide el servicio.
    """

    name = "secondary"

    def __init__(self, spreadsheet: Any, *, id_column: str = "id") -> None:
        self._spreadsheet = spreadsheet
        self._id_column = id_column
        self._worksheet_cache: dict[str, Any] = {}
        self._lock = RLock()

    @classmethod
    def connect(cls, credentials_path: Path, spreadsheet_id: str, *, id_column: str = "id") -> "SheetsSecondaryStore":
        logger.info("Conectando a Google Sheets (spreadsheet %s)", spreadsheet_id)
        try:
            client = gspread.service_account(filename=str(credentials_path))
            spreadsheet = client.open_by_key(spreadsheet_id)
        except Exception as exc:  # noqa: BLE001
            raise map_gspread_exception(exc, "open_spreadsheet") from exc
        return cls(spreadsheet, id_column=id_column)

    def read(self, table: str, record_id: str, *, deadline: Deadline | None = None) -> Record | None:
        with self._lock:
            worksheet = self._worksheet(table, create=False, deadline=deadline)
            if worksheet is None:
                return None
            values = self._call(f"get_all_values({table})", worksheet.get_all_values, deadline)
        if not values:
            return None
        headers = [str(header) for header in values[0]]
        row_index = self._find_row(headers, values, record_id)
        if row_index is None:
            return None
        return row_to_record(headers, values[row_index - 1])

    def write(self, table: str, record_id: str, fields: Record, *, deadline: Deadline | None = None) -> None:
        payload = dict(fields)
        payload[self._id_column] = record_id
        with self._lock:
            worksheet = self._worksheet(table, create=True, deadline=deadline)
            values = self._call(f"get_all_values({table})", worksheet.get_all_values, deadline)
            current_headers = [str(header) for header in values[0]] if values else []
            headers = ensure_headers(current_headers, payload, self._id_column)
            if headers != current_headers:
                self._write_headers(worksheet, table, headers, deadline)

            row_index = self._find_row(current_headers, values, record_id) if current_headers else None
            if row_index is not None:
                row = merge_row(headers, payload, values[row_index - 1])
                self._call(
                    f"update({table}!{row_index})",
                    lambda: worksheet.update(
                        range_name=rowcol_to_a1(row_index, 1),
                        values=[row],
                        value_input_option="RAW",
                    ),
                    deadline,
                )
            else:
                row = merge_row(headers, payload)
                self._call(
                    f"append_row({table})",
                    lambda: worksheet.append_row(row, value_input_option="RAW"),
                    deadline,
                )
        logger.debug("Sheets: escrito %s/%s (%s campos)", table, record_id, len(fields))

    def delete(self, table: str, record_id: str, *, deadline: Deadline | None = None) -> None:
        with self._lock:
            worksheet = self._worksheet(table, create=False, deadline=deadline)
            if worksheet is None:
                return
            values = self._call(f"get_all_values({table})", worksheet.get_all_values, deadline)
            if not values:
                return
            headers = [str(header) for header in values[0]]
            row_index = self._find_row(headers, values, record_id)
            if row_index is None:
                return
            self._call(f"delete_rows({table}!{row_index})", lambda: worksheet.delete_rows(row_index), deadline)
        logger.debug("Sheets: borrado %s/%s", table, record_id)

    def _find_row(self, headers: list[str], values: list[list[Any]], record_id: str) -> int | None:
        """Índice 1-based de la fila del registro (la fila 1 son cabeceras)."""
        if self._id_column not in headers:
            return None
        position = headers.index(self._id_column)
        for offset, row in enumerate(values[1:], start=2):
            if position >= len(row):
                continue
            cell = row_to_record([self._id_column], [row[position]]).get(self._id_column)
            if cell is not None and str(cell) == record_id:
                return offset
        return None

    def _write_headers(self, worksheet: Any, table: str, headers: list[str], deadline: Deadline | None) -> None:
        col_count = int(getattr(worksheet, "col_count", len(headers)) or 0)
        if len(headers) > col_count:
            self._call(f"add_cols({table})", lambda: worksheet.add_cols(len(headers) - col_count), deadline)
        self._call(
            f"update({table}!A1)",
            lambda: worksheet.update(range_name="A1", values=[headers], value_input_option="RAW"),
            deadline,
        )

    def _worksheet(self, table: str, *, create: bool, deadline: Deadline | None) -> Any | None:
        if table in self._worksheet_cache:
            return self._worksheet_cache[table]
        if deadline is not None:
            deadline.check(f"secondary.worksheet({table})")
        try:
            worksheet = self._spreadsheet.worksheet(table)
        except gspread.exceptions.WorksheetNotFound:
            if not create:
                return None
            worksheet = self._call(
                f"add_worksheet({table})",
                lambda: self._spreadsheet.add_worksheet(title=table, rows=DEFAULT_NEW_WORKSHEET_ROWS, cols=1),
                deadline,
            )
        except Exception as exc:  # noqa: BLE001
            raise map_gspread_exception(exc, f"worksheet({table})") from exc
        self._worksheet_cache[table] = worksheet
        return worksheet

    @staticmethod
    def _call(operation: str, call: Callable[[], T], deadline: Deadline | None) -> T:
        if deadline is not None:
            deadline.check(f"secondary.{operation}")
        try:
            return call()
        except Exception as exc:  # noqa: BLE001
            raise map_gspread_exception(exc, operation) from exc
