"""Local parser for booking-list spreadsheets (xlsx/xlsm via openpyxl, legacy xls via xlrd)."""

from __future__ import annotations

import io
import logging
from datetime import datetime
from typing import Any

import openpyxl
import xlrd

from booking_ingestor.core.exceptions import ExtractionError

logger = logging.getLogger(__name__)

HEADER_SCAN_ROWS = 15
OLE2_SIGNATURE = b"\xd0\xcf\x11\xe0"

# Header cell (lower-cased) -> wire field name understood by the extraction schema
COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "bookingCode": ("reise", "reisecode", "reise-nr", "booking", "booking code", "bookingcode", "buchungscode", "code"),
    "reisename": ("reisename", "tour", "trip"),
    "departureDate": ("von", "abflug", "abreise", "dep fra", "departure", "departure date"),
    "arrivalDate": ("ankunft", "arr tas", "arrival", "arrival date"),
    "returnArrivalDate": ("bis", "rückkehr", "arr fra", "return", "return date", "ende"),
    "pax": ("pax", "gebuchte pax", "teilnehmer"),
    "paxUzbekistan": ("pax usbekistan", "pax uzbekistan"),
    "paxTurkmenistan": ("pax turkmenistan",),
    "flightNumberDEP": ("flug hin", "hinflug", "flight dep", "flight out"),
    "flightNumberRETURN": ("flug rück", "rückflug", "flight return"),
}

_HEADER_LOOKUP = {alias: field for field, aliases in COLUMN_ALIASES.items() for alias in aliases}


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


class SpreadsheetParser:
    """Read every sheet, find the booking table, and emit one wire dict per booking row."""

    def parse(self, raw: bytes) -> list[dict[str, Any]]:
        """Parse workbook bytes into booking dicts keyed by wire field names.

        Rows without a booking code (blank lines, totals) are ignored.

        Raises:
            ExtractionError: Workbook unreadable or no booking table in any sheet
                (not retryable).
        """
        sheets = self._read_sheets(raw)

        bookings: list[dict[str, Any]] = []
        found_table = False
        for sheet_name, rows in sheets:
            header = self._find_header(rows)
            if header is None:
                logger.debug("Sheet %r has no booking table", sheet_name)
                continue
            found_table = True
            header_index, columns = header
            for row in rows[header_index + 1:]:
                record = self._row_to_record(row, columns)
                if record:
                    bookings.append(record)

        if not found_table:
            raise ExtractionError("No booking table found in spreadsheet", retryable=False)

        logger.debug("Spreadsheet yielded %d booking rows", len(bookings))
        return bookings

    def _read_sheets(self, raw: bytes) -> list[tuple[str, list[list[Any]]]]:
        try:
            if raw.startswith(OLE2_SIGNATURE):
                return self._read_xls(raw)
            return self._read_xlsx(raw)
        except ExtractionError:
            raise
        except Exception as e:
            raise ExtractionError(f"Cannot open spreadsheet: {e}", retryable=False) from e

    @staticmethod
    def _read_xlsx(raw: bytes) -> list[tuple[str, list[list[Any]]]]:
        workbook = openpyxl.load_workbook(io.BytesIO(raw), read_only=True, data_only=True)
        try:
            return [
                (ws.title, [list(row) for row in ws.iter_rows(values_only=True)])
                for ws in workbook.worksheets
            ]
        finally:
            workbook.close()

    @staticmethod
    def _read_xls(raw: bytes) -> list[tuple[str, list[list[Any]]]]:
        book = xlrd.open_workbook(file_contents=raw)
        sheets = []
        for sheet in book.sheets():
            rows = []
            for i in range(sheet.nrows):
                row: list[Any] = []
                for cell in sheet.row(i):
                    if cell.ctype == xlrd.XL_CELL_DATE:
                        row.append(xlrd.xldate_as_datetime(cell.value, book.datemode))
                    else:
                        row.append(cell.value)
                rows.append(row)
            sheets.append((sheet.name, rows))
        return sheets

    @staticmethod
    def _find_header(rows: list[list[Any]]) -> tuple[int, dict[str, int]] | None:
        for index, row in enumerate(rows[:HEADER_SCAN_ROWS]):
            columns: dict[str, int] = {}
            for col, cell in enumerate(row):
                field = _HEADER_LOOKUP.get(_cell_text(cell).lower())
                if field and field not in columns:
                    columns[field] = col
            if "bookingCode" in columns:
                return index, columns
        return None

    @staticmethod
    def _row_to_record(row: list[Any], columns: dict[str, int]) -> dict[str, Any] | None:
        def value(field: str) -> Any:
            col = columns.get(field)
            if col is None or col >= len(row):
                return None
            cell = row[col]
            if isinstance(cell, str) and not cell.strip():
                return None
            return cell

        code = _cell_text(value("bookingCode"))
        if not code:
            return None

        record: dict[str, Any] = {"bookingCode": code}
        for field in columns:
            if field == "bookingCode":
                continue
            cell = value(field)
            if cell is None:
                continue
            if isinstance(cell, datetime):
                record[field] = cell.date()
            elif field.startswith("pax"):
                record[field] = cell if isinstance(cell, (int, float)) else _cell_text(cell)
            else:
                record[field] = _cell_text(cell)
        return record
