from __future__ import annotations

import io
import zipfile
from dataclasses import dataclass
from typing import Any

import pandas as pd
from openpyxl.utils.exceptions import InvalidFileException

from case_importer.errors import FormatError
from case_importer.i18n.catalog import header_labels

"""Workbook reader.

The case import workbook has three sheets identified by position:
Instructions (ignored), Clients and Cases. On the data sheets the 1st row is
the header and data starts on the 2nd row. Header cells are matched against
the canonical column key or any localized label, ignoring case, surrounding
whitespace and the trailing ``*`` required marker.

Uploads are always read from an in-memory copy (io.BytesIO) so the caller's
bytes can be read again by the next pass.
"""

__all__ = [
    "CLIENT_COLUMNS",
    "CASE_COLUMNS",
    "CLIENTS_SHEET_INDEX",
    "CASES_SHEET_INDEX",
    "MissingColumnsError",
    "SheetData",
    "RawRow",
    "read_workbook",
    "normalize_sheet",
    "cell_text",
]

CLIENTS_SHEET_INDEX = 1
CASES_SHEET_INDEX = 2
MIN_SHEETS = 3

# column key -> required
CLIENT_COLUMNS: dict[str, bool] = {
    "email": True,
    "name": False,
    "phone": False,
    "document_type": False,
    "document_number": False,
}

CASE_COLUMNS: dict[str, bool] = {
    "client_email": True,
    "lawyer_email": False,
    "legacy_number": False,
    "filing_number": False,
    "title": True,
    "description": True,
    "domain": False,
    "branch": False,
    "subtype": False,
    "status": True,
    "opened_date": False,
    "closed_date": False,
}


class MissingColumnsError(FormatError):
    """Raised when required columns are missing in a sheet header."""


@dataclass(frozen=True)
class RawRow:
    row_number: int  # workbook row number, header = 1
    values: dict[str, Any]  # column key -> cell value (None when blank)


@dataclass
class SheetData:
    sheet_name: str
    columns: list[str | None]  # column key per position, None for unknown headers
    rows: list[RawRow]


def read_workbook(data: bytes) -> list[tuple[str, pd.DataFrame]]:
    """Read every sheet of an xlsx upload, in workbook order.

    Raises FormatError when the bytes are not a readable workbook or the
    workbook has fewer than three sheets.
    """
    if not data:
        raise FormatError("empty upload")
    try:
        xls = pd.ExcelFile(io.BytesIO(data), engine="openpyxl")
        sheets = [
            (str(name), xls.parse(name, header=None, dtype=object, keep_default_na=False, na_values=[""]))
            for name in xls.sheet_names
        ]
    except (ValueError, KeyError, OSError, zipfile.BadZipFile, InvalidFileException) as e:
        raise FormatError(f"failed to open excel file: {e}") from e
    if len(sheets) < MIN_SHEETS:
        raise FormatError("invalid excel format: missing sheets")
    return sheets


def _header_key(cell: Any, schema: dict[str, bool]) -> str | None:
    if cell is None or (not isinstance(cell, str) and pd.isna(cell)):
        return None
    label = str(cell).strip().rstrip("*").strip().lower()
    for key in schema:
        if label in header_labels(key):
            return key
    return None


def cell_text(value: Any) -> str | None:
    """Cell value as stripped text; None for blank cells.

    Integral floats (``12345.0``) lose their decimal part, since spreadsheets
    store numeric-looking identifiers such as phones and filing numbers that way.
    """
    if value is None:
        return None
    if not isinstance(value, str) and pd.isna(value):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def normalize_sheet(df: pd.DataFrame, sheet_name: str, schema: dict[str, bool]) -> SheetData:
    """Apply the first row as header and collect non-blank data rows.

    Steps:
    1. Validate a header row exists
    2. Map header cells to column keys
    3. Validate required columns are present
    4. Remaining rows become RawRow, skipping rows where every cell is blank
    """
    if df.shape[0] < 1:
        raise FormatError(f"sheet '{sheet_name}' lacks a header row")
    columns = [_header_key(c, schema) for c in df.iloc[0].tolist()]

    required = {k for k, req in schema.items() if req}
    missing = required - {c for c in columns if c}
    if missing:
        raise MissingColumnsError(f"sheet '{sheet_name}' missing columns: {sorted(missing)}")

    rows: list[RawRow] = []
    for idx in range(1, df.shape[0]):
        raw = df.iloc[idx].tolist()
        if all(cell_text(v) is None for v in raw):
            continue
        values: dict[str, Any] = {}
        for key, val in zip(columns, raw, strict=False):
            if key is None or key in values:
                continue
            values[key] = None if cell_text(val) is None else val
        rows.append(RawRow(row_number=idx + 1, values=values))
    return SheetData(sheet_name=sheet_name, columns=columns, rows=rows)
