from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

from case_importer.errors import RowParseError
from case_importer.excel.reader import RawRow, cell_text
from case_importer.models.case_row import CaseRow, CaseStatus, ClientRow

"""Field-level parsing of workbook rows into ClientRow / CaseRow.

Only mechanics live here (required cells present, dates readable, status one
of the known values). Business validation of field formats is left to the
rest of the application.
"""

__all__ = [
    "parse_client_row",
    "parse_case_row",
    "parse_date",
]

DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d")
_STATUS_SEP = re.compile(r"[\s\-]+")


def _required(row: RawRow, key: str) -> str:
    text = cell_text(row.values.get(key))
    if text is None:
        raise RowParseError(key, "required value is empty")
    return text


def _optional(row: RawRow, key: str) -> str | None:
    return cell_text(row.values.get(key))


def parse_date(value: Any, field: str) -> date | None:
    """Excel date cell or ISO text -> date. Blank -> None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = cell_text(value)
    if text is None:
        return None
    # "2024-01-31 00:00:00" (date exported as text)
    text = text.split(" ", 1)[0].split("T", 1)[0]
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise RowParseError(field, f"invalid date '{text}' (expected YYYY-MM-DD)")


def _parse_status(text: str) -> CaseStatus:
    key = _STATUS_SEP.sub("_", text.strip()).upper()
    try:
        return CaseStatus(key)
    except ValueError:
        raise RowParseError("status", f"unknown status '{text}'") from None


def parse_client_row(row: RawRow) -> ClientRow:
    email = _required(row, "email")
    doc_type = _optional(row, "document_type")
    return ClientRow(
        row_number=row.row_number,
        email=email.lower(),
        name=_optional(row, "name") or "",
        phone=_optional(row, "phone"),
        document_type=doc_type.upper() if doc_type else None,
        document_number=_optional(row, "document_number"),
    )


def parse_case_row(row: RawRow) -> CaseRow:
    """Parse one Cases-sheet row. Raises RowParseError on the first bad field."""
    client_email = _required(row, "client_email").lower()
    title = _required(row, "title")
    description = _required(row, "description")
    status = _parse_status(_required(row, "status"))
    lawyer = _optional(row, "lawyer_email")

    opened = parse_date(row.values.get("opened_date"), "opened_date")
    closed = None
    if status is CaseStatus.CLOSED:
        closed = parse_date(row.values.get("closed_date"), "closed_date")

    return CaseRow(
        row_number=row.row_number,
        client_email=client_email,
        title=title,
        description=description,
        status=status,
        lawyer_email=lawyer.lower() if lawyer else None,
        legacy_number=_optional(row, "legacy_number"),
        filing_number=_optional(row, "filing_number"),
        domain=_optional(row, "domain"),
        branch=_optional(row, "branch"),
        subtype=_optional(row, "subtype"),
        opened_date=opened,
        closed_date=closed,
    )
