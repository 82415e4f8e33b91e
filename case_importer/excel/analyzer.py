from __future__ import annotations

import logging
from dataclasses import dataclass

from case_importer.excel.reader import (
    CASE_COLUMNS,
    CASES_SHEET_INDEX,
    CLIENT_COLUMNS,
    CLIENTS_SHEET_INDEX,
    RawRow,
    SheetData,
    normalize_sheet,
    read_workbook,
)

"""Read-only analysis pass over an uploaded workbook.

The analyzer validates the layout and counts candidate case rows: every
non-blank data row of the Cases sheet. A row missing its client email is
still a candidate; the importer records it as a parse error. It has no
side effects and is safe to call speculatively; it never consumes the
caller's bytes, so the same upload can be analyzed and imported.
"""

__all__ = [
    "WorkbookContent",
    "FileAnalyzer",
    "load_workbook_content",
    "candidate_case_rows",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkbookContent:
    clients: SheetData
    cases: SheetData


def candidate_case_rows(sheet: SheetData) -> list[RawRow]:
    """Case rows that count toward the import (blank rows are already dropped)."""
    return list(sheet.rows)


def load_workbook_content(data: bytes) -> WorkbookContent:
    """Parse and validate the Clients and Cases sheets. Raises FormatError."""
    sheets = read_workbook(data)
    clients_name, clients_df = sheets[CLIENTS_SHEET_INDEX]
    cases_name, cases_df = sheets[CASES_SHEET_INDEX]
    return WorkbookContent(
        clients=normalize_sheet(clients_df, clients_name, CLIENT_COLUMNS),
        cases=normalize_sheet(cases_df, cases_name, CASE_COLUMNS),
    )


class FileAnalyzer:
    def analyze(self, data: bytes) -> int:
        """Count the candidate case rows of a workbook.

        Raises:
            FormatError: unreadable workbook, missing sheets or incompatible header
        """
        content = load_workbook_content(data)
        total = len(candidate_case_rows(content.cases))
        logger.debug(
            "analyzed workbook: cases=%d clients=%d", total, len(content.clients.rows)
        )
        return total
