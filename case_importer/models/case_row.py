from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum

"""Row models for the case import workbook.

CaseRow and ClientRow are ephemeral: one instance per spreadsheet data row,
created and discarded inside the worker. They are never persisted.
"""

__all__ = [
    "CaseStatus",
    "ClientRow",
    "CaseRow",
]


class CaseStatus(Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    ON_HOLD = "ON_HOLD"


@dataclass(frozen=True)
class ClientRow:
    """One row of the Clients sheet."""
    row_number: int  # workbook row number (header = 1, first data row = 2)
    email: str
    name: str = ""
    phone: str | None = None
    document_type: str | None = None  # choice code or label, upper-cased
    document_number: str | None = None


@dataclass(frozen=True)
class CaseRow:
    """One row of the Cases sheet after field parsing.

    References (client, lawyer, classification) are still raw tokens here;
    they are resolved against the tenant afterwards.
    """
    row_number: int
    client_email: str
    title: str
    description: str
    status: CaseStatus
    lawyer_email: str | None = None
    legacy_number: str | None = None
    filing_number: str | None = None
    domain: str | None = None
    branch: str | None = None
    subtype: str | None = None
    opened_date: date | None = None
    closed_date: date | None = None

    @property
    def is_historical(self) -> bool:
        return self.status is CaseStatus.CLOSED
