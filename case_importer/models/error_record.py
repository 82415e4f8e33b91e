from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from enum import Enum

"""ErrorRecord model for per-row failure logging.

Each failed row of an import is captured as one ErrorRecord. The same records
are kept on the ImportOutcome (so the job result can be inspected later) and
written as JSON Lines to the downloadable failure report.

row=-1 is accepted for workbook-level errors where no row applies.
"""

__all__ = [
    "FailureKind",
    "ErrorRecord",
]


class FailureKind(str, Enum):
    PARSE_ERROR = "PARSE_ERROR"
    REFERENCE_ERROR = "REFERENCE_ERROR"
    CONFLICT_ERROR = "CONFLICT_ERROR"
    CLIENT_ERROR = "CLIENT_ERROR"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"
    SYSTEM_ERROR = "SYSTEM_ERROR"


@dataclass(frozen=True)
class ErrorRecord:
    """Structured failure record.

    Attributes:
        timestamp: ISO8601 UTC timestamp with 'Z' suffix
        file: uploaded workbook name (or job id when no name is known)
        sheet: "cases" or "clients"
        row: workbook row number (header = 1). -1 when unknown
        error_type: FailureKind value
        message: human readable reason
    """
    timestamp: str
    file: str
    sheet: str
    row: int
    error_type: str
    message: str

    @staticmethod
    def create(file: str, sheet: str, row: int, error_type: FailureKind | str, message: str) -> ErrorRecord:
        ts = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        kind = error_type.value if isinstance(error_type, FailureKind) else str(error_type)
        return ErrorRecord(
            timestamp=ts,
            file=file,
            sheet=sheet,
            row=row,
            error_type=kind,
            message=message,
        )

    @staticmethod
    def from_dict(data: dict) -> ErrorRecord:
        return ErrorRecord(
            timestamp=str(data["timestamp"]),
            file=str(data["file"]),
            sheet=str(data["sheet"]),
            row=int(data["row"]),
            error_type=str(data["error_type"]),
            message=str(data["message"]),
        )

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json_line(self) -> str:
        # 追加キー禁止: dataclass -> dict のみ
        return json.dumps(asdict(self), ensure_ascii=False)
