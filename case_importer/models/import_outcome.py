from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .error_record import ErrorRecord, FailureKind

"""ImportOutcome: the unit of truth of one finished (or aborted) import run."""

__all__ = [
    "ImportOutcome",
    "OutcomeAccumulator",
]


@dataclass(frozen=True)
class ImportOutcome:
    created_count: int
    attempted_count: int
    row_failures: tuple[ErrorRecord, ...] = ()
    client_failures: tuple[ErrorRecord, ...] = ()
    created_case_numbers: tuple[str, ...] = ()
    clients_created: int = 0
    elapsed_seconds: float = 0.0

    @property
    def failed_count(self) -> int:
        return len(self.row_failures)

    def failures_of(self, kind: FailureKind) -> list[ErrorRecord]:
        return [f for f in self.row_failures if f.error_type == kind.value]

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_count": self.created_count,
            "attempted_count": self.attempted_count,
            "clients_created": self.clients_created,
            "elapsed_seconds": self.elapsed_seconds,
            "created_case_numbers": list(self.created_case_numbers),
            "row_failures": [f.to_dict() for f in self.row_failures],
            "client_failures": [f.to_dict() for f in self.client_failures],
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ImportOutcome:
        return ImportOutcome(
            created_count=int(data.get("created_count", 0)),
            attempted_count=int(data.get("attempted_count", 0)),
            clients_created=int(data.get("clients_created", 0)),
            elapsed_seconds=float(data.get("elapsed_seconds", 0.0)),
            created_case_numbers=tuple(data.get("created_case_numbers", ())),
            row_failures=tuple(ErrorRecord.from_dict(d) for d in data.get("row_failures", ())),
            client_failures=tuple(ErrorRecord.from_dict(d) for d in data.get("client_failures", ())),
        )


@dataclass
class OutcomeAccumulator:
    """Mutable counterpart used by the worker while rows are processed."""
    file: str
    created_count: int = 0
    attempted_count: int = 0
    clients_created: int = 0
    row_failures: list[ErrorRecord] = field(default_factory=list)
    client_failures: list[ErrorRecord] = field(default_factory=list)
    created_case_numbers: list[str] = field(default_factory=list)

    def fail_row(self, row: int, kind: FailureKind, message: str) -> ErrorRecord:
        rec = ErrorRecord.create(self.file, "cases", row, kind, message)
        self.row_failures.append(rec)
        return rec

    def fail_client(self, row: int, message: str) -> ErrorRecord:
        rec = ErrorRecord.create(self.file, "clients", row, FailureKind.CLIENT_ERROR, message)
        self.client_failures.append(rec)
        return rec

    def created(self, case_number: str) -> None:
        self.created_count += 1
        self.created_case_numbers.append(case_number)

    def freeze(self, elapsed_seconds: float = 0.0) -> ImportOutcome:
        return ImportOutcome(
            created_count=self.created_count,
            attempted_count=self.attempted_count,
            row_failures=tuple(self.row_failures),
            client_failures=tuple(self.client_failures),
            created_case_numbers=tuple(self.created_case_numbers),
            clients_created=self.clients_created,
            elapsed_seconds=elapsed_seconds,
        )
