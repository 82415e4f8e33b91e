from __future__ import annotations

"""Exception taxonomy for the case import pipeline.

Run-aborting errors:
- FormatError: workbook layout / header problems, raised before admission.
- ImportSystemError: storage or database unavailable while the worker runs.

Row-level errors (caught by the importer and recorded per row, never escalated):
- RowParseError, UnresolvedReferenceError, UniqueConflictError.

Over-quota rows are not an error: they are reported as skipped_count.
"""

__all__ = [
    "CaseImportError",
    "FormatError",
    "RowParseError",
    "UnresolvedReferenceError",
    "UniqueConflictError",
    "ImportSystemError",
    "SubscriptionInactiveError",
    "PermissionDeniedError",
    "JobNotFoundError",
]


class CaseImportError(Exception):
    """Base class of every error raised by this package."""


class FormatError(CaseImportError):
    """Workbook cannot be read or its header does not match the column schema."""


class RowParseError(CaseImportError):
    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field


class UnresolvedReferenceError(CaseImportError):
    def __init__(self, kind: str, token: str, detail: str | None = None) -> None:
        msg = f"{kind} '{token}' not found"
        if detail:
            msg += f" {detail}"
        super().__init__(msg)
        self.kind = kind
        self.token = token


class UniqueConflictError(CaseImportError):
    """A tenant uniqueness constraint (case number / filing number) was violated."""

    def __init__(self, constraint: str, message: str = "") -> None:
        super().__init__(message or f"unique constraint violated: {constraint}")
        self.constraint = constraint


class ImportSystemError(CaseImportError):
    """Infrastructure failure; aborts the running import.

    When raised out of a running import, ``partial_outcome`` holds what was
    done before the abort (an ImportOutcome).
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.partial_outcome = None


class SubscriptionInactiveError(CaseImportError):
    """Tenant has no active subscription (expired, cancelled or trial over)."""


class PermissionDeniedError(CaseImportError):
    pass


class JobNotFoundError(CaseImportError):
    pass
