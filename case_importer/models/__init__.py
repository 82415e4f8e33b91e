"""Domain models for the firm case import pipeline.

This package contains the domain model classes shared by the analyzer, the
quota gate, the importer and the scheduler.
"""

from .case_row import CaseRow, CaseStatus, ClientRow
from .error_record import ErrorRecord, FailureKind
from .import_job import ImportJob, JobStatus
from .import_outcome import ImportOutcome, OutcomeAccumulator
from .quota import UNLIMITED, AdmissionDecision, ImmediateSummary, QuotaSnapshot

__all__ = [
    # Quota / admission
    "UNLIMITED",
    "QuotaSnapshot",
    "AdmissionDecision",
    "ImmediateSummary",
    # Rows
    "CaseRow",
    "CaseStatus",
    "ClientRow",
    # Results
    "ErrorRecord",
    "FailureKind",
    "ImportOutcome",
    "OutcomeAccumulator",
    "ImportJob",
    "JobStatus",
]
