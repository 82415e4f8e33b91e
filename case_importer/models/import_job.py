from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum

from .import_outcome import ImportOutcome

"""ImportJob domain model and JobStatus enum.

An ImportJob is the persisted record of one import request. It tracks the
request through its lifecycle and finally holds the ImportOutcome, so the
uploader (or an operator) can inspect the result after the synchronous
summary has been returned.
"""

__all__ = [
    "JobStatus",
    "ImportJob",
]


class JobStatus(Enum):
    """Lifecycle of an import request.

    State transitions: pending → analyzing → admitted → running → (completed | failed)

    Every non-terminal state may also go directly to failed (format error,
    launch failure, worker crash recovery).
    """
    PENDING = "pending"
    ANALYZING = "analyzing"
    ADMITTED = "admitted"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.ANALYZING, JobStatus.ADMITTED, JobStatus.FAILED},
    JobStatus.ANALYZING: {JobStatus.ADMITTED, JobStatus.FAILED},
    JobStatus.ADMITTED: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class ImportJob:
    """Persisted record of one import request."""
    id: str
    tenant_id: str
    initiator_id: str
    file_name: str
    status: JobStatus = JobStatus.PENDING
    total_rows: int = 0
    admitted_count: int = 0
    skipped_count: int = 0
    outcome: ImportOutcome | None = None
    error: str | None = None  # failure reason summary
    reservation_id: str | None = None  # quota reservation held for the admitted rows
    owner: str | None = None  # scheduler instance running the worker
    heartbeat_at: datetime | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def last_seen(self) -> datetime | None:
        """Latest sign of life of the job record."""
        return self.heartbeat_at or self.started_at or self.created_at

    @property
    def partial(self) -> bool:
        """Admitted only a prefix of the file (over quota)."""
        return self.skipped_count > 0

    def transition(self, status: JobStatus, **changes) -> ImportJob:
        if status not in _TRANSITIONS[self.status]:
            raise ValueError(f"illegal job transition {self.status.value} -> {status.value}")
        if status is JobStatus.RUNNING and "started_at" not in changes:
            changes["started_at"] = _now()
        if status.terminal and "finished_at" not in changes:
            changes["finished_at"] = _now()
        return replace(self, status=status, **changes)
