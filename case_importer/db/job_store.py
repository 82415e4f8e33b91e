from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from psycopg2.extras import Json

from case_importer.db.connection import Database
from case_importer.models.import_job import ImportJob, JobStatus
from case_importer.models.import_outcome import ImportOutcome

"""import_jobs table: one row per import request, outcome stored as jsonb.

Updates never touch a row that already reached completed / failed, so a late
writer (a recovery sweep, a second process) cannot rewrite a finished job.
"""

__all__ = [
    "PgJobStore",
    "UNFINISHED_STATUSES",
    "TERMINAL_STATUSES",
]

UNFINISHED_STATUSES = tuple(s.value for s in JobStatus if not s.terminal)
TERMINAL_STATUSES = tuple(s.value for s in JobStatus if s.terminal)

_COLUMNS = (
    "id, firm_id, initiator_id, file_name, status, total_rows, admitted_count, "
    "skipped_count, outcome, error, created_at, started_at, finished_at, "
    "reservation_id, owner, heartbeat_at"
)


def _outcome_param(job: ImportJob) -> Json | None:
    return Json(job.outcome.to_dict()) if job.outcome is not None else None


def _row_to_job(row: tuple[Any, ...]) -> ImportJob:
    (job_id, firm_id, initiator_id, file_name, status, total, admitted, skipped,
     outcome, error, created_at, started_at, finished_at,
     reservation_id, owner, heartbeat_at) = row
    if isinstance(outcome, str):
        outcome = json.loads(outcome)
    return ImportJob(
        id=str(job_id),
        tenant_id=str(firm_id),
        initiator_id=str(initiator_id),
        file_name=file_name,
        status=JobStatus(status),
        total_rows=total,
        admitted_count=admitted,
        skipped_count=skipped,
        outcome=ImportOutcome.from_dict(outcome) if outcome else None,
        error=error,
        reservation_id=reservation_id,
        owner=owner,
        heartbeat_at=heartbeat_at,
        created_at=created_at,
        started_at=started_at,
        finished_at=finished_at,
    )


class PgJobStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def create(self, job: ImportJob) -> None:
        with self.db.transaction() as cur:
            cur.execute(
                f"INSERT INTO import_jobs ({_COLUMNS}) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()), %s, %s, %s, %s, %s)",
                (
                    job.id, job.tenant_id, job.initiator_id, job.file_name, job.status.value,
                    job.total_rows, job.admitted_count, job.skipped_count, _outcome_param(job),
                    job.error, job.created_at, job.started_at, job.finished_at,
                    job.reservation_id, job.owner, job.heartbeat_at,
                ),
            )

    def update(self, job: ImportJob) -> bool:
        with self.db.transaction() as cur:
            cur.execute(
                "UPDATE import_jobs SET status = %s, total_rows = %s, admitted_count = %s, "
                "skipped_count = %s, outcome = %s, error = %s, started_at = %s, finished_at = %s, "
                "reservation_id = %s, owner = %s, heartbeat_at = %s "
                "WHERE id = %s AND firm_id = %s AND status NOT IN %s",
                (
                    job.status.value, job.total_rows, job.admitted_count, job.skipped_count,
                    _outcome_param(job), job.error, job.started_at, job.finished_at,
                    job.reservation_id, job.owner, job.heartbeat_at,
                    job.id, job.tenant_id, TERMINAL_STATUSES,
                ),
            )
            return cur.rowcount > 0

    def touch(self, job_ids: list[str], at: datetime) -> None:
        if not job_ids:
            return
        with self.db.transaction() as cur:
            cur.execute(
                "UPDATE import_jobs SET heartbeat_at = %s WHERE id = ANY(%s) AND status NOT IN %s",
                (at, list(job_ids), TERMINAL_STATUSES),
            )

    def get(self, tenant_id: str, job_id: str) -> ImportJob | None:
        with self.db.transaction() as cur:
            cur.execute(
                f"SELECT {_COLUMNS} FROM import_jobs WHERE firm_id = %s AND id = %s",
                (tenant_id, job_id),
            )
            row = cur.fetchone()
        return _row_to_job(row) if row else None

    def list_unfinished(self) -> list[ImportJob]:
        with self.db.transaction() as cur:
            cur.execute(
                f"SELECT {_COLUMNS} FROM import_jobs WHERE status IN %s ORDER BY created_at",
                (UNFINISHED_STATUSES,),
            )
            rows = cur.fetchall()
        return [_row_to_job(r) for r in rows]
