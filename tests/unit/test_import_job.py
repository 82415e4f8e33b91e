from __future__ import annotations

import pytest

from case_importer.models.error_record import ErrorRecord, FailureKind
from case_importer.models.import_job import ImportJob, JobStatus
from case_importer.models.import_outcome import ImportOutcome, OutcomeAccumulator

"""Unit tests for the ImportJob lifecycle and outcome models."""


def _job() -> ImportJob:
    return ImportJob(id="job-1", tenant_id="firm-1", initiator_id="user-1", file_name="cases.xlsx")


def test_happy_path_transitions():
    job = _job()
    assert job.status is JobStatus.PENDING
    job = job.transition(JobStatus.ANALYZING)
    job = job.transition(JobStatus.ADMITTED, total_rows=10, admitted_count=8, skipped_count=2)
    assert job.partial is True
    job = job.transition(JobStatus.RUNNING)
    assert job.started_at is not None
    assert job.finished_at is None
    job = job.transition(JobStatus.COMPLETED, outcome=ImportOutcome(created_count=8, attempted_count=8))
    assert job.finished_at is not None
    assert job.status.terminal


@pytest.mark.parametrize("status", [JobStatus.PENDING, JobStatus.ANALYZING, JobStatus.ADMITTED, JobStatus.RUNNING])
def test_any_open_state_can_fail(status):
    job = ImportJob(id="j", tenant_id="t", initiator_id="u", file_name="f.xlsx", status=status)
    failed = job.transition(JobStatus.FAILED, error="boom")
    assert failed.status is JobStatus.FAILED
    assert failed.error == "boom"


def test_illegal_transitions_rejected():
    with pytest.raises(ValueError):
        _job().transition(JobStatus.RUNNING)
    done = _job().transition(JobStatus.ADMITTED).transition(JobStatus.RUNNING).transition(JobStatus.COMPLETED)
    with pytest.raises(ValueError):
        done.transition(JobStatus.FAILED)


def test_transition_does_not_mutate():
    job = _job()
    job.transition(JobStatus.ANALYZING)
    assert job.status is JobStatus.PENDING


def test_outcome_dict_round_trip_keeps_failures():
    acc = OutcomeAccumulator(file="cases.xlsx")
    acc.attempted_count = 3
    acc.created("ACME-2025-00001")
    acc.fail_row(3, FailureKind.CONFLICT_ERROR, "duplicate filing number")
    acc.fail_client(2, "invalid email")
    acc.clients_created = 1
    outcome = acc.freeze(elapsed_seconds=1.25)

    restored = ImportOutcome.from_dict(outcome.to_dict())
    assert restored == outcome
    assert restored.failed_count == 1
    assert restored.client_failures[0].sheet == "clients"
    assert restored.failures_of(FailureKind.CONFLICT_ERROR)[0].row == 3


def test_from_dict_tolerates_missing_keys():
    outcome = ImportOutcome.from_dict({"created_count": 2})
    assert outcome.attempted_count == 0
    assert outcome.row_failures == ()


def test_error_record_file_level_row():
    rec = ErrorRecord.create("cases.xlsx", "cases", -1, FailureKind.SYSTEM_ERROR, "connection lost")
    assert rec.row == -1
    assert rec.error_type == "SYSTEM_ERROR"
    assert rec.timestamp.endswith("Z")
