from __future__ import annotations

import logging
from datetime import UTC, datetime

import pytest

from case_importer.errors import ImportSystemError
from case_importer.models.case_row import CaseStatus
from case_importer.models.error_record import FailureKind
from case_importer.services.bulk_importer import AUDIT_ACTION_CREATE, AUDIT_RESOURCE_CASE, BulkImporter
from tests.conftest import INITIATOR, TENANT
from tests.fakes import FakeAudit, FakeInviter, FakeQuota, case_row, make_workbook


def _run(importer, rows, truncation_index=None, clients=None, **kw):
    data = make_workbook(cases=rows, clients=clients)
    # analyzer count: every row with at least one filled cell
    n = len([r for r in rows if any(v not in ("", None) for v in r.values())]) if truncation_index is None else truncation_index
    return importer.run(TENANT, INITIATOR, data, n, file_name="cases.xlsx", **kw)


def test_all_valid_rows_create_cases_with_audit(importer, case_store, audit, quota):
    outcome = _run(importer, [case_row(i) for i in range(1, 6)])

    assert outcome.created_count == 5
    assert outcome.attempted_count == 5
    assert outcome.failed_count == 0
    assert len(set(outcome.created_case_numbers)) == 5
    assert outcome.created_case_numbers[0] == "ACME-2025-00001"
    assert len(case_store.cases) == 5
    assert quota.consumed == 5

    assert len(audit.events) == 5
    ev = audit.events[0]
    assert ev["action"] == AUDIT_ACTION_CREATE
    assert ev["resource_type"] == AUDIT_RESOURCE_CASE
    assert ev["actor_id"] == INITIATOR
    assert ev["tenant_id"] == TENANT
    assert ev["resource_name"] == "ACME-2025-00001"
    assert ev["new_state"]["title"] == "Case 1"
    assert ev["new_state"]["status"] == "OPEN"


def test_rows_are_processed_in_file_order(importer, case_store):
    _run(importer, [case_row(i) for i in range(1, 4)])
    titles = [c.title for c in sorted(case_store.cases.values(), key=lambda c: c.case_number)]
    assert titles == ["Case 1", "Case 2", "Case 3"]


def test_unresolved_client_is_reference_error(importer, case_store):
    rows = [case_row(1), case_row(2, client_email="ghost@example.com"), case_row(3)]
    outcome = _run(importer, rows)

    assert outcome.created_count == 2
    failures = outcome.failures_of(FailureKind.REFERENCE_ERROR)
    assert len(failures) == 1
    assert failures[0].row == 3
    assert failures[0].sheet == "cases"
    assert failures[0].file == "cases.xlsx"
    assert "ghost@example.com" in failures[0].message


def test_duplicate_filing_number_is_conflict_error(importer):
    rows = [case_row(i, filing_number=f"F-{i}") for i in range(1, 5)]
    rows.append(case_row(5, filing_number="F-2"))
    outcome = _run(importer, rows)

    assert outcome.created_count == len(rows) - 1
    conflicts = outcome.failures_of(FailureKind.CONFLICT_ERROR)
    assert [f.row for f in conflicts] == [6]
    assert "idx_firm_filing_number" in conflicts[0].message


def test_filing_number_conflict_is_also_retried_once(importer, case_store):
    rows = [case_row(1, filing_number="F-1"), case_row(2, filing_number="F-1"), case_row(3)]
    outcome = _run(importer, rows)

    assert [f.row for f in outcome.failures_of(FailureKind.CONFLICT_ERROR)] == [3]
    # row 3 drew two numbers (00002, 00003) before giving up
    assert outcome.created_case_numbers == ("ACME-2025-00001", "ACME-2025-00004")


def test_case_number_conflict_is_retried_once(importer, case_store):
    case_store.taken_numbers.add("ACME-2025-00001")
    outcome = _run(importer, [case_row(1)])
    assert outcome.created_count == 1
    assert outcome.created_case_numbers == ("ACME-2025-00002",)


def test_second_case_number_conflict_fails_the_row(importer, case_store):
    case_store.taken_numbers.update({"ACME-2025-00001", "ACME-2025-00002"})
    outcome = _run(importer, [case_row(1), case_row(2)])
    assert outcome.created_count == 1
    assert [f.row for f in outcome.failures_of(FailureKind.CONFLICT_ERROR)] == [2]
    assert outcome.created_case_numbers == ("ACME-2025-00003",)


def test_parse_errors_do_not_stop_the_run(importer):
    rows = [case_row(1), case_row(2, status="ARCHIVED"), case_row(3, title=""), case_row(4)]
    outcome = _run(importer, rows)
    assert outcome.created_count == 2
    parse = outcome.failures_of(FailureKind.PARSE_ERROR)
    assert [f.row for f in parse] == [3, 4]
    assert "status" in parse[0].message
    assert "title" in parse[1].message


def test_row_without_client_email_is_parse_error(importer, case_store):
    rows = [case_row(1), case_row(2, client_email=""), case_row(3)]
    outcome = _run(importer, rows)

    assert outcome.attempted_count == 3
    assert outcome.created_count == 2
    parse = outcome.failures_of(FailureKind.PARSE_ERROR)
    assert [f.row for f in parse] == [3]
    assert "client_email" in parse[0].message
    assert {c.title for c in case_store.cases.values()} == {"Case 1", "Case 3"}


def test_only_rows_up_to_truncation_index_are_attempted(importer, case_store, quota):
    outcome = _run(importer, [case_row(i) for i in range(1, 11)], truncation_index=2)
    assert outcome.attempted_count == 2
    assert outcome.created_count == 2
    assert {c.title for c in case_store.cases.values()} == {"Case 1", "Case 2"}
    assert quota.consumed == 2


def test_failed_attempt_still_counts_toward_truncation(importer, case_store):
    rows = [case_row(1, client_email="ghost@example.com"), case_row(2), case_row(3)]
    outcome = _run(importer, rows, truncation_index=2)
    assert outcome.attempted_count == 2
    assert outcome.created_count == 1
    assert {c.title for c in case_store.cases.values()} == {"Case 2"}


def test_zero_truncation_index_creates_nothing(importer, case_store):
    outcome = _run(importer, [case_row(1)], truncation_index=0)
    assert outcome.attempted_count == 0
    assert case_store.cases == {}


def test_negative_truncation_index_rejected(importer):
    with pytest.raises(ValueError):
        _run(importer, [case_row(1)], truncation_index=-1)


def test_audit_failure_does_not_roll_back(case_store, directory, quota, fixed_clock, caplog):
    importer = BulkImporter(case_store, directory, directory, quota, FakeAudit(fail=True), clock=fixed_clock)
    with caplog.at_level(logging.WARNING, logger="case_importer"):
        outcome = _run(importer, [case_row(1), case_row(2)])
    assert outcome.created_count == 2
    assert outcome.failed_count == 0
    assert len(case_store.cases) == 2
    assert "audit event for case ACME-2025-00001 failed" in caplog.text


def test_audit_disabled(case_store, directory, quota, fixed_clock):
    audit = FakeAudit()
    importer = BulkImporter(case_store, directory, directory, quota, audit, clock=fixed_clock, audit_enabled=False)
    _run(importer, [case_row(1)])
    assert audit.events == []


def test_system_error_aborts_with_partial_outcome(importer, case_store):
    case_store.fail_after = 2
    with pytest.raises(ImportSystemError) as e:
        _run(importer, [case_row(i) for i in range(1, 6)])
    partial = e.value.partial_outcome
    assert partial is not None
    assert partial.created_count == 2
    assert partial.attempted_count == 3
    assert len(case_store.cases) == 2


def test_unused_reservation_released_after_run(case_store, directory, audit, fixed_clock):
    quota = FakeQuota(limit=10, usage=0, tenant_id=TENANT)
    quota.reserve_slots(TENANT, 4)
    importer = BulkImporter(case_store, directory, directory, quota, audit, clock=fixed_clock)
    rows = [case_row(1), case_row(2, client_email="ghost@example.com"), case_row(3), case_row(4)]
    outcome = _run(importer, rows, reserved=True)

    assert outcome.created_count == 3
    assert quota.usage[TENANT] == 3
    assert quota.released == [1]
    assert quota.reserved[TENANT] == 0


def test_reservation_released_on_abort(case_store, directory, audit, fixed_clock):
    quota = FakeQuota(limit=10, usage=0, tenant_id=TENANT)
    quota.reserve_slots(TENANT, 5)
    case_store.fail_after = 1
    importer = BulkImporter(case_store, directory, directory, quota, audit, clock=fixed_clock)
    with pytest.raises(ImportSystemError):
        _run(importer, [case_row(i) for i in range(1, 6)], reserved=True)
    assert quota.usage[TENANT] == 1
    assert quota.released == [4]
    assert quota.reserved[TENANT] == 0


def test_usage_update_failure_aborts(importer, quota):
    quota.fail_consume = True
    with pytest.raises(ImportSystemError) as e:
        _run(importer, [case_row(1), case_row(2)])
    assert e.value.partial_outcome.created_count == 1


def test_slot_of_failed_usage_update_is_released(case_store, directory, audit, fixed_clock):
    quota = FakeQuota(limit=10, usage=0, tenant_id=TENANT)
    quota.reserve_slots(TENANT, 2)
    quota.fail_consume = True
    importer = BulkImporter(case_store, directory, directory, quota, audit, clock=fixed_clock)
    with pytest.raises(ImportSystemError):
        _run(importer, [case_row(1), case_row(2)], reserved=True)

    # the case exists but its slot was never taken from the reservation
    assert len(case_store.cases) == 1
    assert quota.usage[TENANT] == 0
    assert quota.released == [2]
    assert quota.reserved[TENANT] == 0


def test_named_reservation_is_released_as_a_whole(case_store, directory, audit, fixed_clock):
    quota = FakeQuota(limit=10, usage=0, tenant_id=TENANT)
    quota.reserve_slots(TENANT, 3, "job-9")
    importer = BulkImporter(case_store, directory, directory, quota, audit, clock=fixed_clock)
    rows = [case_row(1), case_row(2, client_email="ghost@example.com"), case_row(3)]
    outcome = _run(importer, rows, reserved=True, reservation_id="job-9")

    assert outcome.created_count == 2
    assert quota.usage[TENANT] == 2
    assert quota.released == [1]
    assert quota.reservations == {}
    assert quota.reserved[TENANT] == 0


def test_references_and_classification_resolved(importer, case_store, directory):
    lawyer_id = directory.add_lawyer(TENANT, "laura@firm.test")
    directory.add_classification(TENANT, "Civil", "Family", "Divorce")
    row = case_row(1, lawyer_email="Laura@Firm.test", domain="civil", branch="Family", subtype="divorce")
    outcome = _run(importer, [row])

    assert outcome.created_count == 1
    case = next(iter(case_store.cases.values()))
    assert case.assigned_to_id == lawyer_id
    assert case.classification.domain_id == "dom-Civil"
    assert case.classification.branch_id == "br-Family"
    assert case.classification.subtype_id == "sub-Divorce"
    assert case.case_type == "Imported"


def test_unknown_lawyer_and_subtype_without_branch(importer, directory):
    directory.add_classification(TENANT, "Civil", "Family")
    rows = [
        case_row(1, lawyer_email="nobody@firm.test"),
        case_row(2, domain="Civil", subtype="Divorce"),
        case_row(3, domain="Penal"),
    ]
    outcome = _run(importer, rows)
    refs = outcome.failures_of(FailureKind.REFERENCE_ERROR)
    assert [f.row for f in refs] == [2, 3, 4]
    assert "lawyer 'nobody@firm.test' not found" in refs[0].message


def test_closed_case_is_historical(importer, case_store, fixed_clock):
    row = case_row(1, status="CLOSED", opened_date="2018-04-02", closed_date="2020-01-15", legacy_number="OLD-77")
    _run(importer, [row, case_row(2)])
    cases = sorted(case_store.cases.values(), key=lambda c: c.case_number)
    closed, open_case = cases
    assert closed.status is CaseStatus.CLOSED
    assert closed.is_historical is True
    assert closed.legacy_number == "OLD-77"
    assert closed.opened_at == datetime(2018, 4, 2, tzinfo=UTC)
    assert closed.closed_at == datetime(2020, 1, 15, tzinfo=UTC)
    # no opened_date: import time
    assert open_case.opened_at == fixed_clock()
    assert open_case.closed_at is None
    assert open_case.is_historical is False


def test_clients_sheet_creates_missing_clients(importer, case_store, directory):
    directory.document_types[(TENANT, "CC")] = "dt-cc"
    clients = [
        {"email": "new@example.com", "name": "New Client", "document_type": "cc", "document_number": "55"},
        {"email": "ana@example.com"},
    ]
    rows = [case_row(1, client_email="new@example.com"), case_row(2)]
    outcome = _run(importer, rows, clients=clients)

    assert outcome.clients_created == 1
    assert outcome.created_count == 2
    created = directory.find_client(TENANT, "new@example.com")
    assert created.document_type_id == "dt-cc"
    assert created.document_number == "55"
    assert {c.client_id for c in case_store.cases.values()} == {
        created.user_id, directory.find_client(TENANT, "ana@example.com").user_id
    }


def test_existing_client_gets_missing_documents(importer, directory):
    directory.document_types[(TENANT, "NIT")] = "dt-nit"
    _run(importer, [], clients=[{"email": "ana@example.com", "document_type": "NIT", "document_number": "900"}])
    assert directory.filled == [("ana@example.com", "dt-nit", "900")]


def test_client_failure_is_recorded_and_import_continues(importer, directory):
    directory.fail_create_for.add("broken@example.com")
    clients = [{"email": "broken@example.com"}, {"name": "no email"}]
    outcome = _run(importer, [case_row(1), case_row(2, client_email="broken@example.com")], clients=clients)

    assert len(outcome.client_failures) == 1
    assert outcome.client_failures[0].sheet == "clients"
    assert outcome.client_failures[0].error_type == FailureKind.CLIENT_ERROR.value
    assert outcome.client_failures[0].row == 2
    assert outcome.created_count == 1
    assert [f.row for f in outcome.failures_of(FailureKind.REFERENCE_ERROR)] == [3]
    # client rows never count as failed case rows
    assert outcome.failed_count == 1


def test_progress_is_advanced_per_attempt(importer):
    class Recorder:
        def __init__(self):
            self.calls = []

        def advance(self, created):
            self.calls.append(created)

    progress = Recorder()
    _run(importer, [case_row(1), case_row(2, status="bad"), case_row(3)], progress=progress)
    assert progress.calls == [True, False, True]


def test_new_clients_get_a_welcome_notice(case_store, directory, quota, audit, fixed_clock):
    inviter = FakeInviter()
    importer = BulkImporter(case_store, directory, directory, quota, audit, inviter=inviter, clock=fixed_clock)
    clients = [{"email": "new@example.com", "name": "New Client"}, {"email": "ana@example.com"}]
    _run(importer, [case_row(1, client_email="new@example.com")], clients=clients)

    # existing clients are not invited again
    assert inviter.invited == [(TENANT, "new@example.com", "New Client")]


def test_welcome_failure_keeps_the_client(case_store, directory, quota, audit, fixed_clock, caplog):
    importer = BulkImporter(
        case_store, directory, directory, quota, audit, inviter=FakeInviter(fail=True), clock=fixed_clock
    )
    with caplog.at_level(logging.WARNING, logger="case_importer"):
        outcome = _run(importer, [case_row(1, client_email="new@example.com")], clients=[{"email": "new@example.com"}])

    assert outcome.clients_created == 1
    assert outcome.client_failures == ()
    assert outcome.created_count == 1
    assert "welcome notice for new@example.com failed" in caplog.text
