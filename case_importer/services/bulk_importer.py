from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, date, datetime, time

from case_importer.errors import (
    CaseImportError,
    ImportSystemError,
    RowParseError,
    UniqueConflictError,
    UnresolvedReferenceError,
)
from case_importer.excel.analyzer import candidate_case_rows, load_workbook_content
from case_importer.excel.reader import RawRow, SheetData, cell_text
from case_importer.models.case_row import CaseRow, CaseStatus
from case_importer.models.error_record import FailureKind
from case_importer.models.import_outcome import ImportOutcome, OutcomeAccumulator
from case_importer.services.contracts import (
    AuditSink,
    CaseStore,
    ClassificationRef,
    ClientDirectory,
    ClientInviter,
    ClientRecord,
    NewCase,
    QuotaService,
    ReferenceResolver,
)
from case_importer.services.progress import ImportProgress
from case_importer.services.row_parser import parse_case_row, parse_client_row

"""Bulk case importer (the import worker).

Rows are processed one at a time, strictly in file order, so that a failure
in row k never affects rows k+1..n and reference resolution / conflict retry
can react per row. Bulk-insert throughput is traded for failure isolation,
which is adequate for hundreds to low thousands of rows.

Processing:
1. Clients sheet: resolve each client by email or create it (no quota slot).
   New clients are handed to the inviter, best effort.
2. Cases sheet: the first ``truncation_index`` candidate rows are attempted.
   Rows beyond the index are never attempted. Usage is counted for created
   cases only; the slots of failed rows go back with the rest of the
   reservation when the run ends.
   parse -> resolve references -> case number -> insert (one retry on a
   uniqueness conflict) -> usage +1 -> audit CREATE (best effort)

Only ImportSystemError (and a FormatError from the workbook itself) abort
the run; every other problem is recorded on the row and processing goes on.
"""

__all__ = [
    "AUDIT_ACTION_CREATE",
    "AUDIT_RESOURCE_CASE",
    "BulkImporter",
]

logger = logging.getLogger(__name__)

AUDIT_ACTION_CREATE = "CREATE"
AUDIT_RESOURCE_CASE = "Case"
CONFLICT_ATTEMPTS = 2  # first insert + one retry with a fresh case number


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _at_midnight(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=UTC)


class BulkImporter:
    def __init__(
        self,
        cases: CaseStore,
        resolver: ReferenceResolver,
        clients: ClientDirectory,
        quota: QuotaService,
        audit: AuditSink | None = None,
        *,
        inviter: ClientInviter | None = None,
        clock: Callable[[], datetime] = _utc_now,
        audit_enabled: bool = True,
    ) -> None:
        self.cases = cases
        self.resolver = resolver
        self.clients = clients
        self.quota = quota
        self.audit = audit
        self.inviter = inviter
        self.clock = clock
        self.audit_enabled = audit_enabled and audit is not None

    def run(
        self,
        tenant_id: str,
        initiator_id: str,
        data: bytes,
        truncation_index: int,
        *,
        file_name: str = "upload.xlsx",
        reserved: bool = False,
        reservation_id: str | None = None,
        progress: ImportProgress | None = None,
    ) -> ImportOutcome:
        """Import the admitted prefix of a workbook for one tenant.

        Parameters
        ----------
        truncation_index: number of candidate case rows that may be attempted
        reserved: slots for ``truncation_index`` rows were reserved at admission;
            usage is taken from the reservation and the unused rest is released
            when the run ends (also when it aborts)
        reservation_id: the named reservation holding those slots; released as
            a whole at the end

        Raises
        ------
        FormatError: workbook unreadable (only possible when not analyzed first)
        ImportSystemError: storage failure; ``partial_outcome`` is attached
        """
        if truncation_index < 0:
            raise ValueError(f"truncation_index must be >= 0, got {truncation_index}")
        started = self.clock()
        acc = OutcomeAccumulator(file=file_name)
        logger.info(
            "import started tenant=%s initiator=%s file=%s admitted=%d",
            tenant_id, initiator_id, file_name, truncation_index,
        )
        consumed = 0
        try:
            content = load_workbook_content(data)
            client_ids = self._import_clients(tenant_id, content.clients, acc)
            for raw in candidate_case_rows(content.cases)[:truncation_index]:
                acc.attempted_count += 1
                persisted = self._import_case_row(tenant_id, initiator_id, raw, client_ids, acc)
                if persisted is not None:
                    case_id, case = persisted
                    self.quota.consume_slot(tenant_id, from_reservation=reserved, reservation_id=reservation_id)
                    consumed += 1
                    self._emit_audit(tenant_id, initiator_id, case_id, case)
                if progress is not None:
                    progress.advance(persisted is not None)
        except ImportSystemError as e:
            e.partial_outcome = acc.freeze(self._elapsed(started))
            logger.error(
                "import aborted tenant=%s file=%s after %d rows: %s",
                tenant_id, file_name, acc.attempted_count, e,
            )
            raise
        finally:
            if reserved:
                self._release_unused(tenant_id, truncation_index - consumed, reservation_id)

        outcome = acc.freeze(self._elapsed(started))
        logger.info(
            "import finished tenant=%s file=%s created=%d failed=%d attempted=%d clients_created=%d",
            tenant_id, file_name, outcome.created_count, outcome.failed_count,
            outcome.attempted_count, outcome.clients_created,
        )
        return outcome

    def _elapsed(self, started: datetime) -> float:
        return max(0.0, (self.clock() - started).total_seconds())

    def _release_unused(self, tenant_id: str, unused: int, reservation_id: str | None) -> None:
        try:
            if reservation_id is not None:
                self.quota.release_reservation(tenant_id, reservation_id)
            elif unused > 0:
                self.quota.release_slots(tenant_id, unused)
        except CaseImportError as e:
            # 予約は残るが、ここで例外を上書きしない
            logger.error("failed to release %d reserved slots for tenant=%s: %s", unused, tenant_id, e)

    # -- clients -----------------------------------------------------------

    def _import_clients(self, tenant_id: str, sheet: SheetData, acc: OutcomeAccumulator) -> dict[str, str]:
        """Resolve or create every client of the Clients sheet; email -> user id."""
        ids: dict[str, str] = {}
        for raw in sheet.rows:
            if cell_text(raw.values.get("email")) is None:
                continue
            try:
                row = parse_client_row(raw)
                doc_type_id = None
                if row.document_type:
                    doc_type_id = self.clients.resolve_document_type(tenant_id, row.document_type)
                existing = self.clients.find_client(tenant_id, row.email)
                if existing is not None:
                    ids[row.email] = existing.user_id
                    missing_type = existing.document_type_id is None and doc_type_id is not None
                    missing_number = existing.document_number is None and row.document_number is not None
                    if missing_type or missing_number:
                        self._fill_client_documents(tenant_id, existing, doc_type_id, row.document_number, raw)
                    continue
                created = self.clients.create_client(tenant_id, row, doc_type_id)
                ids[row.email] = created.user_id
                acc.clients_created += 1
                self._invite(tenant_id, created, row.name, raw)
            except ImportSystemError:
                raise
            except Exception as e:
                acc.fail_client(raw.row_number, str(e))
                logger.warning("clients row %d skipped: %s", raw.row_number, e)
        return ids

    def _invite(self, tenant_id: str, client: ClientRecord, name: str, raw: RawRow) -> None:
        if self.inviter is None:
            return
        try:
            self.inviter.invite(tenant_id, client, name)
        except Exception as e:
            # 招待に失敗してもクライアントは作成済み
            logger.warning("clients row %d: welcome notice for %s failed: %s", raw.row_number, client.email, e)

    def _fill_client_documents(self, tenant_id, client, doc_type_id, doc_number, raw: RawRow) -> None:
        try:
            self.clients.fill_client_documents(
                tenant_id,
                client,
                doc_type_id if client.document_type_id is None else None,
                doc_number if client.document_number is None else None,
            )
        except ImportSystemError:
            raise
        except Exception as e:
            logger.warning("clients row %d: failed to update existing client info: %s", raw.row_number, e)

    # -- cases -------------------------------------------------------------

    def _import_case_row(
        self,
        tenant_id: str,
        initiator_id: str,
        raw: RawRow,
        client_ids: dict[str, str],
        acc: OutcomeAccumulator,
    ) -> tuple[str, NewCase] | None:
        """Create the case of one row; None when the row was recorded as failed."""
        try:
            row = parse_case_row(raw)
        except RowParseError as e:
            acc.fail_row(raw.row_number, FailureKind.PARSE_ERROR, str(e))
            return None

        try:
            case = self._build_case(tenant_id, initiator_id, row, client_ids)
        except UnresolvedReferenceError as e:
            acc.fail_row(row.row_number, FailureKind.REFERENCE_ERROR, str(e))
            return None
        except ImportSystemError:
            raise
        except Exception as e:
            acc.fail_row(row.row_number, FailureKind.UNEXPECTED_ERROR, str(e))
            logger.exception("cases row %d: unexpected error while resolving references", row.row_number)
            return None

        try:
            persisted = self._persist(case, row, acc)
        except ImportSystemError:
            raise
        except Exception as e:
            acc.fail_row(row.row_number, FailureKind.UNEXPECTED_ERROR, str(e))
            logger.exception("cases row %d: unexpected error while saving", row.row_number)
            return None
        if persisted is not None:
            acc.created(persisted[1].case_number)
        return persisted

    def _build_case(self, tenant_id: str, initiator_id: str, row: CaseRow, client_ids: dict[str, str]) -> NewCase:
        client_id = client_ids.get(row.client_email)
        if client_id is None:
            client_id = self.resolver.resolve_client(tenant_id, row.client_email)
        lawyer_id = None
        if row.lawyer_email:
            lawyer_id = self.resolver.resolve_lawyer(tenant_id, row.lawyer_email)
        classification = ClassificationRef()
        if row.domain or row.branch or row.subtype:
            classification = self.resolver.resolve_classification(tenant_id, row.domain, row.branch, row.subtype)

        opened_at = _at_midnight(row.opened_date) if row.opened_date else self.clock()
        closed_at = None
        if row.status is CaseStatus.CLOSED and row.closed_date:
            closed_at = _at_midnight(row.closed_date)
        return NewCase(
            tenant_id=tenant_id,
            client_id=client_id,
            case_number="",  # assigned right before insert
            title=row.title,
            description=row.description,
            status=row.status,
            opened_at=opened_at,
            closed_at=closed_at,
            created_by=initiator_id,
            filing_number=row.filing_number,
            legacy_number=row.legacy_number,
            assigned_to_id=lawyer_id,
            classification=classification,
            is_historical=row.is_historical,
        )

    def _persist(self, case: NewCase, row: CaseRow, acc: OutcomeAccumulator) -> tuple[str, NewCase] | None:
        """Insert with a fresh case number; retry once on a uniqueness conflict."""
        conflict: UniqueConflictError | None = None
        for attempt in range(1, CONFLICT_ATTEMPTS + 1):
            candidate = replace(case, case_number=self.cases.next_case_number(case.tenant_id))
            try:
                return self.cases.create_case(candidate), candidate
            except UniqueConflictError as e:
                conflict = e
                logger.debug(
                    "cases row %d: conflict on %s (attempt %d/%d)",
                    row.row_number, e.constraint, attempt, CONFLICT_ATTEMPTS,
                )
        acc.fail_row(row.row_number, FailureKind.CONFLICT_ERROR, str(conflict))
        return None

    def _emit_audit(self, tenant_id: str, initiator_id: str, case_id: str, case: NewCase) -> None:
        if not self.audit_enabled or self.audit is None:
            return
        try:
            self.audit.record_event(
                tenant_id=tenant_id,
                actor_id=initiator_id,
                action=AUDIT_ACTION_CREATE,
                resource_type=AUDIT_RESOURCE_CASE,
                resource_id=case_id,
                new_state=case.audit_state(),
                resource_name=case.case_number,
            )
        except Exception as e:
            # 監査は best effort: ケース作成は取り消さない
            logger.warning("audit event for case %s failed: %s", case.case_number, e)
