from __future__ import annotations

import io
import itertools
import threading
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

import pandas as pd

from case_importer.errors import (
    ImportSystemError,
    SubscriptionInactiveError,
    UniqueConflictError,
    UnresolvedReferenceError,
)
from case_importer.excel.analyzer import FileAnalyzer
from case_importer.excel.reader import CASE_COLUMNS, CLIENT_COLUMNS
from case_importer.excel.template import TemplateGenerator
from case_importer.models.case_row import ClientRow
from case_importer.models.import_job import ImportJob
from case_importer.models.quota import UNLIMITED, QuotaSnapshot
from case_importer.services.bulk_importer import BulkImporter
from case_importer.services.contracts import (
    ClassificationNode,
    ClassificationRef,
    ClientRecord,
    DocumentTypeRecord,
    LawyerRecord,
    NewCase,
)
from case_importer.services.pipeline import CaseImportService
from case_importer.services.quota_gate import QuotaGate
from case_importer.services.scheduler import ImportScheduler

"""In-memory doubles of the collaborator Protocols, plus a workbook builder.

All doubles are thread-safe: scheduler tests drive them from worker threads.
"""


def make_workbook(
    cases: list[dict[str, Any]] | None = None,
    clients: list[dict[str, Any]] | None = None,
    *,
    case_header: list[str] | None = None,
    client_header: list[str] | None = None,
    sheet_count: int = 3,
) -> bytes:
    """Build an xlsx upload: Instructions, Clients, Cases (header on row 1)."""
    case_header = case_header or list(CASE_COLUMNS)
    client_header = client_header or list(CLIENT_COLUMNS)
    sheets = [
        ("Instructions", [["Case import instructions"]]),
        ("Clients", [client_header] + [[r.get(k, "") for k in client_header] for r in clients or []]),
        ("Cases", [case_header] + [[r.get(k, "") for k in case_header] for r in cases or []]),
    ][:sheet_count]
    buf = io.BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as writer:
        for name, rows in sheets:
            pd.DataFrame(rows).to_excel(writer, sheet_name=name, header=False, index=False)
    return buf.getvalue()


def case_row(n: int, **overrides: Any) -> dict[str, Any]:
    row = {
        "client_email": "ana@example.com",
        "title": f"Case {n}",
        "description": f"Imported case {n}",
        "status": "OPEN",
    }
    row.update(overrides)
    return row


class FakeQuota:
    def __init__(self, limit: int = UNLIMITED, usage: int = 0, *, tenant_id: str = "firm-1") -> None:
        self.limits = {tenant_id: limit}
        self.usage = {tenant_id: usage}
        self.reserved: dict[str, int] = {}
        # reservation id -> [tenant, slots left, expires_at]
        self.reservations: dict[str, list[Any]] = {}
        self.inactive: set[str] = set()
        self.fail_consume = False
        self.consumed = 0
        self.released: list[int] = []
        self.now: datetime | None = None
        self._lock = threading.Lock()

    def _clock(self) -> datetime:
        return self.now or datetime.now(UTC)

    def _snapshot(self, tenant_id: str, granted: int | None = None) -> QuotaSnapshot:
        if tenant_id in self.inactive:
            raise SubscriptionInactiveError("subscription is not active")
        return QuotaSnapshot(
            tenant_id=tenant_id,
            limit=self.limits.get(tenant_id, UNLIMITED),
            current_usage=self.usage.get(tenant_id, 0),
            reserved=self.reserved.get(tenant_id, 0),
            granted=granted,
        )

    def _drop(self, rid: str) -> int:
        tenant_id, slots, _ = self.reservations.pop(rid)
        self.reserved[tenant_id] = max(0, self.reserved.get(tenant_id, 0) - slots)
        return slots

    def _expired(self, tenant_id: str | None = None) -> list[str]:
        now = self._clock()
        return [
            rid for rid, (tenant, _, expires_at) in self.reservations.items()
            if expires_at is not None and expires_at < now and tenant_id in (None, tenant)
        ]

    def get_quota(self, tenant_id: str) -> QuotaSnapshot:
        with self._lock:
            return self._snapshot(tenant_id)

    def reserve_slots(self, tenant_id: str, requested: int, reservation_id=None, *, expires_at=None) -> QuotaSnapshot:
        with self._lock:
            self._snapshot(tenant_id)
            for rid in self._expired(tenant_id):
                self._drop(rid)
            snap = self._snapshot(tenant_id)
            granted = requested if snap.unlimited else min(requested, snap.remaining or 0)
            self.reserved[tenant_id] = self.reserved.get(tenant_id, 0) + granted
            if granted > 0 and reservation_id is not None:
                self.reservations[reservation_id] = [tenant_id, granted, expires_at]
            return replace(snap, granted=granted)

    def release_slots(self, tenant_id: str, count: int) -> None:
        with self._lock:
            self.released.append(count)
            self.reserved[tenant_id] = max(0, self.reserved.get(tenant_id, 0) - count)

    def release_reservation(self, tenant_id: str, reservation_id: str) -> int:
        with self._lock:
            entry = self.reservations.get(reservation_id)
            if entry is None or entry[0] != tenant_id:
                return 0
            slots = self._drop(reservation_id)
            if slots:
                self.released.append(slots)
            return slots

    def hold_reservation(self, tenant_id: str, reservation_id: str) -> None:
        with self._lock:
            entry = self.reservations.get(reservation_id)
            if entry is not None and entry[0] == tenant_id:
                entry[2] = None

    def release_expired_reservations(self) -> int:
        with self._lock:
            return sum(self._drop(rid) for rid in self._expired())

    def consume_slot(self, tenant_id: str, from_reservation: bool = True, reservation_id: str | None = None) -> None:
        with self._lock:
            if self.fail_consume:
                raise ImportSystemError("database unavailable: usage update failed")
            held = from_reservation
            if reservation_id is not None:
                entry = self.reservations.get(reservation_id)
                held = entry is not None and entry[1] > 0
                if held:
                    entry[1] -= 1
            self.consumed += 1
            self.usage[tenant_id] = self.usage.get(tenant_id, 0) + 1
            if held:
                self.reserved[tenant_id] = max(0, self.reserved.get(tenant_id, 0) - 1)


class FakeDirectory:
    """ReferenceResolver + ClientDirectory over dicts."""

    def __init__(self) -> None:
        self.clients: dict[tuple[str, str], ClientRecord] = {}
        self.lawyers: dict[tuple[str, str], str] = {}
        # (tenant, domain) -> (domain_id, {branch: (branch_id, {subtype: subtype_id})})
        self.classifications: dict[tuple[str, str], tuple[str, dict[str, tuple[str, dict[str, str]]]]] = {}
        self.document_types: dict[tuple[str, str], str] = {}
        self.filled: list[tuple[str, str | None, str | None]] = []
        self.fail_create_for: set[str] = set()
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def add_client(self, tenant_id: str, email: str, **kw: Any) -> ClientRecord:
        rec = ClientRecord(user_id=f"client-{next(self._ids)}", email=email, **kw)
        self.clients[(tenant_id, email)] = rec
        return rec

    def add_lawyer(self, tenant_id: str, email: str) -> str:
        uid = f"lawyer-{next(self._ids)}"
        self.lawyers[(tenant_id, email)] = uid
        return uid

    def add_classification(self, tenant_id: str, domain: str, branch: str | None = None, subtype: str | None = None) -> None:
        dom_id, branches = self.classifications.setdefault((tenant_id, domain.lower()), (f"dom-{domain}", {}))
        if branch:
            br_id, subtypes = branches.setdefault(branch.lower(), (f"br-{branch}", {}))
            if subtype:
                subtypes[subtype.lower()] = f"sub-{subtype}"

    # ReferenceResolver
    def resolve_client(self, tenant_id: str, email: str) -> str:
        rec = self.clients.get((tenant_id, email.lower()))
        if rec is None:
            raise UnresolvedReferenceError("client", email)
        return rec.user_id

    def resolve_lawyer(self, tenant_id: str, email: str) -> str:
        uid = self.lawyers.get((tenant_id, email.lower()))
        if uid is None:
            raise UnresolvedReferenceError("lawyer", email, "(or inactive)")
        return uid

    def resolve_classification(self, tenant_id, domain, branch, subtype) -> ClassificationRef:
        if branch and not domain:
            raise UnresolvedReferenceError("branch", branch, "(domain required)")
        if subtype and not branch:
            raise UnresolvedReferenceError("subtype", subtype, "(branch required)")
        if not domain:
            return ClassificationRef()
        found = self.classifications.get((tenant_id, domain.lower()))
        if found is None:
            raise UnresolvedReferenceError("domain", domain)
        dom_id, branches = found
        br_id = sub_id = None
        if branch:
            if branch.lower() not in branches:
                raise UnresolvedReferenceError("branch", branch)
            br_id, subtypes = branches[branch.lower()]
            if subtype:
                if subtype.lower() not in subtypes:
                    raise UnresolvedReferenceError("subtype", subtype)
                sub_id = subtypes[subtype.lower()]
        return ClassificationRef(domain_id=dom_id, branch_id=br_id, subtype_id=sub_id)

    # ClientDirectory
    def find_client(self, tenant_id: str, email: str) -> ClientRecord | None:
        return self.clients.get((tenant_id, email.lower()))

    def create_client(self, tenant_id: str, row: ClientRow, document_type_id: str | None) -> ClientRecord:
        if row.email in self.fail_create_for:
            raise ValueError(f"cannot create client {row.email}")
        with self._lock:
            return self.add_client(
                tenant_id, row.email, document_type_id=document_type_id, document_number=row.document_number
            )

    def fill_client_documents(self, tenant_id, client, document_type_id, document_number) -> None:
        self.filled.append((client.email, document_type_id, document_number))

    def resolve_document_type(self, tenant_id: str, token: str) -> str | None:
        return self.document_types.get((tenant_id, token.upper()))


class FakeCaseStore:
    def __init__(self, slug: str = "ACME", year: int = 2025) -> None:
        self.slug = slug
        self.year = year
        self.cases: dict[str, NewCase] = {}
        self.taken_numbers: set[str] = set()
        self.filing_numbers: set[tuple[str, str]] = set()
        self.fail_after: int | None = None
        self._seq: dict[str, int] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def next_case_number(self, tenant_id: str) -> str:
        with self._lock:
            self._seq[tenant_id] = self._seq.get(tenant_id, 0) + 1
            return f"{self.slug}-{self.year}-{self._seq[tenant_id]:05d}"

    def create_case(self, case: NewCase) -> str:
        with self._lock:
            if self.fail_after is not None and len(self.cases) >= self.fail_after:
                raise ImportSystemError("database unavailable: connection reset")
            if case.case_number in self.taken_numbers:
                raise UniqueConflictError("cases_case_number_key")
            if case.filing_number and (case.tenant_id, case.filing_number) in self.filing_numbers:
                raise UniqueConflictError("idx_firm_filing_number")
            case_id = f"case-{next(self._ids)}"
            self.cases[case_id] = case
            self.taken_numbers.add(case.case_number)
            if case.filing_number:
                self.filing_numbers.add((case.tenant_id, case.filing_number))
            return case_id


class FakeAudit:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.events: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def record_event(self, tenant_id, actor_id, action, resource_type, resource_id, new_state, resource_name=None):
        if self.fail:
            raise RuntimeError("audit table unavailable")
        with self._lock:
            self.events.append(
                {
                    "tenant_id": tenant_id,
                    "actor_id": actor_id,
                    "action": action,
                    "resource_type": resource_type,
                    "resource_id": resource_id,
                    "new_state": new_state,
                    "resource_name": resource_name,
                }
            )


class FakeCatalog:
    def __init__(self) -> None:
        self.classifications = [
            ClassificationNode("Civil", "Family", "Divorce"),
            ClassificationNode("Labor"),
        ]
        self.lawyers = [LawyerRecord("lawyer-1", "Laura Lopez", "laura@firm.test")]
        self.document_types = [DocumentTypeRecord("dt-1", "CC", "Cédula"), DocumentTypeRecord("dt-2", "NIT", "NIT")]

    def list_classifications(self, tenant_id):
        return list(self.classifications)

    def list_active_lawyers(self, tenant_id):
        return list(self.lawyers)

    def list_document_types(self, tenant_id):
        return list(self.document_types)


class FakeJobStore:
    def __init__(self) -> None:
        self.jobs: dict[str, ImportJob] = {}
        self.history: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def create(self, job: ImportJob) -> None:
        with self._lock:
            if job.id in self.jobs:
                raise ValueError(f"duplicate job {job.id}")
            self.jobs[job.id] = job
            self.history.append((job.id, job.status.value))

    def update(self, job: ImportJob) -> bool:
        with self._lock:
            current = self.jobs.get(job.id)
            if current is not None and current.status.terminal:
                return False
            self.jobs[job.id] = job
            self.history.append((job.id, job.status.value))
            return True

    def touch(self, job_ids: list[str], at: datetime) -> None:
        with self._lock:
            for job_id in job_ids:
                job = self.jobs.get(job_id)
                if job is not None and not job.status.terminal:
                    self.jobs[job_id] = replace(job, heartbeat_at=at)

    def get(self, tenant_id: str, job_id: str) -> ImportJob | None:
        job = self.jobs.get(job_id)
        if job is None or job.tenant_id != tenant_id:
            return None
        return job

    def list_unfinished(self) -> list[ImportJob]:
        return [j for j in self.jobs.values() if not j.status.terminal]

    def statuses(self, job_id: str) -> list[str]:
        return [s for jid, s in self.history if jid == job_id]


class FakeNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.notified: list[ImportJob] = []

    def notify(self, job: ImportJob) -> None:
        if self.fail:
            raise RuntimeError("smtp down")
        self.notified.append(job)


class FakeInviter:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.invited: list[tuple[str, str, str]] = []

    def invite(self, tenant_id: str, client: ClientRecord, name: str) -> None:
        if self.fail:
            raise RuntimeError("notifications table unavailable")
        self.invited.append((tenant_id, client.email, name))


class FakeBackend:
    """A CaseImportService wired to the in-memory doubles and a real ImportScheduler."""

    def __init__(self, quota: FakeQuota | None = None, logs_dir=None, *, tenant_id: str = "firm-1", max_workers: int = 2) -> None:
        self.quota = quota or FakeQuota(tenant_id=tenant_id)
        self.directory = FakeDirectory()
        self.directory.add_client(tenant_id, "ana@example.com")
        self.cases = FakeCaseStore()
        self.audit = FakeAudit()
        self.jobs = FakeJobStore()
        self.notifier = FakeNotifier()
        self.inviter = FakeInviter()
        self.scheduler = ImportScheduler(self.jobs, self.notifier, max_workers=max_workers)
        ids = itertools.count(1)
        self.service = CaseImportService(
            analyzer=FileAnalyzer(),
            gate=QuotaGate(self.quota),
            importer=BulkImporter(
                self.cases, self.directory, self.directory, self.quota, self.audit, inviter=self.inviter
            ),
            scheduler=self.scheduler,
            jobs=self.jobs,
            templates=TemplateGenerator(FakeCatalog()),
            logs_dir=logs_dir,
            job_id_factory=lambda: f"job-{next(ids)}",
        )

    def shutdown(self) -> None:
        self.scheduler.shutdown(wait=True)
