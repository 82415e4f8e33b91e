from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from case_importer.models.case_row import CaseStatus, ClientRow
from case_importer.models.import_job import ImportJob
from case_importer.models.quota import QuotaSnapshot

"""Interfaces of the collaborators the import pipeline consumes.

Each collaborator is passed explicitly into the component that needs it; the
PostgreSQL implementations live in case_importer.db and tests use in-memory
doubles. Every method takes the tenant id: lookups and writes are always
scoped to one tenant.
"""

__all__ = [
    "Initiator",
    "ClassificationRef",
    "ClassificationNode",
    "LawyerRecord",
    "DocumentTypeRecord",
    "ClientRecord",
    "NewCase",
    "QuotaService",
    "ReferenceResolver",
    "ClientDirectory",
    "CaseStore",
    "AuditSink",
    "ReferenceCatalog",
    "JobStore",
    "Notifier",
    "ClientInviter",
]


@dataclass(frozen=True)
class Initiator:
    user_id: str
    role: str
    name: str = ""


@dataclass(frozen=True)
class ClassificationRef:
    domain_id: str | None = None
    branch_id: str | None = None
    subtype_id: str | None = None


@dataclass(frozen=True)
class ClassificationNode:
    """One active Domain > Branch > Subtype path (names), for templates."""
    domain: str
    branch: str | None = None
    subtype: str | None = None

    def label(self) -> str:
        return " > ".join(p for p in (self.domain, self.branch, self.subtype) if p)


@dataclass(frozen=True)
class LawyerRecord:
    user_id: str
    name: str
    email: str


@dataclass(frozen=True)
class DocumentTypeRecord:
    id: str
    code: str
    label: str


@dataclass(frozen=True)
class ClientRecord:
    user_id: str
    email: str
    document_type_id: str | None = None
    document_number: str | None = None


@dataclass(frozen=True)
class NewCase:
    """A Case ready to be inserted; created exactly once per imported row."""
    tenant_id: str
    client_id: str
    case_number: str
    title: str
    description: str
    status: CaseStatus
    opened_at: datetime
    created_by: str
    closed_at: datetime | None = None
    filing_number: str | None = None
    legacy_number: str | None = None
    assigned_to_id: str | None = None
    classification: ClassificationRef = field(default_factory=ClassificationRef)
    case_type: str = "Imported"
    is_historical: bool = False

    def audit_state(self) -> dict[str, Any]:
        return {
            "case_number": self.case_number,
            "client_id": self.client_id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "case_type": self.case_type,
            "filing_number": self.filing_number,
            "historical_case_number": self.legacy_number,
            "assigned_to_id": self.assigned_to_id,
            "domain_id": self.classification.domain_id,
            "branch_id": self.classification.branch_id,
            "subtype_id": self.classification.subtype_id,
            "opened_at": self.opened_at.isoformat(),
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "is_historical": self.is_historical,
        }


class QuotaService(Protocol):
    def get_quota(self, tenant_id: str) -> QuotaSnapshot:
        ...

    def reserve_slots(
        self,
        tenant_id: str,
        requested: int,
        reservation_id: str | None = None,
        *,
        expires_at: datetime | None = None,
    ) -> QuotaSnapshot:
        """Atomically reserve up to ``requested`` case slots; ``granted`` is set.

        With ``reservation_id`` the grant is recorded under that id so it can be
        consumed and released per import. A reservation with ``expires_at`` that
        is still unclaimed at that time is given back by the next reservation
        of the tenant or by release_expired_reservations().
        """
        ...

    def release_slots(self, tenant_id: str, count: int) -> None:
        ...

    def consume_slot(
        self, tenant_id: str, from_reservation: bool = True, reservation_id: str | None = None
    ) -> None:
        """Count one created case as usage (single-row atomic update).

        With ``from_reservation`` the reserved counter shrinks by the same one;
        with ``reservation_id`` only while that reservation still holds a slot.
        """
        ...

    def release_reservation(self, tenant_id: str, reservation_id: str) -> int:
        """Give back what is left of a reservation; returns the released count."""
        ...

    def hold_reservation(self, tenant_id: str, reservation_id: str) -> None:
        """Bind a reservation to a launched job: it no longer expires."""
        ...

    def release_expired_reservations(self) -> int:
        ...


class ReferenceResolver(Protocol):
    """Tenant-scoped reference lookups. Not found raises UnresolvedReferenceError."""

    def resolve_client(self, tenant_id: str, email: str) -> str:
        ...

    def resolve_lawyer(self, tenant_id: str, email: str) -> str:
        ...

    def resolve_classification(
        self, tenant_id: str, domain: str | None, branch: str | None, subtype: str | None
    ) -> ClassificationRef:
        ...


class ClientDirectory(Protocol):
    def find_client(self, tenant_id: str, email: str) -> ClientRecord | None:
        ...

    def create_client(self, tenant_id: str, row: ClientRow, document_type_id: str | None) -> ClientRecord:
        ...

    def fill_client_documents(
        self, tenant_id: str, client: ClientRecord, document_type_id: str | None, document_number: str | None
    ) -> None:
        ...

    def resolve_document_type(self, tenant_id: str, token: str) -> str | None:
        ...


class CaseStore(Protocol):
    def next_case_number(self, tenant_id: str) -> str:
        ...

    def create_case(self, case: NewCase) -> str:
        """Insert the case and return its id. Raises UniqueConflictError."""
        ...


class AuditSink(Protocol):
    def record_event(
        self,
        tenant_id: str,
        actor_id: str,
        action: str,
        resource_type: str,
        resource_id: str,
        new_state: dict[str, Any],
        resource_name: str | None = None,
    ) -> None:
        ...


class ReferenceCatalog(Protocol):
    def list_classifications(self, tenant_id: str) -> list[ClassificationNode]:
        ...

    def list_active_lawyers(self, tenant_id: str) -> list[LawyerRecord]:
        ...

    def list_document_types(self, tenant_id: str) -> list[DocumentTypeRecord]:
        ...


class JobStore(Protocol):
    def create(self, job: ImportJob) -> None:
        ...

    def update(self, job: ImportJob) -> bool:
        """Store the new state unless the job already finished; False when skipped."""
        ...

    def touch(self, job_ids: list[str], at: datetime) -> None:
        """Refresh the heartbeat of running jobs."""
        ...

    def get(self, tenant_id: str, job_id: str) -> ImportJob | None:
        ...

    def list_unfinished(self) -> list[ImportJob]:
        ...


class Notifier(Protocol):
    def notify(self, job: ImportJob) -> None:
        ...


class ClientInviter(Protocol):
    """Welcomes a client created by an import (password setup notice)."""

    def invite(self, tenant_id: str, client: ClientRecord, name: str) -> None:
        ...
