from __future__ import annotations

import logging
import secrets

from case_importer.db.connection import Database
from case_importer.errors import UnresolvedReferenceError
from case_importer.models.case_row import ClientRow
from case_importer.services.contracts import (
    ClassificationNode,
    ClassificationRef,
    ClientRecord,
    DocumentTypeRecord,
    LawyerRecord,
)

"""Tenant-scoped reference lookups on users, choice options and the
Domain > Branch > Subtype classification tables.

Emails and classification names are compared case-insensitively; every
query filters on firm_id.
"""

__all__ = [
    "PgReferenceResolver",
    "PgClientDirectory",
    "PgReferenceCatalog",
]

logger = logging.getLogger(__name__)

CLIENT_ROLE = "client"
LAWYER_ROLES = ("admin", "lawyer")

_DOCUMENT_TYPES_SQL = """
SELECT o.id, o.code, o.label
FROM choice_options o
JOIN choice_categories c ON c.id = o.category_id
WHERE c.firm_id = %s AND c.key = 'document_type' AND o.is_active AND o.deleted_at IS NULL
"""


class PgReferenceResolver:
    def __init__(self, db: Database) -> None:
        self.db = db

    def resolve_client(self, tenant_id: str, email: str) -> str:
        with self.db.transaction() as cur:
            cur.execute(
                "SELECT id FROM users WHERE firm_id = %s AND lower(email) = lower(%s) "
                "AND role = %s AND deleted_at IS NULL LIMIT 1",
                (tenant_id, email, CLIENT_ROLE),
            )
            row = cur.fetchone()
        if row is None:
            raise UnresolvedReferenceError("client", email)
        return str(row[0])

    def resolve_lawyer(self, tenant_id: str, email: str) -> str:
        with self.db.transaction() as cur:
            cur.execute(
                "SELECT id FROM users WHERE firm_id = %s AND lower(email) = lower(%s) "
                "AND role IN %s AND is_active AND deleted_at IS NULL LIMIT 1",
                (tenant_id, email, LAWYER_ROLES),
            )
            row = cur.fetchone()
        if row is None:
            raise UnresolvedReferenceError("lawyer", email, "(or inactive)")
        return str(row[0])

    def resolve_classification(
        self, tenant_id: str, domain: str | None, branch: str | None, subtype: str | None
    ) -> ClassificationRef:
        if branch and not domain:
            raise UnresolvedReferenceError("branch", branch, "(domain required)")
        if subtype and not branch:
            raise UnresolvedReferenceError("subtype", subtype, "(branch required)")
        if not domain:
            return ClassificationRef()
        with self.db.transaction() as cur:
            cur.execute(
                "SELECT id FROM case_domains WHERE firm_id = %s AND lower(name) = lower(%s) "
                "AND is_active AND deleted_at IS NULL LIMIT 1",
                (tenant_id, domain),
            )
            row = cur.fetchone()
            if row is None:
                raise UnresolvedReferenceError("domain", domain)
            domain_id = str(row[0])
            branch_id = subtype_id = None
            if branch:
                cur.execute(
                    "SELECT id FROM case_branches WHERE firm_id = %s AND domain_id = %s "
                    "AND lower(name) = lower(%s) AND is_active AND deleted_at IS NULL LIMIT 1",
                    (tenant_id, domain_id, branch),
                )
                row = cur.fetchone()
                if row is None:
                    raise UnresolvedReferenceError("branch", branch, f"in domain '{domain}'")
                branch_id = str(row[0])
            if subtype:
                cur.execute(
                    "SELECT id FROM case_subtypes WHERE firm_id = %s AND branch_id = %s "
                    "AND lower(name) = lower(%s) AND is_active AND deleted_at IS NULL LIMIT 1",
                    (tenant_id, branch_id, subtype),
                )
                row = cur.fetchone()
                if row is None:
                    raise UnresolvedReferenceError("subtype", subtype, f"in branch '{branch}'")
                subtype_id = str(row[0])
        return ClassificationRef(domain_id=domain_id, branch_id=branch_id, subtype_id=subtype_id)


class PgClientDirectory:
    def __init__(self, db: Database) -> None:
        self.db = db

    def find_client(self, tenant_id: str, email: str) -> ClientRecord | None:
        with self.db.transaction() as cur:
            cur.execute(
                "SELECT id, email, document_type_id, document_number FROM users "
                "WHERE firm_id = %s AND lower(email) = lower(%s) AND role = %s AND deleted_at IS NULL LIMIT 1",
                (tenant_id, email, CLIENT_ROLE),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return ClientRecord(
            user_id=str(row[0]),
            email=row[1],
            document_type_id=str(row[2]) if row[2] is not None else None,
            document_number=row[3],
        )

    def create_client(self, tenant_id: str, row: ClientRow, document_type_id: str | None) -> ClientRecord:
        name = row.name or row.email.split("@", 1)[0]
        # unusable password: the client sets one through the password reset flow
        password = "!" + secrets.token_hex(16)
        with self.db.transaction() as cur:
            cur.execute(
                "INSERT INTO users (firm_id, name, email, password, role, is_active, phone_number, "
                "document_type_id, document_number) "
                "VALUES (%s, %s, %s, %s, %s, true, %s, %s, %s) RETURNING id",
                (tenant_id, name, row.email, password, CLIENT_ROLE, row.phone, document_type_id, row.document_number),
            )
            user_id = str(cur.fetchone()[0])
        logger.debug("created client %s tenant=%s", row.email, tenant_id)
        return ClientRecord(
            user_id=user_id, email=row.email, document_type_id=document_type_id, document_number=row.document_number
        )

    def fill_client_documents(
        self, tenant_id: str, client: ClientRecord, document_type_id: str | None, document_number: str | None
    ) -> None:
        if document_type_id is None and document_number is None:
            return
        with self.db.transaction() as cur:
            cur.execute(
                "UPDATE users SET document_type_id = COALESCE(document_type_id, %s), "
                "document_number = COALESCE(document_number, %s), updated_at = now() "
                "WHERE id = %s AND firm_id = %s",
                (document_type_id, document_number, client.user_id, tenant_id),
            )

    def resolve_document_type(self, tenant_id: str, token: str) -> str | None:
        """Document type id by code or label; None (ignored) when unknown."""
        with self.db.transaction() as cur:
            cur.execute(
                _DOCUMENT_TYPES_SQL + " AND (upper(o.code) = upper(%s) OR lower(o.label) = lower(%s)) LIMIT 1",
                (tenant_id, token, token),
            )
            row = cur.fetchone()
        return str(row[0]) if row else None


class PgReferenceCatalog:
    def __init__(self, db: Database) -> None:
        self.db = db

    def list_classifications(self, tenant_id: str) -> list[ClassificationNode]:
        with self.db.transaction() as cur:
            cur.execute(
                """
                SELECT d.name, b.name, s.name
                FROM case_domains d
                LEFT JOIN case_branches b
                    ON b.domain_id = d.id AND b.is_active AND b.deleted_at IS NULL
                LEFT JOIN case_subtypes s
                    ON s.branch_id = b.id AND s.is_active AND s.deleted_at IS NULL
                WHERE d.firm_id = %s AND d.is_active AND d.deleted_at IS NULL
                ORDER BY d."order", d.name, b."order", b.name, s."order", s.name
                """,
                (tenant_id,),
            )
            rows = cur.fetchall()
        return [ClassificationNode(domain=d, branch=b, subtype=s) for d, b, s in rows]

    def list_active_lawyers(self, tenant_id: str) -> list[LawyerRecord]:
        with self.db.transaction() as cur:
            cur.execute(
                "SELECT id, name, email FROM users WHERE firm_id = %s AND role IN %s "
                "AND is_active AND deleted_at IS NULL ORDER BY name",
                (tenant_id, LAWYER_ROLES),
            )
            rows = cur.fetchall()
        return [LawyerRecord(user_id=str(i), name=n, email=e) for i, n, e in rows]

    def list_document_types(self, tenant_id: str) -> list[DocumentTypeRecord]:
        with self.db.transaction() as cur:
            cur.execute(_DOCUMENT_TYPES_SQL + ' ORDER BY o."order", o.code', (tenant_id,))
            rows = cur.fetchall()
        return [DocumentTypeRecord(id=str(i), code=c, label=lbl) for i, c, lbl in rows]
