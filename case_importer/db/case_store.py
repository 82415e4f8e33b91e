from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

from case_importer.db.connection import Database
from case_importer.services.contracts import NewCase

"""Case persistence and case number generation.

Case numbers are ``{SLUG}-{YEAR}-{SEQ:05d}``. The sequence lives in
case_number_sequences (one row per firm and year) and is advanced with a
single upsert, so concurrent imports never hand out the same value. The
first number of a year continues after the highest existing case number of
that year, which keeps numbering stable for firms that created cases before
the sequence table existed.
"""

__all__ = [
    "PgCaseStore",
    "format_case_number",
]


def format_case_number(slug: str, year: int, seq: int) -> str:
    return f"{slug}-{year}-{seq:05d}"


_NEXT_SEQ_SQL = r"""
INSERT INTO case_number_sequences (firm_id, year, last_value)
VALUES (
    %(firm)s, %(year)s,
    COALESCE((
        SELECT MAX(CAST(substring(case_number FROM '(\d+)$') AS integer))
        FROM cases
        WHERE firm_id = %(firm)s AND case_number LIKE %(prefix)s
    ), 0) + 1
)
ON CONFLICT (firm_id, year) DO UPDATE
    SET last_value = case_number_sequences.last_value + 1
RETURNING last_value
"""

_INSERT_CASE_SQL = """
INSERT INTO cases (
    firm_id, client_id, case_number, title, case_type, description, status,
    opened_at, closed_at, filing_number, historical_case_number, assigned_to_id,
    domain_id, branch_id, classified_by, is_historical, migrated_by, migrated_at,
    created_by
) VALUES (
    %s, %s, %s, %s, %s, %s, %s,
    %s, %s, %s, %s, %s,
    %s, %s, %s, %s, %s, %s,
    %s
)
RETURNING id
"""


class PgCaseStore:
    def __init__(self, db: Database, *, clock: Callable[[], datetime] | None = None) -> None:
        self.db = db
        self.clock = clock or (lambda: datetime.now(UTC))
        self._slugs: dict[str, str] = {}

    def _slug(self, cur, tenant_id: str) -> str:
        slug = self._slugs.get(tenant_id)
        if slug is None:
            cur.execute("SELECT slug FROM firms WHERE id = %s", (tenant_id,))
            row = cur.fetchone()
            if row is None or not row[0]:
                raise LookupError(f"firm {tenant_id} has no slug")
            slug = self._slugs[tenant_id] = row[0]
        return slug

    def next_case_number(self, tenant_id: str) -> str:
        year = self.clock().year
        with self.db.transaction() as cur:
            slug = self._slug(cur, tenant_id)
            prefix = f"{slug}-{year}-"
            cur.execute(
                _NEXT_SEQ_SQL,
                {"firm": tenant_id, "year": year, "prefix": prefix.replace("%", r"\%").replace("_", r"\_") + "%"},
            )
            seq = cur.fetchone()[0]
        return format_case_number(slug, year, seq)

    def create_case(self, case: NewCase) -> str:
        """Insert a case (and its subtype link); returns the new case id."""
        c = case.classification
        classified = c.domain_id is not None
        with self.db.transaction() as cur:
            cur.execute(
                _INSERT_CASE_SQL,
                (
                    case.tenant_id, case.client_id, case.case_number, case.title, case.case_type,
                    case.description, case.status.value,
                    case.opened_at, case.closed_at, case.filing_number, case.legacy_number, case.assigned_to_id,
                    c.domain_id, c.branch_id, case.created_by if classified else None,
                    case.is_historical,
                    case.created_by if case.is_historical else None,
                    self.clock() if case.is_historical else None,
                    case.created_by,
                ),
            )
            case_id = str(cur.fetchone()[0])
            if c.subtype_id is not None:
                cur.execute(
                    "INSERT INTO case_subtypes_junction (case_id, case_subtype_id) VALUES (%s, %s)",
                    (case_id, c.subtype_id),
                )
        return case_id
