from __future__ import annotations

from typing import Any

from psycopg2.extras import Json

from case_importer.db.connection import Database

__all__ = [
    "PgAuditSink",
]

# user name / role are copied onto the row so the log stays readable after
# the user is renamed or removed
_INSERT_AUDIT_SQL = """
INSERT INTO audit_logs (
    firm_id, user_id, user_name, user_role, resource_type, resource_id,
    resource_name, action, description, new_values
)
SELECT %(firm)s, u.id, COALESCE(u.name, ''), COALESCE(u.role, ''), %(rtype)s, %(rid)s,
       %(rname)s, %(action)s, %(description)s, %(state)s
FROM (SELECT 1) AS one
LEFT JOIN users u ON u.id = %(actor)s
"""


class PgAuditSink:
    def __init__(self, db: Database) -> None:
        self.db = db

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
        with self.db.transaction() as cur:
            cur.execute(
                _INSERT_AUDIT_SQL,
                {
                    "firm": tenant_id,
                    "actor": actor_id,
                    "rtype": resource_type,
                    "rid": resource_id,
                    "rname": resource_name,
                    "action": action,
                    "description": f"{action} {resource_type} {resource_name or resource_id} (bulk import)",
                    "state": Json(new_state),
                },
            )
