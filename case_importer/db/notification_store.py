from __future__ import annotations

import logging

from case_importer.db.connection import Database
from case_importer.errors import ImportSystemError
from case_importer.models.import_job import ImportJob
from case_importer.services.contracts import ClientRecord, Notifier
from case_importer.services.notifications import (
    JobNotice,
    LogNotifier,
    build_job_notice,
    build_welcome_notice,
)

"""In-app notifications (notifications table) for import results and new clients."""

__all__ = [
    "PgNotifier",
    "PgClientInviter",
]

logger = logging.getLogger(__name__)

NOTIFICATION_TYPE = "case_import"
WELCOME_TYPE = "client_welcome"

_INSERT_SQL = (
    "INSERT INTO notifications (firm_id, user_id, type, title, message, link) "
    "VALUES (%s, %s, %s, %s, %s, %s)"
)


def _insert(db: Database, notice: JobNotice, type_: str) -> None:
    with db.transaction() as cur:
        cur.execute(
            _INSERT_SQL,
            (notice.tenant_id, notice.user_id, type_, notice.title, notice.message, notice.link),
        )


class PgNotifier:
    """In-app notification for the user who started the import.

    When the notification cannot be stored the notice goes to ``fallback``
    (the log by default) so the result is never lost silently.
    """

    def __init__(self, db: Database, fallback: Notifier | None = None) -> None:
        self.db = db
        self.fallback = fallback if fallback is not None else LogNotifier()

    def notify(self, job: ImportJob) -> None:
        notice = build_job_notice(job)
        try:
            _insert(self.db, notice, f"{NOTIFICATION_TYPE}_{notice.kind}")
        except ImportSystemError as e:
            logger.warning("could not store notification for job %s: %s", job.id, e)
            self.fallback.notify(job)
            return
        logger.debug("notification stored for job %s user=%s", job.id, notice.user_id)


class PgClientInviter:
    """Welcome notice for clients created by an import."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def invite(self, tenant_id: str, client: ClientRecord, name: str) -> None:
        _insert(self.db, build_welcome_notice(tenant_id, client, name), WELCOME_TYPE)
        logger.debug("welcome notice stored for client %s", client.user_id)
