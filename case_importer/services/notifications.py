from __future__ import annotations

import logging
from dataclasses import dataclass

from case_importer.models.import_job import ImportJob, JobStatus
from case_importer.services.contracts import ClientRecord

"""Completion notices for the initiator of an import.

The text is built here; delivery is up to the Notifier implementation
(in-app notification table, or the log when nothing else is configured).
Clients created by an import get a welcome notice pointing at the password
setup page.
"""

__all__ = [
    "JobNotice",
    "build_job_notice",
    "build_welcome_notice",
    "LogNotifier",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobNotice:
    tenant_id: str
    user_id: str
    kind: str  # "success" | "warning" | "error" | "info"
    title: str
    message: str
    link: str


def build_job_notice(job: ImportJob) -> JobNotice:
    link = f"/cases/import/jobs/{job.id}"
    outcome = job.outcome
    created = outcome.created_count if outcome else 0
    failed = outcome.failed_count if outcome else 0
    if job.status is JobStatus.FAILED:
        return JobNotice(
            tenant_id=job.tenant_id,
            user_id=job.initiator_id,
            kind="error",
            title="Case import failed",
            message=f"The import of {job.file_name} stopped after creating {created} cases: {job.error}",
            link=link,
        )
    parts = [f"{created} cases created"]
    if failed:
        parts.append(f"{failed} rows failed")
    if job.skipped_count:
        parts.append(f"{job.skipped_count} skipped (over limit)")
    return JobNotice(
        tenant_id=job.tenant_id,
        user_id=job.initiator_id,
        kind="warning" if failed or job.skipped_count else "success",
        title="Case import finished",
        message=f"{job.file_name}: " + ", ".join(parts) + ".",
        link=link,
    )


def build_welcome_notice(tenant_id: str, client: ClientRecord, name: str = "") -> JobNotice:
    display = name or client.email
    return JobNotice(
        tenant_id=tenant_id,
        user_id=client.user_id,
        kind="info",
        title="Welcome",
        message=f"Hello {display}, an account was created for you. Set your password to see your cases.",
        link="/auth/set-password",
    )


class LogNotifier:
    """Notifier that only writes the notice to the log."""

    def notify(self, job: ImportJob) -> None:
        notice = build_job_notice(job)
        level = logging.ERROR if notice.kind == "error" else logging.INFO
        logger.log(level, "notify user=%s: %s - %s", notice.user_id, notice.title, notice.message)
