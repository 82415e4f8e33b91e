from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from functools import partial
from pathlib import Path

from case_importer.errors import (
    FormatError,
    JobNotFoundError,
    PermissionDeniedError,
    SubscriptionInactiveError,
)
from case_importer.excel.analyzer import FileAnalyzer
from case_importer.excel.template import TemplateGenerator
from case_importer.logging.error_log import write_failure_report
from case_importer.models.import_job import ImportJob, JobStatus
from case_importer.models.quota import AdmissionDecision, ImmediateSummary
from case_importer.services.bulk_importer import BulkImporter
from case_importer.services.contracts import Initiator, JobStore
from case_importer.services.progress import ImportProgress
from case_importer.services.quota_gate import QuotaGate
from case_importer.services.scheduler import ImportScheduler

"""CaseImportService: the entry point used by the HTTP layer and the CLI.

Upload flow:
    analyze (sync) -> admit / reserve (sync) -> launch worker -> immediate summary

The caller gets the summary back as soon as the worker is dispatched; the
final result is polled through get_job() and failure_report().

The quota reservation of an admission is named after the job when the
service creates the job itself (import_workbook), and is stored on the job
record in every case, so recover_interrupted() can give back the slots of a
job whose worker died.
"""

__all__ = [
    "CaseImportService",
]

logger = logging.getLogger(__name__)


def _new_job_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(UTC)


class CaseImportService:
    def __init__(
        self,
        analyzer: FileAnalyzer,
        gate: QuotaGate,
        importer: BulkImporter,
        scheduler: ImportScheduler,
        jobs: JobStore,
        templates: TemplateGenerator,
        *,
        allowed_roles: tuple[str, ...] = ("admin", "lawyer"),
        logs_dir: Path | None = None,
        job_id_factory: Callable[[], str] = _new_job_id,
    ) -> None:
        self.analyzer = analyzer
        self.gate = gate
        self.importer = importer
        self.scheduler = scheduler
        self.jobs = jobs
        self.templates = templates
        self.allowed_roles = tuple(r.lower() for r in allowed_roles)
        self.logs_dir = logs_dir
        self.job_id_factory = job_id_factory

    def check_permission(self, initiator: Initiator) -> None:
        if initiator.role.lower() not in self.allowed_roles:
            raise PermissionDeniedError(
                f"role '{initiator.role}' may not import cases (allowed: {', '.join(self.allowed_roles)})"
            )

    def analyze_and_admit(
        self,
        tenant_id: str,
        file_bytes: bytes,
        *,
        reserve: bool = True,
        reservation_id: str | None = None,
    ) -> AdmissionDecision:
        """Validate the workbook, count its case rows and decide admission.

        With ``reserve`` (default) the admitted slots are reserved and the
        decision binds the following launch_import(); without it the decision
        is a preview only.

        Raises:
            FormatError, SubscriptionInactiveError
        """
        total = self.analyzer.analyze(file_bytes)
        if reserve:
            return self.gate.admit(tenant_id, total, reservation_id)
        return self.gate.decide(tenant_id, total)

    def launch_import(
        self,
        tenant_id: str,
        initiator: Initiator,
        file_bytes: bytes,
        decision: AdmissionDecision,
        *,
        file_name: str = "upload.xlsx",
        locale: str | None = None,
        progress: ImportProgress | None = None,
    ) -> ImmediateSummary:
        """Dispatch the import worker for an admitted workbook and return at once."""
        if decision.tenant_id != tenant_id:
            self.gate.release_decision(decision)
            raise ValueError(f"admission decision belongs to tenant {decision.tenant_id}, not {tenant_id}")
        try:
            self.check_permission(initiator)
        except PermissionDeniedError:
            self.gate.release_decision(decision)
            raise
        job = ImportJob(
            id=self.job_id_factory(),
            tenant_id=tenant_id,
            initiator_id=initiator.user_id,
            file_name=file_name,
            status=JobStatus.ADMITTED,
            total_rows=decision.total_rows,
            admitted_count=decision.allowed_count,
            skipped_count=decision.skipped_count,
            reservation_id=decision.reservation_id,
            created_at=_now(),
        )
        return self._launch(job, file_bytes, decision, locale=locale, progress=progress)

    def import_workbook(
        self,
        tenant_id: str,
        initiator: Initiator,
        file_bytes: bytes,
        *,
        file_name: str = "upload.xlsx",
        locale: str | None = None,
        progress: ImportProgress | None = None,
    ) -> ImmediateSummary:
        """Analyze, admit and launch in one call, tracking every step on the job record.

        A workbook rejected during analysis leaves a FAILED job behind and the
        error is re-raised to the caller.
        """
        self.check_permission(initiator)
        job = ImportJob(
            id=self.job_id_factory(),
            tenant_id=tenant_id,
            initiator_id=initiator.user_id,
            file_name=file_name,
            created_at=_now(),
        )
        self.jobs.create(job)
        job = job.transition(JobStatus.ANALYZING)
        self.jobs.update(job)
        try:
            decision = self.analyze_and_admit(tenant_id, file_bytes, reservation_id=job.id)
        except (FormatError, SubscriptionInactiveError) as e:
            self.jobs.update(job.transition(JobStatus.FAILED, error=str(e)))
            logger.warning("import %s rejected tenant=%s: %s", job.id, tenant_id, e)
            raise
        job = job.transition(
            JobStatus.ADMITTED,
            total_rows=decision.total_rows,
            admitted_count=decision.allowed_count,
            skipped_count=decision.skipped_count,
            reservation_id=decision.reservation_id,
        )
        return self._launch(job, file_bytes, decision, locale=locale, progress=progress)

    def _launch(
        self,
        job: ImportJob,
        file_bytes: bytes,
        decision: AdmissionDecision,
        *,
        locale: str | None,
        progress: ImportProgress | None,
    ) -> ImmediateSummary:
        # the worker outlives the request; keep our own copy of the upload
        data = bytes(file_bytes)
        work = partial(
            self.importer.run,
            job.tenant_id,
            job.initiator_id,
            data,
            decision.truncation_index,
            file_name=job.file_name,
            reserved=decision.reserved,
            reservation_id=decision.reservation_id,
            progress=progress,
        )
        try:
            summary = self.scheduler.launch(job, work, locale=locale)
        except Exception as e:
            logger.exception("failed to launch import %s tenant=%s", job.id, job.tenant_id)
            self.gate.release_decision(decision)
            self._mark_launch_failed(job, e)
            raise
        try:
            self.gate.hold(decision)
        except Exception as e:
            # 期限切れになっても取り込み自体は続行できる
            logger.warning("could not hold quota reservation of import %s: %s", job.id, e)
        logger.info(
            "import %s launched tenant=%s file=%s rows=%d admitted=%d skipped=%d",
            job.id, job.tenant_id, job.file_name, job.total_rows, job.admitted_count, job.skipped_count,
        )
        return summary

    def _mark_launch_failed(self, job: ImportJob, error: Exception) -> None:
        try:
            if self.jobs.get(job.tenant_id, job.id) is not None:
                self.jobs.update(job.transition(JobStatus.FAILED, error=f"launch failed: {error}"))
        except Exception as e:
            logger.error("could not mark import %s as failed: %s", job.id, e)

    def generate_template(self, tenant_id: str, locale: str | None = None) -> bytes:
        return self.templates.generate(tenant_id, locale)

    def get_job(self, tenant_id: str, job_id: str) -> ImportJob:
        job = self.jobs.get(tenant_id, job_id)
        if job is None:
            raise JobNotFoundError(f"import job {job_id} not found")
        return job

    def failure_report(self, tenant_id: str, job_id: str) -> Path:
        """Write the failures of a job as JSON Lines and return the file path.

        Clients-sheet failures come first, then case rows in file order. The
        file is ``import-<job_id>.log`` and is rewritten on every call.
        """
        job = self.get_job(tenant_id, job_id)
        records = []
        if job.outcome is not None:
            records.extend(job.outcome.client_failures)
            records.extend(job.outcome.row_failures)
        return write_failure_report(job.id, records, self.logs_dir)

    def recover_interrupted(self) -> list[ImportJob]:
        """Fail abandoned jobs and give their quota reservations back.

        Reservations of admissions that were never launched are reclaimed in
        the same pass once they expired.
        """
        recovered = self.scheduler.recover_interrupted()
        for job in recovered:
            if job.reservation_id is None:
                continue
            released = self.gate.release_reservation(job.tenant_id, job.reservation_id)
            if released:
                logger.info("import %s: released %d reserved slots of the interrupted run", job.id, released)
        self.gate.reclaim_expired()
        return recovered
