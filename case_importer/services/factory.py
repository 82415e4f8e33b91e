from __future__ import annotations

from case_importer.config.loader import ImportConfig
from case_importer.db.audit_store import PgAuditSink
from case_importer.db.case_store import PgCaseStore
from case_importer.db.connection import Database
from case_importer.db.job_store import PgJobStore
from case_importer.db.lookups import PgClientDirectory, PgReferenceCatalog, PgReferenceResolver
from case_importer.db.notification_store import PgClientInviter, PgNotifier
from case_importer.db.quota_store import PgQuotaService
from case_importer.excel.analyzer import FileAnalyzer
from case_importer.excel.template import TemplateGenerator
from case_importer.services.bulk_importer import BulkImporter
from case_importer.services.contracts import Notifier
from case_importer.services.pipeline import CaseImportService
from case_importer.services.quota_gate import QuotaGate
from case_importer.services.scheduler import ImportScheduler

__all__ = [
    "build_service",
]


def build_service(cfg: ImportConfig, db: Database, *, notifier: Notifier | None = None) -> CaseImportService:
    """Wire the PostgreSQL stores into a CaseImportService."""
    quota = PgQuotaService(db)
    jobs = PgJobStore(db)
    importer = BulkImporter(
        cases=PgCaseStore(db),
        resolver=PgReferenceResolver(db),
        clients=PgClientDirectory(db),
        quota=quota,
        audit=PgAuditSink(db),
        inviter=PgClientInviter(db),
        audit_enabled=cfg.audit_enabled,
    )
    scheduler = ImportScheduler(
        jobs,
        notifier if notifier is not None else PgNotifier(db),
        max_workers=cfg.max_workers,
        seconds_per_row=cfg.seconds_per_row,
        heartbeat_seconds=cfg.heartbeat_seconds,
        stale_after_seconds=cfg.stale_after_seconds,
    )
    return CaseImportService(
        analyzer=FileAnalyzer(),
        gate=QuotaGate(quota, hold_seconds=cfg.reservation_hold_seconds),
        importer=importer,
        scheduler=scheduler,
        jobs=jobs,
        templates=TemplateGenerator(PgReferenceCatalog(db), cfg.default_locale),
        allowed_roles=cfg.allowed_roles,
        logs_dir=cfg.logs_directory,
    )
