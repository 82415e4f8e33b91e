from __future__ import annotations

import argparse
import logging
import sys
from contextlib import contextmanager
from pathlib import Path

from case_importer.config.loader import DEFAULT_CONFIG_PATH, ConfigError, ImportConfig, load_config, load_env_file
from case_importer.db.connection import Database
from case_importer.errors import CaseImportError, FormatError, ImportSystemError
from case_importer.logging.init import log_summary, setup_logging
from case_importer.models.import_job import ImportJob, JobStatus
from case_importer.services.contracts import Initiator
from case_importer.services.factory import build_service
from case_importer.services.pipeline import CaseImportService
from case_importer.services.progress import ImportProgress
from case_importer.services.summary import render_admission_message, render_summary_line

"""CLI entrypoint.

    python -m case_importer.cli analyze FILE --tenant T
    python -m case_importer.cli import FILE --tenant T --initiator U [--role R] [--wait]
    python -m case_importer.cli template --tenant T [--locale L] --output PATH
    python -m case_importer.cli job JOB_ID --tenant T
    python -m case_importer.cli recover

Exit codes: 0 success, 1 fatal (config / format / system), 2 partial
(rows skipped over the plan limit or rows failed).
"""

EXIT_SUCCESS_ALL = 0
EXIT_FATAL = 1
EXIT_PARTIAL_FAILURE = 2


@contextmanager
def _open_service(cfg: ImportConfig):  # pragma: no cover (thin wrapper; tested via integration)
    """Yield a CaseImportService on a pooled database; drains workers on exit."""
    db = Database.from_config(cfg)
    service = build_service(cfg, db)
    try:
        yield service
    finally:
        service.scheduler.shutdown(wait=True)
        db.close()


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="case_importer", description="Bulk case import (xlsx -> PostgreSQL)")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    p.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Path of import.yml")
    p.add_argument("--env-file", type=Path, default=Path(".env"), help="dotenv file (overrides the environment)")
    sub = p.add_subparsers(dest="command", required=True)

    a = sub.add_parser("analyze", help="Validate a workbook and preview the admission decision")
    a.add_argument("file", type=Path)
    a.add_argument("--tenant", required=True)

    i = sub.add_parser("import", help="Import a workbook in the background")
    i.add_argument("file", type=Path)
    i.add_argument("--tenant", required=True)
    i.add_argument("--initiator", required=True, help="User id of the person starting the import")
    i.add_argument("--role", default="admin")
    i.add_argument("--locale", default=None)
    i.add_argument("--wait", action="store_true", help="Wait for the worker and print the final summary")

    t = sub.add_parser("template", help="Write the localized import template")
    t.add_argument("--tenant", required=True)
    t.add_argument("--locale", default=None)
    t.add_argument("--output", type=Path, required=True)

    j = sub.add_parser("job", help="Show the state of an import job")
    j.add_argument("job_id")
    j.add_argument("--tenant", required=True)

    sub.add_parser("recover", help="Mark jobs interrupted by a crash as failed and release their quota")
    return p.parse_args(argv)


def _job_exit_code(job: ImportJob) -> int:
    if job.status is JobStatus.FAILED:
        return EXIT_FATAL
    outcome = job.outcome
    if job.partial or (outcome is not None and (outcome.failed_count or outcome.client_failures)):
        return EXIT_PARTIAL_FAILURE
    return EXIT_SUCCESS_ALL


def _report_job(service: CaseImportService, job: ImportJob, logger: logging.Logger) -> int:
    # log_summary adds the "SUMMARY " label itself
    log_summary(render_summary_line(job)[len("SUMMARY "):])
    if job.error:
        logger.error(f"job {job.id}: {job.error}")
    outcome = job.outcome
    if outcome is not None and (outcome.row_failures or outcome.client_failures):
        path = service.failure_report(job.tenant_id, job.id)
        logger.info(f"failure report: {path}")
    return _job_exit_code(job)


def _cmd_analyze(service: CaseImportService, args: argparse.Namespace, logger: logging.Logger) -> int:
    decision = service.analyze_and_admit(args.tenant, args.file.read_bytes(), reserve=False)
    logger.info(
        f"file={args.file.name} rows={decision.total_rows} allowed={decision.allowed_count} "
        f"skipped={decision.skipped_count} unlimited={decision.unlimited}"
    )
    return EXIT_PARTIAL_FAILURE if decision.partial else EXIT_SUCCESS_ALL


def _cmd_import(service: CaseImportService, args: argparse.Namespace, logger: logging.Logger) -> int:
    data = args.file.read_bytes()
    initiator = Initiator(user_id=args.initiator, role=args.role)
    if not args.wait:
        summary = service.import_workbook(args.tenant, initiator, data, file_name=args.file.name, locale=args.locale)
        logger.info(f"job={summary.job_id} {render_admission_message(summary, args.locale)} (estimated: {summary.estimated_time})")
        return EXIT_PARTIAL_FAILURE if summary.skipped_count else EXIT_SUCCESS_ALL

    service.check_permission(initiator)
    decision = service.analyze_and_admit(args.tenant, data)
    with ImportProgress(decision.allowed_count) as progress:
        summary = service.launch_import(
            args.tenant, initiator, data, decision,
            file_name=args.file.name, locale=args.locale, progress=progress,
        )
        logger.info(f"job={summary.job_id} {render_admission_message(summary, args.locale)}")
        service.scheduler.wait(summary.job_id)
    return _report_job(service, service.get_job(args.tenant, summary.job_id), logger)


def _cmd_template(service: CaseImportService, args: argparse.Namespace, logger: logging.Logger) -> int:
    content = service.generate_template(args.tenant, args.locale)
    args.output.parent.mkdir(parents=True, exist_ok=True)
    args.output.write_bytes(content)
    logger.info(f"template written: {args.output}")
    return EXIT_SUCCESS_ALL


def _cmd_job(service: CaseImportService, args: argparse.Namespace, logger: logging.Logger) -> int:
    job = service.get_job(args.tenant, args.job_id)
    if not job.status.terminal:
        logger.info(f"job {job.id} is {job.status.value}")
        return EXIT_SUCCESS_ALL
    return _report_job(service, job, logger)


def _cmd_recover(service: CaseImportService, args: argparse.Namespace, logger: logging.Logger) -> int:
    recovered = service.recover_interrupted()
    logger.info(f"recovered={len(recovered)}")
    return EXIT_SUCCESS_ALL


COMMANDS = {
    "analyze": _cmd_analyze,
    "import": _cmd_import,
    "template": _cmd_template,
    "job": _cmd_job,
    "recover": _cmd_recover,
}


def main(argv: list[str] | None = None) -> int:
    logger = setup_logging()

    # [] はそのまま使う (pytest の引数を誤って読まないため None のときだけ sys.argv)
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    # .env を最優先で読み込む (DB 接続パラメータ優先順位保証)
    load_env_file(args.env_file, override=True)

    if args.debug:
        for h in logger.handlers:
            h.setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
        logger.debug("debug mode enabled")

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    try:
        with _open_service(cfg) as service:
            return COMMANDS[args.command](service, args, logger)
    except FormatError as e:
        logger.error(f"format: {e}")
        return EXIT_FATAL
    except ImportSystemError as e:
        logger.error(f"system: {e}")
        return EXIT_FATAL
    except CaseImportError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return EXIT_FATAL
    except OSError as e:
        logger.error(f"io: {e}")
        return EXIT_FATAL


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
