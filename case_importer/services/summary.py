from __future__ import annotations

from case_importer.i18n.catalog import translate
from case_importer.models.import_job import ImportJob
from case_importer.models.quota import ImmediateSummary

"""Summary rendering for the synchronous answer and for finished jobs."""

__all__ = [
    "estimate_duration",
    "build_immediate_summary",
    "render_admission_message",
    "render_summary_line",
]


def _format_number(value: float) -> str:
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if value < 0.01:
        # avoid scientific notation
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return f"{value:.3f}".rstrip("0").rstrip(".")


def estimate_duration(admitted: int, seconds_per_row: float, locale: str | None = None) -> tuple[float, str]:
    """Rough time estimate of an import (heuristic: fixed seconds per row)."""
    seconds = admitted * seconds_per_row
    if seconds > 60:
        return seconds, translate(locale, "summary.estimate_minutes", minutes=int(seconds / 60))
    return seconds, translate(locale, "summary.estimate_short")


def build_immediate_summary(job: ImportJob, seconds_per_row: float, locale: str | None = None) -> ImmediateSummary:
    seconds, text = estimate_duration(job.admitted_count, seconds_per_row, locale)
    return ImmediateSummary(
        job_id=job.id,
        total_rows=job.total_rows,
        admitted_count=job.admitted_count,
        skipped_count=job.skipped_count,
        estimated_seconds=seconds,
        estimated_time=text,
    )


def render_admission_message(summary: ImmediateSummary, locale: str | None = None) -> str:
    """e.g. ``2 to import, 8 skipped (over limit)``"""
    return translate(
        locale, "summary.admitted", allowed=summary.admitted_count, skipped=summary.skipped_count
    )


def render_summary_line(job: ImportJob) -> str:
    """Render the SUMMARY line of a job.

    Format:
    SUMMARY job={id} status={status} rows={total} admitted={admitted} skipped={skipped}
    created={created} failed={failed} elapsed_sec={elapsed}
    """
    outcome = job.outcome
    created = outcome.created_count if outcome else 0
    failed = outcome.failed_count if outcome else 0
    elapsed = outcome.elapsed_seconds if outcome else 0.0
    return (
        f"SUMMARY job={job.id} "
        f"status={job.status.value} "
        f"rows={job.total_rows} "
        f"admitted={job.admitted_count} "
        f"skipped={job.skipped_count} "
        f"created={created} "
        f"failed={failed} "
        f"elapsed_sec={_format_number(elapsed)}"
    )
