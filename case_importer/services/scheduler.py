from __future__ import annotations

import logging
import os
import socket
import threading
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED, JobExecutionEvent
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler

from case_importer.errors import ImportSystemError
from case_importer.models.import_job import ImportJob, JobStatus
from case_importer.models.import_outcome import ImportOutcome
from case_importer.models.quota import ImmediateSummary
from case_importer.services.contracts import JobStore, Notifier
from case_importer.services.notifications import LogNotifier
from case_importer.services.summary import build_immediate_summary

"""Detached execution of import workers.

Every admitted import becomes a persisted ImportJob and exactly one one-shot
job on a BackgroundScheduler backed by a bounded thread pool. The worker
runs independently of the request that launched it: it is never cancelled
and has no deadline. Jobs beyond the pool size wait in the executor queue
(misfire_grace_time=None, so a queued job is never dropped).

Imports of the same tenant are not serialized; concurrent runs are kept
consistent by the atomic quota reservation and case number sequence.

Every scheduler has an ``instance_id``. Launched jobs record it as their
owner and get a heartbeat every ``heartbeat_seconds`` while they run.
recover_interrupted() only fails jobs nobody is working on: never a job of
this process, and a job of another instance only once its heartbeat is older
than ``stale_after_seconds``. A job that already finished is never rewritten.
"""

__all__ = [
    "ImportScheduler",
]

logger = logging.getLogger(__name__)

UTC_ZONE = ZoneInfo("UTC")
INTERRUPTED_MESSAGE = "interrupted: worker stopped before the import finished"
HEARTBEAT_JOB_ID = "import-heartbeat"


def default_instance_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class ImportScheduler:
    def __init__(
        self,
        jobs: JobStore,
        notifier: Notifier | None = None,
        *,
        max_workers: int = 4,
        seconds_per_row: float = 0.5,
        instance_id: str | None = None,
        heartbeat_seconds: float = 30,
        stale_after_seconds: float = 300,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if heartbeat_seconds <= 0 or stale_after_seconds <= heartbeat_seconds:
            raise ValueError("need 0 < heartbeat_seconds < stale_after_seconds")
        self.jobs = jobs
        self.notifier = notifier if notifier is not None else LogNotifier()
        self.seconds_per_row = seconds_per_row
        self.instance_id = instance_id or default_instance_id()
        self.heartbeat_seconds = heartbeat_seconds
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.clock = clock or (lambda: datetime.now(UTC))
        self._scheduler = BackgroundScheduler(
            executors={
                "default": ThreadPoolExecutor(max_workers),
                # heartbeat は取り込みワーカーと別スレッドで動かす
                "maintenance": ThreadPoolExecutor(1),
            },
            job_defaults={
                "coalesce": False,
                "max_instances": 1,
                "misfire_grace_time": None,
            },
            timezone=UTC_ZONE,
        )
        self._scheduler.add_listener(self._on_scheduler_event, EVENT_JOB_ERROR | EVENT_JOB_MISSED)
        self._done: dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            self._scheduler.add_job(
                self.heartbeat,
                "interval",
                seconds=self.heartbeat_seconds,
                id=HEARTBEAT_JOB_ID,
                executor="maintenance",
                coalesce=True,
                replace_existing=True,
            )
            logger.info("import scheduler started instance=%s", self.instance_id)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting jobs; with ``wait`` running imports are drained first."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("import scheduler shut down")

    def active_job_ids(self) -> list[str]:
        with self._lock:
            return list(self._done)

    def heartbeat(self) -> None:
        """Mark every job launched by this instance and not yet finished as alive."""
        ids = self.active_job_ids()
        if not ids:
            return
        try:
            self.jobs.touch(ids, self.clock())
        except Exception as e:
            logger.warning("heartbeat for %d import jobs failed: %s", len(ids), e)

    def launch(
        self,
        job: ImportJob,
        work: Callable[[], ImportOutcome],
        *,
        locale: str | None = None,
    ) -> ImmediateSummary:
        """Persist an admitted job, dispatch its worker and return right away.

        The returned summary is built from the admission counts only; the
        worker has not produced any row yet.
        """
        if job.status is not JobStatus.ADMITTED:
            raise ValueError(f"only admitted jobs can be launched (status={job.status.value})")
        job = replace(job, owner=self.instance_id, heartbeat_at=self.clock())
        # 登録前に _done に入れる: 並行する recover_interrupted から守る
        with self._lock:
            self._done[job.id] = threading.Event()
        try:
            if self.jobs.get(job.tenant_id, job.id) is None:
                self.jobs.create(job)
            elif not self.jobs.update(job):
                raise ValueError(f"import job {job.id} already finished")
        except Exception:
            self._release_waiter(job.id)
            raise
        self.start()
        self._scheduler.add_job(
            self._execute,
            args=(job, work),
            id=job.id,
            name=f"case-import:{job.tenant_id}:{job.id}",
        )
        logger.info(
            "import job %s dispatched tenant=%s admitted=%d skipped=%d",
            job.id, job.tenant_id, job.admitted_count, job.skipped_count,
        )
        return build_immediate_summary(job, self.seconds_per_row, locale)

    def wait(self, job_id: str, timeout: float | None = None) -> bool:
        """Block until a launched job reached a terminal state (CLI / tests)."""
        with self._lock:
            event = self._done.get(job_id)
        if event is None:
            return True
        return event.wait(timeout)

    def _is_abandoned(self, job: ImportJob, now: datetime) -> bool:
        with self._lock:
            if job.id in self._done:
                return False
        if job.owner == self.instance_id:
            return True
        seen = job.last_seen
        return seen is None or now - seen >= self.stale_after

    def recover_interrupted(self) -> list[ImportJob]:
        """Mark unfinished jobs that nobody is running any more as failed."""
        now = self.clock()
        recovered = []
        for job in self.jobs.list_unfinished():
            if not self._is_abandoned(job, now):
                logger.debug("import job %s is still alive (owner=%s), not recovered", job.id, job.owner)
                continue
            failed = job.transition(JobStatus.FAILED, error=INTERRUPTED_MESSAGE)
            if self._finish(failed):
                recovered.append(failed)
        if recovered:
            logger.warning("marked %d interrupted import jobs as failed", len(recovered))
        return recovered

    def _execute(self, job: ImportJob, work: Callable[[], ImportOutcome]) -> None:
        job = job.transition(JobStatus.RUNNING, heartbeat_at=self.clock())
        try:
            if not self.jobs.update(job):
                logger.warning("import job %s was finished elsewhere before it started", job.id)
                self._release_waiter(job.id)
                return
            outcome = work()
        except ImportSystemError as e:
            job = job.transition(JobStatus.FAILED, error=str(e), outcome=e.partial_outcome)
        except Exception as e:
            logger.exception("import job %s crashed", job.id)
            job = job.transition(JobStatus.FAILED, error=f"{type(e).__name__}: {e}")
        else:
            job = job.transition(JobStatus.COMPLETED, outcome=outcome)
        self._finish(job)

    def _finish(self, job: ImportJob) -> bool:
        """Store the final state and notify; False when the job had already finished."""
        try:
            stored = self.jobs.update(job)
        except Exception:
            logger.exception("failed to persist result of import job %s", job.id)
            stored = True
        if not stored:
            logger.warning("import job %s already finished, %s result dropped", job.id, job.status.value)
        else:
            if job.status is JobStatus.FAILED:
                logger.error("import job %s failed: %s", job.id, job.error)
            else:
                logger.info("import job %s %s", job.id, job.status.value)
            try:
                self.notifier.notify(job)
            except Exception as e:
                logger.warning("notification for import job %s failed: %s", job.id, e)
        self._release_waiter(job.id)
        return stored

    def _release_waiter(self, job_id: str) -> None:
        with self._lock:
            event = self._done.pop(job_id, None)
        if event is not None:
            event.set()

    def _on_scheduler_event(self, event: JobExecutionEvent) -> None:
        if event.code == EVENT_JOB_MISSED:
            logger.error("import job %s missed its run time", event.job_id)
        elif event.exception is not None:
            logger.error("import job %s raised outside the worker: %s", event.job_id, event.exception)
