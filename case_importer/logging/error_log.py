from __future__ import annotations

import os
import threading
import uuid
from pathlib import Path

from case_importer.models.error_record import ErrorRecord

"""Failure report buffering.

- JSON Lines, fixed key set (ErrorRecord.to_json_line)
- one file per import job: ``<logs>/import-<job_id>.log``
- flush() rewrites the whole file from the buffer (write to a temp file, then
  os.replace), so repeated reports of one job never duplicate records and a
  reader never sees a half written file

Buffers are shared between a worker thread and report readers, hence the lock.
"""

__all__ = [
    "ErrorRecord",
    "ErrorLogBuffer",
    "report_path",
    "write_failure_report",
]

LOGS_DIR = Path("./logs")


def report_path(job_id: str, logs_dir: Path | None = None) -> Path:
    return (logs_dir or LOGS_DIR) / f"import-{job_id}.log"


class ErrorLogBuffer:
    """In-memory buffer of the error records of one job. flush() writes JSON Lines."""

    def __init__(self, job_id: str, logs_dir: Path | None = None) -> None:
        self.job_id = job_id
        self._logs_dir = logs_dir or LOGS_DIR
        self._records: list[ErrorRecord] = []
        self._lock = threading.Lock()

    @property
    def file_path(self) -> Path:
        return report_path(self.job_id, self._logs_dir)

    def append(self, record: ErrorRecord) -> None:
        with self._lock:
            self._records.append(record)

    def extend(self, records) -> None:
        with self._lock:
            self._records.extend(records)

    def __len__(self) -> int:  # pragma: no cover (trivial)
        return len(self._records)

    def flush(self) -> Path:
        """Replace the report file with every buffered record (also when empty)."""
        with self._lock:
            fp = self.file_path
            fp.parent.mkdir(parents=True, exist_ok=True)
            # 一時ファイル名は呼び出しごとに一意 (同時ダウンロード対策)
            tmp = fp.with_name(f".{fp.name}.{uuid.uuid4().hex}.tmp")
            try:
                with tmp.open("w", encoding="utf-8") as f:
                    for r in self._records:
                        f.write(r.to_json_line() + "\n")
                os.replace(tmp, fp)
            finally:
                tmp.unlink(missing_ok=True)
            return fp


def write_failure_report(job_id: str, records, logs_dir: Path | None = None) -> Path:
    """Write all records of a job into its report file and return the path."""
    buf = ErrorLogBuffer(job_id, logs_dir)
    buf.extend(records)
    return buf.flush()
