from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.pool import ThreadedConnectionPool

from case_importer.config.loader import ImportConfig
from case_importer.errors import ImportSystemError, UniqueConflictError

"""PostgreSQL connection handling.

Import workers run on a thread pool, so connections come from a
ThreadedConnectionPool; every store call is one short transaction
(``with db.transaction() as cur``), committed on success and rolled back on
any exception.

Error classification:
- UniqueViolation -> UniqueConflictError(constraint name)
- OperationalError / InterfaceError -> ImportSystemError (aborts the run)
Everything else propagates unchanged and is handled per row by the importer.
"""

__all__ = [
    "Database",
    "translate_errors",
]

logger = logging.getLogger(__name__)


@contextmanager
def translate_errors() -> Iterator[None]:
    try:
        yield
    except pg_errors.UniqueViolation as e:
        constraint = getattr(e.diag, "constraint_name", None) or "unique"
        raise UniqueConflictError(constraint, f"unique constraint violated: {constraint}") from e
    except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
        raise ImportSystemError(f"database unavailable: {str(e).strip()}") from e


class Database:
    def __init__(self, dsn: str, *, minconn: int = 1, maxconn: int = 8, pool: Any = None) -> None:
        self.dsn = dsn
        self.minconn = minconn
        self.maxconn = maxconn
        self._pool = pool

    @classmethod
    def from_config(cls, cfg: ImportConfig, env: dict[str, str] | None = None) -> Database:
        # scheduler workers + the request thread
        return cls(cfg.database.resolve_dsn(env), maxconn=cfg.max_workers + 2)

    def _get_pool(self) -> Any:
        if self._pool is None:
            with translate_errors():
                self._pool = ThreadedConnectionPool(self.minconn, self.maxconn, self.dsn)
        return self._pool

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        """Yield a cursor inside one transaction."""
        pool = self._get_pool()
        with translate_errors():
            conn = pool.getconn()
        broken = False
        try:
            with translate_errors():
                cur = conn.cursor()
                try:
                    yield cur
                    conn.commit()
                except Exception:
                    broken = not self._rollback(conn)
                    raise
                finally:
                    cur.close()
        finally:
            pool.putconn(conn, close=broken or bool(getattr(conn, "closed", False)))

    @staticmethod
    def _rollback(conn: Any) -> bool:
        try:
            conn.rollback()
            return True
        except psycopg2.Error as e:
            logger.warning("rollback failed, discarding connection: %s", e)
            return False

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
