from __future__ import annotations

from dataclasses import dataclass

"""Quota and admission domain models.

QuotaSnapshot is read fresh for every import request and never cached across
the lifetime of an import. AdmissionDecision is computed once, before any row
is processed, and stays immutable for that import.
"""

__all__ = [
    "UNLIMITED",
    "QuotaSnapshot",
    "AdmissionDecision",
    "ImmediateSummary",
]

UNLIMITED = -1


@dataclass(frozen=True)
class QuotaSnapshot:
    """Subscription limit and usage of one tenant at read time.

    ``reserved`` counts slots held by imports that are admitted but not yet
    finished. ``granted`` is only set on the snapshot returned by a reservation.
    """
    tenant_id: str
    limit: int  # -1 = unlimited
    current_usage: int
    reserved: int = 0
    granted: int | None = None

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def remaining(self) -> int | None:
        if self.unlimited:
            return None
        return max(0, self.limit - self.current_usage - self.reserved)


@dataclass(frozen=True)
class AdmissionDecision:
    """How many of the analyzed rows may be imported.

    truncation_index is the ordinal (file order) of the last row eligible for
    import; rows beyond it are never attempted.
    """
    tenant_id: str
    total_rows: int
    allowed_count: int
    skipped_count: int
    truncation_index: int
    unlimited: bool = False
    reserved: bool = False  # allowed_count slots are held by an atomic reservation
    reservation_id: str | None = None

    def __post_init__(self) -> None:
        if self.total_rows != self.allowed_count + self.skipped_count:
            raise ValueError(
                f"inconsistent admission: total={self.total_rows} "
                f"allowed={self.allowed_count} skipped={self.skipped_count}"
            )

    @property
    def partial(self) -> bool:
        return self.skipped_count > 0


@dataclass(frozen=True)
class ImmediateSummary:
    """Synchronous answer returned to the uploader before the worker starts."""
    job_id: str
    total_rows: int
    admitted_count: int
    skipped_count: int
    estimated_seconds: float
    estimated_time: str  # human readable ("less than a minute", "~3 minutes")
