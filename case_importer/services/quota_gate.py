from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta

from case_importer.models.quota import AdmissionDecision, QuotaSnapshot
from case_importer.services.contracts import QuotaService

"""Admission control for imports.

The decision is computed before any row-level work so the uploader gets
accurate skip counts immediately. Truncation is first-N-in-file-order: no
reordering, no prioritization by content.

admit() takes the slots through one atomic reservation on the quota service,
so two concurrent imports of the same tenant cannot both be admitted against
the same headroom. Each admission owns a named reservation. Launching the
import holds it until the worker (or crash recovery) releases what is left;
an admission that is never launched expires after ``hold_seconds``.
"""

__all__ = [
    "compute_admission",
    "QuotaGate",
]

logger = logging.getLogger(__name__)

DEFAULT_HOLD_SECONDS = 900


def compute_admission(snapshot: QuotaSnapshot, requested: int) -> AdmissionDecision:
    """Turn a quota snapshot and a row count into an AdmissionDecision.

    - unlimited (limit == -1): every row is allowed
    - otherwise remaining = max(0, limit - usage - reserved) and
      allowed = min(requested, remaining)
    """
    if requested < 0:
        raise ValueError(f"requested row count must be >= 0, got {requested}")
    if snapshot.unlimited:
        allowed = requested
    else:
        allowed = min(requested, snapshot.remaining or 0)
    return AdmissionDecision(
        tenant_id=snapshot.tenant_id,
        total_rows=requested,
        allowed_count=allowed,
        skipped_count=requested - allowed,
        truncation_index=allowed,
        unlimited=snapshot.unlimited,
    )


class QuotaGate:
    def __init__(self, quota: QuotaService, *, hold_seconds: float = DEFAULT_HOLD_SECONDS, clock=None) -> None:
        if hold_seconds <= 0:
            raise ValueError("hold_seconds must be > 0")
        self.quota = quota
        self.hold_seconds = hold_seconds
        self.clock = clock or (lambda: datetime.now(UTC))

    def decide(self, tenant_id: str, requested: int) -> AdmissionDecision:
        """Preview decision from a fresh snapshot. Nothing is reserved."""
        snapshot = self.quota.get_quota(tenant_id)
        decision = compute_admission(snapshot, requested)
        logger.debug(
            "quota preview tenant=%s limit=%s usage=%s reserved=%s -> allowed=%d skipped=%d",
            tenant_id, snapshot.limit, snapshot.current_usage, snapshot.reserved,
            decision.allowed_count, decision.skipped_count,
        )
        return decision

    def admit(self, tenant_id: str, requested: int, reservation_id: str | None = None) -> AdmissionDecision:
        """Reserve slots for ``requested`` rows and return the binding decision.

        The reservation is named ``reservation_id`` (a fresh id when omitted)
        and expires unless hold() is called before ``hold_seconds`` pass.
        """
        if requested < 0:
            raise ValueError(f"requested row count must be >= 0, got {requested}")
        if requested == 0:
            return compute_admission(self.quota.get_quota(tenant_id), 0)
        rid = reservation_id or uuid.uuid4().hex
        expires_at = self.clock() + timedelta(seconds=self.hold_seconds)
        snapshot = self.quota.reserve_slots(tenant_id, requested, rid, expires_at=expires_at)
        granted = snapshot.granted if snapshot.granted is not None else 0
        granted = max(0, min(granted, requested))
        decision = AdmissionDecision(
            tenant_id=tenant_id,
            total_rows=requested,
            allowed_count=granted,
            skipped_count=requested - granted,
            truncation_index=granted,
            unlimited=snapshot.unlimited,
            reserved=True,
            reservation_id=rid if granted > 0 else None,
        )
        if decision.partial:
            logger.info(
                "tenant=%s over plan limit: %d of %d rows admitted (limit=%s usage=%s)",
                tenant_id, granted, requested, snapshot.limit, snapshot.current_usage,
            )
        return decision

    def hold(self, decision: AdmissionDecision) -> None:
        """Keep the reservation of a launched import until its worker releases it."""
        if decision.reservation_id is not None:
            self.quota.hold_reservation(decision.tenant_id, decision.reservation_id)

    def release(self, tenant_id: str, count: int) -> None:
        if count <= 0:
            return
        self.quota.release_slots(tenant_id, count)
        logger.debug("released %d unused slots for tenant=%s", count, tenant_id)

    def release_reservation(self, tenant_id: str, reservation_id: str) -> int:
        released = self.quota.release_reservation(tenant_id, reservation_id)
        if released:
            logger.debug("released %d slots of reservation %s tenant=%s", released, reservation_id, tenant_id)
        return released

    def release_decision(self, decision: AdmissionDecision) -> None:
        """Give back every slot of a decision that will not be launched."""
        if not decision.reserved:
            return
        if decision.reservation_id is not None:
            self.release_reservation(decision.tenant_id, decision.reservation_id)
        else:
            self.release(decision.tenant_id, decision.allowed_count)

    def reclaim_expired(self) -> int:
        reclaimed = self.quota.release_expired_reservations()
        if reclaimed:
            logger.info("reclaimed %d slots of expired reservations", reclaimed)
        return reclaimed
