from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from case_importer.db.connection import Database
from case_importer.errors import SubscriptionInactiveError
from case_importer.models.quota import UNLIMITED, QuotaSnapshot

"""Case quota backed by firm_subscriptions / plans / firm_addons / firm_usages.

effective limit = plans.max_cases + active "cases" add-ons (-1 = unlimited)
usage           = firm_usages.current_cases
reserved        = firm_usages.reserved_cases (admitted, not yet created)

Every admitted import also owns a quota_reservations row holding what is left
of its share of reserved_cases. Consuming a slot decrements both; releasing
the reservation gives the rest back exactly once. Reservations that were
never launched carry an expires_at and are reclaimed once it passes.

The usage row is locked (SELECT ... FOR UPDATE) for the duration of a
reservation, so two imports of one firm are admitted one after the other.
"""

__all__ = [
    "PgQuotaService",
]

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("active", "trialing")

_SUBSCRIPTION_SQL = """
SELECT s.status, s.trial_ends_at, p.max_cases
FROM firm_subscriptions s
JOIN plans p ON p.id = s.plan_id
WHERE s.firm_id = %s AND s.deleted_at IS NULL
"""

_ADDON_CASES_SQL = """
SELECT COALESCE(SUM(pa.units_included * fa.quantity), 0)
FROM firm_addons fa
JOIN plan_addons pa ON pa.id = fa.add_on_id
WHERE fa.firm_id = %s AND pa.type = 'cases' AND fa.is_active
"""

_ENSURE_USAGE_SQL = """
INSERT INTO firm_usages (firm_id) VALUES (%s)
ON CONFLICT (firm_id) DO NOTHING
"""

_LOCK_USAGE_SQL = """
SELECT current_cases, reserved_cases FROM firm_usages WHERE firm_id = %s FOR UPDATE
"""

_READ_USAGE_SQL = """
SELECT current_cases, reserved_cases FROM firm_usages WHERE firm_id = %s
"""


class PgQuotaService:
    def __init__(self, db: Database, *, clock=None) -> None:
        self.db = db
        self.clock = clock or (lambda: datetime.now(UTC))

    def _effective_limit(self, cur: Any, tenant_id: str) -> int:
        cur.execute(_SUBSCRIPTION_SQL, (tenant_id,))
        row = cur.fetchone()
        if row is None:
            raise SubscriptionInactiveError(f"firm {tenant_id} has no subscription")
        status, trial_ends_at, max_cases = row
        if status not in ACTIVE_STATUSES:
            raise SubscriptionInactiveError(f"subscription is not active (status={status})")
        if status == "trialing" and trial_ends_at is not None and self.clock() > trial_ends_at:
            raise SubscriptionInactiveError("trial period has expired")
        if max_cases == UNLIMITED:
            return UNLIMITED
        cur.execute(_ADDON_CASES_SQL, (tenant_id,))
        addons = cur.fetchone()[0] or 0
        return int(max_cases) + int(addons)

    def get_quota(self, tenant_id: str) -> QuotaSnapshot:
        with self.db.transaction() as cur:
            limit = self._effective_limit(cur, tenant_id)
            cur.execute(_READ_USAGE_SQL, (tenant_id,))
            row = cur.fetchone()
        current, reserved = row if row else (0, 0)
        return QuotaSnapshot(tenant_id=tenant_id, limit=limit, current_usage=current, reserved=reserved)

    def _reclaim_expired(self, cur: Any, tenant_id: str) -> int:
        """Drop the tenant's reservations that were admitted but never launched in time."""
        cur.execute(
            "DELETE FROM quota_reservations "
            "WHERE firm_id = %s AND expires_at IS NOT NULL AND expires_at < %s "
            "RETURNING id, slots",
            (tenant_id, self.clock()),
        )
        rows = cur.fetchall() or []
        for rid, slots in rows:
            logger.info("reservation expired id=%s tenant=%s slots=%d", rid, tenant_id, slots)
        return sum(int(slots) for _, slots in rows)

    def reserve_slots(
        self,
        tenant_id: str,
        requested: int,
        reservation_id: str | None = None,
        *,
        expires_at: datetime | None = None,
    ) -> QuotaSnapshot:
        with self.db.transaction() as cur:
            limit = self._effective_limit(cur, tenant_id)
            cur.execute(_ENSURE_USAGE_SQL, (tenant_id,))
            cur.execute(_LOCK_USAGE_SQL, (tenant_id,))
            current, reserved = cur.fetchone()
            reclaimed = self._reclaim_expired(cur, tenant_id)
            reserved = max(reserved - reclaimed, 0)
            snapshot = QuotaSnapshot(tenant_id=tenant_id, limit=limit, current_usage=current, reserved=reserved)
            granted = requested if snapshot.unlimited else min(requested, snapshot.remaining or 0)
            if granted > 0 or reclaimed > 0:
                cur.execute(
                    "UPDATE firm_usages SET reserved_cases = GREATEST(reserved_cases - %s, 0) + %s, "
                    "updated_at = now() WHERE firm_id = %s",
                    (reclaimed, max(granted, 0), tenant_id),
                )
            if granted > 0 and reservation_id is not None:
                cur.execute(
                    "INSERT INTO quota_reservations (id, firm_id, slots, expires_at) VALUES (%s, %s, %s, %s)",
                    (reservation_id, tenant_id, granted, expires_at),
                )
        logger.debug(
            "reserved %d/%d slots tenant=%s limit=%s usage=%s reserved_before=%s reclaimed=%d id=%s",
            granted, requested, tenant_id, limit, current, reserved, reclaimed, reservation_id,
        )
        return QuotaSnapshot(
            tenant_id=tenant_id, limit=limit, current_usage=current, reserved=reserved, granted=granted
        )

    def release_slots(self, tenant_id: str, count: int) -> None:
        if count <= 0:
            return
        with self.db.transaction() as cur:
            cur.execute(
                "UPDATE firm_usages SET reserved_cases = GREATEST(reserved_cases - %s, 0), updated_at = now() "
                "WHERE firm_id = %s",
                (count, tenant_id),
            )

    def release_reservation(self, tenant_id: str, reservation_id: str) -> int:
        """Give back whatever is left of a reservation. Safe to call twice."""
        with self.db.transaction() as cur:
            cur.execute(
                "DELETE FROM quota_reservations WHERE id = %s AND firm_id = %s RETURNING slots",
                (reservation_id, tenant_id),
            )
            row = cur.fetchone()
            released = int(row[0]) if row else 0
            if released > 0:
                cur.execute(
                    "UPDATE firm_usages SET reserved_cases = GREATEST(reserved_cases - %s, 0), updated_at = now() "
                    "WHERE firm_id = %s",
                    (released, tenant_id),
                )
        if released:
            logger.debug("released %d slots of reservation %s tenant=%s", released, reservation_id, tenant_id)
        return released

    def hold_reservation(self, tenant_id: str, reservation_id: str) -> None:
        # 起動済みジョブの予約は期限切れにしない (ジョブ側で解放する)
        with self.db.transaction() as cur:
            cur.execute(
                "UPDATE quota_reservations SET expires_at = NULL WHERE id = %s AND firm_id = %s",
                (reservation_id, tenant_id),
            )

    def release_expired_reservations(self) -> int:
        with self.db.transaction() as cur:
            cur.execute(
                "DELETE FROM quota_reservations WHERE expires_at IS NOT NULL AND expires_at < %s "
                "RETURNING firm_id, slots",
                (self.clock(),),
            )
            per_firm: dict[str, int] = {}
            for firm_id, slots in cur.fetchall() or []:
                per_firm[str(firm_id)] = per_firm.get(str(firm_id), 0) + int(slots)
            for firm_id, slots in sorted(per_firm.items()):
                if slots > 0:
                    cur.execute(
                        "UPDATE firm_usages SET reserved_cases = GREATEST(reserved_cases - %s, 0), "
                        "updated_at = now() WHERE firm_id = %s",
                        (slots, firm_id),
                    )
        total = sum(per_firm.values())
        if total:
            logger.info("reclaimed %d expired reserved slots across %d firms", total, len(per_firm))
        return total

    def consume_slot(
        self, tenant_id: str, from_reservation: bool = True, reservation_id: str | None = None
    ) -> None:
        with self.db.transaction() as cur:
            held = from_reservation
            if reservation_id is not None:
                # 予約が失効済みなら通常の使用量として数える
                cur.execute(
                    "UPDATE quota_reservations SET slots = slots - 1 "
                    "WHERE id = %s AND firm_id = %s AND slots > 0 RETURNING slots",
                    (reservation_id, tenant_id),
                )
                held = cur.fetchone() is not None
            reserved_expr = "GREATEST(firm_usages.reserved_cases - 1, 0)" if held else "firm_usages.reserved_cases"
            cur.execute(
                "INSERT INTO firm_usages (firm_id, current_cases) VALUES (%s, 1) "
                "ON CONFLICT (firm_id) DO UPDATE SET "
                "current_cases = firm_usages.current_cases + 1, "
                f"reserved_cases = {reserved_expr}, "
                "updated_at = now()",
                (tenant_id,),
            )
