"""Idempotency Ledger Repository - one row per invoice ever materialized."""
from datetime import datetime
from typing import List, Optional

from postgrest.exceptions import APIError

from checkout.logging import get_logger, sanitize_id_for_logging
from checkout.payments.constants import LedgerStatus
from checkout.services.models import LedgerEntry
from checkout.utils import to_iso, utcnow

from .base import BaseRepository

logger = get_logger(__name__)

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


class LedgerRepository(BaseRepository):
    """``processed_invoices`` table operations.

    The unique constraint on ``invoice_id`` is the mutex: whoever inserts
    the row first owns materialization for that invoice.
    """

    table = "processed_invoices"

    async def get(self, invoice_id: str) -> Optional[LedgerEntry]:
        result = await self.query().select("*").eq("invoice_id", invoice_id).limit(1).execute()
        return LedgerEntry(**result.data[0]) if result.data else None

    async def claim(self, invoice_id: str, session_id: str, now: Optional[datetime] = None) -> bool:
        """
        Insert the ledger row for ``invoice_id``.

        Returns:
            True if this caller owns materialization, False if another caller
            already claimed the invoice. Other database errors propagate.
        """
        now = now or utcnow()
        try:
            await self.query().insert(
                {
                    "invoice_id": invoice_id,
                    "session_id": session_id,
                    "order_ids": [],
                    "status": LedgerStatus.PROCESSING.value,
                    "created_at": to_iso(now),
                }
            ).execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                logger.info(
                    "Ledger: invoice %s already claimed", sanitize_id_for_logging(invoice_id)
                )
                return False
            raise
        return True

    async def complete(self, invoice_id: str, order_ids: List[str], now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        await (
            self.query()
            .update(
                {
                    "order_ids": order_ids,
                    "status": LedgerStatus.PROCESSED.value,
                    "processed_at": to_iso(now),
                }
            )
            .eq("invoice_id", invoice_id)
            .execute()
        )

    async def mark_failed(self, invoice_id: str, error: str, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        await (
            self.query()
            .update(
                {
                    "status": LedgerStatus.FAILED.value,
                    "error": error[:500],
                    "processed_at": to_iso(now),
                }
            )
            .eq("invoice_id", invoice_id)
            .execute()
        )

    async def delete_older_than(self, cutoff: datetime, limit: int) -> int:
        select_ids = (
            self.query()
            .select("invoice_id")
            .lt("created_at", to_iso(cutoff))
            .order("created_at")
            .limit(limit)
        )
        return await self._delete_batch(select_ids, "invoice_id")
