"""Webhook Event Repository - write-once audit trail of webhook calls."""
from datetime import datetime
from typing import Any, Dict, Optional

from checkout.utils import to_iso, utcnow

from .base import BaseRepository


class WebhookEventRepository(BaseRepository):
    """``webhook_events`` table operations."""

    table = "webhook_events"

    async def record(
        self,
        source: str,
        reason: str,
        invoice_id: Optional[str] = None,
        session_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        now = now or utcnow()
        await self.query().insert(
            {
                "invoice_id": invoice_id,
                "session_id": session_id,
                "source": source,
                "reason": reason,
                "payload": payload or {},
                "created_at": to_iso(now),
            }
        ).execute()

    async def delete_older_than(self, cutoff: datetime, limit: int) -> int:
        select_ids = (
            self.query()
            .select("id")
            .lt("created_at", to_iso(cutoff))
            .order("created_at")
            .limit(limit)
        )
        return await self._delete_batch(select_ids, "id")
