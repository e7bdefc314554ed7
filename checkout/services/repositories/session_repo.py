"""Payment Session Repository - durable session rows and guarded status writes."""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from checkout.errors import InvalidTransitionError
from checkout.payments.constants import (
    ACTIVE_STATES,
    ALLOWED_FROM,
    PaymentProvider,
    SessionStatus,
)
from checkout.services.models import PaymentSession
from checkout.utils import to_iso, utcnow

from .base import BaseRepository


class SessionRepository(BaseRepository):
    """``payment_sessions`` table operations.

    Every status write is a conditional update restricted to the source
    states the state machine allows, so concurrent writers can never move a
    session backwards or out of a terminal state.
    """

    table = "payment_sessions"

    async def create(self, row: Dict[str, Any]) -> PaymentSession:
        result = await self.query().insert(row).execute()
        return PaymentSession(**result.data[0])

    async def get(self, session_id: str) -> Optional[PaymentSession]:
        result = await self.query().select("*").eq("session_id", session_id).limit(1).execute()
        return PaymentSession(**result.data[0]) if result.data else None

    async def get_by_invoice(self, invoice_id: str) -> Optional[PaymentSession]:
        result = await self.query().select("*").eq("invoice_id", invoice_id).limit(1).execute()
        return PaymentSession(**result.data[0]) if result.data else None

    async def assign_invoice(
        self, session_id: str, invoice_id: str, now: Optional[datetime] = None
    ) -> Optional[PaymentSession]:
        """Set the invoice id once. Returns None if one was already set."""
        now = now or utcnow()
        result = (
            await self.query()
            .update({"invoice_id": invoice_id, "updated_at": to_iso(now)})
            .eq("session_id", session_id)
            .is_("invoice_id", "null")
            .execute()
        )
        return PaymentSession(**result.data[0]) if result.data else None

    async def transition(
        self,
        session_id: str,
        target: str,
        fields: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Optional[PaymentSession]:
        """
        Move a session to ``target`` if its current status allows it.

        Returns the updated session, or None when the guard did not match
        (another writer got there first or the session is terminal).
        """
        allowed_from = ALLOWED_FROM.get(target)
        if not allowed_from:
            raise InvalidTransitionError(session_id, None, target)

        now = now or utcnow()
        data = {"status": target, "updated_at": to_iso(now)}
        if fields:
            data.update(fields)

        result = (
            await self.query()
            .update(data)
            .eq("session_id", session_id)
            .in_("status", sorted(allowed_from))
            .execute()
        )
        return PaymentSession(**result.data[0]) if result.data else None

    async def touch_checked(self, session_id: str, now: Optional[datetime] = None) -> None:
        """Record a gateway check. Leaves ``updated_at`` (the sweep's age key) alone."""
        now = now or utcnow()
        await (
            self.query()
            .update({"last_checked_at": to_iso(now)})
            .eq("session_id", session_id)
            .execute()
        )

    async def update_receipt(self, session_id: str, fields: Dict[str, Any]) -> None:
        await self.query().update(fields).eq("session_id", session_id).execute()

    # ==================== SWEEPS ====================

    async def list_reconcile_candidates(
        self, cutoff: datetime, checked_before: datetime, limit: int
    ) -> List[PaymentSession]:
        """
        Active sessions with an invoice, untouched since ``cutoff`` and not
        checked since ``checked_before``.

        Never-checked sessions come first, then the longest unchecked, so a
        full batch of unpaid sessions rotates instead of hogging every tick.
        """
        result = (
            await self.query()
            .select("*")
            .eq("provider", PaymentProvider.QPAY.value)
            .in_("status", sorted(ACTIVE_STATES))
            .not_.is_("invoice_id", "null")
            .lt("updated_at", to_iso(cutoff))
            .or_(f"last_checked_at.is.null,last_checked_at.lt.{to_iso(checked_before)}")
            .order("last_checked_at", nullsfirst=True)
            .order("updated_at")
            .limit(limit)
            .execute()
        )
        return [PaymentSession(**row) for row in (result.data or [])]

    async def expire_pending(self, cutoff: datetime, limit: int, now: Optional[datetime] = None) -> List[str]:
        """Move one batch of PENDING sessions created before ``cutoff`` to EXPIRED."""
        now = now or utcnow()
        result = (
            await self.query()
            .select("session_id")
            .eq("status", SessionStatus.PENDING.value)
            .lt("created_at", to_iso(cutoff))
            .order("created_at")
            .limit(limit)
            .execute()
        )
        ids = [row["session_id"] for row in (result.data or [])]
        if not ids:
            return []

        # Re-check status: a session may have been paid since the select
        updated = (
            await self.query()
            .update({"status": SessionStatus.EXPIRED.value, "updated_at": to_iso(now)})
            .in_("session_id", ids)
            .eq("status", SessionStatus.PENDING.value)
            .execute()
        )
        return [row["session_id"] for row in (updated.data or [])]

    async def delete_terminal(self, statuses: Iterable[str], cutoff: datetime, limit: int) -> int:
        """Delete one batch of sessions in ``statuses`` last updated before ``cutoff``."""
        statuses = sorted(set(statuses))
        active = ACTIVE_STATES.intersection(statuses)
        if active or not statuses:
            raise ValueError(f"Refusing to delete sessions in active statuses: {sorted(active)}")

        select_ids = (
            self.query()
            .select("session_id")
            .in_("status", statuses)
            .lt("updated_at", to_iso(cutoff))
            .order("updated_at")
            .limit(limit)
        )
        return await self._delete_batch(
            select_ids,
            "session_id",
            extra_filters=lambda q: q.in_("status", statuses),
        )
