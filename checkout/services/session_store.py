"""
Payment session store.

Durable truth lives in Supabase (``SessionRepository``); Redis holds a
short-lived projection (``payment-session:{id}``) so webhook lookups avoid a
database round trip. Status reads that gate a decision always go to the
database; the projection is only used for immutable fields.
"""
import json
import secrets
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from checkout.config import PaymentSettings
from checkout.db import RedisKeys
from checkout.errors import GatewayError
from checkout.logging import get_logger, sanitize_id_for_logging
from checkout.payments.client import QPayClient
from checkout.payments.constants import (
    SETTLEMENT_CURRENCY,
    TERMINAL_STATES,
    PaymentProvider,
    SessionStatus,
)
from checkout.payments.currency import to_settlement_amount
from checkout.payments.models import InvoiceResponse, ReceiptRequest
from checkout.services.models import CartSnapshot, PaymentSession
from checkout.services.repositories import SessionRepository
from checkout.utils import to_iso, utcnow

logger = get_logger(__name__)


class SessionStartError(Exception):
    """Invoice creation failed; the session was marked FAILED."""

    def __init__(self, session_id: str, cause: Exception):
        super().__init__(f"Could not create invoice for session {session_id}: {cause}")
        self.session_id = session_id
        self.cause = cause


class SessionStore:
    """Create, read and transition payment sessions."""

    def __init__(self, repo: SessionRepository, redis, settings: PaymentSettings):
        self.repo = repo
        self.redis = redis
        self.settings = settings

    # ==================== CACHE PROJECTION ====================

    async def _cache_put(self, session: PaymentSession) -> None:
        try:
            await self.redis.set(
                RedisKeys.session_key(session.session_id),
                session.model_dump_json(),
                ex=self.settings.session_cache_ttl_seconds,
            )
        except Exception as e:
            logger.warning(
                "Session cache write failed for %s: %s", sanitize_id_for_logging(session.session_id), e
            )

    async def _cache_drop(self, session_id: str) -> None:
        try:
            await self.redis.delete(RedisKeys.session_key(session_id))
        except Exception as e:
            logger.warning("Session cache delete failed for %s: %s", sanitize_id_for_logging(session_id), e)

    async def _cache_get(self, session_id: str) -> Optional[PaymentSession]:
        try:
            raw = await self.redis.get(RedisKeys.session_key(session_id))
        except Exception as e:
            logger.warning("Session cache read failed for %s: %s", sanitize_id_for_logging(session_id), e)
            return None
        if not raw:
            return None
        try:
            return PaymentSession(**json.loads(raw))
        except (ValueError, TypeError):
            logger.warning("Discarding malformed session projection %s", sanitize_id_for_logging(session_id))
            return None

    async def _after_write(self, session: PaymentSession) -> None:
        if session.status in TERMINAL_STATES:
            await self._cache_drop(session.session_id)
        else:
            await self._cache_put(session)

    # ==================== READS ====================

    async def get(self, session_id: str) -> Optional[PaymentSession]:
        """Authoritative read from the database."""
        return await self.repo.get(session_id)

    async def load(self, session_id: str) -> Optional[PaymentSession]:
        """Cache first, then database. Used for token and invoice matching."""
        cached = await self._cache_get(session_id)
        if cached is not None and cached.invoice_id:
            return cached
        return await self.repo.get(session_id)

    async def get_by_invoice(self, invoice_id: str) -> Optional[PaymentSession]:
        return await self.repo.get_by_invoice(invoice_id)

    # ==================== START ====================

    async def start(
        self,
        user_id: str,
        cart: CartSnapshot,
        client: QPayClient,
        receipt_request: Optional[ReceiptRequest] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[PaymentSession, InvoiceResponse]:
        """
        Create a PENDING session and its gateway invoice.

        The settlement amount is fixed here and never recomputed.

        Raises:
            SessionStartError: invoice creation failed (session is FAILED)
        """
        now = now or utcnow()
        session_id = str(uuid.uuid4())
        expected_amount = to_settlement_amount(cart.total_amount, self.settings.usd_to_mnt_rate)

        row: Dict[str, Any] = {
            "session_id": session_id,
            "user_id": user_id,
            "provider": PaymentProvider.QPAY.value,
            "cart_snapshot": cart.model_dump(mode="json", by_alias=True),
            "expected_amount": expected_amount,
            "currency": SETTLEMENT_CURRENCY,
            "callback_token": secrets.token_hex(16),
            "status": SessionStatus.PENDING.value,
            "receipt_request": receipt_request.model_dump() if receipt_request else None,
            "created_at": to_iso(now),
            "updated_at": to_iso(now),
        }
        session = await self.repo.create(row)
        await self._cache_put(session)

        try:
            invoice = await client.create_invoice(
                session_id=session_id,
                amount=expected_amount,
                callback_token=session.callback_token,
                receiver_code=user_id,
            )
        except GatewayError as e:
            logger.error("Invoice creation failed for session %s: %s", sanitize_id_for_logging(session_id), e)
            await self.mark_failed(session_id, now=now)
            raise SessionStartError(session_id, e) from e

        updated = await self.repo.assign_invoice(session_id, invoice.invoice_id, now=now)
        if updated is not None:
            session = updated
            await self._cache_put(session)

        logger.info(
            "Payment session started: session=%s invoice=%s amount=%s %s",
            sanitize_id_for_logging(session_id),
            sanitize_id_for_logging(invoice.invoice_id),
            expected_amount,
            SETTLEMENT_CURRENCY,
        )
        return session, invoice

    # ==================== TRANSITIONS ====================

    async def _transition(
        self,
        session_id: str,
        target: SessionStatus,
        fields: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Optional[PaymentSession]:
        session = await self.repo.transition(session_id, target.value, fields=fields, now=now)
        if session is None:
            logger.info(
                "Session %s: transition to %s skipped (status changed)",
                sanitize_id_for_logging(session_id),
                target.value,
            )
            return None
        await self._after_write(session)
        return session

    async def mark_paid(
        self, session_id: str, payment_id: Optional[str], now: Optional[datetime] = None
    ) -> Optional[PaymentSession]:
        return await self._transition(
            session_id, SessionStatus.PAID, fields={"payment_id": payment_id}, now=now
        )

    async def mark_processed(self, session_id: str, now: Optional[datetime] = None) -> Optional[PaymentSession]:
        return await self._transition(session_id, SessionStatus.PROCESSED, now=now)

    async def mark_failed(self, session_id: str, now: Optional[datetime] = None) -> Optional[PaymentSession]:
        return await self._transition(session_id, SessionStatus.FAILED, now=now)

    async def cancel(self, session_id: str, now: Optional[datetime] = None) -> Optional[PaymentSession]:
        now = now or utcnow()
        return await self._transition(
            session_id, SessionStatus.CANCELLED, fields={"cancelled_at": to_iso(now)}, now=now
        )

    async def touch_checked(self, session_id: str, now: Optional[datetime] = None) -> None:
        await self.repo.touch_checked(session_id, now=now)

    async def drop_projection(self, session_id: str) -> None:
        await self._cache_drop(session_id)
