"""
Webhook ingress.

A webhook is only a hint that something may have changed: its body is never
trusted as evidence of payment. Order of checks is fixed:

    callback token (public only) -> ledger lookup -> session load
    -> invoice match -> verify-and-materialize
"""
import hmac
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from checkout.logging import get_logger, sanitize_id_for_logging, sanitize_string_for_logging
from checkout.metrics import WEBHOOK_OUTCOMES
from checkout.payments.constants import WebhookReason
from checkout.services.models import PaymentSession
from checkout.services.repositories import LedgerRepository, WebhookEventRepository
from checkout.services.session_store import SessionStore
from checkout.services.settlement import SettlementService
from checkout.utils import utcnow

logger = get_logger(__name__)

SOURCE_PUBLIC = "public"
SOURCE_INTERNAL = "internal"


class WebhookDenied(Exception):
    """Public callback with a missing session or a wrong token."""


class WebhookBadRequest(Exception):
    """Required parameters are missing."""


@dataclass
class WebhookResult:
    reason: WebhookReason
    invoice_id: Optional[str] = None
    session_id: Optional[str] = None
    order_ids: List[str] = field(default_factory=list)
    receipt_due: bool = False

    @property
    def processed(self) -> bool:
        return self.reason == WebhookReason.PROCESSED

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "processed": self.processed,
            "reason": self.reason.value,
            "invoiceId": self.invoice_id,
            "sessionId": self.session_id,
            "orderIds": self.order_ids,
        }


def extract_invoice_id(body: Optional[Dict[str, Any]]) -> Optional[str]:
    """Invoice id as sent by the gateway or an internal caller."""
    if not body:
        return None
    for key in ("invoiceId", "invoice_id", "object_id"):
        value = body.get(key)
        if value:
            return str(value).strip() or None
    return None


def tokens_match(stored: Optional[str], presented: Optional[str]) -> bool:
    if not stored or not presented:
        return False
    return hmac.compare_digest(stored.encode(), presented.encode())


class WebhookService:
    """Public and internal webhook handling."""

    def __init__(
        self,
        sessions: SessionStore,
        ledger: LedgerRepository,
        events: WebhookEventRepository,
        settlement: SettlementService,
    ):
        self.sessions = sessions
        self.ledger = ledger
        self.events = events
        self.settlement = settlement

    async def _audit(self, source: str, result: WebhookResult, payload: Optional[Dict[str, Any]], now: datetime) -> None:
        WEBHOOK_OUTCOMES.labels(source=source, reason=result.reason.value).inc()
        try:
            await self.events.record(
                source=source,
                reason=result.reason.value,
                invoice_id=result.invoice_id,
                session_id=result.session_id,
                payload=payload,
                now=now,
            )
        except Exception as e:
            logger.warning("Webhook audit write failed: %s", e)

    # ==================== ENTRY POINTS ====================

    async def handle_public(
        self,
        session_id: Optional[str],
        token: Optional[str],
        body: Optional[Dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> WebhookResult:
        """
        Gateway callback. The token from the callback URL must match the
        session's stored token before anything else happens.

        Raises:
            WebhookBadRequest: sessionId or token missing
            WebhookDenied: unknown session or token mismatch
        """
        now = now or utcnow()
        session_id = (session_id or "").strip()
        token = (token or "").strip()
        if not session_id or not token:
            raise WebhookBadRequest("sessionId and token query parameters are required")

        session = await self.sessions.load(session_id)
        if session is None or not tokens_match(session.callback_token, token):
            logger.warning(
                "Public webhook denied: session=%s known=%s",
                sanitize_id_for_logging(session_id),
                session is not None,
            )
            denied = WebhookResult(
                reason=WebhookReason.INVALID_TOKEN,
                invoice_id=extract_invoice_id(body),
                session_id=session_id if session is not None else None,
            )
            await self._audit(SOURCE_PUBLIC, denied, body, now)
            raise WebhookDenied()

        invoice_id = extract_invoice_id(body) or session.invoice_id
        return await self._run(SOURCE_PUBLIC, invoice_id, session, session_id, body, now)

    async def handle_internal(
        self,
        body: Optional[Dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> WebhookResult:
        """
        Call from a trusted internal service (already authenticated by the router).

        Raises:
            WebhookBadRequest: invoice id missing
        """
        now = now or utcnow()
        invoice_id = extract_invoice_id(body)
        if not invoice_id:
            raise WebhookBadRequest("invoiceId is required")
        session_id = str((body or {}).get("sessionId") or "").strip() or None
        return await self._run(SOURCE_INTERNAL, invoice_id, None, session_id, body, now)

    # ==================== PIPELINE ====================

    async def _run(
        self,
        source: str,
        invoice_id: Optional[str],
        session: Optional[PaymentSession],
        session_id: Optional[str],
        body: Optional[Dict[str, Any]],
        now: datetime,
    ) -> WebhookResult:
        logger.info(
            "Webhook (%s): invoice=%s session=%s",
            source,
            sanitize_string_for_logging(invoice_id, 40),
            sanitize_id_for_logging(session_id),
        )
        try:
            result = await self._evaluate(invoice_id, session, session_id, now)
        except Exception:
            logger.exception(
                "Webhook (%s) failed: invoice=%s", source, sanitize_string_for_logging(invoice_id, 40)
            )
            result = WebhookResult(
                reason=WebhookReason.INTERNAL_ERROR, invoice_id=invoice_id, session_id=session_id
            )

        await self._audit(source, result, body, now)
        return result

    async def _evaluate(
        self,
        invoice_id: Optional[str],
        session: Optional[PaymentSession],
        session_id: Optional[str],
        now: datetime,
    ) -> WebhookResult:
        if not invoice_id:
            return WebhookResult(reason=WebhookReason.INVOICE_MISMATCH, session_id=session_id)

        entry = await self.ledger.get(invoice_id)
        if entry is not None:
            return WebhookResult(
                reason=WebhookReason.DUPLICATE,
                invoice_id=invoice_id,
                session_id=entry.session_id,
                order_ids=list(entry.order_ids),
            )

        if session is None:
            if session_id:
                session = await self.sessions.load(session_id)
            else:
                session = await self.sessions.get_by_invoice(invoice_id)
        if session is None:
            logger.warning("Webhook: session missing for invoice %s", sanitize_string_for_logging(invoice_id, 40))
            return WebhookResult(
                reason=WebhookReason.SESSION_MISSING, invoice_id=invoice_id, session_id=session_id
            )

        if session.invoice_id != invoice_id:
            logger.warning(
                "Webhook: invoice mismatch for session %s", sanitize_id_for_logging(session.session_id)
            )
            return WebhookResult(
                reason=WebhookReason.INVOICE_MISMATCH,
                invoice_id=invoice_id,
                session_id=session.session_id,
            )

        # Cache projection may be stale on status; settle against the database row
        current = await self.sessions.get(session.session_id) or session
        outcome = await self.settlement.verify_and_materialize(current, trigger="webhook", now=now)
        return WebhookResult(
            reason=outcome.reason,
            invoice_id=invoice_id,
            session_id=current.session_id,
            order_ids=outcome.order_ids,
            receipt_due=outcome.receipt_due,
        )
