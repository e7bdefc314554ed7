"""
Verify-and-materialize.

The one routine both confirmation paths (webhook push, sweep pull) and the
status endpoint run. The gateway's payment check is the only evidence of
payment; the ledger claim is the only permission to create orders.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from checkout.config import PaymentSettings
from checkout.errors import GatewayError
from checkout.logging import get_logger, sanitize_id_for_logging
from checkout.metrics import SETTLEMENT_OUTCOMES
from checkout.payments.client import QPayClient
from checkout.payments.constants import LedgerStatus, SessionStatus, WebhookReason
from checkout.payments.models import VerificationResult, verify_payment
from checkout.services.materializer import OrderMaterializer
from checkout.services.models import LedgerEntry, PaymentSession
from checkout.services.repositories import LedgerRepository
from checkout.services.session_store import SessionStore
from checkout.utils import utcnow

logger = get_logger(__name__)

# Terminal states that may still be settled by a verified payment
# (the payer paid a stale QR code after cancelling or after expiry)
SETTLEABLE_TERMINAL_STATES = {
    SessionStatus.CANCELLED.value,
    SessionStatus.EXPIRED.value,
}


@dataclass
class SettlementOutcome:
    reason: WebhookReason
    session_id: str
    invoice_id: Optional[str]
    order_ids: List[str] = field(default_factory=list)
    verification: Optional[VerificationResult] = None
    receipt_due: bool = False

    @property
    def processed(self) -> bool:
        return self.reason == WebhookReason.PROCESSED


class SettlementService:
    """Shared verify-and-materialize routine."""

    def __init__(
        self,
        sessions: SessionStore,
        ledger: LedgerRepository,
        client: QPayClient,
        materializer: OrderMaterializer,
        settings: PaymentSettings,
    ):
        self.sessions = sessions
        self.ledger = ledger
        self.client = client
        self.materializer = materializer
        self.settings = settings

    def _done(self, trigger: str, outcome: SettlementOutcome) -> SettlementOutcome:
        SETTLEMENT_OUTCOMES.labels(trigger=trigger, reason=outcome.reason.value).inc()
        return outcome

    def _claim_is_stale(self, entry: LedgerEntry, now: datetime) -> bool:
        """A PROCESSING claim older than one sweep lock means its owner died mid-materialization."""
        if entry.status != LedgerStatus.PROCESSING.value:
            return False
        return now - entry.created_at > timedelta(seconds=self.settings.reconcile_lock_ttl_seconds)

    async def verify_and_materialize(
        self,
        session: PaymentSession,
        trigger: str,
        now: Optional[datetime] = None,
    ) -> SettlementOutcome:
        """
        Check the gateway for ``session``'s invoice and, if verifiably paid,
        create its orders exactly once.

        NOT_PAID, AMOUNT_MISMATCH and PAYMENT_CHECK_FAILED leave the session
        untouched so a later call can re-evaluate.
        """
        now = now or utcnow()
        session_id = session.session_id
        invoice_id = session.invoice_id
        log_id = sanitize_id_for_logging(session_id)

        def outcome(reason: WebhookReason, **kwargs) -> SettlementOutcome:
            return self._done(
                trigger,
                SettlementOutcome(reason=reason, session_id=session_id, invoice_id=invoice_id, **kwargs),
            )

        if not invoice_id:
            return outcome(WebhookReason.INVOICE_MISMATCH)

        if session.status == SessionStatus.PROCESSED.value:
            entry = await self.ledger.get(invoice_id)
            return outcome(WebhookReason.DUPLICATE, order_ids=list(entry.order_ids) if entry else [])

        if session.status not in (SessionStatus.PENDING.value, SessionStatus.PAID.value) and (
            session.status not in SETTLEABLE_TERMINAL_STATES
        ):
            return outcome(WebhookReason.SESSION_NOT_ACTIVE)

        await self.sessions.touch_checked(session_id, now=now)

        try:
            check = await self.client.check_payment(invoice_id)
        except GatewayError as e:
            logger.error("Payment check failed for session %s (%s): %s", log_id, trigger, e)
            return outcome(WebhookReason.PAYMENT_CHECK_FAILED)

        verification = verify_payment(check, session.expected_amount)
        if not verification.is_paid:
            logger.info("Session %s not paid yet (%s)", log_id, trigger)
            return outcome(WebhookReason.NOT_PAID, verification=verification)
        if not verification.amount_ok:
            logger.warning(
                "Session %s amount mismatch: paid=%s expected=%s (%s)",
                log_id,
                verification.paid_amount,
                verification.expected_amount,
                trigger,
            )
            return outcome(WebhookReason.AMOUNT_MISMATCH, verification=verification)

        # Guarded: no-op if already PAID or terminal
        await self.sessions.mark_paid(session_id, verification.payment_id, now=now)

        if not await self.ledger.claim(invoice_id, session_id, now=now):
            entry = await self.ledger.get(invoice_id)
            if entry and self._claim_is_stale(entry, now):
                logger.warning(
                    "Ledger claim for session %s stuck in PROCESSING since %s (%s)",
                    log_id,
                    entry.created_at.isoformat(),
                    trigger,
                )
            return outcome(
                WebhookReason.DUPLICATE,
                order_ids=list(entry.order_ids) if entry else [],
                verification=verification,
            )

        try:
            order_ids = await self.materializer.materialize(session, verification, now=now)
        except Exception as e:
            logger.exception("Order creation failed for session %s (%s)", log_id, trigger)
            await self.ledger.mark_failed(invoice_id, str(e), now=now)
            await self.sessions.mark_failed(session_id, now=now)
            return outcome(WebhookReason.MATERIALIZATION_FAILED, verification=verification)

        await self.ledger.complete(invoice_id, order_ids, now=now)
        await self.sessions.mark_processed(session_id, now=now)

        logger.info(
            "Session %s processed via %s: %d order(s)", log_id, trigger, len(order_ids)
        )
        return outcome(
            WebhookReason.PROCESSED,
            order_ids=order_ids,
            verification=verification,
            receipt_due=self.settings.receipt_enabled and bool(verification.payment_id),
        )
