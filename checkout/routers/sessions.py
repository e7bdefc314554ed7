"""
Payment Sessions Router

Payer-facing endpoints: start a checkout, poll its status, cancel it and
read the tax e-receipt. All require a payer bearer token and ownership.
"""
from datetime import timedelta

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from checkout.auth import AuthenticatedUser, verify_user
from checkout.errors import ERROR_ACCESS_DENIED, ERROR_SESSION_NOT_FOUND
from checkout.logging import get_logger, sanitize_id_for_logging
from checkout.payments.constants import LedgerStatus, SessionStatus, TERMINAL_STATES
from checkout.payments.models import ReceiptRequest
from checkout.routers.deps import CheckoutContainer, get_container
from checkout.routers.models import (
    CancelResponse,
    CreateSessionRequest,
    CreateSessionResponse,
    InvoiceView,
    SessionStatusResponse,
)
from checkout.services.models import CartSnapshot, PaymentSession
from checkout.services.receipts import redact_receipt
from checkout.services.session_store import SessionStartError
from checkout.utils import to_iso, utcnow

logger = get_logger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


async def _owned_session(
    session_id: str, user: AuthenticatedUser, container: CheckoutContainer
) -> PaymentSession:
    session = await container.sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=ERROR_SESSION_NOT_FOUND)
    if session.user_id != user.id:
        raise HTTPException(status_code=403, detail=ERROR_ACCESS_DENIED)
    return session


def _status_view(session: PaymentSession, order_ids=None, paid_amount=None, status=None) -> SessionStatusResponse:
    return SessionStatusResponse(
        sessionId=session.session_id,
        status=status or session.status,
        invoiceId=session.invoice_id,
        orderIds=list(order_ids or []),
        paidAmount=float(paid_amount) if paid_amount is not None else None,
        expectedAmount=session.expected_amount,
        lastCheckedAt=to_iso(session.last_checked_at) if session.last_checked_at else None,
    )


# ==================== CREATE ====================

@router.post("", response_model=CreateSessionResponse)
async def create_session(
    body: CreateSessionRequest,
    user: AuthenticatedUser = Depends(verify_user),
    container: CheckoutContainer = Depends(get_container),
):
    """Start a payment session and return the invoice to display."""
    cart = CartSnapshot(
        items=body.cart,
        sellers=body.sellers,
        total_amount=body.totalAmount,
        shipping_address_id=body.shippingAddressId,
        coupon=body.coupon,
    )
    receipt = None
    if body.receipt:
        receipt = ReceiptRequest(
            receiver_type=body.receipt.receiverType,
            receiver=body.receipt.receiver,
            district_code=body.receipt.districtCode,
            classification_code=body.receipt.classificationCode,
        )

    try:
        session, invoice = await container.sessions.start(
            user.id, cart, container.client, receipt_request=receipt
        )
    except SessionStartError:
        raise HTTPException(status_code=502, detail="Payment provider unavailable")

    return CreateSessionResponse(
        sessionId=session.session_id,
        expectedAmount=session.expected_amount,
        currency=session.currency,
        invoice=InvoiceView(
            invoiceId=invoice.invoice_id,
            qrText=invoice.qr_text,
            qrImage=invoice.qr_image,
            shortUrl=invoice.short_url,
            deeplinks=[link.model_dump() for link in invoice.deeplinks],
        ),
    )


# ==================== STATUS ====================

@router.get("/{session_id}/status", response_model=SessionStatusResponse)
async def session_status(
    session_id: str,
    background_tasks: BackgroundTasks,
    user: AuthenticatedUser = Depends(verify_user),
    container: CheckoutContainer = Depends(get_container),
):
    """
    Current state of a session.

    Terminal sessions are answered from storage without calling the gateway.
    PENDING sessions are re-checked at most once per cooldown window.
    """
    session = await _owned_session(session_id, user, container)

    if session.invoice_id:
        entry = await container.ledger.get(session.invoice_id)
        if entry is not None and entry.status == LedgerStatus.PROCESSED.value:
            return _status_view(session, order_ids=entry.order_ids, status=SessionStatus.PROCESSED.value)

    if session.status in TERMINAL_STATES or session.status == SessionStatus.PAID.value:
        return _status_view(session)

    now = utcnow()
    cooldown = timedelta(seconds=container.settings.status_check_cooldown_seconds)
    if not session.invoice_id or (session.last_checked_at and now - session.last_checked_at < cooldown):
        return _status_view(session)

    outcome = await container.settlement.verify_and_materialize(session, trigger="status", now=now)
    if outcome.receipt_due:
        background_tasks.add_task(container.receipts.issue, session.session_id)

    refreshed = await container.sessions.get(session_id) or session
    paid_amount = outcome.verification.paid_amount if outcome.verification else None
    return _status_view(refreshed, order_ids=outcome.order_ids, paid_amount=paid_amount)


# ==================== CANCEL ====================

@router.post("/{session_id}/cancel", response_model=CancelResponse)
async def cancel_session(
    session_id: str,
    user: AuthenticatedUser = Depends(verify_user),
    container: CheckoutContainer = Depends(get_container),
):
    """Cancel a session. Idempotent for already-cancelled sessions."""
    session = await _owned_session(session_id, user, container)

    if session.status != SessionStatus.CANCELLED.value:
        if session.status in TERMINAL_STATES:
            raise HTTPException(status_code=409, detail=f"Session is {session.status}")

        cancelled = await container.sessions.cancel(session_id)
        if cancelled is None:
            # Lost a race with settlement or expiry
            session = await container.sessions.get(session_id) or session
            if session.status != SessionStatus.CANCELLED.value:
                raise HTTPException(status_code=409, detail=f"Session is {session.status}")
        else:
            session = cancelled
            logger.info("Session %s cancelled by payer", sanitize_id_for_logging(session_id))

    return CancelResponse(
        sessionId=session.session_id,
        status=session.status,
        cancelledAt=to_iso(session.cancelled_at) if session.cancelled_at else None,
    )


# ==================== RECEIPT ====================

@router.get("/{session_id}/receipt")
async def session_receipt(
    session_id: str,
    user: AuthenticatedUser = Depends(verify_user),
    container: CheckoutContainer = Depends(get_container),
):
    """Tax e-receipt for a processed session (receiver number redacted)."""
    session = await _owned_session(session_id, user, container)
    return redact_receipt(session)
