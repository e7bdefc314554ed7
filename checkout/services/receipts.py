"""Tax e-receipt (ebarimt) issuance after a payment is processed."""
from datetime import datetime
from typing import Any, Dict, Optional

from checkout.config import PaymentSettings
from checkout.logging import get_logger, sanitize_id_for_logging
from checkout.metrics import RECEIPTS
from checkout.payments.client import QPayClient
from checkout.payments.constants import ReceiptStatus
from checkout.payments.models import ReceiptRequest
from checkout.services.models import PaymentSession
from checkout.services.repositories import SessionRepository
from checkout.utils import to_iso, utcnow

logger = get_logger(__name__)

RECEIPT_ERROR_MAX_LENGTH = 500


def receipt_request_for(session: PaymentSession, settings: PaymentSettings) -> ReceiptRequest:
    """Payer's receipt details with configured defaults filled in."""
    stored = session.receipt_request or {}
    return ReceiptRequest(
        receiver_type=stored.get("receiver_type") or settings.receipt_default_receiver_type,
        receiver=stored.get("receiver") or None,
        district_code=stored.get("district_code") or settings.receipt_default_district_code,
        classification_code=stored.get("classification_code")
        or settings.receipt_default_classification_code,
    )


def redact_receipt(session: PaymentSession) -> Dict[str, Any]:
    """Receipt view for the payer; never echoes the receiver registration number."""
    request = session.receipt_request or {}
    receiver = request.get("receiver")
    return {
        "sessionId": session.session_id,
        "status": session.receipt_status,
        "receiptId": session.receipt_id,
        "qrData": session.receipt_qr_data,
        "error": session.receipt_error,
        "createdAt": to_iso(session.receipt_created_at) if session.receipt_created_at else None,
        "receiverType": request.get("receiver_type"),
        "receiver": f"***{receiver[-2:]}" if receiver and len(receiver) > 4 else ("***" if receiver else None),
    }


class ReceiptService:
    """Best-effort receipts: a failure is recorded on the session, never raised."""

    def __init__(self, sessions: SessionRepository, client: QPayClient, settings: PaymentSettings):
        self.sessions = sessions
        self.client = client
        self.settings = settings

    async def issue(self, session_id: str, now: Optional[datetime] = None) -> Optional[str]:
        """Issue the receipt for a processed session. Returns the receipt status."""
        now = now or utcnow()
        log_id = sanitize_id_for_logging(session_id)

        try:
            session = await self.sessions.get(session_id)
            if session is None or not session.payment_id:
                logger.warning("Receipt skipped for %s: no payment id", log_id)
                return None
            if session.receipt_status == ReceiptStatus.REGISTERED.value:
                return session.receipt_status

            if not self.settings.receipt_enabled:
                fields: Dict[str, Any] = {"receipt_status": ReceiptStatus.SKIPPED.value}
            else:
                result = await self.client.create_receipt(
                    session.payment_id, receipt_request_for(session, self.settings)
                )
                if result.success:
                    fields = {
                        "receipt_status": ReceiptStatus.REGISTERED.value,
                        "receipt_id": result.receipt_id,
                        "receipt_qr_data": result.qr_data,
                        "receipt_error": None,
                        "receipt_created_at": to_iso(now),
                    }
                else:
                    fields = {
                        "receipt_status": ReceiptStatus.ERROR.value,
                        "receipt_error": (result.error or "unknown error")[:RECEIPT_ERROR_MAX_LENGTH],
                    }

            await self.sessions.update_receipt(session_id, fields)
        except Exception:
            # Orders already exist; a receipt failure must not surface to the caller
            logger.exception("Receipt issuance failed for %s", log_id)
            RECEIPTS.labels(status=ReceiptStatus.ERROR.value).inc()
            return ReceiptStatus.ERROR.value

        RECEIPTS.labels(status=fields["receipt_status"]).inc()
        logger.info("Receipt for %s: %s", log_id, fields["receipt_status"])
        return fields["receipt_status"]
