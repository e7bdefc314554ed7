"""QPay gateway integration module."""
from .constants import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    LedgerStatus,
    PaymentProvider,
    ReceiptStatus,
    SessionStatus,
    WebhookReason,
    can_transition,
)
from .models import VerificationResult, verify_payment

__all__ = [
    "ACTIVE_STATES",
    "TERMINAL_STATES",
    "LedgerStatus",
    "PaymentProvider",
    "ReceiptStatus",
    "SessionStatus",
    "VerificationResult",
    "WebhookReason",
    "can_transition",
    "verify_payment",
]
