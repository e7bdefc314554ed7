"""Payment constants, enums, and the session state machine."""
from enum import Enum
from typing import Dict, FrozenSet, Set


class PaymentProvider(str, Enum):
    """Supported payment gateways."""
    QPAY = "qpay"


class SessionStatus(str, Enum):
    """
    Payment session lifecycle.

    Flow:
        PENDING -> PAID -> PROCESSED
        PENDING | PAID -> CANCELLED
        PENDING -> EXPIRED
        PENDING | PAID -> FAILED

    - PENDING: Invoice issued, awaiting payment
    - PAID: Gateway confirmed payment, orders not yet created
    - PROCESSED: Orders created (final)
    - CANCELLED: Cancelled by the payer (final)
    - EXPIRED: Abandoned; moved by the cleanup sweep (final)
    - FAILED: Invoice creation or order creation failed (final)
    """
    PENDING = "PENDING"
    PAID = "PAID"
    PROCESSED = "PROCESSED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"


class LedgerStatus(str, Enum):
    """Idempotency ledger entry status."""
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


class ReceiptStatus(str, Enum):
    """Tax e-receipt (ebarimt) issuance outcome."""
    REGISTERED = "REGISTERED"
    ERROR = "ERROR"
    SKIPPED = "SKIPPED"


class WebhookReason(str, Enum):
    """Outcome of one pass through the verify-and-materialize routine."""
    PROCESSED = "PROCESSED"
    DUPLICATE = "DUPLICATE"
    NOT_PAID = "NOT_PAID"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    SESSION_MISSING = "SESSION_MISSING"
    INVOICE_MISMATCH = "INVOICE_MISMATCH"
    PAYMENT_CHECK_FAILED = "PAYMENT_CHECK_FAILED"
    MATERIALIZATION_FAILED = "MATERIALIZATION_FAILED"
    SESSION_NOT_ACTIVE = "SESSION_NOT_ACTIVE"
    INVALID_TOKEN = "INVALID_TOKEN"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Allowed status transitions (target -> allowed source states)
ALLOWED_FROM: Dict[str, FrozenSet[str]] = {
    SessionStatus.PAID.value: frozenset({SessionStatus.PENDING.value}),
    SessionStatus.PROCESSED.value: frozenset({SessionStatus.PAID.value}),
    SessionStatus.CANCELLED.value: frozenset(
        {SessionStatus.PENDING.value, SessionStatus.PAID.value}
    ),
    SessionStatus.EXPIRED.value: frozenset({SessionStatus.PENDING.value}),
    SessionStatus.FAILED.value: frozenset(
        {SessionStatus.PENDING.value, SessionStatus.PAID.value}
    ),
}

# Sessions the reconciliation sweep looks at
ACTIVE_STATES: Set[str] = {
    SessionStatus.PENDING.value,
    SessionStatus.PAID.value,
}

# Final statuses (no further transitions)
TERMINAL_STATES: Set[str] = {
    SessionStatus.PROCESSED.value,
    SessionStatus.CANCELLED.value,
    SessionStatus.EXPIRED.value,
    SessionStatus.FAILED.value,
}

# Terminal states whose sessions never produced orders
ABANDONED_STATES: Set[str] = {
    SessionStatus.CANCELLED.value,
    SessionStatus.EXPIRED.value,
    SessionStatus.FAILED.value,
}

# Gateway row status meaning "money received"
GATEWAY_PAID_STATUS = "PAID"

# Settlement currency
SETTLEMENT_CURRENCY = "MNT"

# One MNT: amounts closer than this are considered equal
AMOUNT_TOLERANCE = 1


def can_transition(current: str | None, target: str) -> bool:
    """
    Check whether a status write is allowed.

    Example:
        can_transition("PENDING", "PAID") -> True
        can_transition("PROCESSED", "CANCELLED") -> False
    """
    if current is None:
        return False
    return current in ALLOWED_FROM.get(target, frozenset())
