"""
Repository Pattern for Database Operations

- SessionRepository: payment sessions and guarded status writes
- LedgerRepository: idempotency ledger (processed invoices)
- WebhookEventRepository: webhook audit trail
- OrderRepository: orders and order items created from a paid session
"""
from .session_repo import SessionRepository
from .ledger_repo import LedgerRepository
from .webhook_event_repo import WebhookEventRepository
from .order_repo import OrderRepository

__all__ = [
    "SessionRepository",
    "LedgerRepository",
    "WebhookEventRepository",
    "OrderRepository",
]
