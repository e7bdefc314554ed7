"""
Shared Dependencies for Routers

Lazy-loaded singletons: clients and services are wired once per process on
first use. Tests replace ``get_container`` through ``app.dependency_overrides``.
"""

from dataclasses import dataclass
from typing import Optional

import httpx

from checkout.config import PaymentSettings, get_settings
from checkout.payments.client import QPayClient
from checkout.payments.credentials import CredentialCache
from checkout.services.cleanup import CleanupService
from checkout.services.materializer import OrderMaterializer
from checkout.services.receipts import ReceiptService
from checkout.services.reconcile import ReconcileService
from checkout.services.repositories import (
    LedgerRepository,
    OrderRepository,
    SessionRepository,
    WebhookEventRepository,
)
from checkout.services.session_store import SessionStore
from checkout.services.settlement import SettlementService
from checkout.services.webhook import WebhookService


@dataclass
class CheckoutContainer:
    settings: PaymentSettings
    redis: object
    credentials: CredentialCache
    client: QPayClient
    session_repo: SessionRepository
    ledger: LedgerRepository
    events: WebhookEventRepository
    orders: OrderRepository
    sessions: SessionStore
    settlement: SettlementService
    receipts: ReceiptService
    webhooks: WebhookService
    reconcile: ReconcileService
    cleanup: CleanupService

    async def aclose(self) -> None:
        await self.client.aclose()


def build_container(
    supabase,
    redis,
    settings: PaymentSettings,
    http_client: Optional[httpx.AsyncClient] = None,
) -> CheckoutContainer:
    """Wire every service around one Supabase client, one Redis client and one HTTP client."""
    credentials = CredentialCache(redis, settings, http_client=http_client)
    client = QPayClient(settings, credentials, http_client=http_client)

    session_repo = SessionRepository(supabase)
    ledger = LedgerRepository(supabase)
    events = WebhookEventRepository(supabase)
    orders = OrderRepository(supabase)

    sessions = SessionStore(session_repo, redis, settings)
    settlement = SettlementService(sessions, ledger, client, OrderMaterializer(orders), settings)
    receipts = ReceiptService(session_repo, client, settings)

    return CheckoutContainer(
        settings=settings,
        redis=redis,
        credentials=credentials,
        client=client,
        session_repo=session_repo,
        ledger=ledger,
        events=events,
        orders=orders,
        sessions=sessions,
        settlement=settlement,
        receipts=receipts,
        webhooks=WebhookService(sessions, ledger, events, settlement),
        reconcile=ReconcileService(redis, sessions, settlement, receipts, settings),
        cleanup=CleanupService(redis, sessions, session_repo, ledger, events, settings),
    )


# ==================== LAZY SINGLETONS ====================

_container: Optional[CheckoutContainer] = None


async def get_container() -> CheckoutContainer:
    """Get or create the service container (lazy loaded)"""
    global _container
    if _container is None:
        from checkout.db import get_redis, get_supabase
        _container = build_container(await get_supabase(), get_redis(), get_settings())
    return _container


# ==================== SHUTDOWN HELPERS ====================

async def shutdown_services():
    """Cleanly close singleton services (http clients, etc.)."""
    global _container
    if _container is not None:
        await _container.aclose()
        _container = None

    from checkout.db import reset_clients
    reset_clients()
