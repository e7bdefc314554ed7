"""
Expiry and retention sweep.

Moves abandoned PENDING sessions to EXPIRED and deletes old terminal rows.
Each step is a separate bounded operation; PENDING and PAID sessions are
never deleted.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from checkout.config import PaymentSettings
from checkout.db import RedisKeys
from checkout.logging import get_logger
from checkout.metrics import ROWS_DELETED, SESSIONS_EXPIRED, SWEEP_TICKS
from checkout.payments.constants import ABANDONED_STATES, SessionStatus
from checkout.payments.locks import hold_lock
from checkout.services.repositories import (
    LedgerRepository,
    SessionRepository,
    WebhookEventRepository,
)
from checkout.services.session_store import SessionStore
from checkout.utils import utcnow

logger = get_logger(__name__)


@dataclass
class CleanupReport:
    lock_acquired: bool = False
    expired: int = 0
    webhook_events_deleted: int = 0
    abandoned_sessions_deleted: int = 0
    processed_sessions_deleted: int = 0
    ledger_entries_deleted: int = 0

    def as_dict(self) -> dict:
        return {
            "lockAcquired": self.lock_acquired,
            "expired": self.expired,
            "webhookEventsDeleted": self.webhook_events_deleted,
            "abandonedSessionsDeleted": self.abandoned_sessions_deleted,
            "processedSessionsDeleted": self.processed_sessions_deleted,
            "ledgerEntriesDeleted": self.ledger_entries_deleted,
        }


class CleanupService:
    """Six-hourly expiry and retention job."""

    def __init__(
        self,
        redis,
        sessions: SessionStore,
        session_repo: SessionRepository,
        ledger: LedgerRepository,
        events: WebhookEventRepository,
        settings: PaymentSettings,
    ):
        self.redis = redis
        self.sessions = sessions
        self.session_repo = session_repo
        self.ledger = ledger
        self.events = events
        self.settings = settings

    async def run_once(self, now: Optional[datetime] = None) -> CleanupReport:
        now = now or utcnow()
        report = CleanupReport()

        async with hold_lock(self.redis, RedisKeys.CLEANUP_LOCK, self.settings.cleanup_lock_ttl_seconds) as acquired:
            if not acquired:
                logger.info("Cleanup: lock held elsewhere, skipping tick")
                SWEEP_TICKS.labels(job="cleanup", outcome="skipped").inc()
                return report

            report.lock_acquired = True
            try:
                report.expired = await self.expire_stale(now)
                report.webhook_events_deleted = await self._delete_webhook_events(now)
                report.abandoned_sessions_deleted = await self._delete_sessions(
                    ABANDONED_STATES, self.settings.session_terminal_retention_days, now
                )
                report.processed_sessions_deleted = await self._delete_sessions(
                    {SessionStatus.PROCESSED.value}, self.settings.session_processed_retention_days, now
                )
                report.ledger_entries_deleted = await self._delete_ledger(now)
            except Exception:
                SWEEP_TICKS.labels(job="cleanup", outcome="error").inc()
                raise

        SWEEP_TICKS.labels(job="cleanup", outcome="ok").inc()
        logger.info("Cleanup: %s", report.as_dict())
        return report

    async def expire_stale(self, now: datetime) -> int:
        cutoff = now - timedelta(minutes=self.settings.session_expiry_minutes)
        expired_ids = await self.session_repo.expire_pending(
            cutoff, self.settings.cleanup_batch_size, now=now
        )
        for session_id in expired_ids:
            await self.sessions.drop_projection(session_id)
        if expired_ids:
            SESSIONS_EXPIRED.inc(len(expired_ids))
            logger.info("Cleanup: expired %d PENDING session(s)", len(expired_ids))
        return len(expired_ids)

    async def _delete_webhook_events(self, now: datetime) -> int:
        days = self.settings.webhook_event_retention_days
        if days <= 0:
            return 0
        deleted = await self.events.delete_older_than(
            now - timedelta(days=days), self.settings.cleanup_batch_size
        )
        ROWS_DELETED.labels(table="webhook_events").inc(deleted)
        return deleted

    async def _delete_sessions(self, statuses, days: int, now: datetime) -> int:
        if days <= 0:
            return 0
        deleted = await self.session_repo.delete_terminal(
            statuses, now - timedelta(days=days), self.settings.cleanup_batch_size
        )
        ROWS_DELETED.labels(table="payment_sessions").inc(deleted)
        return deleted

    async def _delete_ledger(self, now: datetime) -> int:
        days = self.settings.processed_invoice_retention_days
        if days <= 0:
            # 0 keeps ledger rows forever
            return 0
        deleted = await self.ledger.delete_older_than(
            now - timedelta(days=days), self.settings.cleanup_batch_size
        )
        ROWS_DELETED.labels(table="processed_invoices").inc(deleted)
        return deleted
