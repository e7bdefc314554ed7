"""
Reconciliation sweep.

Finds active sessions whose webhook never arrived (or failed) and runs the
same verify-and-materialize routine against them. One instance per tick,
elected by a Redis lock; if the lock is held the tick is skipped.
"""
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional

from checkout.config import PaymentSettings
from checkout.db import RedisKeys
from checkout.logging import get_logger, sanitize_id_for_logging
from checkout.metrics import SWEEP_TICKS
from checkout.payments.locks import DistributedLock
from checkout.services.receipts import ReceiptService
from checkout.services.session_store import SessionStore
from checkout.services.settlement import SettlementService
from checkout.utils import utcnow

logger = get_logger(__name__)


@dataclass
class ReconcileReport:
    lock_acquired: bool = False
    candidates: int = 0
    checked: int = 0
    errors: int = 0
    reasons: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "lockAcquired": self.lock_acquired,
            "candidates": self.candidates,
            "checked": self.checked,
            "errors": self.errors,
            "reasons": self.reasons,
        }


class ReconcileService:
    """Pull-path confirmation for PENDING/PAID sessions."""

    def __init__(
        self,
        redis,
        sessions: SessionStore,
        settlement: SettlementService,
        receipts: ReceiptService,
        settings: PaymentSettings,
    ):
        self.redis = redis
        self.sessions = sessions
        self.settlement = settlement
        self.receipts = receipts
        self.settings = settings

    async def run_once(self, now: Optional[datetime] = None) -> ReconcileReport:
        now = now or utcnow()
        report = ReconcileReport()
        lock = DistributedLock(self.redis, RedisKeys.RECONCILE_LOCK, self.settings.reconcile_lock_ttl_seconds)

        if not await lock.acquire():
            logger.info("Reconcile: lock held elsewhere, skipping tick")
            SWEEP_TICKS.labels(job="reconcile", outcome="skipped").inc()
            return report

        report.lock_acquired = True
        reasons: Counter = Counter()
        try:
            candidates = await self.sessions.repo.list_reconcile_candidates(
                cutoff=now - timedelta(seconds=self.settings.reconcile_min_age_seconds),
                checked_before=now - timedelta(seconds=self.settings.check_cooldown_seconds),
                limit=self.settings.reconcile_batch_size,
            )
            report.candidates = len(candidates)

            for session in candidates:
                try:
                    outcome = await self.settlement.verify_and_materialize(session, trigger="reconcile", now=now)
                    report.checked += 1
                    reasons[outcome.reason.value] += 1
                    if outcome.receipt_due:
                        await self.receipts.issue(session.session_id, now=now)
                except Exception:
                    report.errors += 1
                    logger.exception(
                        "Reconcile: session %s failed", sanitize_id_for_logging(session.session_id)
                    )

            SWEEP_TICKS.labels(job="reconcile", outcome="ok").inc()
        except Exception:
            SWEEP_TICKS.labels(job="reconcile", outcome="error").inc()
            raise
        finally:
            await lock.release()

        report.reasons = dict(reasons)
        logger.info(
            "Reconcile: candidates=%d checked=%d errors=%d reasons=%s",
            report.candidates,
            report.checked,
            report.errors,
            report.reasons,
        )
        return report
