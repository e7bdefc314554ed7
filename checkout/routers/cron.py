"""
Cron job endpoints for the payment sweeps.

Same work as the in-process scheduler, for deployments where an external
scheduler calls in with CRON_SECRET authentication.
"""
from fastapi import APIRouter, Depends

from checkout.auth import verify_cron_secret
from checkout.routers.deps import CheckoutContainer, get_container

router = APIRouter(prefix="/api/cron", tags=["cron"], dependencies=[Depends(verify_cron_secret)])


@router.get("/reconcile-payments")
async def cron_reconcile_payments(container: CheckoutContainer = Depends(get_container)):
    """
    Re-check PENDING/PAID sessions whose webhook never arrived.
    Intended to be called every minute.
    """
    report = await container.reconcile.run_once()
    return report.as_dict()


@router.get("/payment-cleanup")
async def cron_payment_cleanup(container: CheckoutContainer = Depends(get_container)):
    """
    Expire abandoned sessions and apply retention.
    Intended to be called every 6 hours.
    """
    report = await container.cleanup.run_once()
    return report.as_dict()
