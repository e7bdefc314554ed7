"""Shared-secret validation for cron triggers and internal callers."""
import hmac

from fastapi import Header, HTTPException

from checkout.config import get_secret


def _check_bearer(authorization: str | None, env_name: str) -> None:
    secret = get_secret(env_name)

    if not secret:
        raise HTTPException(status_code=500, detail=f"{env_name} not configured")

    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail=f"Invalid {env_name}")


async def verify_cron_secret(
    authorization: str = Header(None, alias="Authorization")
):
    """
    Verify CRON_SECRET for scheduled jobs.

    Use for the reconcile and cleanup trigger endpoints.
    """
    _check_bearer(authorization, "CRON_SECRET")
    return True


async def verify_internal_secret(
    authorization: str = Header(None, alias="Authorization")
):
    """Verify INTERNAL_API_SECRET for the internal webhook."""
    _check_bearer(authorization, "INTERNAL_API_SECRET")
    return True
