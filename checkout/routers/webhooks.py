"""
Webhooks Router

QPay payment callbacks. The body is only a hint; every decision is made
after asking the gateway. Business outcomes are acknowledged with 200 so
the gateway does not retry.
"""

import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from checkout.auth import verify_internal_secret
from checkout.errors import ERROR_DENIED
from checkout.logging import get_logger
from checkout.routers.deps import CheckoutContainer, get_container
from checkout.services.webhook import WebhookBadRequest, WebhookDenied, WebhookResult

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])


async def _read_body(request: Request) -> Optional[Dict[str, Any]]:
    """JSON first, then form data; empty dict if neither parses."""
    raw_body = await request.body()
    if not raw_body:
        return {}
    try:
        data = json.loads(raw_body.decode("utf-8"))
        return data if isinstance(data, dict) else {}
    except (json.JSONDecodeError, UnicodeDecodeError):
        pass
    try:
        form_data = await request.form()
        return dict(form_data)
    except Exception:
        logger.warning("Webhook: could not parse request body")
        return {}


def _respond(result: WebhookResult, container: CheckoutContainer, background_tasks: BackgroundTasks):
    if result.receipt_due and result.session_id:
        background_tasks.add_task(container.receipts.issue, result.session_id)
    return JSONResponse(result.to_response())


# ==================== QPAY PUBLIC WEBHOOK ====================

@router.post("/webhook")
async def qpay_public_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    container: CheckoutContainer = Depends(get_container),
):
    """Gateway callback: ``/webhook?sessionId=...&token=...``."""
    body = await _read_body(request)
    try:
        result = await container.webhooks.handle_public(
            request.query_params.get("sessionId"),
            request.query_params.get("token"),
            body,
        )
    except WebhookBadRequest as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=400)
    except WebhookDenied:
        return JSONResponse({"success": False, "error": ERROR_DENIED}, status_code=403)

    return _respond(result, container, background_tasks)


# ==================== INTERNAL WEBHOOK ====================

@router.post("/internal/webhook", dependencies=[Depends(verify_internal_secret)])
async def qpay_internal_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    container: CheckoutContainer = Depends(get_container),
):
    """Forwarded notification from a trusted service: ``{invoiceId, sessionId?}``."""
    body = await _read_body(request)
    try:
        result = await container.webhooks.handle_internal(body)
    except WebhookBadRequest as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=400)

    return _respond(result, container, background_tasks)
