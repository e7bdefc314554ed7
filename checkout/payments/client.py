"""QPay v2 gateway client.

Every call has explicit timeouts and no in-request retries: the
reconciliation sweep is the retry mechanism. Responses are parsed into
validated models; a body of the wrong shape raises GatewayResponseError.
"""
import time
from typing import Any, Optional, Type, TypeVar
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ValidationError

from checkout.config import PaymentSettings
from checkout.errors import CredentialError, GatewayError, GatewayResponseError
from checkout.logging import get_logger, sanitize_id_for_logging
from checkout.metrics import GATEWAY_LATENCY, GATEWAY_REQUESTS
from checkout.payments.credentials import CredentialCache
from checkout.payments.models import (
    InvoiceResponse,
    PaymentCheckResponse,
    ReceiptRequest,
    ReceiptResponse,
    ReceiptResult,
)
from checkout.payments.constants import ReceiptStatus, SETTLEMENT_CURRENCY
from checkout.utils import alphanumeric

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

RECEIPT_ERROR_MAX_LENGTH = 500


class QPayClient:
    """Client for the four QPay v2 endpoints this service uses."""

    def __init__(
        self,
        settings: PaymentSettings,
        credentials: CredentialCache,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.credentials = credentials
        self._http_client = http_client

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Lazy creation of shared httpx client with timeouts."""
        if self._http_client is None:
            timeout = self.settings.http_timeout_seconds
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout, connect=5.0, read=timeout, write=timeout),
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            )
        return self._http_client

    def callback_url(self, session_id: str, callback_token: str) -> str:
        query = urlencode({"sessionId": session_id, "token": callback_token})
        return f"{self.settings.callback_base_url}/webhook?{query}"

    # ==================== TRANSPORT ====================

    async def _post(self, operation: str, path: str, body: dict[str, Any], model: Type[ModelT]) -> ModelT:
        """POST with bearer auth, metrics and response validation."""
        start = time.perf_counter()
        outcome = "error"
        try:
            token = await self.credentials.get_token()
            client = await self._get_http_client()
            try:
                response = await client.post(
                    f"{self.settings.qpay_base_url}{path}",
                    json=body,
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.TimeoutException as e:
                outcome = "timeout"
                raise GatewayError(f"QPay {operation} timed out", operation=operation) from e
            except httpx.HTTPError as e:
                raise GatewayError(
                    f"QPay {operation} transport error: {type(e).__name__}", operation=operation
                ) from e

            if response.status_code == 401:
                # Token revoked early; next call fetches a fresh one
                await self.credentials.invalidate()

            if response.status_code >= 400:
                outcome = f"http_{response.status_code}"
                raise GatewayError(
                    f"QPay {operation} failed: {response.status_code} {response.text[:200]}",
                    operation=operation,
                    status_code=response.status_code,
                )

            try:
                parsed = model.model_validate(response.json())
            except (ValueError, ValidationError) as e:
                outcome = "malformed"
                raise GatewayResponseError(
                    f"QPay {operation} response malformed: {e}", operation=operation
                ) from e

            outcome = "ok"
            return parsed
        except CredentialError:
            outcome = "auth_error"
            raise
        finally:
            GATEWAY_REQUESTS.labels(operation=operation, outcome=outcome).inc()
            GATEWAY_LATENCY.labels(operation=operation, outcome=outcome).observe(
                time.perf_counter() - start
            )

    # ==================== OPERATIONS ====================

    async def create_invoice(
        self,
        session_id: str,
        amount: int,
        callback_token: str,
        receiver_code: Optional[str] = None,
        description: Optional[str] = None,
    ) -> InvoiceResponse:
        """Create a simple invoice for ``amount`` whole MNT."""
        sender_invoice_no = alphanumeric(session_id)
        body = {
            "invoice_code": self.settings.qpay_invoice_code,
            "sender_invoice_no": sender_invoice_no,
            "invoice_receiver_code": receiver_code or sender_invoice_no,
            "invoice_description": description
            or f"Order {session_id} {amount} {SETTLEMENT_CURRENCY}",
            "amount": amount,
            "callback_url": self.callback_url(session_id, callback_token),
        }
        invoice = await self._post("create_invoice", "/v2/invoice", body, InvoiceResponse)
        logger.info(
            "QPay invoice created: session=%s invoice=%s amount=%s",
            sanitize_id_for_logging(session_id),
            sanitize_id_for_logging(invoice.invoice_id),
            amount,
        )
        return invoice

    async def check_payment(self, invoice_id: str) -> PaymentCheckResponse:
        """Ask the gateway which payments exist for an invoice. Sole source of truth for "paid"."""
        body = {
            "object_type": "INVOICE",
            "object_id": invoice_id,
            "offset": {"page_number": 1, "page_limit": 100},
        }
        check = await self._post("check_payment", "/v2/payment/check", body, PaymentCheckResponse)
        logger.info(
            "QPay payment check: invoice=%s count=%s paid_amount=%s statuses=%s",
            sanitize_id_for_logging(invoice_id),
            check.count,
            check.paid_amount,
            [row.payment_status for row in check.rows],
        )
        return check

    async def create_receipt(self, payment_id: str, request: ReceiptRequest) -> ReceiptResult:
        """
        Issue a tax e-receipt for a paid payment.

        Never raises: receipts are best-effort and must not affect orders.
        """
        body: dict[str, Any] = {
            "payment_id": payment_id,
            "ebarimt_receiver_type": request.receiver_type,
            "district_code": request.district_code or self.settings.receipt_default_district_code,
            "classification_code": request.classification_code
            or self.settings.receipt_default_classification_code,
        }
        if request.receiver:
            body["ebarimt_receiver"] = request.receiver

        try:
            data = await self._post("create_receipt", "/v2/ebarimt_v3/create", body, ReceiptResponse)
        except GatewayError as e:
            logger.error(
                "QPay receipt failed: payment=%s error=%s",
                sanitize_id_for_logging(payment_id),
                e,
            )
            return ReceiptResult(success=False, error=str(e)[:RECEIPT_ERROR_MAX_LENGTH])

        status = data.barimt_status or data.status or ReceiptStatus.REGISTERED.value
        return ReceiptResult(
            success=True,
            receipt_id=data.ebarimt_receipt_id,
            qr_data=data.ebarimt_qr_data,
            status=status,
        )

    async def aclose(self) -> None:
        """Close HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
