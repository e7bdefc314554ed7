"""Validated shapes of QPay v2 responses and of the verification outcome."""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from checkout.payments.constants import GATEWAY_PAID_STATUS
from checkout.payments.currency import amounts_match, to_decimal


class TokenResponse(BaseModel):
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None

    class Config:
        extra = "ignore"


class InvoiceDeeplink(BaseModel):
    name: str = ""
    description: str = ""
    link: str
    logo: str = ""

    class Config:
        extra = "ignore"


class InvoiceResponse(BaseModel):
    invoice_id: str
    qr_text: str
    qr_image: str = ""
    short_url: Optional[str] = Field(default=None, alias="qPay_shortUrl")
    deeplinks: List[InvoiceDeeplink] = Field(default_factory=list, alias="urls")

    class Config:
        extra = "ignore"
        populate_by_name = True


class PaymentRow(BaseModel):
    payment_id: str
    payment_status: str
    payment_amount: Decimal = Decimal("0")

    class Config:
        extra = "ignore"


class PaymentCheckResponse(BaseModel):
    count: int = 0
    paid_amount: Decimal = Decimal("0")
    rows: List[PaymentRow] = Field(default_factory=list)

    class Config:
        extra = "ignore"

    def paid_row(self) -> Optional[PaymentRow]:
        """First row the gateway reports as PAID."""
        for row in self.rows:
            if row.payment_status == GATEWAY_PAID_STATUS:
                return row
        return None


class ReceiptRequest(BaseModel):
    """Payer's tax e-receipt details. ``receiver`` is PII (registration number)."""
    receiver_type: str = "CITIZEN"
    receiver: Optional[str] = None
    district_code: Optional[str] = None
    classification_code: Optional[str] = None

    class Config:
        extra = "ignore"


class ReceiptResponse(BaseModel):
    ebarimt_receipt_id: str
    ebarimt_qr_data: str = ""
    barimt_status: Optional[str] = None
    status: Optional[str] = None

    class Config:
        extra = "ignore"


@dataclass(frozen=True)
class ReceiptResult:
    """Outcome of a receipt call. The client never raises for receipts."""
    success: bool
    receipt_id: Optional[str] = None
    qr_data: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class VerificationResult:
    """What the gateway says about an invoice, checked against the expected amount."""
    is_paid: bool
    paid_amount: Decimal
    expected_amount: int
    payment_id: Optional[str]
    amount_ok: bool

    @property
    def verified(self) -> bool:
        return self.is_paid and self.amount_ok


def verify_payment(check: PaymentCheckResponse, expected_amount: int) -> VerificationResult:
    """
    Apply the amount rule: paid iff at least one row is PAID and the paid
    amount is within one MNT of the expected amount.
    """
    row = check.paid_row()
    paid_amount = to_decimal(check.paid_amount)
    if row is not None and paid_amount == 0:
        paid_amount = to_decimal(row.payment_amount)

    return VerificationResult(
        is_paid=row is not None,
        paid_amount=paid_amount,
        expected_amount=expected_amount,
        payment_id=row.payment_id if row else None,
        amount_ok=row is not None and amounts_match(paid_amount, expected_amount),
    )
