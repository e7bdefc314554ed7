"""Request/response schemas for the checkout API."""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from checkout.services.models import CartItem, Coupon


class ReceiptRequestBody(BaseModel):
    receiverType: str = "CITIZEN"
    receiver: Optional[str] = None
    districtCode: Optional[str] = None
    classificationCode: Optional[str] = None


class CreateSessionRequest(BaseModel):
    cart: List[CartItem] = Field(min_length=1)
    sellers: List[Dict[str, Any]] = Field(default_factory=list)
    totalAmount: float = Field(gt=0)
    shippingAddressId: Optional[str] = None
    coupon: Optional[Coupon] = None
    receipt: Optional[ReceiptRequestBody] = None


class InvoiceView(BaseModel):
    invoiceId: str
    qrText: str
    qrImage: str = ""
    shortUrl: Optional[str] = None
    deeplinks: List[Dict[str, Any]] = Field(default_factory=list)


class CreateSessionResponse(BaseModel):
    sessionId: str
    expectedAmount: int
    currency: str
    invoice: InvoiceView


class SessionStatusResponse(BaseModel):
    sessionId: str
    status: str
    invoiceId: Optional[str] = None
    orderIds: List[str] = Field(default_factory=list)
    paidAmount: Optional[float] = None
    expectedAmount: int
    lastCheckedAt: Optional[str] = None


class CancelResponse(BaseModel):
    sessionId: str
    status: str
    cancelledAt: Optional[str] = None
