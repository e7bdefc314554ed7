"""Pydantic models for persisted rows."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from checkout.payments.constants import PaymentProvider, SETTLEMENT_CURRENCY


class CartItem(BaseModel):
    product_id: str = Field(alias="id")
    shop_id: str = Field(alias="shopId")
    quantity: int = 1
    sale_price: float
    selected_options: Dict[str, Any] = Field(default_factory=dict, alias="selectedOptions")

    class Config:
        extra = "ignore"
        populate_by_name = True


class Coupon(BaseModel):
    code: Optional[str] = None
    discount_amount: float = Field(default=0, alias="discountAmount")
    discount_percent: float = Field(default=0, alias="discountPercent")
    discounted_product_id: Optional[str] = Field(default=None, alias="discountedProductId")

    class Config:
        extra = "ignore"
        populate_by_name = True


class CartSnapshot(BaseModel):
    """Immutable copy of the cart taken when the session starts."""
    items: List[CartItem]
    sellers: List[Dict[str, Any]] = Field(default_factory=list)
    total_amount: float = Field(alias="totalAmount")
    shipping_address_id: Optional[str] = Field(default=None, alias="shippingAddressId")
    coupon: Optional[Coupon] = None

    class Config:
        extra = "ignore"
        populate_by_name = True


class PaymentSession(BaseModel):
    session_id: str
    user_id: str
    provider: str = PaymentProvider.QPAY.value
    cart_snapshot: Dict[str, Any]
    expected_amount: int
    currency: str = SETTLEMENT_CURRENCY
    invoice_id: Optional[str] = None
    payment_id: Optional[str] = None
    callback_token: str
    status: str
    last_checked_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    # Tax e-receipt
    receipt_request: Optional[Dict[str, Any]] = None
    receipt_status: Optional[str] = None
    receipt_id: Optional[str] = None
    receipt_qr_data: Optional[str] = None
    receipt_error: Optional[str] = None
    receipt_created_at: Optional[datetime] = None

    class Config:
        extra = "ignore"

    @property
    def cart(self) -> CartSnapshot:
        return CartSnapshot.model_validate(self.cart_snapshot)


class LedgerEntry(BaseModel):
    invoice_id: str
    session_id: str
    order_ids: List[str] = Field(default_factory=list)
    status: str
    error: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None

    class Config:
        extra = "ignore"
