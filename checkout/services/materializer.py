"""Order Materializer - turns a verified payment into per-seller orders."""
from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, Optional

from checkout.logging import get_logger, sanitize_id_for_logging
from checkout.payments.currency import round_money, to_decimal
from checkout.payments.models import VerificationResult
from checkout.services.models import CartItem, CartSnapshot, Coupon, PaymentSession
from checkout.services.repositories import OrderRepository

logger = get_logger(__name__)


class UnverifiedPaymentError(ValueError):
    """Materialization requested without a verified payment."""


def group_by_shop(items: List[CartItem]) -> Dict[str, List[CartItem]]:
    grouped: Dict[str, List[CartItem]] = OrderedDict()
    for item in items:
        grouped.setdefault(item.shop_id, []).append(item)
    return grouped


def coupon_discount(items: List[CartItem], coupon: Optional[Coupon]):
    """Discount applying to this shop's items (0 if the coupon targets another shop)."""
    if not coupon or not coupon.discounted_product_id:
        return to_decimal(0)

    for item in items:
        if item.product_id == coupon.discounted_product_id:
            if coupon.discount_percent > 0:
                line = to_decimal(item.sale_price) * item.quantity
                return line * to_decimal(coupon.discount_percent) / 100
            return to_decimal(coupon.discount_amount)
    return to_decimal(0)


class OrderMaterializer:
    """
    Create one order per seller from a session's cart snapshot.

    Runs at most once per invoice: callers must hold the ledger claim.
    """

    def __init__(self, orders: OrderRepository):
        self.orders = orders

    async def materialize(
        self,
        session: PaymentSession,
        verification: VerificationResult,
        now: Optional[datetime] = None,
    ) -> List[str]:
        if not verification.verified:
            raise UnverifiedPaymentError(
                f"Session {session.session_id}: payment not verified"
            )

        cart: CartSnapshot = session.cart
        order_ids: List[str] = []

        for shop_id, items in group_by_shop(cart.items).items():
            subtotal = sum(
                (to_decimal(item.sale_price) * item.quantity for item in items), to_decimal(0)
            )
            discount = coupon_discount(items, cart.coupon)
            total = round_money(subtotal - discount)

            order_id = await self.orders.create(
                user_id=session.user_id,
                shop_id=shop_id,
                session_id=session.session_id,
                total=float(total),
                items=[
                    {
                        "product_id": item.product_id,
                        "quantity": item.quantity,
                        "price": item.sale_price,
                        "selected_options": item.selected_options,
                    }
                    for item in items
                ],
                shipping_address_id=cart.shipping_address_id,
                coupon_code=cart.coupon.code if cart.coupon else None,
                discount_amount=float(round_money(discount)),
                now=now,
            )
            order_ids.append(order_id)

        logger.info(
            "Materialized %d order(s) for session %s",
            len(order_ids),
            sanitize_id_for_logging(session.session_id),
        )
        return order_ids
