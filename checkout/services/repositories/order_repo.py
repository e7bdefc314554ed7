"""Order Repository - orders created from a paid session."""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from checkout.utils import to_iso, utcnow

from .base import BaseRepository

# Status written on orders created from a verified payment
ORDER_STATUS_PAID = "Paid"


class OrderRepository(BaseRepository):
    """``orders`` / ``order_items`` table operations."""

    table = "orders"

    async def create(
        self,
        user_id: str,
        shop_id: str,
        session_id: str,
        total: float,
        items: List[Dict[str, Any]],
        shipping_address_id: Optional[str] = None,
        coupon_code: Optional[str] = None,
        discount_amount: float = 0,
        now: Optional[datetime] = None,
    ) -> str:
        """Create one paid order with its items. Returns the order id."""
        now = now or utcnow()
        order_id = str(uuid.uuid4())
        await self.query().insert(
            {
                "id": order_id,
                "user_id": user_id,
                "shop_id": shop_id,
                "session_id": session_id,
                "total": total,
                "status": ORDER_STATUS_PAID,
                "shipping_address_id": shipping_address_id,
                "coupon_code": coupon_code,
                "discount_amount": discount_amount,
                "created_at": to_iso(now),
            }
        ).execute()

        if items:
            rows = [{"order_id": order_id, **item} for item in items]
            await self.client.table("order_items").insert(rows).execute()

        return order_id
