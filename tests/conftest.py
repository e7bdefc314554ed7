"""Pytest configuration and fixtures"""
import asyncio
import itertools
import json
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from postgrest.exceptions import APIError

# Set test environment variables
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test_key")
os.environ.setdefault("UPSTASH_REDIS_REST_URL", "https://test.upstash.io")
os.environ.setdefault("UPSTASH_REDIS_REST_TOKEN", "test_token")
os.environ.setdefault("CRON_SECRET", "test_cron_secret")
os.environ.setdefault("INTERNAL_API_SECRET", "test_internal_secret")
os.environ.setdefault("AUTH_TOKEN_SECRET", "test_auth_secret")

from checkout.config import PaymentSettings  # noqa: E402
from checkout.routers.deps import build_container  # noqa: E402


# ==================== FAKE SUPABASE ====================

class _Result:
    def __init__(self, data):
        self.data = data


def _comparable(value):
    if isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    return value


_OR_OPERATORS = {
    "eq": lambda a, b: a == b,
    "lt": lambda a, b: a < b,
    "lte": lambda a, b: a <= b,
    "gt": lambda a, b: a > b,
    "gte": lambda a, b: a >= b,
}


def _or_clause(column: str, op: str, value: str) -> Callable[[dict], bool]:
    """One ``column.op.value`` term of a PostgREST ``or`` filter."""
    if op == "is" and value == "null":
        return lambda row: row.get(column) is None
    compare = _OR_OPERATORS[op]
    return lambda row: row.get(column) is not None and compare(_comparable(row[column]), _comparable(value))


class _NotProxy:
    def __init__(self, query: "_FakeQuery"):
        self.query = query

    def is_(self, column: str, value: str):
        return self.query._add(lambda row: row.get(column) is not None) if value == "null" else self.query


class _FakeQuery:
    """Chainable subset of the PostgREST query builder."""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self._mode = "select"
        self._payload: Any = None
        self._filters: List[Callable[[dict], bool]] = []
        self._orders: List[tuple] = []
        self._limit: Optional[int] = None

    def _add(self, predicate):
        self._filters.append(predicate)
        return self

    # Operations
    def select(self, *_columns):
        self._mode = "select"
        return self

    def insert(self, data):
        self._mode = "insert"
        self._payload = data
        return self

    def update(self, data: Dict[str, Any]):
        self._mode = "update"
        self._payload = data
        return self

    def delete(self):
        self._mode = "delete"
        return self

    # Filters
    def eq(self, column, value):
        return self._add(lambda row: row.get(column) == value)

    def neq(self, column, value):
        return self._add(lambda row: row.get(column) != value)

    def in_(self, column, values):
        values = list(values)
        return self._add(lambda row: row.get(column) in values)

    def lt(self, column, value):
        return self._add(lambda row: row.get(column) is not None and _comparable(row[column]) < _comparable(value))

    def lte(self, column, value):
        return self._add(lambda row: row.get(column) is not None and _comparable(row[column]) <= _comparable(value))

    def gt(self, column, value):
        return self._add(lambda row: row.get(column) is not None and _comparable(row[column]) > _comparable(value))

    def gte(self, column, value):
        return self._add(lambda row: row.get(column) is not None and _comparable(row[column]) >= _comparable(value))

    def is_(self, column, value):
        if value == "null":
            return self._add(lambda row: row.get(column) is None)
        return self

    @property
    def not_(self):
        return _NotProxy(self)

    def or_(self, filters: str):
        clauses = [_or_clause(*part.split(".", 2)) for part in filters.split(",")]
        return self._add(lambda row: any(clause(row) for clause in clauses))

    def order(self, column, desc: bool = False, nullsfirst: bool = False):
        self._orders.append((column, desc, nullsfirst))
        return self

    def limit(self, count: int):
        self._limit = count
        return self

    def _matching(self) -> List[dict]:
        rows = [row for row in self.db.tables[self.table] if all(f(row) for f in self._filters)]
        # Stable sorts, last key first, give PostgREST's multi-column order
        for column, desc, nullsfirst in reversed(self._orders):
            nulls = [row for row in rows if row.get(column) is None]
            values = sorted(
                (row for row in rows if row.get(column) is not None),
                key=lambda row: _comparable(row[column]),
                reverse=desc,
            )
            rows = nulls + values if nullsfirst else values + nulls
        if self._limit is not None:
            rows = rows[: self._limit]
        return rows

    async def execute(self):
        # Yield like a network round trip would, then act atomically
        await asyncio.sleep(0)
        self.db.calls.append((self.table, self._mode))

        if self._mode == "insert":
            return _Result(self.db._insert(self.table, self._payload))
        if self._mode == "update":
            rows = self._matching()
            for row in rows:
                row.update(json.loads(json.dumps(self._payload)))
            return _Result([dict(row) for row in rows])
        if self._mode == "delete":
            rows = self._matching()
            ids = {id(row) for row in rows}
            self.db.tables[self.table] = [r for r in self.db.tables[self.table] if id(r) not in ids]
            return _Result([dict(row) for row in rows])
        return _Result([dict(row) for row in self._matching()])


class FakeSupabase:
    """In-memory stand-in for the async Supabase client."""

    UNIQUE = {
        "payment_sessions": "session_id",
        "processed_invoices": "invoice_id",
        "orders": "id",
    }

    def __init__(self):
        self.tables: Dict[str, List[dict]] = {
            "payment_sessions": [],
            "processed_invoices": [],
            "webhook_events": [],
            "orders": [],
            "order_items": [],
        }
        self.calls: List[tuple] = []
        self._ids = itertools.count(1)

    def table(self, name: str) -> _FakeQuery:
        self.tables.setdefault(name, [])
        return _FakeQuery(self, name)

    def _insert(self, table: str, payload) -> List[dict]:
        rows = payload if isinstance(payload, list) else [payload]
        unique = self.UNIQUE.get(table)
        inserted = []
        for row in rows:
            row = json.loads(json.dumps(row))
            if unique and any(r.get(unique) == row.get(unique) for r in self.tables[table]):
                raise APIError(
                    {
                        "code": "23505",
                        "message": f'duplicate key value violates unique constraint "{table}_{unique}_key"',
                        "details": "",
                        "hint": "",
                    }
                )
            row.setdefault("id", next(self._ids))
            self.tables[table].append(row)
            inserted.append(dict(row))
        return inserted

    def rows(self, table: str) -> List[dict]:
        return self.tables[table]


# ==================== FAKE REDIS ====================

class FakeRedis:
    """In-memory stand-in for the async Upstash Redis client."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.data: Dict[str, tuple] = {}
        self.fail = False

    def _live(self, key: str):
        entry = self.data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self.clock():
            del self.data[key]
            return None
        return value

    async def _io(self):
        await asyncio.sleep(0)
        if self.fail:
            raise ConnectionError("redis unavailable")

    async def get(self, key: str):
        await self._io()
        return self._live(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None, nx: bool = False):
        await self._io()
        if nx and self._live(key) is not None:
            return None
        self.data[key] = (value, self.clock() + ex if ex else None)
        return "OK"

    async def delete(self, *keys: str) -> int:
        await self._io()
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                del self.data[key]
                removed += 1
        return removed

    async def eval(self, script: str, keys: List[str], args: List[str]):
        # Only the compare-and-delete release script is used
        await self._io()
        if self._live(keys[0]) == args[0]:
            del self.data[keys[0]]
            return 1
        return 0

    def ttl(self, key: str) -> Optional[float]:
        entry = self.data.get(key)
        if entry is None or entry[1] is None:
            return None
        return entry[1] - self.clock()


# ==================== FAKE QPAY ====================

class FakeQPay:
    """QPay v2 API served through httpx.MockTransport."""

    def __init__(self):
        self.token_calls = 0
        self.check_calls = 0
        self.invoice_requests: List[dict] = []
        self.receipt_requests: List[dict] = []
        self.payments: Dict[str, dict] = {}
        self.token_status = 200
        self.invoice_status = 200
        self.check_status = 200
        self.check_body: Optional[Any] = None
        self.receipt_status = 200
        self.token_delay = 0.0
        self._invoice_ids = itertools.count(1)

    def pay(self, invoice_id: str, amount, status: str = "PAID") -> None:
        self.payments[invoice_id] = {
            "count": 1,
            "paid_amount": amount,
            "rows": [
                {"payment_id": f"PAY-{invoice_id}", "payment_status": status, "payment_amount": amount}
            ],
        }

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else {}

        if path == "/v2/auth/token":
            self.token_calls += 1
            if self.token_delay:
                await asyncio.sleep(self.token_delay)
            if self.token_status != 200:
                return httpx.Response(self.token_status, text="denied")
            return httpx.Response(
                200, json={"access_token": f"tok-{self.token_calls}", "expires_in": 3600, "token_type": "bearer"}
            )

        if path == "/v2/invoice":
            self.invoice_requests.append(body)
            if self.invoice_status != 200:
                return httpx.Response(self.invoice_status, text="invoice error")
            invoice_id = f"INV-{next(self._invoice_ids)}"
            return httpx.Response(
                200,
                json={
                    "invoice_id": invoice_id,
                    "qr_text": f"qr-{invoice_id}",
                    "qr_image": "base64png",
                    "qPay_shortUrl": f"https://qpay.test/{invoice_id}",
                    "urls": [{"name": "Khan bank", "description": "Khan", "link": "khanbank://q", "logo": ""}],
                },
            )

        if path == "/v2/payment/check":
            self.check_calls += 1
            if self.check_status != 200:
                return httpx.Response(self.check_status, text="check error")
            if self.check_body is not None:
                return httpx.Response(200, json=self.check_body)
            return httpx.Response(
                200, json=self.payments.get(body["object_id"], {"count": 0, "paid_amount": 0, "rows": []})
            )

        if path == "/v2/ebarimt_v3/create":
            self.receipt_requests.append(body)
            if self.receipt_status != 200:
                return httpx.Response(self.receipt_status, text="ebarimt error")
            return httpx.Response(
                200,
                json={
                    "ebarimt_receipt_id": f"EB-{body['payment_id']}",
                    "ebarimt_qr_data": "ebarimt-qr",
                    "barimt_status": "REGISTERED",
                },
            )

        return httpx.Response(404)


# ==================== FIXTURES ====================

SAMPLE_CART = {
    "items": [
        {"id": "prod-1", "shopId": "shop-1", "quantity": 2, "sale_price": 10.0},
        {"id": "prod-2", "shopId": "shop-2", "quantity": 1, "sale_price": 5.0},
    ],
    "sellers": [{"id": "shop-1"}, {"id": "shop-2"}],
    "totalAmount": 25.0,
    "shippingAddressId": "addr-1",
}


@pytest.fixture
def settings():
    return PaymentSettings(
        qpay_base_url="https://merchant.qpay.test",
        qpay_username="merchant",
        qpay_password="secret",
        qpay_invoice_code="TEST_INVOICE",
        callback_base_url="https://shop.test",
        receipt_enabled=True,
    )


@pytest.fixture
def supabase():
    return FakeSupabase()


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def qpay():
    return FakeQPay()


@pytest.fixture
def http_client(qpay):
    return httpx.AsyncClient(transport=httpx.MockTransport(qpay.handler))


@pytest.fixture
def container(supabase, redis, settings, http_client):
    return build_container(supabase, redis, settings, http_client=http_client)


@pytest.fixture
def sample_cart():
    from checkout.services.models import CartSnapshot

    return CartSnapshot.model_validate(SAMPLE_CART)


@pytest.fixture
def expected_amount():
    # 25 USD * 3400
    return 85000


@pytest.fixture
def start_session(container, sample_cart):
    """Create a PENDING session with an invoice."""

    async def _start(user_id: str = "user-1", now: Optional[datetime] = None, cart=None):
        session, invoice = await container.sessions.start(
            user_id, cart or sample_cart, container.client, now=now
        )
        return session

    return _start
