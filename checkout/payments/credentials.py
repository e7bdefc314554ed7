"""
QPay bearer credential cache.

The token lives in Redis so every instance shares it. On a miss only one
caller exchanges credentials upstream:
- within a process, concurrent callers await the same in-flight task;
- across instances, a short Redis lock elects the fetcher and the others
  poll the cache until the token appears.
A failed exchange is raised to every waiter and nothing is cached.
"""
import asyncio
import json
import time
from typing import Callable, Dict, Optional

import httpx
from pydantic import ValidationError

from checkout.config import PaymentSettings
from checkout.db import TTL, RedisKeys
from checkout.errors import CredentialError
from checkout.logging import get_logger
from checkout.metrics import CREDENTIAL_EXCHANGES
from checkout.payments.constants import PaymentProvider
from checkout.payments.locks import DistributedLock
from checkout.payments.models import TokenResponse

logger = get_logger(__name__)

# expires_in values further out than this are absolute epochs, not durations
EPOCH_THRESHOLD_SECONDS = 3600


def compute_expires_at(expires_in: int, now: float) -> int:
    """
    Normalize ``expires_in`` to an absolute epoch.

    Example:
        compute_expires_at(3600, now=1000) -> 4600
        compute_expires_at(1700003600, now=1700000000) -> 1700003600
    """
    if expires_in > now + EPOCH_THRESHOLD_SECONDS:
        return int(expires_in)
    return int(now + expires_in)


class CredentialCache:
    """Shared, stampede-protected bearer token for one provider."""

    def __init__(
        self,
        redis,
        settings: PaymentSettings,
        http_client: Optional[httpx.AsyncClient] = None,
        provider: str = PaymentProvider.QPAY.value,
        poll_interval: float = 0.25,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.settings = settings
        self.provider = provider
        self.poll_interval = poll_interval
        self._clock = clock
        self._http_client = http_client
        self._inflight: Dict[str, asyncio.Task] = {}

    @property
    def cache_key(self) -> str:
        return RedisKeys.access_token_key(self.provider)

    @property
    def lock_key(self) -> str:
        return RedisKeys.access_token_lock_key(self.provider)

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Lazy creation of shared httpx client with timeouts."""
        if self._http_client is None:
            timeout = self.settings.http_timeout_seconds
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout, connect=5.0, read=timeout, write=timeout),
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            )
        return self._http_client

    # ==================== PUBLIC ====================

    async def get_token(self) -> str:
        """Return a valid bearer token, refreshing it if needed."""
        cached = await self._read_cache()
        if cached:
            return cached

        task = self._inflight.get(self.provider)
        if task is None or task.done():
            task = asyncio.create_task(self._refresh())
            self._inflight[self.provider] = task
            task.add_done_callback(lambda _t: self._inflight.pop(self.provider, None))

        # shield: one cancelled waiter must not cancel the exchange for the rest
        return await asyncio.shield(task)

    async def invalidate(self) -> None:
        """Drop the cached token (gateway answered 401)."""
        try:
            await self.redis.delete(self.cache_key)
        except Exception as e:
            logger.warning("Credential cache: invalidate failed: %s", e)

    # ==================== REFRESH ====================

    async def _refresh(self) -> str:
        lock = DistributedLock(self.redis, self.lock_key, TTL.ACCESS_TOKEN_LOCK)
        deadline = self._clock() + TTL.ACCESS_TOKEN_LOCK + 1

        while True:
            if await lock.acquire():
                try:
                    # Another instance may have refreshed while we waited
                    cached = await self._read_cache()
                    if cached:
                        return cached
                    return await self._fetch_and_store()
                finally:
                    await lock.release()

            await asyncio.sleep(self.poll_interval)
            cached = await self._read_cache()
            if cached:
                return cached

            if self._clock() >= deadline:
                CREDENTIAL_EXCHANGES.labels(outcome="timeout").inc()
                raise CredentialError(
                    "Timed out waiting for another instance to refresh the token",
                    operation="auth",
                )

    async def _read_cache(self) -> Optional[str]:
        try:
            raw = await self.redis.get(self.cache_key)
        except Exception as e:
            logger.error("Credential cache: read failed: %s", e)
            return None

        if not raw:
            return None

        try:
            data = json.loads(raw)
            token = data["access_token"]
            expires_at = int(data["expires_at"])
        except (ValueError, TypeError, KeyError):
            logger.warning("Credential cache: discarding malformed entry")
            return None

        if expires_at - self._clock() > TTL.ACCESS_TOKEN_BUFFER:
            return token
        return None

    async def _fetch_and_store(self) -> str:
        token = await self._exchange()
        now = self._clock()
        expires_at = compute_expires_at(token.expires_in, now)
        ttl = max(1, int(expires_at - now - TTL.ACCESS_TOKEN_BUFFER))

        payload = json.dumps({"access_token": token.access_token, "expires_at": expires_at})
        try:
            await self.redis.set(self.cache_key, payload, ex=ttl)
        except Exception as e:
            logger.warning("Credential cache: write failed, token used uncached: %s", e)

        logger.info("QPay token fetched and cached (expires in %ss)", ttl)
        return token.access_token

    async def _exchange(self) -> TokenResponse:
        settings = self.settings
        if not settings.qpay_username or not settings.qpay_password:
            CREDENTIAL_EXCHANGES.labels(outcome="error").inc()
            raise CredentialError("QPay credentials are not configured", operation="auth")

        client = await self._get_http_client()
        url = f"{settings.qpay_base_url}/v2/auth/token"
        try:
            response = await client.post(url, auth=(settings.qpay_username, settings.qpay_password))
        except httpx.HTTPError as e:
            CREDENTIAL_EXCHANGES.labels(outcome="error").inc()
            logger.error("QPay token request failed: %s", type(e).__name__)
            raise CredentialError(f"QPay token request failed: {e!s}", operation="auth") from e

        if response.status_code >= 400:
            CREDENTIAL_EXCHANGES.labels(outcome="error").inc()
            # Status and a short excerpt only: the body never contains our secret
            logger.error(
                "QPay token request rejected: status=%s body=%s",
                response.status_code,
                response.text[:200],
            )
            raise CredentialError(
                f"QPay token request failed: {response.status_code}",
                operation="auth",
                status_code=response.status_code,
            )

        try:
            token = TokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            CREDENTIAL_EXCHANGES.labels(outcome="malformed").inc()
            logger.error("QPay token response malformed: %s", e)
            raise CredentialError("QPay token response malformed", operation="auth") from e

        CREDENTIAL_EXCHANGES.labels(outcome="ok").inc()
        return token
