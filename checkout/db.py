"""
Database Module - Supabase and Redis Clients

Provides singleton instances of:
- Async Supabase client for payment sessions, the idempotency ledger and orders
- Async Upstash Redis client for credential cache, session projection and locks
"""

import os
from typing import Optional

from supabase._async.client import AsyncClient, create_client as acreate_client
from upstash_redis.asyncio import Redis as AsyncRedis


# Singleton instances
_async_supabase_client: Optional[AsyncClient] = None
_redis_client: Optional[AsyncRedis] = None


async def get_supabase() -> AsyncClient:
    """
    Get async Supabase client (singleton).
    Uses the service role key: RLS is not relied upon by this service.
    """
    global _async_supabase_client

    if _async_supabase_client is None:
        url = os.environ.get("SUPABASE_URL", "")
        key = os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _async_supabase_client = await acreate_client(url, key)

    return _async_supabase_client


def get_redis() -> AsyncRedis:
    """
    Get async Upstash Redis client (singleton).

    Uses standard Upstash env var names:
    - UPSTASH_REDIS_REST_URL
    - UPSTASH_REDIS_REST_TOKEN

    Used for:
    - Gateway bearer credential cache
    - Payment session projection
    - Distributed locks for the periodic sweeps
    """
    global _redis_client

    if _redis_client is None:
        url = os.environ.get("UPSTASH_REDIS_REST_URL", "")
        token = os.environ.get("UPSTASH_REDIS_REST_TOKEN", "")
        if not url or not token:
            raise ValueError("UPSTASH_REDIS_REST_URL and UPSTASH_REDIS_REST_TOKEN must be set")
        _redis_client = AsyncRedis(url=url, token=token)

    return _redis_client


def reset_clients() -> None:
    """Drop cached clients (tests, or after a credential rotation)."""
    global _async_supabase_client, _redis_client
    _async_supabase_client = None
    _redis_client = None


# Redis key prefixes for organization
class RedisKeys:
    """Redis keys used by the checkout service."""

    # Gateway bearer credential
    ACCESS_TOKEN = "qpay:access_token:"  # qpay:access_token:{provider}

    # Payment session projection
    PAYMENT_SESSION = "payment-session:"  # payment-session:{session_id}

    # Sweep locks
    RECONCILE_LOCK = "qpay:reconcile:lock"
    CLEANUP_LOCK = "qpay:cleanup:lock"

    @staticmethod
    def access_token_key(provider: str) -> str:
        return f"{RedisKeys.ACCESS_TOKEN}{provider}"

    @staticmethod
    def access_token_lock_key(provider: str) -> str:
        return f"{RedisKeys.ACCESS_TOKEN}{provider}:lock"

    @staticmethod
    def session_key(session_id: str) -> str:
        return f"{RedisKeys.PAYMENT_SESSION}{session_id}"


# TTL constants (in seconds)
class TTL:
    """Time-to-live constants for Redis keys."""

    ACCESS_TOKEN_LOCK = 10
    ACCESS_TOKEN_BUFFER = 60  # cached token dies this long before the real one
