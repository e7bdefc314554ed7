"""
Checkout Payments

QPay payment sessions with dual-path confirmation:
- payments: gateway client, credential cache, distributed lock, state machine
- services: session store, idempotency ledger, settlement, webhooks, sweeps
- routers: FastAPI endpoints
"""
