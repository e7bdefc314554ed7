import asyncio
import logging
from collections import Counter
from datetime import timedelta

import pytest

from checkout.payments.constants import LedgerStatus, SessionStatus, WebhookReason
from checkout.services.webhook import WebhookBadRequest, WebhookDenied
from checkout.utils import utcnow


async def _public(container, session, body=None):
    return await container.webhooks.handle_public(
        session.session_id, session.callback_token, body or {"invoiceId": session.invoice_id}
    )


@pytest.mark.asyncio
async def test_paid_webhook_creates_orders_once(container, start_session, qpay, supabase, expected_amount):
    session = await start_session()
    qpay.pay(session.invoice_id, expected_amount)

    result = await _public(container, session)

    assert result.reason == WebhookReason.PROCESSED
    assert result.processed is True
    assert len(result.order_ids) == 2  # one per shop
    assert result.receipt_due is True

    ledger = supabase.rows("processed_invoices")
    assert len(ledger) == 1
    assert ledger[0]["status"] == LedgerStatus.PROCESSED.value
    assert ledger[0]["order_ids"] == result.order_ids

    stored = await container.sessions.get(session.session_id)
    assert stored.status == SessionStatus.PROCESSED.value
    assert stored.payment_id == f"PAY-{session.invoice_id}"

    totals = sorted(order["total"] for order in supabase.rows("orders"))
    assert totals == [5.0, 20.0]
    assert len(supabase.rows("order_items")) == 2


@pytest.mark.asyncio
async def test_replays_return_duplicate_with_same_orders(container, start_session, qpay, supabase, expected_amount):
    session = await start_session()
    qpay.pay(session.invoice_id, expected_amount)

    results = [await _public(container, session) for _ in range(5)]

    assert results[0].reason == WebhookReason.PROCESSED
    for replay in results[1:]:
        assert replay.reason == WebhookReason.DUPLICATE
        assert replay.order_ids == results[0].order_ids
    assert len(supabase.rows("orders")) == 2
    # Replays are answered from the ledger without asking the gateway again
    assert qpay.check_calls == 1


@pytest.mark.asyncio
async def test_amount_mismatch_never_materializes(container, start_session, qpay, supabase, expected_amount):
    session = await start_session()
    # 80% of what was invoiced
    qpay.pay(session.invoice_id, int(expected_amount * 0.8))

    for _ in range(3):
        result = await _public(container, session)
        assert result.reason == WebhookReason.AMOUNT_MISMATCH

    assert supabase.rows("processed_invoices") == []
    assert supabase.rows("orders") == []
    stored = await container.sessions.get(session.session_id)
    assert stored.status == SessionStatus.PENDING.value


@pytest.mark.asyncio
async def test_not_paid_leaves_session_pending(container, start_session):
    session = await start_session()

    result = await _public(container, session)

    assert result.reason == WebhookReason.NOT_PAID
    stored = await container.sessions.get(session.session_id)
    assert stored.status == SessionStatus.PENDING.value
    assert stored.last_checked_at is not None


@pytest.mark.asyncio
async def test_gateway_failure_is_acknowledged(container, start_session, qpay):
    session = await start_session()
    qpay.check_status = 502

    result = await _public(container, session)

    assert result.reason == WebhookReason.PAYMENT_CHECK_FAILED
    assert result.to_response()["success"] is True
    stored = await container.sessions.get(session.session_id)
    assert stored.status == SessionStatus.PENDING.value


@pytest.mark.asyncio
async def test_wrong_token_is_denied_before_gateway(container, start_session, qpay, supabase):
    session = await start_session()

    with pytest.raises(WebhookDenied):
        await container.webhooks.handle_public(session.session_id, "0" * 32, {"invoiceId": session.invoice_id})

    assert qpay.check_calls == 0
    events = supabase.rows("webhook_events")
    assert events[-1]["reason"] == WebhookReason.INVALID_TOKEN.value


@pytest.mark.asyncio
async def test_unknown_session_is_denied(container):
    with pytest.raises(WebhookDenied):
        await container.webhooks.handle_public("missing", "token", {"invoiceId": "INV-1"})


@pytest.mark.asyncio
async def test_missing_query_parameters(container):
    with pytest.raises(WebhookBadRequest):
        await container.webhooks.handle_public(None, None, {})


@pytest.mark.asyncio
async def test_public_webhook_without_body_uses_stored_invoice(container, start_session, qpay, expected_amount):
    session = await start_session()
    qpay.pay(session.invoice_id, expected_amount)

    result = await container.webhooks.handle_public(session.session_id, session.callback_token, {})

    assert result.reason == WebhookReason.PROCESSED
    assert result.invoice_id == session.invoice_id


@pytest.mark.asyncio
async def test_invoice_mismatch(container, start_session, qpay, expected_amount):
    session = await start_session()
    qpay.pay("INV-OTHER", expected_amount)

    result = await _public(container, session, body={"invoiceId": "INV-OTHER"})

    assert result.reason == WebhookReason.INVOICE_MISMATCH
    assert qpay.check_calls == 0


@pytest.mark.asyncio
async def test_internal_webhook_session_missing(container):
    result = await container.webhooks.handle_internal({"invoiceId": "INV-404"})

    assert result.reason == WebhookReason.SESSION_MISSING


@pytest.mark.asyncio
async def test_internal_webhook_finds_session_by_invoice(container, start_session, qpay, expected_amount):
    session = await start_session()
    qpay.pay(session.invoice_id, expected_amount)

    result = await container.webhooks.handle_internal({"invoice_id": session.invoice_id})

    assert result.reason == WebhookReason.PROCESSED
    assert result.session_id == session.session_id


@pytest.mark.asyncio
async def test_internal_webhook_requires_invoice(container):
    with pytest.raises(WebhookBadRequest):
        await container.webhooks.handle_internal({"sessionId": "abc"})


@pytest.mark.asyncio
async def test_every_call_is_audited(container, start_session, supabase):
    session = await start_session()

    await _public(container, session)
    await container.webhooks.handle_internal({"invoiceId": "INV-404"})

    reasons = [event["reason"] for event in supabase.rows("webhook_events")]
    assert reasons == [WebhookReason.NOT_PAID.value, WebhookReason.SESSION_MISSING.value]
    assert [event["source"] for event in supabase.rows("webhook_events")] == ["public", "internal"]


@pytest.mark.asyncio
async def test_concurrent_webhooks_and_sweep_materialize_once(container, start_session, qpay, supabase, expected_amount):
    session = await start_session()
    qpay.pay(session.invoice_id, expected_amount)

    webhook_calls = [_public(container, session) for _ in range(20)]
    sweep_calls = [
        container.settlement.verify_and_materialize(session, trigger="reconcile") for _ in range(5)
    ]
    results = await asyncio.gather(*webhook_calls, *sweep_calls)

    reasons = Counter(result.reason for result in results)
    assert reasons[WebhookReason.PROCESSED] == 1
    assert reasons[WebhookReason.DUPLICATE] == len(results) - 1
    assert len(supabase.rows("processed_invoices")) == 1
    assert len(supabase.rows("orders")) == 2


@pytest.mark.asyncio
async def test_materialization_failure_marks_failed(container, start_session, qpay, supabase, expected_amount, monkeypatch):
    session = await start_session()
    qpay.pay(session.invoice_id, expected_amount)

    async def _boom(*args, **kwargs):
        raise RuntimeError("orders table unavailable")

    monkeypatch.setattr(container.settlement.materializer, "materialize", _boom)

    result = await _public(container, session)

    assert result.reason == WebhookReason.MATERIALIZATION_FAILED
    ledger = supabase.rows("processed_invoices")[0]
    assert ledger["status"] == LedgerStatus.FAILED.value
    assert "orders table unavailable" in ledger["error"]
    stored = await container.sessions.get(session.session_id)
    assert stored.status == SessionStatus.FAILED.value

    # A replay must not try again
    replay = await _public(container, session)
    assert replay.reason == WebhookReason.DUPLICATE


@pytest.mark.asyncio
async def test_cancelled_session_paid_late_still_gets_orders(container, start_session, qpay, supabase, expected_amount):
    session = await start_session()
    await container.sessions.cancel(session.session_id)
    qpay.pay(session.invoice_id, expected_amount)

    result = await _public(container, session)

    assert result.reason == WebhookReason.PROCESSED
    assert len(supabase.rows("orders")) == 2
    stored = await container.sessions.get(session.session_id)
    assert stored.status == SessionStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_abandoned_ledger_claim_is_logged(container, start_session, qpay, supabase, expected_amount, caplog):
    session = await start_session()
    qpay.pay(session.invoice_id, expected_amount)
    # A worker claimed the invoice ten minutes ago and never finished
    await container.ledger.claim(session.invoice_id, session.session_id, now=utcnow() - timedelta(minutes=10))

    with caplog.at_level(logging.WARNING, logger="checkout.services.settlement"):
        result = await container.settlement.verify_and_materialize(session, trigger="reconcile")

    assert result.reason == WebhookReason.DUPLICATE
    assert result.order_ids == []
    assert supabase.rows("orders") == []
    assert any("stuck in PROCESSING" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_fresh_ledger_claim_is_not_logged(container, start_session, qpay, expected_amount, caplog):
    session = await start_session()
    qpay.pay(session.invoice_id, expected_amount)
    await container.ledger.claim(session.invoice_id, session.session_id)

    with caplog.at_level(logging.WARNING, logger="checkout.services.settlement"):
        result = await container.settlement.verify_and_materialize(session, trigger="webhook")

    assert result.reason == WebhookReason.DUPLICATE
    assert not any("stuck in PROCESSING" in record.getMessage() for record in caplog.records)
