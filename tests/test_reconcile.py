from datetime import timedelta

import pytest

from checkout.db import RedisKeys
from checkout.payments.constants import ReceiptStatus, SessionStatus, WebhookReason
from checkout.utils import to_iso, utcnow


@pytest.fixture
def started_earlier():
    """A point in time old enough for the sweep to pick a session up."""
    return utcnow() - timedelta(minutes=5)


@pytest.mark.asyncio
async def test_sweep_settles_missed_webhook(container, start_session, qpay, supabase, expected_amount, started_earlier):
    session = await start_session(now=started_earlier)
    qpay.pay(session.invoice_id, expected_amount)

    report = await container.reconcile.run_once()

    assert report.lock_acquired is True
    assert report.candidates == 1
    assert report.checked == 1
    assert report.reasons == {WebhookReason.PROCESSED.value: 1}
    assert len(supabase.rows("orders")) == 2

    stored = await container.sessions.get(session.session_id)
    assert stored.status == SessionStatus.PROCESSED.value
    assert stored.receipt_status == ReceiptStatus.REGISTERED.value
    assert stored.receipt_id == f"EB-PAY-{session.invoice_id}"


@pytest.mark.asyncio
async def test_fresh_sessions_are_left_to_the_webhook(container, start_session, qpay):
    await start_session()

    report = await container.reconcile.run_once()

    assert report.candidates == 0
    assert qpay.check_calls == 0


@pytest.mark.asyncio
async def test_recently_checked_session_is_not_a_candidate(container, start_session, qpay, started_earlier):
    session = await start_session(now=started_earlier)
    now = utcnow()

    first = await container.reconcile.run_once(now=now)
    second = await container.reconcile.run_once(now=now + timedelta(seconds=5))

    assert first.reasons == {WebhookReason.NOT_PAID.value: 1}
    assert second.candidates == 0
    assert second.checked == 0
    assert qpay.check_calls == 1

    third = await container.reconcile.run_once(now=now + timedelta(seconds=45))
    assert third.checked == 1
    stored = await container.sessions.get(session.session_id)
    assert stored.status == SessionStatus.PENDING.value


@pytest.mark.asyncio
async def test_tick_skipped_when_lock_held(container, start_session, qpay, redis, started_earlier):
    await start_session(now=started_earlier)
    await redis.set(RedisKeys.RECONCILE_LOCK, "another-instance", ex=55)

    report = await container.reconcile.run_once()

    assert report.lock_acquired is False
    assert report.candidates == 0
    assert qpay.check_calls == 0
    assert redis.data[RedisKeys.RECONCILE_LOCK][0] == "another-instance"


@pytest.mark.asyncio
async def test_lock_released_after_tick(container, redis):
    await container.reconcile.run_once()

    assert RedisKeys.RECONCILE_LOCK not in redis.data


@pytest.mark.asyncio
async def test_cancelled_session_is_not_swept_but_late_webhook_settles_once(
    container, start_session, qpay, supabase, expected_amount, started_earlier
):
    session = await start_session(now=started_earlier)
    await container.sessions.cancel(session.session_id, now=started_earlier)
    qpay.pay(session.invoice_id, expected_amount)

    report = await container.reconcile.run_once()
    assert report.candidates == 0
    assert supabase.rows("orders") == []

    result = await container.webhooks.handle_public(
        session.session_id, session.callback_token, {"invoiceId": session.invoice_id}
    )
    assert result.reason == WebhookReason.PROCESSED

    await container.reconcile.run_once()
    assert len(supabase.rows("orders")) == 2
    assert len(supabase.rows("processed_invoices")) == 1


@pytest.mark.asyncio
async def test_one_failing_session_does_not_stop_the_batch(
    container, start_session, qpay, supabase, expected_amount, started_earlier, monkeypatch
):
    broken = await start_session(now=started_earlier)
    healthy = await start_session(now=started_earlier + timedelta(seconds=1))
    qpay.pay(healthy.invoice_id, expected_amount)

    settle = container.settlement.verify_and_materialize

    async def _flaky(session, trigger, now=None):
        if session.session_id == broken.session_id:
            raise RuntimeError("database timeout")
        return await settle(session, trigger, now=now)

    monkeypatch.setattr(container.reconcile.settlement, "verify_and_materialize", _flaky)

    report = await container.reconcile.run_once()

    assert report.candidates == 2
    assert report.errors == 1
    assert report.checked == 1
    assert report.reasons == {WebhookReason.PROCESSED.value: 1}
    assert len(supabase.rows("orders")) == 2


@pytest.mark.asyncio
async def test_candidates_oldest_first_and_batched(container, start_session, started_earlier):
    ids = []
    for offset in (3, 1, 2):
        session = await start_session(now=started_earlier + timedelta(seconds=offset))
        ids.append((offset, session.session_id))

    now = utcnow()
    candidates = await container.session_repo.list_reconcile_candidates(now, now, 2)

    expected = [session_id for _, session_id in sorted(ids)[:2]]
    assert [c.session_id for c in candidates] == expected


@pytest.mark.asyncio
async def test_terminal_and_invoiceless_sessions_are_not_candidates(container, start_session, supabase, started_earlier):
    session = await start_session(now=started_earlier)
    row = supabase.rows("payment_sessions")[0]

    row["invoice_id"] = None
    assert await container.session_repo.list_reconcile_candidates(utcnow(), utcnow(), 10) == []

    row["invoice_id"] = session.invoice_id
    row["status"] = SessionStatus.EXPIRED.value
    row["updated_at"] = to_iso(started_earlier)
    assert await container.session_repo.list_reconcile_candidates(utcnow(), utcnow(), 10) == []


@pytest.mark.asyncio
async def test_never_checked_sessions_go_before_recently_checked(container, start_session, started_earlier):
    checked = await start_session(now=started_earlier)
    unchecked = await start_session(now=started_earlier + timedelta(seconds=1))
    now = utcnow()
    await container.session_repo.touch_checked(checked.session_id, now=now - timedelta(minutes=2))

    candidates = await container.session_repo.list_reconcile_candidates(now, now - timedelta(seconds=30), 1)

    assert [c.session_id for c in candidates] == [unchecked.session_id]


@pytest.mark.asyncio
async def test_unpaid_backlog_larger_than_batch_does_not_starve_paid_session(
    container, start_session, qpay, supabase, settings, expected_amount, started_earlier
):
    settings.reconcile_batch_size = 3
    abandoned = [
        await start_session(user_id=f"user-{i}", now=started_earlier + timedelta(seconds=i)) for i in range(4)
    ]
    paid = await start_session(user_id="buyer", now=started_earlier + timedelta(minutes=2))
    qpay.pay(paid.invoice_id, expected_amount)
    now = utcnow()

    for tick in range(2):
        await container.reconcile.run_once(now=now + timedelta(seconds=60 * tick))

    stored = await container.sessions.get(paid.session_id)
    assert stored.status == SessionStatus.PROCESSED.value
    assert len(supabase.rows("orders")) == 2
    for session in abandoned:
        assert (await container.sessions.get(session.session_id)).last_checked_at is not None
