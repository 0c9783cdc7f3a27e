import asyncio
import random
from datetime import timedelta

import pytest

from conftest import add_payment, load_payment, utc
from school_fees.models import PaymentStatus, utcnow
from school_fees.pipeline import PaymentPipeline
from school_fees.processor import PaymentProcessor
from school_fees.reconciliation import reconcile_stale_payments
from school_fees.work_queue import BoundedWorkQueue

TERMINAL = {PaymentStatus.COMPLETED, PaymentStatus.FAILED}


def make_pipeline(session_factory, stale_after=None, concurrency=2, success_rate=0.9, sweep_interval=None):
    processor = PaymentProcessor(
        session_factory,
        success_rate=success_rate,
        min_delay=0.0,
        max_delay=0.01,
        rng=random.Random(7),
    )
    queue = BoundedWorkQueue(concurrency=concurrency, name="test-payments")
    return PaymentPipeline(session_factory, queue, processor, stale_after=stale_after, sweep_interval=sweep_interval)


@pytest.mark.asyncio
async def test_submitted_payment_reaches_terminal_status(session_factory):
    payment = await add_payment(session_factory, id=1, transaction_id="TRX-A")
    pipeline = make_pipeline(session_factory)
    await pipeline.start()

    pipeline.submit_payment_for_processing(payment.id)
    await pipeline.queue.join()

    stored = await load_payment(session_factory, 1)
    assert stored.status in TERMINAL
    assert stored.processed_at is not None
    assert stored.amount == 500
    await pipeline.shutdown()


@pytest.mark.asyncio
async def test_submit_does_not_wait_for_settlement(session_factory):
    payment = await add_payment(session_factory)
    pipeline = make_pipeline(session_factory)
    await pipeline.start()

    pipeline.submit_payment_for_processing(payment.id)

    # Nothing has yielded to the workers yet
    assert pipeline.queue.pending == 1
    assert pipeline.queue.running == 0
    await pipeline.shutdown()

    stored = await load_payment(session_factory, payment.id)
    assert stored.status in TERMINAL


@pytest.mark.asyncio
async def test_double_enqueue_leaves_a_consistent_row(session_factory):
    payment = await add_payment(session_factory)
    pipeline = make_pipeline(session_factory)
    await pipeline.start()

    pipeline.submit_payment_for_processing(payment.id)
    pipeline.submit_payment_for_processing(payment.id)
    await pipeline.queue.join()

    stored = await load_payment(session_factory, payment.id)
    assert stored.status in TERMINAL
    assert stored.processed_at is not None
    await pipeline.shutdown()


@pytest.mark.asyncio
async def test_many_payments_settle_independently(session_factory):
    payments = [await add_payment(session_factory, transaction_id=f"TRX-{i}") for i in range(12)]
    pipeline = make_pipeline(session_factory, concurrency=3)
    await pipeline.start()

    for payment in payments:
        pipeline.submit_payment_for_processing(payment.id)
    await pipeline.shutdown()

    for payment in payments:
        stored = await load_payment(session_factory, payment.id)
        assert stored.status in TERMINAL
        assert (stored.processed_at is not None) == stored.status.is_terminal


@pytest.mark.asyncio
async def test_process_payment_runs_inline(session_factory):
    payment = await add_payment(session_factory)
    pipeline = make_pipeline(session_factory, success_rate=1.0)

    await pipeline.process_payment(payment.id)

    stored = await load_payment(session_factory, payment.id)
    assert stored.status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_reconciliation_fails_stale_processing_rows(session_factory):
    now = utc(2026, 5, 1, 12, 0)
    stale = await add_payment(
        session_factory,
        transaction_id="TRX-STALE",
        status=PaymentStatus.PROCESSING,
        updated_at=now - timedelta(hours=1),
    )
    fresh = await add_payment(
        session_factory,
        transaction_id="TRX-FRESH",
        status=PaymentStatus.PROCESSING,
        updated_at=now - timedelta(seconds=10),
    )
    waiting = await add_payment(session_factory, transaction_id="TRX-WAIT")
    done = await add_payment(
        session_factory,
        transaction_id="TRX-DONE",
        status=PaymentStatus.COMPLETED,
        processed_at=now - timedelta(days=1),
        updated_at=now - timedelta(days=1),
    )

    report = await reconcile_stale_payments(session_factory, stale_after=300, now=now)

    assert report.failed_ids == [stale.id]
    assert report.pending_ids == [waiting.id]
    assert (await load_payment(session_factory, stale.id)).status == PaymentStatus.FAILED
    assert (await load_payment(session_factory, stale.id)).processed_at is not None
    assert (await load_payment(session_factory, fresh.id)).status == PaymentStatus.PROCESSING
    assert (await load_payment(session_factory, done.id)).status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_start_resubmits_leftover_pending_payments(session_factory):
    leftover = await add_payment(session_factory, transaction_id="TRX-LEFT")
    pipeline = make_pipeline(session_factory, stale_after=300)

    report = await pipeline.start()
    assert report.pending_ids == [leftover.id]
    await pipeline.shutdown()

    stored = await load_payment(session_factory, leftover.id)
    assert stored.status in TERMINAL


@pytest.mark.asyncio
async def test_job_failure_does_not_stall_the_pipeline(session_factory):
    payment = await add_payment(session_factory)
    pipeline = make_pipeline(session_factory)
    await pipeline.start()

    async def broken():
        raise RuntimeError("unexpected")

    pipeline.queue.submit(broken)
    pipeline.submit_payment_for_processing(payment.id)
    await asyncio.wait_for(pipeline.queue.join(), timeout=5)

    assert pipeline.queue.failed == 1
    assert (await load_payment(session_factory, payment.id)).status in TERMINAL
    await pipeline.shutdown()


async def wait_for_status(session_factory, payment_id, status, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        stored = await load_payment(session_factory, payment_id)
        if stored.status == status:
            return stored
        await asyncio.sleep(0.05)
    raise TimeoutError(f"Payment {payment_id} never reached {status.value}")


@pytest.mark.asyncio
async def test_processing_row_fresh_at_startup_is_failed_once_stale(session_factory):
    stuck = await add_payment(session_factory, status=PaymentStatus.PROCESSING, updated_at=utcnow())
    pipeline = make_pipeline(session_factory, stale_after=1.0, sweep_interval=0.1)

    report = await pipeline.start()
    assert report.failed_ids == []

    stored = await wait_for_status(session_factory, stuck.id, PaymentStatus.FAILED)
    assert stored.processed_at is not None
    await pipeline.shutdown()


@pytest.mark.asyncio
async def test_shutdown_stops_the_stale_sweep(session_factory):
    pipeline = make_pipeline(session_factory, stale_after=300, sweep_interval=0.01)
    await pipeline.start()
    sweeper = pipeline._sweeper

    await pipeline.shutdown()

    assert sweeper.done()
    assert pipeline._sweeper is None
