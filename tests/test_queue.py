"""Tests for the durable job queue."""

import asyncio
from decimal import Decimal

import pytest

from relaypay.core.exceptions import JobLeaseExpiredError
from relaypay.core.types import Chain, JobState, PaymentLeg, PaymentRequest
from relaypay.queue.queue import JobQueue, backoff_delay


@pytest.fixture
def queue(store):
    return JobQueue(store, max_attempts=3, backoff_base=0.01, stale_job_timeout=30)


def _request(owner_id="u1"):
    return PaymentRequest(owner_id=owner_id, recipient="@bob", token_symbol="USDC", amount="1")


def test_backoff_doubles_per_attempt():
    assert backoff_delay(1, 2.0) == 2.0
    assert backoff_delay(2, 2.0) == 4.0
    assert backoff_delay(3, 2.0) == 8.0
    assert backoff_delay(0, 2.0) == 2.0


@pytest.mark.asyncio
async def test_enqueue_with_same_id_is_noop(queue):
    await queue.enqueue(_request(), priority=1, job_id="payment-p1")
    await queue.enqueue(_request(owner_id="u2"), priority=0, job_id="payment-p1")

    job = await queue.get("payment-p1")
    stats = await queue.stats()

    assert job.payload.owner_id == "u1"
    assert stats["waiting"] == 1
    assert stats["total"] == 1


@pytest.mark.asyncio
async def test_generated_job_ids_are_unique(queue):
    first = await queue.enqueue(_request(), priority=1)
    second = await queue.enqueue(_request(), priority=1)

    assert first != second
    assert first.startswith("job-")


@pytest.mark.asyncio
async def test_lowest_priority_value_dispatches_first(queue):
    await queue.enqueue(_request(), priority=300, job_id="late")
    await queue.enqueue(_request(), priority=100, job_id="early")
    await queue.enqueue(_request(), priority=200, job_id="middle")

    order = []
    while (job := await queue.claim_next("w1")) is not None:
        order.append(job.job_id)

    assert order == ["early", "middle", "late"]


@pytest.mark.asyncio
async def test_claim_leases_job(queue):
    await queue.enqueue(_request(), priority=1, job_id="j1")

    job = await queue.claim_next("w1")

    assert job.state == JobState.ACTIVE
    assert job.attempts == 1
    assert job.lease_owner == "w1"
    assert await queue.claim_next("w2") is None


@pytest.mark.asyncio
async def test_concurrent_claims_get_distinct_jobs(queue):
    for i in range(5):
        await queue.enqueue(_request(), priority=i, job_id=f"j{i}")

    jobs = await asyncio.gather(*[queue.claim_next(f"w{i}") for i in range(8)])
    claimed = [job.job_id for job in jobs if job is not None]

    assert sorted(claimed) == [f"j{i}" for i in range(5)]


@pytest.mark.asyncio
async def test_retryable_failure_backs_off(queue):
    await queue.enqueue(_request(), priority=1, job_id="j1")
    job = await queue.claim_next("w1")

    state = await queue.fail(job, "rpc timeout", retryable=True)

    assert state == JobState.DELAYED
    stored = await queue.get("j1")
    assert stored.next_attempt_at is not None
    assert stored.last_error == "rpc timeout"
    assert stored.lease_owner is None

    await asyncio.sleep(0.05)
    retried = await queue.claim_next("w1")
    assert retried.job_id == "j1"
    assert retried.attempts == 2


@pytest.mark.asyncio
async def test_delayed_job_waits_for_backoff(store):
    queue = JobQueue(store, backoff_base=60)
    await queue.enqueue(_request(), priority=1, job_id="j1")
    job = await queue.claim_next("w1")
    await queue.fail(job, "rpc timeout", retryable=True)

    assert await queue.claim_next("w1") is None
    assert await queue.promote_delayed() == 0


@pytest.mark.asyncio
async def test_attempts_are_bounded(store):
    queue = JobQueue(store, max_attempts=2, backoff_base=0.01)
    await queue.enqueue(_request(), priority=1, job_id="j1")

    job = await queue.claim_next("w1")
    assert await queue.fail(job, "timeout", retryable=True) == JobState.DELAYED
    await asyncio.sleep(0.03)

    job = await queue.claim_next("w1")
    assert job.attempts == 2
    assert await queue.fail(job, "timeout", retryable=True) == JobState.FAILED

    stored = await queue.get("j1")
    assert stored.state == JobState.FAILED
    assert stored.finished_at is not None


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried(queue):
    await queue.enqueue(_request(), priority=1, job_id="j1")
    job = await queue.claim_next("w1")

    state = await queue.fail(job, "bridge timed out", retryable=False, recoverable=True)

    assert state == JobState.FAILED
    stored = await queue.get("j1")
    assert stored.attempts == 1
    assert stored.recoverable is True


@pytest.mark.asyncio
async def test_complete(queue):
    await queue.enqueue(_request(), priority=1, job_id="j1")
    job = await queue.claim_next("w1")

    assert await queue.complete(job, {"tx_handle": "0xpay1"})

    stored = await queue.get("j1")
    assert stored.state == JobState.COMPLETED
    assert stored.result == {"tx_handle": "0xpay1"}
    assert stored.lease_owner is None


@pytest.mark.asyncio
async def test_stale_lease_is_requeued(store):
    queue = JobQueue(store, stale_job_timeout=0.05)
    await queue.enqueue(_request(), priority=1, job_id="j1")
    job = await queue.claim_next("w1")
    await asyncio.sleep(0.1)

    assert await queue.requeue_stale() == 1

    stored = await queue.get("j1")
    assert stored.state == JobState.WAITING
    assert stored.lease_owner is None
    assert "expired" in stored.last_error

    # The original worker lost its lease
    assert await queue.heartbeat(job) is False
    assert await queue.complete(job, {}) is False


@pytest.mark.asyncio
async def test_fail_after_lost_lease_records_nothing(store):
    queue = JobQueue(store, stale_job_timeout=0.05)
    await queue.enqueue(_request(), priority=1, job_id="j1")
    job = await queue.claim_next("w1")
    await asyncio.sleep(0.1)
    await queue.requeue_stale()

    assert await queue.fail(job, "executor unreachable", retryable=True) is None

    stored = await queue.get("j1")
    assert stored.state == JobState.WAITING
    assert stored.attempts == 1
    assert "expired" in stored.last_error


@pytest.mark.asyncio
async def test_stale_lease_without_attempts_fails_and_calls_hook(store):
    expired = []

    async def on_expired(job, error):
        expired.append((job.job_id, error))

    queue = JobQueue(store, max_attempts=1, stale_job_timeout=0.05, on_expired=on_expired)
    await queue.enqueue(_request(), priority=1, job_id="j1")
    await queue.claim_next("w1")
    await asyncio.sleep(0.1)

    await queue.requeue_stale()

    stored = await queue.get("j1")
    assert stored.state == JobState.FAILED
    assert stored.recoverable is True
    assert [job_id for job_id, _ in expired] == ["j1"]
    assert isinstance(expired[0][1], JobLeaseExpiredError)


@pytest.mark.asyncio
async def test_heartbeat_keeps_lease_alive(store):
    queue = JobQueue(store, stale_job_timeout=0.1)
    await queue.enqueue(_request(), priority=1, job_id="j1")
    job = await queue.claim_next("w1")

    for _ in range(4):
        await asyncio.sleep(0.04)
        assert await queue.heartbeat(job)
        assert await queue.requeue_stale() == 0

    assert (await queue.get("j1")).state == JobState.ACTIVE


@pytest.mark.asyncio
async def test_stats_counts_each_state(queue):
    for i in range(3):
        await queue.enqueue(_request(), priority=i, job_id=f"j{i}")
    first = await queue.claim_next("w1")
    await queue.complete(first, {})
    second = await queue.claim_next("w1")
    await queue.fail(second, "no route", retryable=False)

    stats = await queue.stats()

    assert stats == {
        "waiting": 1,
        "active": 0,
        "completed": 1,
        "failed": 1,
        "delayed": 0,
        "total": 3,
    }


@pytest.mark.asyncio
async def test_purge_removes_finished_jobs_and_legs(queue, store):
    await queue.enqueue(_request(), priority=1, job_id="done")
    await queue.enqueue(_request(), priority=2, job_id="open")
    job = await queue.claim_next("w1")
    await store.save_leg(
        PaymentLeg(
            job_id="done",
            owner_id="u1",
            from_address="u1",
            to_resolved="0xto",
            token_symbol="USDC",
            amount=Decimal("1"),
            chain=Chain.BASE,
        )
    )
    await queue.complete(job, {})

    assert await queue.purge(completed_older_than=3600) == 0

    await asyncio.sleep(0.01)
    assert await queue.purge(completed_older_than=0) == 1
    assert await queue.get("done") is None
    assert await store.legs_for_job("done") == []
    assert await queue.get("open") is not None


@pytest.mark.asyncio
async def test_purge_keeps_recoverable_failures(queue, store):
    await queue.enqueue(_request(), priority=1, job_id="timed-out")
    await queue.enqueue(_request(), priority=2, job_id="rejected")
    for _ in range(2):
        job = await queue.claim_next("w1")
        await queue.fail(
            job, "failed", retryable=False, recoverable=job.job_id == "timed-out"
        )
    await store.save_leg(
        PaymentLeg(
            job_id="timed-out",
            owner_id="u1",
            from_address="u1",
            to_resolved="0xto",
            token_symbol="USDC",
            amount=Decimal("1"),
            chain=Chain.BASE,
            tx_handle="0xpending",
        )
    )
    await asyncio.sleep(0.01)

    assert await queue.purge(failed_older_than=0) == 1
    assert await queue.get("rejected") is None
    assert (await queue.get("timed-out")).recoverable is True
    (leg,) = await store.legs_for_job("timed-out")
    assert leg.tx_handle == "0xpending"


@pytest.mark.asyncio
async def test_enqueue_wakes_idle_worker(queue):
    waiter = asyncio.create_task(queue.wait_for_work(timeout=5))
    await asyncio.sleep(0)

    await queue.enqueue(_request(), priority=1)

    await asyncio.wait_for(waiter, timeout=1)
