"""
Payment scheduler.

Each tick scans for PENDING scheduled payments that are due, claims them with an
atomic compare-and-set, and hands them to the job queue. Overlapping ticks (or
several engine processes) are safe: a payment is enqueued only by whoever won
its claim.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from relaypay.core.exceptions import AlreadyInProgressError, NotFoundError
from relaypay.core.logging import get_logger
from relaypay.core.types import ScheduledPayment, ScheduledPaymentStatus, utcnow
from relaypay.scheduler.periodic import PeriodicTask

if TYPE_CHECKING:
    from relaypay.queue.queue import JobQueue
    from relaypay.store.store import PaymentStore


def job_id_for(payment_id: str) -> str:
    """Deterministic job ID, so enqueueing the same payment twice is a no-op."""
    return f"payment-{payment_id}"


class PaymentScheduler:
    """Discovers due scheduled payments and enqueues them."""

    def __init__(
        self,
        store: PaymentStore,
        queue: JobQueue,
        interval: float = 60.0,
        batch_size: int = 50,
        stale_claim_timeout: float = 300.0,
    ) -> None:
        self._store = store
        self._queue = queue
        self._batch_size = batch_size
        self._stale_claim_timeout = stale_claim_timeout
        self._periodic = PeriodicTask("scheduler", self.tick, interval)
        self._logger = get_logger("scheduler")

    @property
    def running(self) -> bool:
        return self._periodic.running

    def start(self) -> None:
        self._periodic.start()

    async def stop(self) -> None:
        await self._periodic.stop()

    async def tick(self) -> int:
        """
        One scheduler pass. Storage errors abort the pass and are logged; the
        next tick picks up whatever was left unclaimed.
        """
        try:
            recovered = await self.recover_orphans()
            enqueued = await self.discover_and_enqueue()
        except Exception as e:
            self._logger.error(f"Scheduler tick aborted: {e}")
            return 0
        if enqueued or recovered:
            self._logger.info(f"Tick enqueued {enqueued} due payment(s), recovered {recovered}")
        return enqueued

    async def discover_and_enqueue(self) -> int:
        """
        Claim and enqueue due payments.

        Returns:
            Number of payments enqueued by this call
        """
        due = await self._store.due_payments(utcnow(), self._batch_size)
        enqueued = 0
        for payment in due:
            job_id = job_id_for(payment.id)
            if not await self._store.claim(payment.id, job_id):
                # Another tick or process won the claim
                continue
            try:
                await self._enqueue(payment, job_id)
            except Exception as e:
                self._logger.error(f"Enqueue failed for {payment.id}, releasing claim: {e}")
                await self._store.release_claim(payment.id)
                continue
            enqueued += 1
        return enqueued

    async def recover_orphans(self) -> int:
        """
        Re-enqueue CLAIMED payments whose job never made it into the queue
        (the process died between claim and enqueue).
        """
        cutoff = utcnow() - timedelta(seconds=self._stale_claim_timeout)
        recovered = 0
        for payment in await self._store.claimed_before(cutoff):
            job_id = payment.job_id or job_id_for(payment.id)
            if await self._queue.get(job_id) is not None:
                continue
            self._logger.warning(f"Re-enqueueing orphaned claim {payment.id}")
            await self._enqueue(payment, job_id)
            recovered += 1
        return recovered

    async def cancel(self, owner_id: str, payment_id: str) -> ScheduledPayment:
        """
        Cancel a scheduled payment that has not been claimed yet.

        Raises:
            NotFoundError: Unknown ID, or the payment belongs to another owner
            AlreadyInProgressError: The payment was already claimed (or finished)
        """
        payment = await self._store.get_scheduled(payment_id)
        if payment is None or payment.owner_id != owner_id:
            raise NotFoundError(
                f"Scheduled payment not found: {payment_id}", "scheduled_payment", payment_id
            )

        if not await self._store.transition(
            payment_id, ScheduledPaymentStatus.PENDING, ScheduledPaymentStatus.CANCELLED
        ):
            current = await self._store.get_scheduled(payment_id)
            raise AlreadyInProgressError(payment_id, current.status.value)

        self._logger.info(f"Cancelled scheduled payment {payment_id}")
        return await self._store.get_scheduled(payment_id)

    async def _enqueue(self, payment: ScheduledPayment, job_id: str) -> str:
        return await self._queue.enqueue(
            payment.to_request(),
            priority=payment.scheduled_for.timestamp(),
            job_id=job_id,
        )
