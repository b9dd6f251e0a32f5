"""
Payment job handler.

Bridges the generic worker pool to payments: keeps the owning
ScheduledPayment's status in step with the job, runs the orchestrator, and
emits notifications for milestones and outcomes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from relaypay.core.exceptions import NotFoundError, classify, is_recoverable
from relaypay.core.logging import get_logger
from relaypay.core.types import (
    Job,
    Notification,
    NotificationKind,
    PaymentLeg,
    ScheduledPaymentStatus,
)
from relaypay.queue.worker import JobHandler

if TYPE_CHECKING:
    from relaypay.notify.base import Notifier
    from relaypay.routing.orchestrator import BridgeAndPayOrchestrator
    from relaypay.store.store import PaymentStore

_S = ScheduledPaymentStatus


class PaymentJobHandler(JobHandler):
    """Runs one payment job through the orchestrator."""

    def __init__(
        self,
        store: PaymentStore,
        orchestrator: BridgeAndPayOrchestrator,
        notifier: Notifier,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._notifier = notifier
        self._logger = get_logger("queue.handler")

    async def handle(self, job: Job) -> dict[str, Any]:
        payment_id = job.scheduled_payment_id
        if payment_id:
            skip = await self._begin_processing(payment_id, job)
            if skip is not None:
                return skip

        async def milestone(leg: PaymentLeg, count: int) -> None:
            await self._notify(
                job,
                NotificationKind.MILESTONE,
                {
                    "confirmations": count,
                    "chain": leg.chain.value,
                    "tx_handle": leg.tx_handle,
                },
            )

        outcome = await self._orchestrator.route(job.payload, job.job_id, on_milestone=milestone)
        return outcome.to_dict()

    async def on_success(self, job: Job, result: dict[str, Any]) -> None:
        if result.get("skipped"):
            return
        payment_id = job.scheduled_payment_id
        if payment_id and not await self._store.transition(
            payment_id, _S.PROCESSING, _S.COMPLETED, last_error=None
        ):
            self._logger.warning(f"Scheduled payment {payment_id} was not PROCESSING at completion")
        self._logger.info(f"Job {job.job_id} completed: {result.get('tx_handle')}")
        await self._notify(job, NotificationKind.COMPLETED, result)

    async def on_failure(self, job: Job, error: Exception, will_retry: bool) -> None:
        payment_id = job.scheduled_payment_id
        if payment_id:
            retry_count = job.attempts if will_retry else max(job.attempts - 1, 0)
            await self._store.record_attempt_error(payment_id, str(error), retry_count)
            if not will_retry:
                await self._fail_payment(payment_id, str(error))

        await self._notify(
            job,
            NotificationKind.FAILED,
            {
                "error": str(error),
                "kind": classify(error).value,
                "will_retry": will_retry,
                "recoverable": is_recoverable(error),
                "attempts": job.attempts,
            },
        )

    async def _begin_processing(self, payment_id: str, job: Job) -> dict[str, Any] | None:
        """
        Move the scheduled payment to PROCESSING.

        Returns a result to short-circuit the job when the payment already
        finished, or None to go ahead.
        """
        payment = await self._store.get_scheduled(payment_id)
        if payment is None:
            raise NotFoundError(
                f"Scheduled payment not found: {payment_id}", "scheduled_payment", payment_id
            )

        if payment.status == _S.PENDING:
            # Enqueued by a tick whose claim was later rolled back
            await self._store.claim(payment_id, job.job_id)
            payment = await self._store.get_scheduled(payment_id)

        if payment.status == _S.CLAIMED:
            if await self._store.transition(payment_id, _S.CLAIMED, _S.PROCESSING):
                return None
            payment = await self._store.get_scheduled(payment_id)

        if payment.status == _S.PROCESSING:
            # A retry or a resumed attempt
            return None

        self._logger.warning(
            f"Job {job.job_id} skipped: scheduled payment {payment_id} is {payment.status.value}"
        )
        return {"skipped": True, "status": payment.status.value}

    async def _fail_payment(self, payment_id: str, error: str) -> None:
        for current in (_S.PROCESSING, _S.CLAIMED):
            if await self._store.transition(payment_id, current, _S.FAILED, last_error=error):
                return
        self._logger.warning(f"Scheduled payment {payment_id} could not be marked FAILED")

    async def on_expired(self, job: Job, error: Exception) -> None:
        """Lease sweep gave up on a job; treated as a final failure."""
        await self.on_failure(job, error, will_retry=False)

    async def _notify(self, job: Job, kind: NotificationKind, detail: dict[str, Any]) -> None:
        notification = Notification(
            owner_id=job.payload.owner_id,
            kind=kind,
            detail=detail,
            job_id=job.job_id,
        )
        try:
            await self._notifier.notify(notification)
        except Exception as e:
            self._logger.error(f"Notification {kind.value} for job {job.job_id} failed: {e}")
