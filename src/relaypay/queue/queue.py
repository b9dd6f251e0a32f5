"""
Durable priority job queue.

Jobs live in the storage backend, so a restarted process picks up WAITING and
DELAYED jobs and reclaims ACTIVE jobs whose worker stopped renewing its lease.
Every state change is a compare-and-set on the stored job, which makes a
single job impossible to hold by two workers at once.

States:
    WAITING -> ACTIVE -> COMPLETED
                      -> DELAYED -> WAITING   (transient failure, backing off)
                      -> FAILED               (permanent or attempts exhausted)
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from relaypay.core.exceptions import JobLeaseExpiredError
from relaypay.core.logging import get_logger
from relaypay.core.types import Job, JobState, PaymentRequest, new_id, utcnow

if TYPE_CHECKING:
    from relaypay.store.store import PaymentStore

ExpiredHook = Callable[[Job, Exception], Awaitable[None]]


def backoff_delay(attempts: int, base: float) -> float:
    """
    Delay before the next attempt, where ``attempts`` already counts the one
    that just failed: base, 2*base, 4*base, ...
    """
    return base * 2 ** (max(attempts, 1) - 1)


class JobQueue:
    """
    Priority queue over the ``jobs`` collection.

    Lower ``priority`` dispatches first; ties go to the older job.
    """

    def __init__(
        self,
        store: PaymentStore,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        stale_job_timeout: float = 300.0,
        on_expired: ExpiredHook | None = None,
    ) -> None:
        self._store = store
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._stale_job_timeout = stale_job_timeout
        self._on_expired = on_expired
        self._wakeup = asyncio.Event()
        self._logger = get_logger("queue")

    @property
    def stale_job_timeout(self) -> float:
        return self._stale_job_timeout

    def set_expired_hook(self, hook: ExpiredHook | None) -> None:
        self._on_expired = hook

    async def enqueue(
        self,
        payload: PaymentRequest,
        priority: float,
        job_id: str | None = None,
        max_attempts: int | None = None,
    ) -> str:
        """
        Add a job. Idempotent: enqueueing an existing ``job_id`` is a no-op.

        Returns:
            The job ID
        """
        job = Job(
            job_id=job_id or f"job-{new_id()}",
            payload=payload,
            priority=priority,
            max_attempts=max_attempts or self._max_attempts,
        )
        if await self._store.insert_job(job):
            self._logger.debug(f"Enqueued {job.job_id} (priority {priority})")
        else:
            self._logger.debug(f"Job {job.job_id} already queued")
        self._wakeup.set()
        return job.job_id

    async def get(self, job_id: str) -> Job | None:
        return await self._store.get_job(job_id)

    async def claim_next(self, worker_id: str) -> Job | None:
        """
        Lease the highest-priority WAITING job to ``worker_id``.

        Due DELAYED jobs and stale ACTIVE jobs are moved back to WAITING first.
        Returns None if nothing is ready.
        """
        now = utcnow()
        await self.promote_delayed(now)
        await self.requeue_stale(now)

        waiting = await self._store.jobs_in_state(JobState.WAITING)
        waiting.sort(key=lambda j: (j.priority, j.created_at))
        for job in waiting:
            job.state = JobState.ACTIVE
            job.attempts += 1
            job.lease_owner = worker_id
            job.leased_at = now
            job.next_attempt_at = None
            if await self._store.swap_job(job, JobState.WAITING):
                self._logger.debug(
                    f"{worker_id} claimed {job.job_id} (attempt {job.attempts}/{job.max_attempts})"
                )
                return job
        return None

    async def heartbeat(self, job: Job) -> bool:
        """Renew the lease. False means the lease was lost to the stale sweep."""
        job.leased_at = utcnow()
        return await self._store.swap_job(job, JobState.ACTIVE, job.lease_owner)

    async def complete(self, job: Job, result: dict[str, Any] | None = None) -> bool:
        job.state = JobState.COMPLETED
        job.result = result or {}
        job.last_error = None
        job.finished_at = utcnow()
        owner = job.lease_owner
        job.lease_owner = None
        ok = await self._store.swap_job(job, JobState.ACTIVE, owner)
        if not ok:
            self._logger.warning(f"Job {job.job_id} lease lost before completion was recorded")
        return ok

    async def fail(
        self,
        job: Job,
        error: str,
        retryable: bool,
        recoverable: bool = False,
    ) -> JobState | None:
        """
        Record a failed attempt.

        Retryable failures with attempts left go to DELAYED with exponential
        backoff; everything else is FAILED permanently.

        Returns:
            The state the job ended up in, or None if the lease was lost and
            nothing was recorded
        """
        now = utcnow()
        owner = job.lease_owner
        job.last_error = error
        job.lease_owner = None

        if retryable and job.attempts < job.max_attempts:
            delay = backoff_delay(job.attempts, self._backoff_base)
            job.state = JobState.DELAYED
            job.next_attempt_at = now + timedelta(seconds=delay)
            self._logger.warning(
                f"Job {job.job_id} attempt {job.attempts}/{job.max_attempts} failed, "
                f"retrying in {delay:g}s: {error}"
            )
        else:
            job.state = JobState.FAILED
            job.recoverable = recoverable
            job.finished_at = now
            self._logger.error(
                f"Job {job.job_id} failed after {job.attempts} attempt(s): {error}"
            )

        if not await self._store.swap_job(job, JobState.ACTIVE, owner):
            self._logger.warning(f"Job {job.job_id} lease lost before failure was recorded")
            return None
        return job.state

    async def promote_delayed(self, now: datetime | None = None) -> int:
        """Move DELAYED jobs whose backoff elapsed back to WAITING."""
        now = now or utcnow()
        promoted = 0
        for job in await self._store.jobs_in_state(JobState.DELAYED):
            if job.next_attempt_at and job.next_attempt_at > now:
                continue
            job.state = JobState.WAITING
            if await self._store.swap_job(job, JobState.DELAYED):
                promoted += 1
        return promoted

    async def requeue_stale(self, now: datetime | None = None) -> int:
        """
        Reclaim ACTIVE jobs whose lease is older than the stale timeout.

        A job with attempts left goes back to WAITING; one without is FAILED
        (recoverable, since its last attempt may have had side effects).
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self._stale_job_timeout)
        reclaimed = 0
        for job in await self._store.jobs_in_state(JobState.ACTIVE):
            if job.leased_at and job.leased_at > cutoff:
                continue
            owner = job.lease_owner
            error = JobLeaseExpiredError(job.job_id, owner)
            job.lease_owner = None
            job.last_error = error.message
            if job.attempts < job.max_attempts:
                job.state = JobState.WAITING
            else:
                job.state = JobState.FAILED
                job.recoverable = True
                job.finished_at = now

            if not await self._store.swap_job(job, JobState.ACTIVE, owner):
                continue
            reclaimed += 1
            self._logger.warning(
                f"Reclaimed stale job {job.job_id} from {owner} -> {job.state.value}"
            )
            if job.state == JobState.FAILED and self._on_expired is not None:
                await self._on_expired(job, error)
        return reclaimed

    async def wait_for_work(self, timeout: float) -> None:
        """Sleep until something is enqueued or ``timeout`` elapses."""
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    def wake(self) -> None:
        self._wakeup.set()

    async def stats(self) -> dict[str, int]:
        """Job counts per state, plus a total."""
        counts = {state.value: await self._store.count_jobs(state) for state in JobState}
        counts["total"] = sum(counts.values())
        return counts

    async def purge(
        self,
        completed_older_than: float = 3600.0,
        failed_older_than: float = 86400.0,
    ) -> int:
        """
        Delete finished jobs and their legs past their retention.

        Recoverable FAILED jobs are never purged.

        Args:
            completed_older_than: Seconds to keep COMPLETED jobs
            failed_older_than: Seconds to keep FAILED jobs

        Returns:
            Number of jobs deleted
        """
        now = utcnow()
        removed = 0
        for state, retention in (
            (JobState.COMPLETED, completed_older_than),
            (JobState.FAILED, failed_older_than),
        ):
            cutoff = now - timedelta(seconds=retention)
            for job in await self._store.jobs_in_state(state):
                if job.recoverable:
                    # Kept with its legs for a manual re-check
                    continue
                if job.finished_at and job.finished_at < cutoff:
                    if await self._store.delete_job(job.job_id):
                        await self._store.delete_legs(job.job_id)
                        removed += 1
        if removed:
            self._logger.info(f"Purged {removed} finished job(s)")
        return removed
