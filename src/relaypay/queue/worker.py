"""
Bounded worker pool.

A fixed number of asyncio workers pull from the JobQueue, run the handler and
report the outcome back to the queue. Stopping the pool stops pulling new jobs
and waits for in-flight ones; a job is never cancelled halfway through an
external call.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import uuid
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from relaypay.core.exceptions import classify, is_recoverable, is_retryable
from relaypay.core.logging import get_logger
from relaypay.core.types import Job, JobState

if TYPE_CHECKING:
    from relaypay.queue.queue import JobQueue


class JobHandler(ABC):
    """Work performed for one job, plus hooks for its reported outcome."""

    @abstractmethod
    async def handle(self, job: Job) -> dict[str, Any]:
        """Run the job. Raising marks the attempt failed."""
        ...

    async def on_success(self, job: Job, result: dict[str, Any]) -> None:
        """Called after ``handle`` returned, before the job is marked COMPLETED."""
        return None

    async def on_failure(self, job: Job, error: Exception, will_retry: bool) -> None:
        """Called after the queue recorded a failed attempt."""
        return None


class WorkerPool:
    """
    Fixed-size pool of queue consumers.

    Example:
        >>> pool = WorkerPool(queue, handler)
        >>> await pool.start(concurrency=3)
        >>> ...
        >>> await pool.stop()
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        concurrency: int = 3,
        idle_poll_interval: float = 1.0,
    ) -> None:
        self._queue = queue
        self._handler = handler
        self._concurrency = concurrency
        self._idle_poll_interval = idle_poll_interval
        self._pool_id = f"{os.getpid()}-{uuid.uuid4().hex[:6]}"
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._in_flight: dict[str, str] = {}
        self._logger = get_logger("queue.worker")

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping.is_set()

    @property
    def in_flight(self) -> dict[str, str]:
        """Job IDs currently being handled, mapped to their worker IDs."""
        return dict(self._in_flight)

    async def start(self, concurrency: int | None = None) -> None:
        if self._tasks:
            return
        self._concurrency = concurrency or self._concurrency
        self._stopping.clear()
        for i in range(self._concurrency):
            worker_id = f"worker-{self._pool_id}-{i}"
            self._tasks.append(asyncio.create_task(self._run_worker(worker_id), name=worker_id))
        self._logger.info(f"Started {self._concurrency} worker(s)")

    async def stop(self, timeout: float | None = None) -> None:
        """
        Stop pulling jobs and wait for in-flight jobs to finish.

        Args:
            timeout: Give up waiting after this many seconds and cancel the
                workers. None waits indefinitely.
        """
        if not self._tasks:
            return
        self._stopping.set()
        self._queue.wake()
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            self._logger.warning(f"Cancelled {len(pending)} worker(s) still busy at shutdown")
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        self._logger.info("Worker pool stopped")

    async def _run_worker(self, worker_id: str) -> None:
        while not self._stopping.is_set():
            try:
                job = await self._queue.claim_next(worker_id)
            except Exception as e:
                self._logger.error(f"{worker_id} failed to claim a job: {e}")
                await self._queue.wait_for_work(self._idle_poll_interval)
                continue

            if job is None:
                await self._queue.wait_for_work(self._idle_poll_interval)
                continue

            self._in_flight[job.job_id] = worker_id
            try:
                await self._process(job)
            except Exception as e:
                # Reporting itself failed (storage down); the lease sweep recovers the job
                self._logger.error(f"{worker_id} could not report job {job.job_id}: {e}")
            finally:
                self._in_flight.pop(job.job_id, None)

    async def _process(self, job: Job) -> None:
        heartbeat = asyncio.create_task(self._heartbeat(job))
        try:
            result = await self._handler.handle(job)
        except Exception as e:
            await self._stop_heartbeat(heartbeat)
            state = await self._queue.fail(
                job,
                error=str(e),
                retryable=is_retryable(e),
                recoverable=is_recoverable(e),
            )
            if state is None:
                # Whoever holds the lease now owns the outcome
                return
            self._logger.info(
                f"Job {job.job_id} attempt {job.attempts} failed "
                f"({classify(e).value}): {state.value}"
            )
            await self._handler.on_failure(job, e, will_retry=state == JobState.DELAYED)
            return
        finally:
            await self._stop_heartbeat(heartbeat)

        await self._handler.on_success(job, result)
        await self._queue.complete(job, result)

    @staticmethod
    async def _stop_heartbeat(heartbeat: asyncio.Task) -> None:
        heartbeat.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await heartbeat

    async def _heartbeat(self, job: Job) -> None:
        interval = self._queue.stale_job_timeout / 3
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self._queue.heartbeat(job):
                    self._logger.warning(f"Lost lease on job {job.job_id}")
                    return
            except Exception as e:
                self._logger.warning(f"Heartbeat for job {job.job_id} failed: {e}")
