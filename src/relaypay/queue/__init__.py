"""Durable job queue, worker pool and the payment job handler."""

from relaypay.queue.handler import PaymentJobHandler
from relaypay.queue.queue import JobQueue, backoff_delay
from relaypay.queue.worker import JobHandler, WorkerPool

__all__ = [
    "JobHandler",
    "JobQueue",
    "PaymentJobHandler",
    "WorkerPool",
    "backoff_delay",
]
