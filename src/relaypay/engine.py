"""
PaymentEngine: the public entry point of RelayPay.

Wires the store, tracker, orchestrator, queue, worker pool and scheduler
together and exposes the operations callers use to schedule, submit, cancel
and inspect payments.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from relaypay.core.config import Config
from relaypay.core.exceptions import NotFoundError, ValidationError
from relaypay.core.logging import configure_logging, get_logger
from relaypay.core.types import (
    JobStatus,
    PaymentRequest,
    ScheduledPayment,
    ScheduledPaymentStatus,
    new_id,
    utcnow,
)
from relaypay.notify.base import LoggingNotifier, Notifier
from relaypay.notify.webhook import WebhookNotifier
from relaypay.protocols.base import (
    BalanceOracle,
    BridgeProvider,
    ChainReader,
    DirectoryService,
    PaymentExecutor,
)
from relaypay.queue.handler import PaymentJobHandler
from relaypay.queue.queue import JobQueue
from relaypay.queue.worker import WorkerPool
from relaypay.resilience.circuit import CircuitBreaker
from relaypay.routing.orchestrator import BridgeAndPayOrchestrator
from relaypay.scheduler.periodic import PeriodicTask
from relaypay.scheduler.scheduler import PaymentScheduler
from relaypay.storage import StorageBackend, get_storage
from relaypay.store.store import PaymentStore
from relaypay.tracker.tracker import ConfirmationTracker


class PaymentEngine:
    """
    Asynchronous payment execution and cross-chain routing engine.

    Example:
        >>> engine = PaymentEngine(
        ...     executor=my_executor,
        ...     bridge=my_bridge,
        ...     directory=my_directory,
        ...     balances=my_balances,
        ...     chain_reader=my_reader,
        ... )
        >>> async with engine:
        ...     payment_id = await engine.schedule_payment(
        ...         PaymentRequest(owner_id="u1", recipient="@alice",
        ...                        token_symbol="USDC", amount=Decimal("10")),
        ...         scheduled_for=tomorrow,
        ...     )
    """

    def __init__(
        self,
        executor: PaymentExecutor,
        bridge: BridgeProvider,
        directory: DirectoryService,
        balances: BalanceOracle,
        chain_reader: ChainReader,
        config: Config | None = None,
        storage: StorageBackend | None = None,
        notifier: Notifier | None = None,
        configure_logs: bool = True,
    ) -> None:
        """
        Initialize the engine.

        Args:
            executor: Signs and broadcasts transfers
            bridge: Cross-chain bridge provider
            directory: Username to address resolution
            balances: Token balance reads
            chain_reader: Confirmation depth reads
            config: Engine configuration (default: Config.from_env())
            storage: Storage backend (default: from config.storage_backend)
            notifier: Notification sink (default: webhook if configured, else log)
            configure_logs: Set up the relaypay logger from config
        """
        self._config = config or Config.from_env()
        if configure_logs:
            configure_logging(level=self._config.log_level, json_format=self._config.log_json)
        self._logger = get_logger("engine")

        self._owns_storage = storage is None
        if storage is None:
            kwargs: dict[str, Any] = {}
            if self._config.redis_url:
                kwargs["redis_url"] = self._config.redis_url
            storage = get_storage(self._config.storage_backend, **kwargs)
        self._storage = storage
        self._store = PaymentStore(storage)

        if notifier is None:
            if self._config.notify_webhook_url:
                notifier = WebhookNotifier(
                    self._config.notify_webhook_url,
                    signing_key=self._config.notify_signing_key,
                )
            else:
                notifier = LoggingNotifier()
        self._notifier = notifier

        self._tracker = ConfirmationTracker(
            chain_reader,
            poll_interval=self._config.confirmation_poll_interval,
            max_wait=self._config.confirmation_timeout,
            required_confirmations=self._config.required_confirmations,
            milestones=self._config.confirmation_milestones,
            bridge_poll_interval=self._config.bridge_poll_interval,
            bridge_timeout=self._config.bridge_timeout,
        )

        self._circuit_breakers = {
            "executor": CircuitBreaker("executor", storage),
            "bridge": CircuitBreaker("bridge", storage),
        }

        self._orchestrator = BridgeAndPayOrchestrator(
            store=self._store,
            tracker=self._tracker,
            executor=executor,
            bridge=bridge,
            directory=directory,
            balances=balances,
            config=self._config,
            executor_circuit=self._circuit_breakers["executor"],
            bridge_circuit=self._circuit_breakers["bridge"],
        )

        self._handler = PaymentJobHandler(self._store, self._orchestrator, self._notifier)
        self._queue = JobQueue(
            self._store,
            max_attempts=self._config.max_attempts,
            backoff_base=self._config.backoff_base,
            stale_job_timeout=self._config.stale_job_timeout,
            on_expired=self._handler.on_expired,
        )
        self._pool = WorkerPool(
            self._queue,
            self._handler,
            concurrency=self._config.worker_concurrency,
            idle_poll_interval=self._config.idle_poll_interval,
        )
        self._scheduler = PaymentScheduler(
            self._store,
            self._queue,
            interval=self._config.scheduler_interval,
            batch_size=self._config.scan_batch_size,
            stale_claim_timeout=self._config.stale_job_timeout,
        )
        self._maintenance = PeriodicTask(
            "maintenance",
            self.purge_jobs,
            interval=min(self._config.completed_job_retention, self._config.failed_job_retention),
        )

    @property
    def config(self) -> Config:
        return self._config

    @property
    def store(self) -> PaymentStore:
        return self._store

    @property
    def queue(self) -> JobQueue:
        return self._queue

    @property
    def scheduler(self) -> PaymentScheduler:
        return self._scheduler

    @property
    def tracker(self) -> ConfirmationTracker:
        return self._tracker

    @property
    def orchestrator(self) -> BridgeAndPayOrchestrator:
        return self._orchestrator

    @property
    def running(self) -> bool:
        return self._pool.running

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the worker pool, the scheduler and job maintenance."""
        if self._pool.running:
            return
        await self._pool.start(self._config.worker_concurrency)
        self._scheduler.start()
        self._maintenance.start()
        self._logger.info(
            f"Engine started ({self._config.worker_concurrency} workers, "
            f"{self._config.storage_backend} storage)"
        )

    async def stop(self, timeout: float | None = None) -> None:
        """
        Stop scheduling, let in-flight jobs finish, then release resources.

        Args:
            timeout: Seconds to wait for in-flight jobs before cancelling them
        """
        await self._scheduler.stop()
        await self._maintenance.stop()
        await self._pool.stop(timeout=timeout)
        await self._tracker.close()
        await self._notifier.close()
        if self._owns_storage:
            await self._storage.close()
        self._logger.info("Engine stopped")

    async def __aenter__(self) -> PaymentEngine:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def schedule_payment(
        self,
        request: PaymentRequest,
        scheduled_for: datetime | None = None,
    ) -> str:
        """
        Record a payment to run at ``scheduled_for`` (default: now, i.e. the
        next scheduler tick).

        Naive datetimes are taken as UTC.

        Returns:
            The scheduled payment ID

        Raises:
            ValidationError: Invalid request (amount, chains, owner, token)
            RecipientUnresolvedError: Recipient unknown to the directory
        """
        await self._validate(request)
        due = _as_utc(scheduled_for) if scheduled_for else utcnow()

        payment = ScheduledPayment(
            id=new_id(),
            owner_id=request.owner_id,
            recipient=request.recipient,
            token_symbol=request.token_symbol,
            amount=request.amount,
            scheduled_for=due,
            source_chain=request.source_chain,
            target_chain=request.target_chain,
            policy=request.policy,
            memo=request.memo,
        )
        await self._store.add_scheduled(payment)
        self._logger.info(
            f"Scheduled {payment.amount} {payment.token_symbol} to {payment.recipient} "
            f"for {due.isoformat()} ({payment.id})"
        )
        return payment.id

    async def cancel_scheduled_payment(self, owner_id: str, payment_id: str) -> ScheduledPayment:
        """
        Cancel a payment that has not been claimed yet.

        Raises:
            NotFoundError: Unknown payment for this owner
            AlreadyInProgressError: The payment was already claimed
        """
        return await self._scheduler.cancel(owner_id, payment_id)

    async def list_scheduled_payments(
        self,
        owner_id: str,
        status: ScheduledPaymentStatus | str | None = None,
    ) -> list[ScheduledPayment]:
        """An owner's scheduled payments, ordered by due time."""
        if isinstance(status, str):
            try:
                status = ScheduledPaymentStatus(status.lower())
            except ValueError:
                raise ValidationError(f"Unknown status: {status}") from None
        return await self._store.list_scheduled(owner_id, status)

    async def get_scheduled_payment(self, owner_id: str, payment_id: str) -> ScheduledPayment:
        payment = await self._store.get_scheduled(payment_id)
        if payment is None or payment.owner_id != owner_id:
            raise NotFoundError(
                f"Scheduled payment not found: {payment_id}", "scheduled_payment", payment_id
            )
        return payment

    async def submit_immediate_payment(self, request: PaymentRequest) -> str:
        """
        Enqueue a payment directly, bypassing the scheduler.

        Returns:
            The job ID, for ``get_job_status``
        """
        await self._validate(request)
        payload = replace(request, scheduled_payment_id=None)
        job_id = await self._queue.enqueue(payload, priority=utcnow().timestamp())
        self._logger.info(
            f"Submitted {request.amount} {request.token_symbol} to {request.recipient} as {job_id}"
        )
        return job_id

    async def get_job_status(self, job_id: str) -> JobStatus:
        """
        Current state of a job with its legs.

        Raises:
            NotFoundError: Unknown (or purged) job
        """
        job = await self._queue.get(job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}", "job", job_id)

        payment_status = None
        if job.scheduled_payment_id:
            payment = await self._store.get_scheduled(job.scheduled_payment_id)
            payment_status = payment.status if payment else None

        return JobStatus(
            job_id=job.job_id,
            state=job.state,
            legs=await self._store.legs_for_job(job_id),
            last_error=job.last_error,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            recoverable=job.recoverable,
            scheduled_payment_id=job.scheduled_payment_id,
            scheduled_payment_status=payment_status,
        )

    async def queue_stats(self) -> dict[str, int]:
        """Job counts per state."""
        return await self._queue.stats()

    async def purge_jobs(self) -> int:
        """Delete finished jobs past their configured retention."""
        return await self._queue.purge(
            completed_older_than=self._config.completed_job_retention,
            failed_older_than=self._config.failed_job_retention,
        )

    async def health_check(self) -> dict[str, Any]:
        return {
            "storage": await self._storage.health_check(),
            "workers": self._pool.running,
            "scheduler": self._scheduler.running,
            "circuits": {
                name: (await breaker.get_state()).value
                for name, breaker in self._circuit_breakers.items()
            },
            "active_watches": len(self._tracker.active_watches()),
        }

    async def _validate(self, request: PaymentRequest) -> None:
        # Amount, chains, owner and token are checked by PaymentRequest itself
        if not isinstance(request, PaymentRequest):
            raise ValidationError("request must be a PaymentRequest")
        await self._orchestrator.resolve_recipient(request.recipient)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
