"""
Job Store.

Persistence for scheduled payments, queue jobs and execution legs on top of the
unified StorageBackend. Every status change goes through the backend's atomic
compare-and-set, so two callers racing on the same row can never both win.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from relaypay.core.exceptions import ValidationError
from relaypay.core.types import (
    Job,
    JobState,
    Leg,
    ScheduledPayment,
    ScheduledPaymentStatus,
    leg_from_dict,
    utcnow,
)

if TYPE_CHECKING:
    from relaypay.storage.base import StorageBackend


_S = ScheduledPaymentStatus

# Allowed scheduled payment transitions
TRANSITIONS: dict[ScheduledPaymentStatus, frozenset[ScheduledPaymentStatus]] = {
    _S.PENDING: frozenset({_S.CLAIMED, _S.CANCELLED}),
    _S.CLAIMED: frozenset({_S.PROCESSING, _S.PENDING, _S.FAILED}),
    _S.PROCESSING: frozenset({_S.COMPLETED, _S.FAILED}),
    _S.COMPLETED: frozenset(),
    _S.FAILED: frozenset(),
    _S.CANCELLED: frozenset(),
}


def can_transition(current: ScheduledPaymentStatus, target: ScheduledPaymentStatus) -> bool:
    return target in TRANSITIONS[current]


class PaymentStore:
    """
    Storage facade for the three engine collections.

    The store holds no state of its own; the backend is the system of record.
    """

    SCHEDULED = "scheduled_payments"
    JOBS = "jobs"
    LEGS = "legs"

    def __init__(self, storage: StorageBackend) -> None:
        self._storage = storage

    @property
    def storage(self) -> StorageBackend:
        return self._storage

    # -------------------------------------------------------------------------
    # Scheduled payments
    # -------------------------------------------------------------------------

    async def add_scheduled(self, payment: ScheduledPayment) -> str:
        await self._storage.save(self.SCHEDULED, payment.id, payment.to_dict())
        return payment.id

    async def get_scheduled(self, payment_id: str) -> ScheduledPayment | None:
        data = await self._storage.get(self.SCHEDULED, payment_id)
        if not data:
            return None
        return ScheduledPayment.from_dict(data)

    async def list_scheduled(
        self,
        owner_id: str,
        status: ScheduledPaymentStatus | None = None,
    ) -> list[ScheduledPayment]:
        """List an owner's scheduled payments ordered by due time."""
        filters: dict[str, Any] = {"owner_id": owner_id}
        if status:
            filters["status"] = status.value
        rows = await self._storage.query(self.SCHEDULED, filters=filters)
        payments = [ScheduledPayment.from_dict(r) for r in rows]
        payments.sort(key=lambda p: (p.scheduled_for, p.created_at))
        return payments

    async def due_payments(self, now: datetime, limit: int) -> list[ScheduledPayment]:
        """PENDING payments whose due time has passed, oldest first."""
        rows = await self._storage.query(
            self.SCHEDULED, filters={"status": ScheduledPaymentStatus.PENDING.value}
        )
        cutoff = now.timestamp()
        due = [r for r in rows if r["scheduled_ts"] <= cutoff]
        due.sort(key=lambda r: (r["scheduled_ts"], r["created_at"]))
        return [ScheduledPayment.from_dict(r) for r in due[:limit]]

    async def claimed_before(self, cutoff: datetime) -> list[ScheduledPayment]:
        """CLAIMED payments whose claim is older than ``cutoff``."""
        rows = await self._storage.query(
            self.SCHEDULED, filters={"status": ScheduledPaymentStatus.CLAIMED.value}
        )
        payments = [ScheduledPayment.from_dict(r) for r in rows]
        return [p for p in payments if p.claimed_at is None or p.claimed_at < cutoff]

    async def transition(
        self,
        payment_id: str,
        current: ScheduledPaymentStatus,
        target: ScheduledPaymentStatus,
        **fields: Any,
    ) -> bool:
        """
        Atomically move a payment from ``current`` to ``target``.

        Args:
            payment_id: Scheduled payment ID
            current: Status the row must hold right now
            target: New status
            **fields: Extra columns written with the transition

        Returns:
            True if this caller won the transition, False if the row was not in
            ``current`` (someone else moved it, or it does not exist)

        Raises:
            ValidationError: If ``current -> target`` is not an allowed transition
        """
        if not can_transition(current, target):
            raise ValidationError(
                f"Illegal scheduled payment transition {current.value} -> {target.value}"
            )
        updates = {"status": target.value}
        updates.update(_serialize(fields))
        if target.is_terminal():
            updates.setdefault("completed_at", utcnow().isoformat())
        return await self._storage.compare_and_set(
            self.SCHEDULED, payment_id, {"status": current.value}, updates
        )

    async def claim(self, payment_id: str, job_id: str) -> bool:
        """PENDING -> CLAIMED. At most one caller gets True."""
        return await self.transition(
            payment_id,
            ScheduledPaymentStatus.PENDING,
            ScheduledPaymentStatus.CLAIMED,
            job_id=job_id,
            claimed_at=utcnow(),
        )

    async def release_claim(self, payment_id: str) -> bool:
        """CLAIMED -> PENDING, used when enqueueing fails after a won claim."""
        return await self.transition(
            payment_id,
            ScheduledPaymentStatus.CLAIMED,
            ScheduledPaymentStatus.PENDING,
            job_id=None,
            claimed_at=None,
        )

    async def record_attempt_error(self, payment_id: str, error: str, retry_count: int) -> bool:
        """Write the latest failure without touching status."""
        return await self._storage.update(
            self.SCHEDULED, payment_id, {"last_error": error, "retry_count": retry_count}
        )

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    async def insert_job(self, job: Job) -> bool:
        """Insert a job unless one with the same ID exists. Returns True if inserted."""
        if await self._storage.get(self.JOBS, job.job_id) is not None:
            return False
        await self._storage.save(self.JOBS, job.job_id, job.to_dict())
        return True

    async def get_job(self, job_id: str) -> Job | None:
        data = await self._storage.get(self.JOBS, job_id)
        if not data:
            return None
        return Job.from_dict(data)

    async def swap_job(
        self,
        job: Job,
        expected_state: JobState,
        expected_owner: str | None = None,
    ) -> bool:
        """
        Persist ``job`` only if the stored copy is still in ``expected_state``
        (and, when given, still leased by ``expected_owner``).
        """
        expected: dict[str, Any] = {"state": expected_state.value}
        if expected_owner is not None:
            expected["lease_owner"] = expected_owner
        return await self._storage.compare_and_set(
            self.JOBS, job.job_id, expected, job.to_dict()
        )

    async def jobs_in_state(self, state: JobState) -> list[Job]:
        rows = await self._storage.query(self.JOBS, filters={"state": state.value})
        return [Job.from_dict(r) for r in rows]

    async def count_jobs(self, state: JobState | None = None) -> int:
        filters = {"state": state.value} if state else None
        return await self._storage.count(self.JOBS, filters)

    async def delete_job(self, job_id: str) -> bool:
        return await self._storage.delete(self.JOBS, job_id)

    # -------------------------------------------------------------------------
    # Legs
    # -------------------------------------------------------------------------

    async def save_leg(self, leg: Leg) -> Leg:
        leg.updated_at = utcnow()
        await self._storage.save(self.LEGS, leg.id, leg.to_dict())
        return leg

    async def legs_for_job(self, job_id: str) -> list[Leg]:
        """Bridge and payment legs of a job, oldest first."""
        rows = await self._storage.query(self.LEGS, filters={"job_id": job_id})
        legs = [leg_from_dict(r) for r in rows]
        legs.sort(key=lambda leg: leg.created_at)
        return legs

    async def delete_legs(self, job_id: str) -> int:
        rows = await self._storage.query(self.LEGS, filters={"job_id": job_id})
        for row in rows:
            await self._storage.delete(self.LEGS, row["_key"])
        return len(rows)


def _serialize(fields: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in fields.items():
        out[key] = value.isoformat() if isinstance(value, datetime) else value
    return out
