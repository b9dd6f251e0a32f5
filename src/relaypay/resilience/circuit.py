"""
Distributed Circuit Breaker Implementation.

Uses StorageBackend to share breaker state across engine instances, so a
failing executor or bridge provider is paused for every worker at once.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import TYPE_CHECKING

from relaypay.core.exceptions import ErrorKind, RelayPayError
from relaypay.core.logging import get_logger

if TYPE_CHECKING:
    from relaypay.storage.base import StorageBackend


class CircuitState(str, Enum):
    """Circuit Breaker States."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, block requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitOpenError(RelayPayError):
    """Raised when execution is attempted on an OPEN circuit. Retried by the queue."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, service: str, recovery_time: float) -> None:
        super().__init__(
            f"Circuit OPEN for {service}. Retrying after {recovery_time}",
            details={"service": service},
        )
        self.service = service
        self.recovery_time = recovery_time


class CircuitBreaker:
    """
    Distributed Circuit Breaker.

    Wraps calls into an external collaborator. If failures reach the threshold
    it trips (OPEN) and blocks calls for ``recovery_timeout`` seconds, then
    enters HALF_OPEN and lets the next call test the service.

    Only infrastructure failures count. Business rejections (insufficient
    balance, invalid recipient, no route) pass through without tripping.
    """

    COLLECTION = "resilience"

    def __init__(
        self,
        service_name: str,
        storage: StorageBackend,
        failure_threshold: int = 5,
        recovery_timeout: int = 30,
    ) -> None:
        """
        Initialize Circuit Breaker.

        Args:
            service_name: Unique ID for the service (e.g., "executor")
            storage: Storage backend (Redis for multi-process deployments)
            failure_threshold: Number of failures before tripping
            recovery_timeout: Seconds to wait before attempting recovery
        """
        self.service = service_name
        self._storage = storage
        self.threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._logger = get_logger(f"circuit.{service_name}")

        self._key_state = f"circuit:{service_name}:state"
        self._key_failures = f"circuit:{service_name}:failures"
        self._key_recovery = f"circuit:{service_name}:recovery_ts"

    async def get_state(self) -> CircuitState:
        data = await self._storage.get(self.COLLECTION, self._key_state)
        if not data:
            return CircuitState.CLOSED
        return CircuitState(data.get("state", CircuitState.CLOSED.value))

    async def _set_state(self, state: CircuitState) -> None:
        await self._storage.save(self.COLLECTION, self._key_state, {"state": state.value})
        self._logger.info(f"Circuit state changed to: {state.value}")

    async def is_available(self) -> bool:
        """Check if service is available (CLOSED or HALF_OPEN)."""
        state = await self.get_state()

        if state == CircuitState.CLOSED:
            return True

        if state == CircuitState.OPEN:
            recovery_data = await self._storage.get(self.COLLECTION, self._key_recovery)
            if not recovery_data or time.time() > float(recovery_data.get("ts", 0)):
                self._logger.info("Recovery timeout passed. Entering HALF_OPEN.")
                await self._set_state(CircuitState.HALF_OPEN)
                return True
            return False

        # HALF_OPEN: traffic allowed, a failure trips immediately
        return True

    async def record_failure(self) -> None:
        state = await self.get_state()

        if state == CircuitState.HALF_OPEN:
            self._logger.warning("Failure in HALF_OPEN. Tripping back to OPEN.")
            await self.trip()
            return

        val_str = await self._storage.atomic_add(self.COLLECTION, self._key_failures, "1")
        current_failures = int(float(val_str))
        self._logger.warning(f"Failure recorded. Count: {current_failures}/{self.threshold}")

        if current_failures >= self.threshold:
            await self.trip()

    async def record_success(self) -> None:
        state = await self.get_state()

        if state == CircuitState.HALF_OPEN:
            self._logger.info("Success in HALF_OPEN. Closing circuit.")
            await self.close()
        elif state == CircuitState.CLOSED:
            # Decay by one so a single success does not erase a burst of failures
            val_str = await self._storage.atomic_add(self.COLLECTION, self._key_failures, "-1")
            if int(float(val_str)) <= 0:
                await self._storage.delete(self.COLLECTION, self._key_failures)

    async def trip(self) -> None:
        """Trip the circuit to OPEN."""
        recovery_time = time.time() + self.recovery_timeout
        await self._set_state(CircuitState.OPEN)
        await self._storage.save(self.COLLECTION, self._key_recovery, {"ts": str(recovery_time)})
        self._logger.critical(f"Circuit TRIPPED. Blocking requests for {self.recovery_timeout}s.")

    async def close(self) -> None:
        """Close the circuit (Recovered)."""
        await self._set_state(CircuitState.CLOSED)
        await self._storage.delete(self.COLLECTION, self._key_failures)
        await self._storage.delete(self.COLLECTION, self._key_recovery)
        self._logger.info("Circuit CLOSED. Service restored.")

    async def __aenter__(self) -> CircuitBreaker:
        if not await self.is_available():
            data = await self._storage.get(self.COLLECTION, self._key_recovery)
            recovery_ts = float(data.get("ts", 0)) if data else 0
            raise CircuitOpenError(self.service, recovery_ts)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        # The guarded call has already happened; breaker bookkeeping must not
        # replace its outcome.
        try:
            if exc_type is None:
                await self.record_success()
            elif _counts_as_outage(exc_val):
                await self.record_failure()
        except Exception as e:
            self._logger.error(f"Failed to record outcome for {self.service}: {e}")
        return False  # Propagate exception


def _counts_as_outage(exc: BaseException | None) -> bool:
    if isinstance(exc, RelayPayError):
        return exc.kind == ErrorKind.TRANSIENT
    return isinstance(exc, Exception)
