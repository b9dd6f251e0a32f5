"""
Exception hierarchy for RelayPay.

All engine exceptions inherit from RelayPayError for easy catching. Every class
carries an ErrorKind which the worker pool uses to decide between retrying a
job and failing it permanently.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Failure classes used by the retry policy."""

    INPUT = "input"  # Rejected at submission, never enqueued
    TRANSIENT = "transient"  # RPC timeout, provider 5xx: retried with backoff
    ROUTE = "route"  # No bridge path, retrying cannot help
    FUNDS = "funds"  # Not enough balance anywhere
    TIMEOUT = "timeout"  # Terminal here, may still resolve externally
    EXECUTION = "execution"  # Executor rejected or transaction reverted


class RelayPayError(Exception):
    """
    Base exception for all RelayPay errors.

    Catch this to handle any engine-related exception.

    Example:
        >>> try:
        ...     await engine.schedule_payment(request)
        ... except RelayPayError as e:
        ...     print(f"Rejected: {e}")
    """

    kind: ErrorKind = ErrorKind.EXECUTION
    recoverable: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(RelayPayError):
    """
    Configuration is missing or invalid.

    Raised when:
    - Environment variables hold unparseable values
    - A storage backend name is unknown
    """

    kind = ErrorKind.INPUT


class ValidationError(RelayPayError):
    """
    Input validation error.

    Raised when:
    - Required parameters are missing
    - Amount is not a positive decimal
    """

    kind = ErrorKind.INPUT


class UnsupportedChainError(ValidationError):
    """A chain name is not one the engine knows about."""

    def __init__(self, chain: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(f"Unsupported chain: {chain}", details)
        self.chain = chain


class NotFoundError(RelayPayError):
    """A scheduled payment or job does not exist (or belongs to another owner)."""

    kind = ErrorKind.INPUT

    def __init__(
        self,
        message: str,
        resource: str,
        resource_id: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.resource = resource
        self.resource_id = resource_id


class AlreadyInProgressError(RelayPayError):
    """
    A scheduled payment was already claimed and can no longer be cancelled.

    Once a payment is claimed its job must run to a terminal state, since
    bridge and payment submissions cannot be recalled after broadcast.
    """

    kind = ErrorKind.INPUT

    def __init__(self, scheduled_payment_id: str, status: str) -> None:
        super().__init__(
            f"Scheduled payment {scheduled_payment_id} is already {status}",
            details={"status": status},
        )
        self.scheduled_payment_id = scheduled_payment_id
        self.status = status


class PaymentError(RelayPayError):
    """
    Base exception for payment-related errors.

    Raised when:
    - Payment fails to execute
    - External collaborators return errors
    """

    def __init__(
        self,
        message: str,
        recipient: str | None = None,
        amount: Decimal | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.recipient = recipient
        self.amount = amount


class RecipientUnresolvedError(PaymentError):
    """The directory could not resolve a username to an address."""

    kind = ErrorKind.INPUT

    def __init__(self, recipient: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(f"Recipient not found: {recipient}", recipient=recipient, details=details)


class RecipientInvalidError(PaymentError):
    """The executor refused the destination address."""

    kind = ErrorKind.INPUT


class InsufficientFundsError(PaymentError):
    """
    No usable balance covers the payment.

    Raised when:
    - The chosen source chain holds less than the amount
    - No chain in the priority list holds enough (any-chain routing)
    """

    kind = ErrorKind.FUNDS

    def __init__(
        self,
        message: str,
        current_balance: Decimal,
        required_amount: Decimal,
        chain: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, amount=required_amount, details=details)
        self.current_balance = current_balance
        self.required_amount = required_amount
        self.chain = chain
        self.shortfall = required_amount - current_balance

    def __str__(self) -> str:
        return (
            f"{self.message} | "
            f"Balance: {self.current_balance}, Required: {self.required_amount}, "
            f"Shortfall: {self.shortfall}"
        )


class InsufficientBalanceError(InsufficientFundsError):
    """The executor reported the sender balance too low at submission time."""


class PaymentExecutionFailedError(PaymentError):
    """
    The executor rejected the transfer or the transaction reverted on-chain.
    """

    kind = ErrorKind.EXECUTION

    def __init__(
        self,
        message: str,
        chain: str | None = None,
        tx_handle: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.chain = chain
        self.tx_handle = tx_handle


class CrosschainError(PaymentError):
    """
    Cross-chain transfer error.

    Base for failures that happen on the bridge leg of a bridge-and-pay.
    """

    def __init__(
        self,
        message: str,
        source_chain: str,
        destination_chain: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.source_chain = source_chain
        self.destination_chain = destination_chain

    def __str__(self) -> str:
        return f"[crosschain] {self.message} ({self.source_chain} → {self.destination_chain})"


class UnsupportedRouteError(CrosschainError):
    """The bridge has no path between the two chains (e.g. a non-EVM chain)."""

    kind = ErrorKind.ROUTE


class NoLiquidityError(CrosschainError):
    """The bridge knows the path but cannot fill the amount."""

    kind = ErrorKind.ROUTE


class BridgeTimeoutError(CrosschainError):
    """
    Bridged funds did not arrive before the bridge timeout.

    The bridge may still complete later. The payment leg is not attempted and
    nothing is re-submitted; the owner is told to re-check manually.
    """

    kind = ErrorKind.TIMEOUT
    recoverable = True

    def __init__(
        self,
        source_chain: str,
        destination_chain: str,
        bridge_tx_handle: str | None,
        timeout_seconds: float,
    ) -> None:
        super().__init__(
            f"Bridge not confirmed after {timeout_seconds:g}s",
            source_chain,
            destination_chain,
            details={"bridge_tx_handle": bridge_tx_handle},
        )
        self.bridge_tx_handle = bridge_tx_handle
        self.timeout_seconds = timeout_seconds


class ConfirmationStaleError(PaymentError):
    """
    A submitted transaction was neither confirmed nor failed before max wait.
    """

    kind = ErrorKind.TIMEOUT
    recoverable = True

    def __init__(
        self,
        chain: str,
        tx_handle: str,
        last_confirmations: int,
        timeout_seconds: float,
    ) -> None:
        super().__init__(
            f"Transaction {tx_handle} on {chain} still unconfirmed after {timeout_seconds:g}s",
            details={"confirmations": last_confirmations},
        )
        self.chain = chain
        self.tx_handle = tx_handle
        self.last_confirmations = last_confirmations
        self.timeout_seconds = timeout_seconds


class LegInDoubtError(PaymentError):
    """
    A leg was persisted but the external call never reported back.

    Found on resume after a crash: the submission may or may not have been
    broadcast, so it is surfaced for manual checking instead of re-submitted.
    """

    kind = ErrorKind.TIMEOUT
    recoverable = True

    def __init__(self, leg_id: str, leg_kind: str) -> None:
        super().__init__(
            f"{leg_kind} leg {leg_id} has an unknown submission outcome",
            details={"leg_id": leg_id, "kind": leg_kind},
        )
        self.leg_id = leg_id
        self.leg_kind = leg_kind


class NetworkError(RelayPayError):
    """
    Network or API communication error.

    Raised when:
    - An RPC or provider request times out
    - A provider answers with a 5xx or rate limits us
    """

    kind = ErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        url: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.status_code = status_code
        self.url = url

    def is_rate_limited(self) -> bool:
        """Check if this is a rate limit error."""
        return self.status_code == 429

    def is_server_error(self) -> bool:
        """Check if this is a server-side error."""
        return self.status_code is not None and 500 <= self.status_code < 600


class JobLeaseExpiredError(RelayPayError):
    """
    A worker stopped renewing its lease on a job (crash or hang).

    Raised into the failure path when the lease sweep finds a job that has
    already used all its attempts.
    """

    kind = ErrorKind.TIMEOUT
    recoverable = True

    def __init__(self, job_id: str, worker_id: str | None) -> None:
        super().__init__(
            f"Lease on job {job_id} expired (worker {worker_id})",
            details={"job_id": job_id, "worker_id": worker_id},
        )
        self.job_id = job_id
        self.worker_id = worker_id


def classify(exc: BaseException) -> ErrorKind:
    """Map any exception to its ErrorKind. Unknown exceptions count as transient."""
    if isinstance(exc, RelayPayError):
        return exc.kind
    return ErrorKind.TRANSIENT


def is_retryable(exc: BaseException) -> bool:
    """Only transient failures are worth another attempt."""
    return classify(exc) == ErrorKind.TRANSIENT


def is_recoverable(exc: BaseException) -> bool:
    """True for terminal failures that may still resolve outside the engine."""
    return bool(getattr(exc, "recoverable", False))
