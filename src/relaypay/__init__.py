"""
RelayPay - Asynchronous Payment Execution & Cross-Chain Routing Engine

Schedules payments, runs them through a durable job queue, bridges funds
between chains when the recipient is elsewhere, and tracks every submitted
transaction to a terminal state.

Usage:
    >>> from relaypay import PaymentEngine, PaymentRequest
    >>> from decimal import Decimal
    >>>
    >>> engine = PaymentEngine(executor, bridge, directory, balances, chain_reader)
    >>> async with engine:
    ...     job_id = await engine.submit_immediate_payment(
    ...         PaymentRequest(
    ...             owner_id="user-1",
    ...             recipient="@alice",
    ...             token_symbol="USDC",
    ...             amount=Decimal("10"),
    ...             target_chain="base",
    ...         )
    ...     )
    ...     status = await engine.get_job_status(job_id)
"""

from relaypay.core.config import Config
from relaypay.core.exceptions import (
    AlreadyInProgressError,
    BridgeTimeoutError,
    ConfigurationError,
    ConfirmationStaleError,
    CrosschainError,
    ErrorKind,
    InsufficientBalanceError,
    InsufficientFundsError,
    LegInDoubtError,
    NetworkError,
    NoLiquidityError,
    NotFoundError,
    PaymentError,
    PaymentExecutionFailedError,
    RecipientInvalidError,
    RecipientUnresolvedError,
    RelayPayError,
    UnsupportedChainError,
    UnsupportedRouteError,
    ValidationError,
)
from relaypay.core.types import (
    BridgeLeg,
    BridgeLegStatus,
    BridgeStatus,
    Chain,
    ConfirmationStatus,
    Job,
    JobState,
    JobStatus,
    Notification,
    NotificationKind,
    PaymentLeg,
    PaymentLegStatus,
    PaymentRequest,
    Route,
    RouteOutcome,
    RoutePolicy,
    ScheduledPayment,
    ScheduledPaymentStatus,
    WatchResult,
    WatchState,
)
from relaypay.engine import PaymentEngine
from relaypay.notify import CallbackNotifier, LoggingNotifier, Notifier, WebhookNotifier
from relaypay.protocols import (
    BalanceOracle,
    BridgeProvider,
    ChainReader,
    DirectoryService,
    PaymentExecutor,
)

__version__ = "0.1.0"

__all__ = [
    # Main engine
    "PaymentEngine",
    "Config",
    # Collaborators
    "BalanceOracle",
    "BridgeProvider",
    "ChainReader",
    "DirectoryService",
    "PaymentExecutor",
    # Notifications
    "CallbackNotifier",
    "LoggingNotifier",
    "Notifier",
    "WebhookNotifier",
    # Types
    "BridgeLeg",
    "BridgeLegStatus",
    "BridgeStatus",
    "Chain",
    "ConfirmationStatus",
    "Job",
    "JobState",
    "JobStatus",
    "Notification",
    "NotificationKind",
    "PaymentLeg",
    "PaymentLegStatus",
    "PaymentRequest",
    "Route",
    "RouteOutcome",
    "RoutePolicy",
    "ScheduledPayment",
    "ScheduledPaymentStatus",
    "WatchResult",
    "WatchState",
    # Exceptions
    "AlreadyInProgressError",
    "BridgeTimeoutError",
    "ConfigurationError",
    "ConfirmationStaleError",
    "CrosschainError",
    "ErrorKind",
    "InsufficientBalanceError",
    "InsufficientFundsError",
    "LegInDoubtError",
    "NetworkError",
    "NoLiquidityError",
    "NotFoundError",
    "PaymentError",
    "PaymentExecutionFailedError",
    "RecipientInvalidError",
    "RecipientUnresolvedError",
    "RelayPayError",
    "UnsupportedChainError",
    "UnsupportedRouteError",
    "ValidationError",
]
