"""
Type definitions for RelayPay.

This module contains the enums, data classes, and type definitions used
throughout the engine. Persisted records expose ``to_dict``/``from_dict`` so the
storage backends only ever see JSON-serializable dicts.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, TypeAlias

from relaypay.core.exceptions import UnsupportedChainError, ValidationError

# Type alias for flexible amount input
AmountType: TypeAlias = Decimal | int | float | str

# Opaque transaction handle returned by executors and bridges
TxHandle: TypeAlias = str


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _dt(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def to_amount(value: AmountType) -> Decimal:
    """Parse an amount, rejecting anything that is not a positive decimal."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}") from None
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"Payment amount must be positive. Got: {value}")
    return amount


class Chain(str, Enum):
    """Chains the router knows about."""

    # EVM
    ETHEREUM = "ETHEREUM"
    BASE = "BASE"
    POLYGON = "POLYGON"
    ARBITRUM = "ARBITRUM"
    OPTIMISM = "OPTIMISM"
    AVALANCHE = "AVALANCHE"
    BSC = "BSC"
    ZKSYNC_ERA = "ZKSYNC-ERA"
    LINEA = "LINEA"
    SCROLL = "SCROLL"
    MANTLE = "MANTLE"
    BLAST = "BLAST"

    # Non-EVM
    SOLANA = "SOLANA"
    NEAR = "NEAR"
    APTOS = "APTOS"

    @classmethod
    def from_string(cls, value: "str | Chain") -> "Chain":
        if isinstance(value, Chain):
            return value
        key = str(value).strip().lower()
        alias = _CHAIN_ALIASES.get(key)
        if alias is not None:
            return alias
        value_upper = key.upper().replace("_", "-").replace(" ", "-")
        for member in cls:
            if member.value == value_upper:
                return member
        raise UnsupportedChainError(str(value))

    def is_evm(self) -> bool:
        return self not in (Chain.SOLANA, Chain.NEAR, Chain.APTOS)


_CHAIN_ALIASES: dict[str, Chain] = {
    "eth": Chain.ETHEREUM,
    "mainnet": Chain.ETHEREUM,
    "ethereum mainnet": Chain.ETHEREUM,
    "base mainnet": Chain.BASE,
    "matic": Chain.POLYGON,
    "polygon mainnet": Chain.POLYGON,
    "arb": Chain.ARBITRUM,
    "arbitrum one": Chain.ARBITRUM,
    "op": Chain.OPTIMISM,
    "avax": Chain.AVALANCHE,
    "avalanche c-chain": Chain.AVALANCHE,
    "bnb": Chain.BSC,
    "bnb chain": Chain.BSC,
    "binance": Chain.BSC,
    "zksync": Chain.ZKSYNC_ERA,
    "zksync era": Chain.ZKSYNC_ERA,
    "sol": Chain.SOLANA,
}


def normalize_chain(chain: Chain | str | None) -> Chain | None:
    """
    Normalize a chain value to a Chain enum.

    Handles:
    - None -> None
    - Chain enum -> Chain enum (unchanged)
    - str -> Chain enum (aliases such as "matic" or "arb" included)

    Raises:
        UnsupportedChainError: If the string names no known chain
    """
    if chain is None:
        return None
    return Chain.from_string(chain)


class ScheduledPaymentStatus(str, Enum):
    """Lifecycle of a scheduled payment row."""

    PENDING = "pending"  # Waiting for its due time
    CLAIMED = "claimed"  # Owned by a scheduler tick, job enqueued
    PROCESSING = "processing"  # A worker is executing it
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        return self in (
            ScheduledPaymentStatus.COMPLETED,
            ScheduledPaymentStatus.FAILED,
            ScheduledPaymentStatus.CANCELLED,
        )


class JobState(str, Enum):
    """Queue-side state of a job."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"  # Backing off until next_attempt_at

    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class LegKind(str, Enum):
    BRIDGE = "bridge"
    PAYMENT = "payment"


class BridgeLegStatus(str, Enum):
    QUOTED = "quoted"  # Persisted before the bridge execute call
    SUBMITTED = "submitted"
    CONFIRMING = "confirming"
    BRIDGED = "bridged"
    FAILED = "failed"


class PaymentLegStatus(str, Enum):
    PREPARED = "prepared"  # Persisted before the executor call
    SUBMITTED = "submitted"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class WatchState(str, Enum):
    """Terminal outcome of a transaction watch."""

    CONFIRMED = "confirmed"
    FAILED = "failed"
    STALE = "stale"  # Max wait elapsed; recoverable by manual check


class BridgeStatus(str, Enum):
    """Delivery status reported by a bridge provider."""

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class NotificationKind(str, Enum):
    MILESTONE = "milestone"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RoutePolicy:
    """How the orchestrator picks a source chain and a bridge route."""

    cheapest_route: bool = False
    any_chain_with_balance: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "cheapest_route": self.cheapest_route,
            "any_chain_with_balance": self.any_chain_with_balance,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RoutePolicy":
        data = data or {}
        return cls(
            cheapest_route=bool(data.get("cheapest_route", False)),
            any_chain_with_balance=bool(data.get("any_chain_with_balance", False)),
        )


@dataclass
class PaymentRequest:
    """
    A validated payment or bridge-and-pay request, as produced by the intent layer.

    ``target_chain=None`` pays on the source chain. ``source_chain=None`` lets the
    orchestrator choose (any-chain policy or the configured home chain).
    """

    owner_id: str
    recipient: str
    token_symbol: str
    amount: Decimal
    target_chain: Chain | None = None
    source_chain: Chain | None = None
    policy: RoutePolicy = field(default_factory=RoutePolicy)
    memo: str | None = None
    scheduled_payment_id: str | None = None

    def __post_init__(self) -> None:
        self.amount = to_amount(self.amount)
        if not self.owner_id:
            raise ValidationError("Owner ID is required")
        if not self.recipient:
            raise ValidationError("Recipient is required")
        if not self.token_symbol:
            raise ValidationError("Token symbol is required")
        self.token_symbol = self.token_symbol.upper()
        self.target_chain = normalize_chain(self.target_chain)
        self.source_chain = normalize_chain(self.source_chain)

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "recipient": self.recipient,
            "token_symbol": self.token_symbol,
            "amount": str(self.amount),
            "target_chain": self.target_chain.value if self.target_chain else None,
            "source_chain": self.source_chain.value if self.source_chain else None,
            "policy": self.policy.to_dict(),
            "memo": self.memo,
            "scheduled_payment_id": self.scheduled_payment_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PaymentRequest":
        return cls(
            owner_id=data["owner_id"],
            recipient=data["recipient"],
            token_symbol=data["token_symbol"],
            amount=Decimal(data["amount"]),
            target_chain=data.get("target_chain"),
            source_chain=data.get("source_chain"),
            policy=RoutePolicy.from_dict(data.get("policy")),
            memo=data.get("memo"),
            scheduled_payment_id=data.get("scheduled_payment_id"),
        )


@dataclass
class ScheduledPayment:
    """A user's intent to pay now or at a future instant."""

    id: str
    owner_id: str
    recipient: str
    token_symbol: str
    amount: Decimal
    scheduled_for: datetime
    source_chain: Chain | None = None
    target_chain: Chain | None = None
    policy: RoutePolicy = field(default_factory=RoutePolicy)
    memo: str | None = None
    status: ScheduledPaymentStatus = ScheduledPaymentStatus.PENDING
    retry_count: int = 0
    last_error: str | None = None
    job_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    claimed_at: datetime | None = None
    completed_at: datetime | None = None

    def is_due(self, now: datetime | None = None) -> bool:
        return self.scheduled_for <= (now or utcnow())

    def to_request(self) -> PaymentRequest:
        return PaymentRequest(
            owner_id=self.owner_id,
            recipient=self.recipient,
            token_symbol=self.token_symbol,
            amount=self.amount,
            target_chain=self.target_chain,
            source_chain=self.source_chain,
            policy=self.policy,
            memo=self.memo,
            scheduled_payment_id=self.id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "recipient": self.recipient,
            "token_symbol": self.token_symbol,
            "amount": str(self.amount),
            "scheduled_for": self.scheduled_for.isoformat(),
            # Epoch seconds keep due-work scans and priorities cheap
            "scheduled_ts": self.scheduled_for.timestamp(),
            "source_chain": self.source_chain.value if self.source_chain else None,
            "target_chain": self.target_chain.value if self.target_chain else None,
            "policy": self.policy.to_dict(),
            "memo": self.memo,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "job_id": self.job_id,
            "created_at": self.created_at.isoformat(),
            "claimed_at": _iso(self.claimed_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScheduledPayment":
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            recipient=data["recipient"],
            token_symbol=data["token_symbol"],
            amount=Decimal(data["amount"]),
            scheduled_for=_dt(data["scheduled_for"]),
            source_chain=normalize_chain(data.get("source_chain")),
            target_chain=normalize_chain(data.get("target_chain")),
            policy=RoutePolicy.from_dict(data.get("policy")),
            memo=data.get("memo"),
            status=ScheduledPaymentStatus(data["status"]),
            retry_count=data.get("retry_count", 0),
            last_error=data.get("last_error"),
            job_id=data.get("job_id"),
            created_at=_dt(data.get("created_at")) or utcnow(),
            claimed_at=_dt(data.get("claimed_at")),
            completed_at=_dt(data.get("completed_at")),
        )


@dataclass
class Job:
    """The unit the queue schedules. Lower priority value dispatches first."""

    job_id: str
    payload: PaymentRequest
    priority: float
    max_attempts: int = 3
    attempts: int = 0
    state: JobState = JobState.WAITING
    next_attempt_at: datetime | None = None
    lease_owner: str | None = None
    leased_at: datetime | None = None
    last_error: str | None = None
    recoverable: bool = False
    result: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def scheduled_payment_id(self) -> str | None:
        return self.payload.scheduled_payment_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "payload": self.payload.to_dict(),
            "priority": self.priority,
            "max_attempts": self.max_attempts,
            "attempts": self.attempts,
            "state": self.state.value,
            "next_attempt_at": _iso(self.next_attempt_at),
            "lease_owner": self.lease_owner,
            "leased_at": _iso(self.leased_at),
            "last_error": self.last_error,
            "recoverable": self.recoverable,
            "result": self.result,
            "created_at": self.created_at.isoformat(),
            "finished_at": _iso(self.finished_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        return cls(
            job_id=data["job_id"],
            payload=PaymentRequest.from_dict(data["payload"]),
            priority=float(data["priority"]),
            max_attempts=data.get("max_attempts", 3),
            attempts=data.get("attempts", 0),
            state=JobState(data["state"]),
            next_attempt_at=_dt(data.get("next_attempt_at")),
            lease_owner=data.get("lease_owner"),
            leased_at=_dt(data.get("leased_at")),
            last_error=data.get("last_error"),
            recoverable=data.get("recoverable", False),
            result=data.get("result", {}),
            created_at=_dt(data.get("created_at")) or utcnow(),
            finished_at=_dt(data.get("finished_at")),
        )


@dataclass
class Route:
    """A bridge quote the provider is willing to execute."""

    route_id: str
    from_chain: Chain
    to_chain: Chain
    token_symbol: str
    amount: Decimal
    fee: Decimal = Decimal("0")
    estimated_seconds: int = 300
    amount_out: Decimal | None = None
    provider: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def total_cost(self) -> Decimal:
        return self.fee


@dataclass
class BridgeLeg:
    """One cross-chain transfer performed as part of a bridge-and-pay."""

    job_id: str
    owner_id: str
    from_chain: Chain
    to_chain: Chain
    token_symbol: str
    amount: Decimal
    id: str = field(default_factory=new_id)
    route_id: str | None = None
    bridge_tx_handle: TxHandle | None = None
    status: BridgeLegStatus = BridgeLegStatus.QUOTED
    estimated_seconds: int | None = None
    fee: Decimal | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    kind = LegKind.BRIDGE

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "id": self.id,
            "job_id": self.job_id,
            "owner_id": self.owner_id,
            "from_chain": self.from_chain.value,
            "to_chain": self.to_chain.value,
            "token_symbol": self.token_symbol,
            "amount": str(self.amount),
            "route_id": self.route_id,
            "bridge_tx_handle": self.bridge_tx_handle,
            "status": self.status.value,
            "estimated_seconds": self.estimated_seconds,
            "fee": str(self.fee) if self.fee is not None else None,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BridgeLeg":
        return cls(
            id=data["id"],
            job_id=data["job_id"],
            owner_id=data["owner_id"],
            from_chain=Chain(data["from_chain"]),
            to_chain=Chain(data["to_chain"]),
            token_symbol=data["token_symbol"],
            amount=Decimal(data["amount"]),
            route_id=data.get("route_id"),
            bridge_tx_handle=data.get("bridge_tx_handle"),
            status=BridgeLegStatus(data["status"]),
            estimated_seconds=data.get("estimated_seconds"),
            fee=Decimal(data["fee"]) if data.get("fee") is not None else None,
            error=data.get("error"),
            created_at=_dt(data.get("created_at")) or utcnow(),
            updated_at=_dt(data.get("updated_at")) or utcnow(),
        )


@dataclass
class PaymentLeg:
    """One on-chain transfer: a same-chain payment or the last leg of a bridge-and-pay."""

    job_id: str
    owner_id: str
    from_address: str
    to_resolved: str
    token_symbol: str
    amount: Decimal
    chain: Chain
    id: str = field(default_factory=new_id)
    tx_handle: TxHandle | None = None
    status: PaymentLegStatus = PaymentLegStatus.PREPARED
    confirmations: int = 0
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    kind = LegKind.PAYMENT

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "id": self.id,
            "job_id": self.job_id,
            "owner_id": self.owner_id,
            "from_address": self.from_address,
            "to_resolved": self.to_resolved,
            "token_symbol": self.token_symbol,
            "amount": str(self.amount),
            "chain": self.chain.value,
            "tx_handle": self.tx_handle,
            "status": self.status.value,
            "confirmations": self.confirmations,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PaymentLeg":
        return cls(
            id=data["id"],
            job_id=data["job_id"],
            owner_id=data["owner_id"],
            from_address=data["from_address"],
            to_resolved=data["to_resolved"],
            token_symbol=data["token_symbol"],
            amount=Decimal(data["amount"]),
            chain=Chain(data["chain"]),
            tx_handle=data.get("tx_handle"),
            status=PaymentLegStatus(data["status"]),
            confirmations=data.get("confirmations", 0),
            error=data.get("error"),
            created_at=_dt(data.get("created_at")) or utcnow(),
            updated_at=_dt(data.get("updated_at")) or utcnow(),
        )


Leg: TypeAlias = BridgeLeg | PaymentLeg


def leg_from_dict(data: dict[str, Any]) -> Leg:
    if data.get("kind") == LegKind.BRIDGE.value:
        return BridgeLeg.from_dict(data)
    return PaymentLeg.from_dict(data)


@dataclass
class ConfirmationStatus:
    """
    One chain read for a submitted transaction.

    ``succeeded`` is None while the transaction is not yet mined, False once it
    reverted or was dropped.
    """

    count: int = 0
    succeeded: bool | None = None


@dataclass
class TransactionWatch:
    """Tracking record for one open watch, keyed by (chain, tx_handle)."""

    chain: str
    tx_handle: TxHandle
    required_confirmations: int
    timeout_at: datetime
    milestones: tuple[int, ...] = ()
    confirmations_seen: int = 0
    first_seen_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return (self.chain, self.tx_handle)


@dataclass
class WatchResult:
    """Terminal outcome of a watch."""

    chain: str
    tx_handle: TxHandle
    state: WatchState
    confirmations: int = 0
    elapsed_seconds: float = 0.0

    @property
    def confirmed(self) -> bool:
        return self.state == WatchState.CONFIRMED


@dataclass
class RouteOutcome:
    """What the orchestrator did for one request."""

    source_chain: Chain
    target_chain: Chain
    payment_leg: PaymentLeg
    bridge_leg: BridgeLeg | None = None

    @property
    def bridged(self) -> bool:
        return self.bridge_leg is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_chain": self.source_chain.value,
            "target_chain": self.target_chain.value,
            "bridged": self.bridged,
            "payment_leg_id": self.payment_leg.id,
            "tx_handle": self.payment_leg.tx_handle,
            "bridge_leg_id": self.bridge_leg.id if self.bridge_leg else None,
            "bridge_tx_handle": self.bridge_leg.bridge_tx_handle if self.bridge_leg else None,
        }


@dataclass
class Notification:
    """Milestone or terminal event delivered to the owner."""

    owner_id: str
    kind: NotificationKind
    detail: dict[str, Any] = field(default_factory=dict)
    job_id: str | None = None
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "kind": self.kind.value,
            "job_id": self.job_id,
            "detail": self.detail,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class JobStatus:
    """Status view returned by PaymentEngine.get_job_status."""

    job_id: str
    state: JobState
    legs: list[Leg] = field(default_factory=list)
    last_error: str | None = None
    attempts: int = 0
    max_attempts: int = 3
    recoverable: bool = False
    scheduled_payment_id: str | None = None
    scheduled_payment_status: ScheduledPaymentStatus | None = None
