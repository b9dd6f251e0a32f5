"""
Bridge-and-Pay Orchestrator.

Turns one PaymentRequest into a confirmed transfer on the target chain:

    resolve source -> [quote -> bridge -> await delivery] -> pay -> await confirmations

Every leg is persisted before its external call, so a job picked up again after
a crash or a transient failure continues from the last recorded step and never
submits the same transfer twice.
"""

from __future__ import annotations

import contextlib
import re
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from relaypay.core.exceptions import (
    BridgeTimeoutError,
    ConfirmationStaleError,
    CrosschainError,
    InsufficientFundsError,
    LegInDoubtError,
    NoLiquidityError,
    PaymentExecutionFailedError,
    UnsupportedRouteError,
)
from relaypay.core.logging import get_logger
from relaypay.core.types import (
    BridgeLeg,
    BridgeLegStatus,
    Chain,
    PaymentLeg,
    PaymentLegStatus,
    PaymentRequest,
    Route,
    RouteOutcome,
    WatchState,
    utcnow,
)
from relaypay.resilience.retry import execute_with_retry
from relaypay.routing.selection import select_cheapest_route, select_source_chain

if TYPE_CHECKING:
    from relaypay.core.config import Config
    from relaypay.protocols.base import (
        BalanceOracle,
        BridgeProvider,
        DirectoryService,
        PaymentExecutor,
    )
    from relaypay.resilience.circuit import CircuitBreaker
    from relaypay.store.store import PaymentStore
    from relaypay.tracker.tracker import ConfirmationTracker

MilestoneHook = Callable[[PaymentLeg, int], Awaitable[None]]

_EVM_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_address(recipient: str) -> bool:
    return bool(_EVM_ADDRESS.match(recipient))


def normalize_username(recipient: str) -> str:
    return recipient.strip().lstrip("@").lower()


class BridgeAndPayOrchestrator:
    """
    Sequences the bridge and payment legs of a request.

    Collaborators are injected; the orchestrator itself only reads and writes
    legs through the PaymentStore.
    """

    def __init__(
        self,
        store: PaymentStore,
        tracker: ConfirmationTracker,
        executor: PaymentExecutor,
        bridge: BridgeProvider,
        directory: DirectoryService,
        balances: BalanceOracle,
        config: Config,
        executor_circuit: CircuitBreaker | None = None,
        bridge_circuit: CircuitBreaker | None = None,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._executor = executor
        self._bridge = bridge
        self._directory = directory
        self._balances = balances
        self._config = config
        self._executor_circuit = executor_circuit
        self._bridge_circuit = bridge_circuit
        self._logger = get_logger("routing")

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def route(
        self,
        request: PaymentRequest,
        job_id: str,
        on_milestone: MilestoneHook | None = None,
    ) -> RouteOutcome:
        """
        Execute a request end to end, resuming from persisted legs if any.

        Raises:
            InsufficientFundsError: No usable balance for the amount
            RecipientUnresolvedError: Username unknown to the directory
            UnsupportedRouteError: Bridge cannot connect the two chains
            BridgeTimeoutError: Bridged funds did not arrive in time
            PaymentExecutionFailedError: Executor rejected or tx reverted
            ConfirmationStaleError: Payment neither confirmed nor failed in time
            LegInDoubtError: A previous attempt crashed mid-submission
        """
        resumed = await self._resume(request, job_id, on_milestone)
        if resumed is not None:
            return resumed

        source = await self.resolve_source(request)
        target = request.target_chain or source
        identity = await execute_with_retry(self._directory.wallet_of, request.owner_id)
        to_address = await self.resolve_recipient(request.recipient)

        if source == target:
            self._logger.info(
                f"[{job_id}] Same-chain payment: {request.amount} {request.token_symbol} "
                f"on {source.value}"
            )
            leg = await self._pay(request, job_id, target, identity, to_address, on_milestone)
            return RouteOutcome(source_chain=source, target_chain=target, payment_leg=leg)

        if not (source.is_evm() and target.is_evm()):
            raise UnsupportedRouteError(
                "Bridging is only supported between EVM chains", source.value, target.value
            )

        await self._ensure_balance(source, identity, request)
        route = await self.quote(source, target, request)
        self._logger.info(
            f"[{job_id}] Bridging {request.amount} {request.token_symbol} "
            f"{source.value} -> {target.value} via {route.route_id} (fee {route.fee})"
        )

        bridge_leg = await self._bridge_funds(request, job_id, route, identity)
        leg = await self._pay(request, job_id, target, identity, to_address, on_milestone)
        return RouteOutcome(
            source_chain=source, target_chain=target, payment_leg=leg, bridge_leg=bridge_leg
        )

    async def resolve_source(self, request: PaymentRequest) -> Chain:
        """Explicit source, else first funded chain by priority, else the home chain."""
        if request.source_chain is not None:
            return request.source_chain

        if not request.policy.any_chain_with_balance:
            return self._config.home_chain

        identity = await execute_with_retry(self._directory.wallet_of, request.owner_id)
        balances: dict[Chain, Decimal] = {}
        for chain in self._config.chain_priority:
            balances[chain] = await execute_with_retry(
                self._balances.balance_of, chain, identity, request.token_symbol
            )
            # Stop reading once a chain qualifies; later chains cannot win
            if balances[chain] >= request.amount:
                break

        chain = select_source_chain(balances, request.amount, self._config.chain_priority)
        self._logger.info(f"Selected {chain.value} as source chain for {request.amount}")
        return chain

    async def resolve_recipient(self, recipient: str) -> str:
        """Addresses pass through; usernames go through the directory."""
        if is_address(recipient):
            return recipient
        return await execute_with_retry(self._directory.resolve, normalize_username(recipient))

    async def quote(self, source: Chain, target: Chain, request: PaymentRequest) -> Route:
        if request.policy.cheapest_route:
            routes = await execute_with_retry(
                self._bridge.quote_routes, source, target, request.token_symbol, request.amount
            )
            if not routes:
                raise NoLiquidityError("Bridge offered no routes", source.value, target.value)
            return select_cheapest_route(routes)
        return await execute_with_retry(
            self._bridge.quote, source, target, request.token_symbol, request.amount
        )

    # -------------------------------------------------------------------------
    # Resume
    # -------------------------------------------------------------------------

    async def _resume(
        self,
        request: PaymentRequest,
        job_id: str,
        on_milestone: MilestoneHook | None,
    ) -> RouteOutcome | None:
        legs = await self._store.legs_for_job(job_id)
        # FAILED legs were rejected before broadcast and are superseded by a fresh attempt
        bridge_leg = _latest(legs, BridgeLeg, BridgeLegStatus.FAILED)
        payment_leg = _latest(legs, PaymentLeg, PaymentLegStatus.FAILED)

        if payment_leg is not None:
            source = bridge_leg.from_chain if bridge_leg else payment_leg.chain
            if payment_leg.status == PaymentLegStatus.PREPARED:
                raise LegInDoubtError(payment_leg.id, "payment")
            if payment_leg.status != PaymentLegStatus.CONFIRMED:
                self._logger.info(f"[{job_id}] Resuming watch on payment leg {payment_leg.id}")
                payment_leg = await self._await_payment(payment_leg, on_milestone)
            return RouteOutcome(
                source_chain=source,
                target_chain=payment_leg.chain,
                payment_leg=payment_leg,
                bridge_leg=bridge_leg,
            )

        if bridge_leg is None:
            return None

        if bridge_leg.status == BridgeLegStatus.QUOTED:
            raise LegInDoubtError(bridge_leg.id, "bridge")

        if bridge_leg.status in (BridgeLegStatus.SUBMITTED, BridgeLegStatus.CONFIRMING):
            self._logger.info(f"[{job_id}] Resuming bridge watch on leg {bridge_leg.id}")
            bridge_leg = await self._await_bridge(bridge_leg, _route_of(bridge_leg))

        self._logger.info(f"[{job_id}] Bridge leg {bridge_leg.id} delivered, paying on target")
        identity = await execute_with_retry(self._directory.wallet_of, request.owner_id)
        to_address = await self.resolve_recipient(request.recipient)
        leg = await self._pay(
            request, job_id, bridge_leg.to_chain, identity, to_address, on_milestone
        )
        return RouteOutcome(
            source_chain=bridge_leg.from_chain,
            target_chain=bridge_leg.to_chain,
            payment_leg=leg,
            bridge_leg=bridge_leg,
        )

    # -------------------------------------------------------------------------
    # Bridge leg
    # -------------------------------------------------------------------------

    async def _ensure_balance(self, chain: Chain, identity: str, request: PaymentRequest) -> None:
        balance = await execute_with_retry(
            self._balances.balance_of, chain, identity, request.token_symbol
        )
        if balance < request.amount:
            raise InsufficientFundsError(
                f"Insufficient {request.token_symbol} on {chain.value}",
                current_balance=balance,
                required_amount=request.amount,
                chain=chain.value,
            )

    async def _bridge_funds(
        self,
        request: PaymentRequest,
        job_id: str,
        route: Route,
        identity: str,
    ) -> BridgeLeg:
        leg = BridgeLeg(
            job_id=job_id,
            owner_id=request.owner_id,
            from_chain=route.from_chain,
            to_chain=route.to_chain,
            token_symbol=request.token_symbol,
            amount=request.amount,
            route_id=route.route_id,
            estimated_seconds=route.estimated_seconds,
            fee=route.fee,
        )
        await self._store.save_leg(leg)

        handle = None
        try:
            async with self._circuit(self._bridge_circuit):
                handle = await self._bridge.execute(route, identity)
        except Exception as e:
            if handle is None:
                leg.status = BridgeLegStatus.FAILED
                leg.error = str(e)
                await self._store.save_leg(leg)
                raise
            self._logger.warning(f"[{job_id}] Bridge submitted despite error: {e}")

        leg.bridge_tx_handle = handle
        leg.status = BridgeLegStatus.SUBMITTED
        await self._store.save_leg(leg)
        return await self._await_bridge(leg, route)

    async def _await_bridge(self, leg: BridgeLeg, route: Route) -> BridgeLeg:
        leg.status = BridgeLegStatus.CONFIRMING
        await self._store.save_leg(leg)

        timeout = self._remaining(
            leg.created_at, self._config.bridge_timeout, self._config.bridge_poll_interval
        )
        result = await self._tracker.watch_bridge(
            route, leg.bridge_tx_handle, self._bridge, timeout=timeout
        )

        if result.state == WatchState.CONFIRMED:
            leg.status = BridgeLegStatus.BRIDGED
            await self._store.save_leg(leg)
            return leg

        leg.status = BridgeLegStatus.FAILED
        if result.state == WatchState.FAILED:
            leg.error = "Bridge transfer failed"
            await self._store.save_leg(leg)
            raise CrosschainError(
                "Bridge transfer failed",
                leg.from_chain.value,
                leg.to_chain.value,
                details={"bridge_tx_handle": leg.bridge_tx_handle},
            )

        error = BridgeTimeoutError(
            leg.from_chain.value,
            leg.to_chain.value,
            leg.bridge_tx_handle,
            self._config.bridge_timeout,
        )
        leg.error = error.message
        await self._store.save_leg(leg)
        raise error

    # -------------------------------------------------------------------------
    # Payment leg
    # -------------------------------------------------------------------------

    async def _pay(
        self,
        request: PaymentRequest,
        job_id: str,
        chain: Chain,
        identity: str,
        to_address: str,
        on_milestone: MilestoneHook | None,
    ) -> PaymentLeg:
        leg = PaymentLeg(
            job_id=job_id,
            owner_id=request.owner_id,
            from_address=identity,
            to_resolved=to_address,
            token_symbol=request.token_symbol,
            amount=request.amount,
            chain=chain,
        )
        await self._store.save_leg(leg)

        handle = None
        try:
            async with self._circuit(self._executor_circuit):
                handle = await self._executor.execute(
                    chain, identity, to_address, request.token_symbol, request.amount
                )
        except Exception as e:
            if handle is None:
                leg.status = PaymentLegStatus.FAILED
                leg.error = str(e)
                await self._store.save_leg(leg)
                raise
            self._logger.warning(f"[{job_id}] Payment submitted despite error: {e}")

        leg.tx_handle = handle
        leg.status = PaymentLegStatus.SUBMITTED
        await self._store.save_leg(leg)
        self._logger.info(f"[{job_id}] Payment submitted on {chain.value}: {handle}")
        return await self._await_payment(leg, on_milestone)

    async def _await_payment(
        self,
        leg: PaymentLeg,
        on_milestone: MilestoneHook | None,
    ) -> PaymentLeg:
        leg.status = PaymentLegStatus.CONFIRMING
        await self._store.save_leg(leg)

        async def milestone(count: int) -> None:
            leg.confirmations = max(leg.confirmations, count)
            await self._store.save_leg(leg)
            if on_milestone is not None:
                await on_milestone(leg, count)

        timeout = self._remaining(
            leg.created_at,
            self._config.confirmation_timeout,
            self._config.confirmation_poll_interval,
        )
        result = await self._tracker.watch(
            leg.chain.value,
            leg.tx_handle,
            required_confirmations=self._config.required_confirmations,
            milestones=self._config.confirmation_milestones,
            on_milestone=milestone,
            max_wait=timeout,
        )
        leg.confirmations = max(leg.confirmations, result.confirmations)

        if result.state == WatchState.CONFIRMED:
            leg.status = PaymentLegStatus.CONFIRMED
            await self._store.save_leg(leg)
            return leg

        leg.status = PaymentLegStatus.FAILED
        if result.state == WatchState.FAILED:
            leg.error = "Transaction reverted"
            await self._store.save_leg(leg)
            raise PaymentExecutionFailedError(
                "Transaction reverted", chain=leg.chain.value, tx_handle=leg.tx_handle
            )

        error = ConfirmationStaleError(
            leg.chain.value,
            leg.tx_handle,
            result.confirmations,
            self._config.confirmation_timeout,
        )
        leg.error = error.message
        await self._store.save_leg(leg)
        raise error

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _remaining(self, started_at: datetime, budget: float, poll_interval: float) -> float:
        """Time left of ``budget`` since ``started_at``, never less than one poll."""
        elapsed = (utcnow() - started_at).total_seconds()
        floor = min(poll_interval, budget)
        return max(budget - elapsed, floor)

    @staticmethod
    def _circuit(circuit: CircuitBreaker | None) -> Any:
        return circuit if circuit is not None else contextlib.nullcontext()


def _latest(legs: list[Any], kind: type, skip_status: Any) -> Any:
    matching = [leg for leg in legs if isinstance(leg, kind) and leg.status != skip_status]
    return matching[-1] if matching else None


def _route_of(leg: BridgeLeg) -> Route:
    """Rebuild enough of a Route to poll the provider for a persisted leg."""
    return Route(
        route_id=leg.route_id or "",
        from_chain=leg.from_chain,
        to_chain=leg.to_chain,
        token_symbol=leg.token_symbol,
        amount=leg.amount,
        fee=leg.fee or Decimal("0"),
        estimated_seconds=leg.estimated_seconds or 0,
    )
