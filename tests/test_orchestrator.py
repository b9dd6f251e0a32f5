"""Tests for BridgeAndPayOrchestrator: routing, leg persistence and resume."""

from decimal import Decimal

import pytest

from relaypay.core.exceptions import (
    BridgeTimeoutError,
    ConfirmationStaleError,
    CrosschainError,
    InsufficientFundsError,
    LegInDoubtError,
    NetworkError,
    PaymentExecutionFailedError,
    RecipientUnresolvedError,
    UnsupportedRouteError,
    is_recoverable,
)
from relaypay.core.types import (
    BridgeLeg,
    BridgeLegStatus,
    Chain,
    PaymentLeg,
    PaymentLegStatus,
    PaymentRequest,
    Route,
    RoutePolicy,
)
from relaypay.resilience.circuit import CircuitBreaker, CircuitOpenError
from relaypay.routing.orchestrator import (
    BridgeAndPayOrchestrator,
    is_address,
    normalize_username,
)
from relaypay.storage.memory import InMemoryStorage
from relaypay.tracker.tracker import ConfirmationTracker

BOB = "0x" + "b" * 40
JOB = "job-1"


def _tracker(config, chain_reader):
    return ConfirmationTracker(
        chain_reader,
        poll_interval=config.confirmation_poll_interval,
        max_wait=config.confirmation_timeout,
        required_confirmations=config.required_confirmations,
        milestones=config.confirmation_milestones,
        bridge_poll_interval=config.bridge_poll_interval,
        bridge_timeout=config.bridge_timeout,
    )


@pytest.fixture
def make_orchestrator(store, executor, bridge, directory, balances, chain_reader, fast_config):
    def _make(config=None, **kwargs):
        config = config or fast_config
        return BridgeAndPayOrchestrator(
            store=store,
            tracker=_tracker(config, chain_reader),
            executor=executor,
            bridge=bridge,
            directory=directory,
            balances=balances,
            config=config,
            **kwargs,
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


def _request(**kwargs):
    values = {
        "owner_id": "u1",
        "recipient": "@bob",
        "token_symbol": "USDC",
        "amount": Decimal("12"),
        "target_chain": Chain.BASE,
    }
    values.update(kwargs)
    return PaymentRequest(**values)


class TestRecipients:
    def test_is_address(self) -> None:
        assert is_address(BOB)
        assert not is_address("@bob")
        assert not is_address("0x1234")

    def test_normalize_username(self) -> None:
        assert normalize_username(" @Bob ") == "bob"

    @pytest.mark.asyncio
    async def test_address_bypasses_directory(self, orchestrator) -> None:
        address = "0x" + "c" * 40
        assert await orchestrator.resolve_recipient(address) == address

    @pytest.mark.asyncio
    async def test_username_is_resolved(self, orchestrator) -> None:
        assert await orchestrator.resolve_recipient("@Bob") == BOB

    @pytest.mark.asyncio
    async def test_unknown_username(self, orchestrator) -> None:
        with pytest.raises(RecipientUnresolvedError):
            await orchestrator.resolve_recipient("@carol")


class TestSameChain:
    @pytest.mark.asyncio
    async def test_pays_on_home_chain(self, orchestrator, executor, bridge, store) -> None:
        outcome = await orchestrator.route(_request(), JOB)

        assert not outcome.bridged
        assert outcome.source_chain == Chain.BASE
        assert outcome.payment_leg.status == PaymentLegStatus.CONFIRMED
        assert outcome.payment_leg.tx_handle == "0xpay1"
        assert executor.calls == [(Chain.BASE, "u1", BOB, "USDC", Decimal("12"))]
        assert bridge.execute_calls == []

        legs = await store.legs_for_job(JOB)
        assert len(legs) == 1
        assert legs[0].status == PaymentLegStatus.CONFIRMED
        assert legs[0].confirmations == 3

    @pytest.mark.asyncio
    async def test_no_target_means_source_chain(self, orchestrator, executor) -> None:
        outcome = await orchestrator.route(
            _request(target_chain=None, source_chain=Chain.POLYGON), JOB
        )

        assert outcome.target_chain == Chain.POLYGON
        assert not outcome.bridged
        assert executor.calls[0][0] == Chain.POLYGON

    @pytest.mark.asyncio
    async def test_milestones_reported(self, orchestrator) -> None:
        seen = []

        async def on_milestone(leg, count):
            seen.append((leg.chain, count))

        await orchestrator.route(_request(), JOB, on_milestone=on_milestone)

        assert seen == [(Chain.BASE, 1), (Chain.BASE, 3)]

    @pytest.mark.asyncio
    async def test_reverted_payment(self, orchestrator, chain_reader, store) -> None:
        chain_reader.reverted.add("0xpay1")

        with pytest.raises(PaymentExecutionFailedError):
            await orchestrator.route(_request(), JOB)

        (leg,) = await store.legs_for_job(JOB)
        assert leg.status == PaymentLegStatus.FAILED
        assert leg.error == "Transaction reverted"

    @pytest.mark.asyncio
    async def test_stale_confirmation(
        self, make_orchestrator, fast_config, chain_reader, store
    ) -> None:
        orchestrator = make_orchestrator(fast_config.with_updates(confirmation_timeout=0.1))
        chain_reader.stuck.add("0xpay1")

        with pytest.raises(ConfirmationStaleError) as exc_info:
            await orchestrator.route(_request(), JOB)

        assert is_recoverable(exc_info.value)
        (leg,) = await store.legs_for_job(JOB)
        assert leg.status == PaymentLegStatus.FAILED


class TestBridgeAndPay:
    @pytest.mark.asyncio
    async def test_bridges_then_pays(self, orchestrator, executor, bridge, store) -> None:
        outcome = await orchestrator.route(_request(source_chain=Chain.POLYGON), JOB)

        assert outcome.bridged
        assert outcome.source_chain == Chain.POLYGON
        assert outcome.target_chain == Chain.BASE
        assert outcome.bridge_leg.status == BridgeLegStatus.BRIDGED
        assert outcome.bridge_leg.bridge_tx_handle == "0xbridge1"
        assert outcome.bridge_leg.fee == Decimal("0.50")
        assert executor.calls[0][0] == Chain.BASE

        legs = await store.legs_for_job(JOB)
        assert [type(leg) for leg in legs] == [BridgeLeg, PaymentLeg]
        assert outcome.to_dict()["bridge_tx_handle"] == "0xbridge1"

    @pytest.mark.asyncio
    async def test_bridge_timeout_skips_payment(self, orchestrator, executor, bridge, store):
        bridge.never_deliver = True

        with pytest.raises(BridgeTimeoutError) as exc_info:
            await orchestrator.route(_request(source_chain=Chain.POLYGON), JOB)

        assert exc_info.value.bridge_tx_handle == "0xbridge1"
        assert is_recoverable(exc_info.value)
        assert executor.calls == []
        (leg,) = await store.legs_for_job(JOB)
        assert leg.status == BridgeLegStatus.FAILED
        assert leg.bridge_tx_handle == "0xbridge1"

    @pytest.mark.asyncio
    async def test_bridge_delivery_failure(self, orchestrator, executor, bridge):
        bridge.fail_delivery = True

        with pytest.raises(CrosschainError):
            await orchestrator.route(_request(source_chain=Chain.POLYGON), JOB)

        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_non_evm_route_rejected(self, orchestrator, executor, bridge):
        with pytest.raises(UnsupportedRouteError):
            await orchestrator.route(_request(source_chain=Chain.SOLANA), JOB)

        assert bridge.execute_calls == []
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_source_balance_checked_before_bridging(self, orchestrator, balances, bridge):
        balances.balances[Chain.POLYGON] = Decimal("3")

        with pytest.raises(InsufficientFundsError) as exc_info:
            await orchestrator.route(_request(source_chain=Chain.POLYGON), JOB)

        assert exc_info.value.chain == "POLYGON"
        assert bridge.execute_calls == []

    @pytest.mark.asyncio
    async def test_cheapest_route(self, orchestrator, bridge):
        def route(route_id, fee, seconds):
            return Route(
                route_id=route_id,
                from_chain=Chain.POLYGON,
                to_chain=Chain.BASE,
                token_symbol="USDC",
                amount=Decimal("12"),
                fee=Decimal(fee),
                estimated_seconds=seconds,
            )

        bridge.routes = [route("pricey", "1.10", 60), route("cheap", "0.20", 600)]

        outcome = await orchestrator.route(
            _request(source_chain=Chain.POLYGON, policy=RoutePolicy(cheapest_route=True)), JOB
        )

        assert outcome.bridge_leg.route_id == "cheap"
        assert bridge.execute_calls[0].route_id == "cheap"


class TestAnyChain:
    @pytest.mark.asyncio
    async def test_picks_first_funded_chain(self, orchestrator, balances, executor):
        balances.balances = {
            Chain.BASE: Decimal("5"),
            Chain.POLYGON: Decimal("50"),
            Chain.ARBITRUM: Decimal("100"),
        }

        outcome = await orchestrator.route(
            _request(policy=RoutePolicy(any_chain_with_balance=True)), JOB
        )

        assert outcome.source_chain == Chain.POLYGON
        assert outcome.bridged
        # Arbitrum is never read once Polygon qualifies
        assert Chain.ARBITRUM not in balances.reads

    @pytest.mark.asyncio
    async def test_no_funded_chain(self, orchestrator, balances, executor, bridge):
        balances.default = Decimal("1")

        with pytest.raises(InsufficientFundsError):
            await orchestrator.route(
                _request(policy=RoutePolicy(any_chain_with_balance=True)), JOB
            )

        assert executor.calls == []
        assert bridge.execute_calls == []


class TestResume:
    @pytest.mark.asyncio
    async def test_retry_after_payment_failure_does_not_rebridge(
        self, orchestrator, executor, bridge, store
    ):
        executor.errors = [NetworkError("rpc timeout", status_code=504)]
        request = _request(source_chain=Chain.POLYGON)

        with pytest.raises(NetworkError):
            await orchestrator.route(request, JOB)

        outcome = await orchestrator.route(request, JOB)

        assert len(bridge.execute_calls) == 1
        assert len(executor.calls) == 2
        assert outcome.payment_leg.status == PaymentLegStatus.CONFIRMED
        assert outcome.bridge_leg.bridge_tx_handle == "0xbridge1"

        statuses = [leg.status for leg in await store.legs_for_job(JOB)]
        assert statuses == [
            BridgeLegStatus.BRIDGED,
            PaymentLegStatus.FAILED,
            PaymentLegStatus.CONFIRMED,
        ]

    @pytest.mark.asyncio
    async def test_submitted_payment_resumes_watch(self, orchestrator, executor, store):
        leg = PaymentLeg(
            job_id=JOB,
            owner_id="u1",
            from_address="u1",
            to_resolved=BOB,
            token_symbol="USDC",
            amount=Decimal("12"),
            chain=Chain.BASE,
            tx_handle="0xearlier",
            status=PaymentLegStatus.SUBMITTED,
        )
        await store.save_leg(leg)

        outcome = await orchestrator.route(_request(), JOB)

        assert executor.calls == []
        assert outcome.payment_leg.id == leg.id
        assert outcome.payment_leg.status == PaymentLegStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_confirmed_payment_returns_immediately(self, orchestrator, executor, store):
        leg = PaymentLeg(
            job_id=JOB,
            owner_id="u1",
            from_address="u1",
            to_resolved=BOB,
            token_symbol="USDC",
            amount=Decimal("12"),
            chain=Chain.BASE,
            tx_handle="0xdone",
            status=PaymentLegStatus.CONFIRMED,
        )
        await store.save_leg(leg)

        outcome = await orchestrator.route(_request(), JOB)

        assert outcome.payment_leg.tx_handle == "0xdone"
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_submitted_bridge_resumes_then_pays(self, orchestrator, executor, bridge, store):
        leg = BridgeLeg(
            job_id=JOB,
            owner_id="u1",
            from_chain=Chain.POLYGON,
            to_chain=Chain.BASE,
            token_symbol="USDC",
            amount=Decimal("12"),
            route_id="route-POLYGON-BASE",
            bridge_tx_handle="0xbridge-earlier",
            status=BridgeLegStatus.SUBMITTED,
        )
        await store.save_leg(leg)

        outcome = await orchestrator.route(_request(source_chain=Chain.POLYGON), JOB)

        assert bridge.execute_calls == []
        assert bridge.status_calls >= 1
        assert outcome.bridge_leg.status == BridgeLegStatus.BRIDGED
        assert executor.calls[0][0] == Chain.BASE

    @pytest.mark.asyncio
    async def test_prepared_payment_leg_is_in_doubt(self, orchestrator, executor, store):
        leg = PaymentLeg(
            job_id=JOB,
            owner_id="u1",
            from_address="u1",
            to_resolved=BOB,
            token_symbol="USDC",
            amount=Decimal("12"),
            chain=Chain.BASE,
        )
        await store.save_leg(leg)

        with pytest.raises(LegInDoubtError) as exc_info:
            await orchestrator.route(_request(), JOB)

        assert exc_info.value.leg_id == leg.id
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_quoted_bridge_leg_is_in_doubt(self, orchestrator, bridge, store):
        leg = BridgeLeg(
            job_id=JOB,
            owner_id="u1",
            from_chain=Chain.POLYGON,
            to_chain=Chain.BASE,
            token_symbol="USDC",
            amount=Decimal("12"),
        )
        await store.save_leg(leg)

        with pytest.raises(LegInDoubtError):
            await orchestrator.route(_request(source_chain=Chain.POLYGON), JOB)

        assert bridge.execute_calls == []


class TestCircuits:
    @pytest.mark.asyncio
    async def test_open_executor_circuit_blocks_submission(
        self, make_orchestrator, storage, executor, store
    ):
        circuit = CircuitBreaker("executor", storage)
        await circuit.trip()
        orchestrator = make_orchestrator(executor_circuit=circuit)

        with pytest.raises(CircuitOpenError):
            await orchestrator.route(_request(), JOB)

        assert executor.calls == []
        (leg,) = await store.legs_for_job(JOB)
        assert leg.status == PaymentLegStatus.FAILED

    @pytest.mark.asyncio
    async def test_executor_rejections_do_not_trip(self, make_orchestrator, storage, executor):
        circuit = CircuitBreaker("executor", storage, failure_threshold=1)
        orchestrator = make_orchestrator(executor_circuit=circuit)
        executor.errors = [PaymentExecutionFailedError("recipient rejected")]

        with pytest.raises(PaymentExecutionFailedError):
            await orchestrator.route(_request(), JOB)

        assert await circuit.is_available()


class UnreliableCircuitStorage(InMemoryStorage):
    """Breaker storage whose counter updates fail until ``failures`` runs out."""

    def __init__(self, failures: int = 1) -> None:
        super().__init__()
        self.failures = failures

    async def atomic_add(self, collection, key, amount):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("redis connection reset")
        return await super().atomic_add(collection, key, amount)


class TestCircuitBookkeepingFailure:
    @pytest.mark.asyncio
    async def test_payment_is_not_resubmitted(self, make_orchestrator, executor, store):
        circuit = CircuitBreaker("executor", UnreliableCircuitStorage())
        orchestrator = make_orchestrator(executor_circuit=circuit)

        outcome = await orchestrator.route(_request(), JOB)
        assert outcome.payment_leg.tx_handle == "0xpay1"

        # A queue retry of the same job must reuse the recorded leg
        again = await orchestrator.route(_request(), JOB)
        assert again.payment_leg.tx_handle == "0xpay1"
        assert len(executor.calls) == 1
        (leg,) = await store.legs_for_job(JOB)
        assert leg.status == PaymentLegStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_bridge_handle_is_kept(self, make_orchestrator, bridge, executor, store):
        circuit = CircuitBreaker("bridge", UnreliableCircuitStorage())
        orchestrator = make_orchestrator(bridge_circuit=circuit)

        outcome = await orchestrator.route(_request(source_chain=Chain.POLYGON), JOB)

        assert outcome.bridged
        assert len(bridge.execute_calls) == 1
        assert len(executor.calls) == 1
        bridge_legs = [leg for leg in await store.legs_for_job(JOB) if isinstance(leg, BridgeLeg)]
        assert [leg.bridge_tx_handle for leg in bridge_legs] == ["0xbridge1"]
        assert bridge_legs[0].status == BridgeLegStatus.BRIDGED
