import asyncio
import itertools
from decimal import Decimal

import pytest

from relaypay.core.config import Config
from relaypay.core.exceptions import RecipientUnresolvedError
from relaypay.core.types import BridgeStatus, Chain, ConfirmationStatus, Route
from relaypay.notify.base import Notifier
from relaypay.protocols.base import (
    BalanceOracle,
    BridgeProvider,
    ChainReader,
    DirectoryService,
    PaymentExecutor,
)
from relaypay.storage.memory import InMemoryStorage
from relaypay.store.store import PaymentStore

ALICE = "0x" + "a" * 40
BOB = "0x" + "b" * 40


class FakeExecutor(PaymentExecutor):
    """Returns sequential handles; raises queued errors first."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.errors: list[Exception] = []
        self.delay = 0.0
        self._ids = itertools.count(1)

    async def execute(self, chain, from_identity, to_address, token, amount):
        self.calls.append((chain, from_identity, to_address, token, amount))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return f"0xpay{next(self._ids)}"


class FakeBridge(BridgeProvider):
    """
    Quotes a fixed route per chain pair; delivers after ``polls_to_deliver``
    status polls unless ``never_deliver`` or ``fail_delivery`` is set.
    """

    def __init__(self) -> None:
        self.routes: list[Route] | None = None
        self.quote_errors: list[Exception] = []
        self.execute_calls: list[Route] = []
        self.status_calls = 0
        self.polls_to_deliver = 1
        self.never_deliver = False
        self.fail_delivery = False

    async def quote(self, from_chain, to_chain, token, amount):
        if self.quote_errors:
            raise self.quote_errors.pop(0)
        return Route(
            route_id=f"route-{from_chain.value}-{to_chain.value}",
            from_chain=from_chain,
            to_chain=to_chain,
            token_symbol=token,
            amount=amount,
            fee=Decimal("0.50"),
            estimated_seconds=120,
        )

    async def quote_routes(self, from_chain, to_chain, token, amount):
        if self.routes is not None:
            return self.routes
        return await super().quote_routes(from_chain, to_chain, token, amount)

    async def execute(self, route, from_identity):
        self.execute_calls.append(route)
        return f"0xbridge{len(self.execute_calls)}"

    async def status(self, route, bridge_tx_handle):
        self.status_calls += 1
        if self.fail_delivery:
            return BridgeStatus.FAILED
        if self.never_deliver or self.status_calls < self.polls_to_deliver:
            return BridgeStatus.PENDING
        return BridgeStatus.DELIVERED


class FakeDirectory(DirectoryService):
    def __init__(self) -> None:
        self.users = {"alice": ALICE, "bob": BOB}

    async def resolve(self, recipient):
        try:
            return self.users[recipient]
        except KeyError:
            raise RecipientUnresolvedError(recipient) from None


class FakeBalances(BalanceOracle):
    def __init__(self) -> None:
        self.balances: dict[Chain, Decimal] = {}
        self.default = Decimal("1000")
        self.reads: list[Chain] = []

    async def balance_of(self, chain, identity, token):
        self.reads.append(chain)
        return self.balances.get(chain, self.default)


class FakeChainReader(ChainReader):
    """Each poll adds ``step`` confirmations to a handle."""

    def __init__(self) -> None:
        self.step = 1
        self.counts: dict[str, int] = {}
        self.reverted: set[str] = set()
        self.stuck: set[str] = set()
        self.errors: list[Exception] = []
        self.polls = 0

    async def confirmations(self, chain, tx_handle):
        self.polls += 1
        if self.errors:
            raise self.errors.pop(0)
        if tx_handle in self.reverted:
            return ConfirmationStatus(count=0, succeeded=False)
        if tx_handle in self.stuck:
            return ConfirmationStatus(count=0, succeeded=None)
        self.counts[tx_handle] = self.counts.get(tx_handle, 0) + self.step
        return ConfirmationStatus(count=self.counts[tx_handle], succeeded=True)


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.notifications = []
        self.fail = False

    async def notify(self, notification):
        self.notifications.append(notification)
        if self.fail:
            raise RuntimeError("notification channel down")

    def kinds(self, job_id=None):
        return [
            n.kind.value for n in self.notifications if job_id is None or n.job_id == job_id
        ]


@pytest.fixture
def fast_config():
    """Config with every interval shrunk so tests run in milliseconds."""
    return Config(
        home_chain=Chain.BASE,
        chain_priority=(Chain.BASE, Chain.POLYGON, Chain.ARBITRUM),
        scheduler_interval=0.05,
        worker_concurrency=1,
        max_attempts=3,
        backoff_base=0.01,
        stale_job_timeout=30.0,
        idle_poll_interval=0.01,
        bridge_timeout=0.3,
        bridge_poll_interval=0.01,
        confirmation_poll_interval=0.01,
        confirmation_timeout=1.0,
        required_confirmations=3,
        confirmation_milestones=(1, 3),
    )


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def store(storage):
    return PaymentStore(storage)


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def bridge():
    return FakeBridge()


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def balances():
    return FakeBalances()


@pytest.fixture
def chain_reader():
    return FakeChainReader()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def eventually():
    """Poll an async or sync predicate until it holds."""

    async def _eventually(predicate, timeout=3.0, interval=0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            outcome = predicate()
            if asyncio.iscoroutine(outcome):
                outcome = await outcome
            if outcome:
                return outcome
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(interval)

    return _eventually
