"""
Collaborator interfaces.

The engine never talks to a chain, wallet or bridge directly. Concrete
executors, bridge providers, directories, balance oracles and chain readers
implement these ABCs and are handed to the PaymentEngine.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal

from relaypay.core.types import (
    BridgeStatus,
    Chain,
    ConfirmationStatus,
    Route,
    TxHandle,
)


class PaymentExecutor(ABC):
    """
    Signs and broadcasts a token transfer on one chain.

    Implementations raise:
    - InsufficientBalanceError: sender balance too low at submission time
    - RecipientInvalidError: destination address refused
    - PaymentExecutionFailedError: any other rejection
    - NetworkError: transport failure (retried by the queue)
    """

    @abstractmethod
    async def execute(
        self,
        chain: Chain,
        from_identity: str,
        to_address: str,
        token: str,
        amount: Decimal,
    ) -> TxHandle:
        """Submit the transfer and return its transaction handle."""
        ...


class BridgeProvider(ABC):
    """
    Moves tokens between two chains.

    Implementations raise UnsupportedRouteError or NoLiquidityError from
    ``quote`` when no route can be offered.
    """

    @abstractmethod
    async def quote(
        self,
        from_chain: Chain,
        to_chain: Chain,
        token: str,
        amount: Decimal,
    ) -> Route:
        """Return the provider's recommended route."""
        ...

    async def quote_routes(
        self,
        from_chain: Chain,
        to_chain: Chain,
        token: str,
        amount: Decimal,
    ) -> list[Route]:
        """
        Return every route the provider offers.

        Providers that aggregate several bridges override this; the default is
        the single recommended route.
        """
        return [await self.quote(from_chain, to_chain, token, amount)]

    @abstractmethod
    async def execute(self, route: Route, from_identity: str) -> TxHandle:
        """Submit the bridge transfer on the source chain."""
        ...

    @abstractmethod
    async def status(self, route: Route, bridge_tx_handle: TxHandle) -> BridgeStatus:
        """Report whether the bridged funds have been delivered on the target chain."""
        ...


class DirectoryService(ABC):
    """Maps usernames to addresses."""

    @abstractmethod
    async def resolve(self, recipient: str) -> str:
        """
        Resolve a username to an address.

        Raises:
            RecipientUnresolvedError: If the username is unknown
        """
        ...

    async def wallet_of(self, owner_id: str) -> str:
        """Sending identity for an owner. Defaults to the owner ID itself."""
        return owner_id


class BalanceOracle(ABC):
    """Reads token balances."""

    @abstractmethod
    async def balance_of(self, chain: Chain, identity: str, token: str) -> Decimal:
        ...


class ChainReader(ABC):
    """Reads confirmation depth of submitted transactions."""

    @abstractmethod
    async def confirmations(self, chain: str, tx_handle: TxHandle) -> ConfirmationStatus:
        ...
