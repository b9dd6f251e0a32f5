"""Source chain and route selection."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import Decimal

from relaypay.core.exceptions import InsufficientFundsError
from relaypay.core.types import Chain, Route


def select_source_chain(
    balances: Mapping[Chain, Decimal],
    amount: Decimal,
    priority: Iterable[Chain],
) -> Chain:
    """
    Pick the first chain in ``priority`` whose balance covers ``amount``.

    Chains missing from ``balances`` count as empty.

    Raises:
        InsufficientFundsError: If no chain holds enough. The shortfall is
            measured against the largest balance seen.
    """
    best_chain: Chain | None = None
    best_balance = Decimal("0")
    for chain in priority:
        balance = balances.get(chain, Decimal("0"))
        if balance >= amount:
            return chain
        if best_chain is None or balance > best_balance:
            best_chain, best_balance = chain, balance

    raise InsufficientFundsError(
        f"Insufficient balance on all chains for {amount}",
        current_balance=best_balance,
        required_amount=amount,
        chain=best_chain.value if best_chain else None,
    )


def select_cheapest_route(routes: list[Route]) -> Route:
    """Lowest total cost wins; ties go to the faster route. ``routes`` must not be empty."""
    return min(routes, key=lambda r: (r.total_cost, r.estimated_seconds))
