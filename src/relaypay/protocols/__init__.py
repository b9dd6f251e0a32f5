"""Interfaces for the external collaborators the engine drives."""

from relaypay.protocols.base import (
    BalanceOracle,
    BridgeProvider,
    ChainReader,
    DirectoryService,
    PaymentExecutor,
)

__all__ = [
    "BalanceOracle",
    "BridgeProvider",
    "ChainReader",
    "DirectoryService",
    "PaymentExecutor",
]
