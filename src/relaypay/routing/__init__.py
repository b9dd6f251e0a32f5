"""Source selection and bridge-and-pay orchestration."""

from relaypay.routing.orchestrator import BridgeAndPayOrchestrator, is_address, normalize_username
from relaypay.routing.selection import select_cheapest_route, select_source_chain

__all__ = [
    "BridgeAndPayOrchestrator",
    "is_address",
    "normalize_username",
    "select_cheapest_route",
    "select_source_chain",
]
