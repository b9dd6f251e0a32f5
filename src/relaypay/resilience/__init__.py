"""
Resilience Layer for RelayPay.

Provides Distributed Circuit Breakers and Retry mechanisms.
"""

from .circuit import CircuitBreaker, CircuitOpenError, CircuitState
from .retry import execute_with_retry, is_transient_error

__all__ = [
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "execute_with_retry",
    "is_transient_error",
]
