"""Persistence for scheduled payments, jobs and legs."""

from relaypay.store.store import TRANSITIONS, PaymentStore, can_transition

__all__ = ["PaymentStore", "TRANSITIONS", "can_transition"]
