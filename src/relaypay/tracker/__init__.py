"""Confirmation tracking for submitted transactions and bridge deliveries."""

from relaypay.tracker.tracker import ConfirmationTracker

__all__ = ["ConfirmationTracker"]
