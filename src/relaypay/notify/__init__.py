"""Notification delivery for milestones and job outcomes."""

from relaypay.notify.base import CallbackNotifier, CompositeNotifier, LoggingNotifier, Notifier
from relaypay.notify.webhook import SIGNATURE_HEADER, WebhookNotifier, verify_signature

__all__ = [
    "CallbackNotifier",
    "CompositeNotifier",
    "LoggingNotifier",
    "Notifier",
    "SIGNATURE_HEADER",
    "WebhookNotifier",
    "verify_signature",
]
