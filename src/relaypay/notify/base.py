"""
Notification delivery.

The engine reports confirmation milestones and job outcomes to the payment
owner through a Notifier. Delivery problems are logged by the caller and never
change a job's outcome.
"""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from relaypay.core.logging import get_logger
from relaypay.core.types import Notification, NotificationKind


class Notifier(ABC):
    """Delivers notifications to payment owners."""

    @abstractmethod
    async def notify(self, notification: Notification) -> None:
        ...

    async def close(self) -> None:
        return None


class LoggingNotifier(Notifier):
    """Writes notifications to the relaypay logger. The default notifier."""

    def __init__(self) -> None:
        self._logger = get_logger("notify")

    async def notify(self, notification: Notification) -> None:
        message = (
            f"[{notification.owner_id}] {notification.kind.value} "
            f"job={notification.job_id} {notification.detail}"
        )
        if notification.kind == NotificationKind.FAILED:
            self._logger.warning(message)
        else:
            self._logger.info(message)


class CallbackNotifier(Notifier):
    """
    Hands each notification to a user-supplied callable.

    Example:
        >>> async def on_event(n: Notification) -> None:
        ...     await bot.send_message(n.owner_id, n.detail)
        >>> engine = PaymentEngine(..., notifier=CallbackNotifier(on_event))
    """

    def __init__(self, callback: Callable[[Notification], Awaitable[None] | None]) -> None:
        self._callback = callback

    async def notify(self, notification: Notification) -> None:
        outcome = self._callback(notification)
        if inspect.isawaitable(outcome):
            await outcome


class CompositeNotifier(Notifier):
    """Fans out to several notifiers; one failing does not stop the others."""

    def __init__(self, *notifiers: Notifier) -> None:
        self._notifiers = list(notifiers)
        self._logger = get_logger("notify")

    async def notify(self, notification: Notification) -> None:
        for notifier in self._notifiers:
            try:
                await notifier.notify(notification)
            except Exception as e:
                self._logger.error(f"{type(notifier).__name__} failed: {e}")

    async def close(self) -> None:
        for notifier in self._notifiers:
            await notifier.close()
