"""
Confirmation Tracker.

Polls submitted transactions (and bridge deliveries) until they reach a
terminal state: CONFIRMED, FAILED or STALE. Every watch resolves within its
timeout, even when the chain reader hangs or keeps erroring.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from relaypay.core.exceptions import ValidationError
from relaypay.core.logging import get_logger
from relaypay.core.types import (
    BridgeStatus,
    ConfirmationStatus,
    Route,
    TransactionWatch,
    TxHandle,
    WatchResult,
    WatchState,
    utcnow,
)

if TYPE_CHECKING:
    from relaypay.protocols.base import BridgeProvider, ChainReader

MilestoneCallback = Callable[[int], "Awaitable[None] | None"]
StatusCheck = Callable[[], Awaitable[ConfirmationStatus]]


@dataclass
class _OpenWatch:
    record: TransactionWatch
    task: asyncio.Task | None = None
    listeners: list[MilestoneCallback] = field(default_factory=list)
    fired: set[int] = field(default_factory=set)


class ConfirmationTracker:
    """
    Resolves transaction handles to terminal states.

    Watches are keyed by ``(chain, tx_handle)``. A second ``watch`` on a key
    that is already open joins the running poll loop instead of starting a new
    one; both callers receive the same WatchResult.
    """

    def __init__(
        self,
        reader: ChainReader,
        poll_interval: float = 12.0,
        max_wait: float = 600.0,
        required_confirmations: int = 12,
        milestones: tuple[int, ...] = (1, 3, 12),
        bridge_poll_interval: float = 5.0,
        bridge_timeout: float = 300.0,
    ) -> None:
        self._reader = reader
        self._poll_interval = poll_interval
        self._max_wait = max_wait
        self._required = required_confirmations
        self._milestones = tuple(sorted(milestones))
        self._bridge_poll_interval = bridge_poll_interval
        self._bridge_timeout = bridge_timeout
        self._watches: dict[tuple[str, str], _OpenWatch] = {}
        self._logger = get_logger("tracker")

    def active_watches(self) -> list[TransactionWatch]:
        """Open watches, oldest first."""
        records = [w.record for w in self._watches.values()]
        return sorted(records, key=lambda r: r.first_seen_at)

    async def watch(
        self,
        chain: str,
        tx_handle: TxHandle,
        required_confirmations: int | None = None,
        milestones: tuple[int, ...] | None = None,
        on_milestone: MilestoneCallback | None = None,
        max_wait: float | None = None,
    ) -> WatchResult:
        """
        Poll the chain reader until the transaction is terminal.

        A watch on a transaction that is already being watched joins the open
        one: it shares that watch's milestones and deadline, and ``max_wait``
        is ignored.

        Args:
            chain: Chain the transaction was submitted on
            tx_handle: Handle returned by the executor
            required_confirmations: Depth needed for CONFIRMED
            milestones: Confirmation counts reported through ``on_milestone``
            on_milestone: Called once per milestone, in ascending order
            max_wait: Seconds before the watch goes STALE

        Returns:
            WatchResult with state CONFIRMED, FAILED or STALE

        Raises:
            ValidationError: Joining an open watch with a different
                ``required_confirmations``
        """
        chain = getattr(chain, "value", chain)
        reader = self._reader

        async def check_status() -> ConfirmationStatus:
            return await reader.confirmations(chain, tx_handle)

        return await self._open(
            key=(chain, tx_handle),
            check_status=check_status,
            required=required_confirmations or self._required,
            milestones=self._milestones if milestones is None else tuple(sorted(milestones)),
            on_milestone=on_milestone,
            poll_interval=self._poll_interval,
            max_wait=max_wait or self._max_wait,
        )

    async def watch_bridge(
        self,
        route: Route,
        bridge_tx_handle: TxHandle,
        provider: BridgeProvider,
        timeout: float | None = None,
    ) -> WatchResult:
        """
        Poll the bridge provider until the funds are delivered on the target chain.

        DELIVERED maps to CONFIRMED, FAILED to FAILED, and running out of time
        to STALE.
        """

        async def check_status() -> ConfirmationStatus:
            status = await provider.status(route, bridge_tx_handle)
            if status == BridgeStatus.DELIVERED:
                return ConfirmationStatus(count=1, succeeded=True)
            if status == BridgeStatus.FAILED:
                return ConfirmationStatus(count=0, succeeded=False)
            return ConfirmationStatus(count=0, succeeded=None)

        return await self._open(
            key=(f"bridge:{route.from_chain.value}", bridge_tx_handle),
            check_status=check_status,
            required=1,
            milestones=(),
            on_milestone=None,
            poll_interval=self._bridge_poll_interval,
            max_wait=timeout or self._bridge_timeout,
        )

    async def close(self) -> None:
        """Cancel every open watch."""
        tasks = [w.task for w in self._watches.values() if w.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._watches.clear()

    async def _open(
        self,
        key: tuple[str, str],
        check_status: StatusCheck,
        required: int,
        milestones: tuple[int, ...],
        on_milestone: MilestoneCallback | None,
        poll_interval: float,
        max_wait: float,
    ) -> WatchResult:
        existing = self._watches.get(key)
        if existing is not None and existing.task is not None:
            if required != existing.record.required_confirmations:
                raise ValidationError(
                    f"{key[0]}:{key[1]} is already watched for "
                    f"{existing.record.required_confirmations} confirmations, not {required}"
                )
            self._logger.debug(f"Joining open watch on {key[0]}:{key[1]}")
            if on_milestone is not None:
                existing.listeners.append(on_milestone)
            # Shielded so a cancelled joiner does not stop the shared poll
            return await asyncio.shield(existing.task)

        now = utcnow()
        open_watch = _OpenWatch(
            record=TransactionWatch(
                chain=key[0],
                tx_handle=key[1],
                required_confirmations=required,
                milestones=milestones,
                first_seen_at=now,
                timeout_at=now + timedelta(seconds=max_wait),
            )
        )
        if on_milestone is not None:
            open_watch.listeners.append(on_milestone)
        self._watches[key] = open_watch
        open_watch.task = asyncio.ensure_future(
            self._poll(open_watch, check_status, poll_interval, max_wait)
        )
        return await asyncio.shield(open_watch.task)

    async def _poll(
        self,
        open_watch: _OpenWatch,
        check_status: StatusCheck,
        poll_interval: float,
        max_wait: float,
    ) -> WatchResult:
        record = open_watch.record
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + max_wait

        def result(state: WatchState) -> WatchResult:
            return WatchResult(
                chain=record.chain,
                tx_handle=record.tx_handle,
                state=state,
                confirmations=record.confirmations_seen,
                elapsed_seconds=loop.time() - started,
            )

        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    self._logger.warning(
                        f"Watch on {record.chain}:{record.tx_handle} stale after {max_wait:g}s "
                        f"({record.confirmations_seen} confirmations)"
                    )
                    return result(WatchState.STALE)

                try:
                    status = await asyncio.wait_for(check_status(), timeout=remaining)
                except asyncio.TimeoutError:
                    continue
                except Exception as e:
                    self._logger.warning(
                        f"Confirmation poll failed for {record.chain}:{record.tx_handle}: {e}"
                    )
                    status = None

                if status is not None:
                    if status.succeeded is False:
                        self._logger.error(
                            f"Transaction {record.tx_handle} failed on {record.chain}"
                        )
                        return result(WatchState.FAILED)

                    if status.count > record.confirmations_seen:
                        record.confirmations_seen = status.count
                        await self._fire_milestones(open_watch)

                    if status.succeeded and status.count >= record.required_confirmations:
                        self._logger.info(
                            f"Transaction {record.tx_handle} confirmed on {record.chain} "
                            f"({status.count} confirmations)"
                        )
                        return result(WatchState.CONFIRMED)

                await asyncio.sleep(max(0.0, min(poll_interval, deadline - loop.time())))
        finally:
            self._watches.pop((record.chain, record.tx_handle), None)

    async def _fire_milestones(self, open_watch: _OpenWatch) -> None:
        record = open_watch.record
        for milestone in record.milestones:
            if milestone > record.confirmations_seen or milestone in open_watch.fired:
                continue
            open_watch.fired.add(milestone)
            for listener in list(open_watch.listeners):
                await _call_listener(listener, milestone, self._logger)


async def _call_listener(listener: MilestoneCallback, milestone: int, logger: Any) -> None:
    try:
        outcome = listener(milestone)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as e:
        logger.warning(f"Milestone callback failed at {milestone} confirmations: {e}")
