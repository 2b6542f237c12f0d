from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from ..domain import lifecycle
from ..domain.billing_clock import GRACE_WINDOW, utcnow
from ..domain.errors import ConflictError, NotFoundError
from ..domain.ports.persistence import SubscriptionRepository
from .notification_dispatcher import NotificationDispatcher
from .subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepResult:
    expired_count: int = 0
    expiration_notified_count: int = 0
    notified_count: int = 0
    completed: bool = True


class ReconciliationSweep:
    """
    Expires overdue subscriptions and warns subscribers whose access ends soon.

    Both passes walk their candidates in id order, one page at a time, and stop
    at the deadline. Whatever is left still matches the selection next run.
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        subscriptions: SubscriptionService,
        notifier: NotificationDispatcher,
        *,
        page_size: int = 100,
        timeout_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._repository = repository
        self._subscriptions = subscriptions
        self._notifier = notifier
        self._page_size = max(page_size, 1)
        self._timeout = timeout_seconds
        self._clock = clock
        self._monotonic = monotonic
        self._logger = log or logger

    def run(self, now: Optional[datetime] = None) -> SweepResult:
        moment = now or self._clock()
        result = SweepResult()
        expired_done = self._expire_pass(moment, result)
        warned_done = self._warning_pass(moment, result)
        result.completed = expired_done and warned_done
        self._logger.info(
            "Sweep finished: expired=%s expiration_notices=%s warnings=%s completed=%s",
            result.expired_count,
            result.expiration_notified_count,
            result.notified_count,
            result.completed,
        )
        return result

    def _expire_pass(self, now: datetime, result: SweepResult) -> bool:
        deadline = self._monotonic() + self._timeout
        after_id = 0
        while True:
            batch = self._repository.list_overdue_active(now, after_id, self._page_size)
            if not batch:
                return True
            for candidate in batch:
                if self._monotonic() > deadline:
                    self._logger.warning("Expire pass hit its deadline after subscription %s", after_id)
                    return False
                after_id = candidate.id
                try:
                    expired = self._subscriptions.expire(candidate.id, now=now)
                except (ConflictError, NotFoundError) as exc:
                    self._logger.info("Skipping expiry of subscription %s: %s", candidate.id, exc)
                    continue
                result.expired_count += 1
                if self._notifier.expired(expired):
                    result.expiration_notified_count += 1

    def _warning_pass(self, now: datetime, result: SweepResult) -> bool:
        deadline = self._monotonic() + self._timeout
        after_id = 0
        while True:
            batch = self._repository.list_active_ending_between(
                now, now + GRACE_WINDOW, after_id, self._page_size
            )
            if not batch:
                return True
            for candidate in batch:
                if self._monotonic() > deadline:
                    self._logger.warning("Expiring-soon pass hit its deadline after subscription %s", after_id)
                    return False
                after_id = candidate.id
                if not lifecycle.needs_expiry_warning(candidate, now):
                    continue
                if not self._notifier.expiring_soon(candidate):
                    continue
                result.notified_count += 1
                try:
                    self._subscriptions.mark_expiry_warned(candidate.id, now=now)
                except (ConflictError, NotFoundError) as exc:
                    self._logger.info("Could not stamp warning on subscription %s: %s", candidate.id, exc)


class SweepScheduler:
    """Background task running the reconciliation sweep on a fixed interval."""

    def __init__(
        self,
        sweep: ReconciliationSweep,
        *,
        interval_seconds: float,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._sweep = sweep
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task[None]] = None
        self._shutdown = asyncio.Event()
        self._lock = asyncio.Lock()
        self._logger = log or logger

    @property
    def running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        if self._task:
            return
        if self._interval <= 0:
            self._logger.info("Reconciliation sweep scheduling disabled.")
            return
        self._logger.info("Starting reconciliation sweep every %s seconds.", self._interval)
        self._shutdown.clear()
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._loop(), name="reconciliation-sweep")

    async def stop(self) -> None:
        if not self._task:
            return
        self._logger.info("Stopping reconciliation sweep.")
        self._shutdown.set()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def run_once(self) -> SweepResult:
        async with self._lock:
            return await asyncio.to_thread(self._sweep.run)

    async def _loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                await self.run_once()
            except Exception:  # pragma: no cover
                self._logger.exception("Reconciliation sweep failed.")
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
