"""Periodic background jobs sharing one stop event."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Awaitable, Callable

from .ledger import LedgerWriteError


class PeriodicTask:
    """Runs an async action every ``interval`` seconds until stopped.

    Each job is independent: a failing run is logged and the schedule
    continues. The one exception is ``LedgerWriteError``, which is raised
    to the owner of the task.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        action: Callable[[], Awaitable[object]],
        logger: logging.Logger,
        *,
        run_immediately: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.interval = interval
        self.action = action
        self.logger = logger
        self.run_immediately = run_immediately
        self._clock = clock
        self.runs = 0
        self.last_run: float | None = None
        self.last_error: str | None = None

    async def run_once(self) -> bool:
        """Run the action a single time.

        Returns:
            True if the action completed without error.

        """
        self.runs += 1
        self.last_run = self._clock()
        try:
            await self.action()
        except (asyncio.CancelledError, LedgerWriteError):
            raise
        except Exception as e:
            self.last_error = str(e)
            self.logger.exception("Periodic task %s failed", self.name)
            return False
        self.last_error = None
        return True

    async def run(self, stop: asyncio.Event) -> None:
        """Loop until ``stop`` is set.

        Args:
            stop: Shared shutdown signal.

        """
        self.logger.debug("Periodic task %s started (every %ss)", self.name, self.interval)
        if self.run_immediately and not stop.is_set():
            await self.run_once()

        while not stop.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            if stop.is_set():
                break
            await self.run_once()

        self.logger.debug("Periodic task %s stopped", self.name)
