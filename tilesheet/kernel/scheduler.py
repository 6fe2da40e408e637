"""
Tilesheet Kernel — Render Scheduler

Coalesces re-render requests against a mutable store.

    run() while IDLE      → start a pass
    run() while RUNNING   → mark pending, wait for the follow-up pass
    N × run() in flight   → exactly one follow-up pass serves all N

A burst of calls issued during one in-flight pass therefore costs at most two
runner executions, and the second one sees the latest state. A failing pass
raises in every caller it was serving; the scheduler itself never retries.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class RenderState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    RUNNING_WITH_PENDING = "running_with_pending"


class RenderScheduler:
    def __init__(self, runner: Callable[[], Awaitable[None]]) -> None:
        self._runner = runner
        self._driver: asyncio.Task | None = None
        self._serving: list[asyncio.Future] = []
        self._waiting: list[asyncio.Future] = []
        self._in_flight = False
        self.passes = 0

    @property
    def state(self) -> RenderState:
        if self._driver is None:
            return RenderState.IDLE
        if self._in_flight and self._waiting:
            return RenderState.RUNNING_WITH_PENDING
        return RenderState.RUNNING

    @property
    def is_running(self) -> bool:
        return self._driver is not None

    async def run(self) -> None:
        """Resolve once a pass that began after this call has completed."""
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._waiting.append(waiter)
        if self._driver is None:
            self._driver = loop.create_task(self._drive())
        await waiter

    async def idle(self) -> None:
        """Wait until nothing is in flight or pending."""
        while self._driver is not None:
            await asyncio.wait({self._driver})

    async def _drive(self) -> None:
        try:
            while self._waiting:
                self._serving, self._waiting = self._waiting, []
                self._in_flight = True
                self.passes += 1
                try:
                    await self._runner()
                except Exception as e:
                    logger.debug("scheduler: pass %s failed: %s", self.passes, e)
                    for waiter in self._serving:
                        if not waiter.done():
                            waiter.set_exception(e)
                else:
                    for waiter in self._serving:
                        if not waiter.done():
                            waiter.set_result(None)
                finally:
                    self._in_flight = False
                    self._serving = []
        finally:
            for waiter in [*self._serving, *self._waiting]:
                if not waiter.done():
                    waiter.cancel()
            self._serving, self._waiting = [], []
            self._driver = None
