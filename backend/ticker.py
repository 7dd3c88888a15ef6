# backend/ticker.py

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class ElapsedTicker:
    """
    Timer cooperative: cứ `interval` giây gọi `on_tick()` một lần.
    stop() huỷ task ngay, không để timer bị rò rỉ.
    """

    def __init__(
        self,
        on_tick: Callable[[], None],
        interval: float,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._on_tick = on_tick
        self._interval = interval
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            await self._sleep(self._interval)
            self._on_tick()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
