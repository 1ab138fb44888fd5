from __future__ import annotations

import asyncio
import logging
from typing import Callable

from app.services.generation.events import EventHub
from app.services.generation.ui import mixed_pool, pick_avoid
from app.services.generation.vars import GenerationVars

logger = logging.getLogger(__name__)

MIN_CHATTER_INTERVAL_MS = 800


class Chatter:
    """Publishes cosmetic progress lines while one long step runs.

    Use it as ``async with Chatter(...):`` around the step. Each tick is fully
    synchronous, so once ``stop()`` returns nothing else gets published.
    """

    def __init__(
        self,
        *,
        job_id: str,
        stage: str,
        hub: EventHub,
        read_vars: Callable[[], GenerationVars],
        write_vars: Callable[[GenerationVars], None],
        interval_ms: int = 2600,
    ) -> None:
        self.job_id = job_id
        self.stage = stage
        self.hub = hub
        self._read_vars = read_vars
        self._write_vars = write_vars
        self.interval_s = max(MIN_CHATTER_INTERVAL_MS, int(interval_ms or 0)) / 1000.0
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def tick(self) -> None:
        try:
            current = self._read_vars()
            line = pick_avoid(mixed_pool(self.stage), current.last_line().text)
            if not line:
                return
            nxt = current.push_line(line)
            self._write_vars(nxt)
            self.hub.publish_line(self.job_id, nxt.last_line())
        except Exception as e:
            logger.warning("chatter.tick_failed job_id=%s err=%s", self.job_id, e)

    async def _loop(self) -> None:
        while True:
            self.tick()
            await asyncio.sleep(self.interval_s)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"chatter:{self.job_id}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def __aenter__(self) -> "Chatter":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
