from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
import logging

from connector_plane.domain.clock import Clock, utc_now

TickHandler = Callable[[datetime], Awaitable[int]]
logger = logging.getLogger("runtime")


@dataclass
class WorkerLoop:
    """One control-loop stage: a tick handler plus the clock it runs against.

    `run_once` reports whether the tick touched anything so the runner can
    pick the poll or idle backoff.
    """

    role: str
    stage: str
    tick: TickHandler
    clock: Clock = field(default=utc_now)
    processed_total: int = 0

    async def run_once(self) -> bool:
        processed = await self.tick(self.clock())
        if processed > 0:
            self.processed_total += processed
            logger.info(
                "worker stage processed items",
                extra={"role": self.role, "stage": self.stage, "processed": processed},
            )
        return processed > 0
