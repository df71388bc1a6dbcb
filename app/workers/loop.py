from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging

SweepHandler = Callable[[], Awaitable[int]]
logger = logging.getLogger("runtime")


@dataclass
class WorkerLoop:
    """One periodic sweep; a tick did work when the sweep touched at least one item."""

    role: str
    sweep: str
    run_sweep: SweepHandler

    async def run_once(self) -> bool:
        handled = await self.run_sweep()
        if handled:
            logger.info(
                "worker sweep handled items",
                extra={"role": self.role, "component": self.sweep, "count": handled},
            )
        return handled > 0
