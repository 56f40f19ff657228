from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict

Patch = Dict[str, Dict[str, Any]]
PollFn = Callable[[], Awaitable[Patch]]

logger = logging.getLogger(__name__)


@dataclass
class PollTask:
    name: str
    fn: PollFn


class Poller:
    """Fixed-interval refresh of a view's live elements.

    Each task returns a patch keyed by the ``data-bind`` name of the element
    it updates. Overlapping ticks are not coalesced and there is no backoff.
    """

    def __init__(self, interval: float = 5) -> None:
        self.interval = interval
        self._tasks: list[PollTask] = []

    def add(self, name: str, fn: PollFn) -> None:
        self._tasks.append(PollTask(name=name, fn=fn))

    @property
    def tasks(self) -> list[PollTask]:
        return list(self._tasks)

    async def _run_task(self, task: PollTask) -> Patch:
        try:
            return await task.fn() or {}
        except Exception:
            logger.exception("Poll task %s failed", task.name)
            return {}

    async def tick(self) -> Patch:
        patch: Patch = {}
        for part in await asyncio.gather(*(self._run_task(task) for task in self._tasks)):
            patch.update(part)
        return patch

    async def run(
        self,
        on_patch: Callable[[Patch], None],
        stop: asyncio.Event,
        max_ticks: int | None = None,
    ) -> int:
        ticks = 0
        while not stop.is_set():
            on_patch(await self.tick())
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        return ticks
