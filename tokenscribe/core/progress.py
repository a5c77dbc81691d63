"""Simulated progress for remote calls that report none.

WHY: The transcription service answers with a single response after it
has finished, so there is no real progress to show. Users still expect
a moving bar, paced roughly to the modelled processing time.

HOW: ProgressDriver is a periodic asyncio task owned by exactly one
running item. Every tick it computes a linear pace toward the ceiling
over the estimated processing time and hands it to a callback. The
callback returns False once the item is gone, which ends the task.

RULES:
- Reported values never decrease and never exceed the ceiling (95)
- stop() cancels immediately; no callback runs after stop() returns
- A zero-second estimate paces over one second
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from tokenscribe.config import PROGRESS_CEILING, PROGRESS_TICK_S

logger = logging.getLogger(__name__)


def paced_progress(elapsed_s: float, estimated_s: float, ceiling: float = PROGRESS_CEILING) -> float:
    """Linear progress toward ``ceiling`` over ``estimated_s`` seconds."""
    span = max(float(estimated_s), 1.0)
    fraction = min(max(elapsed_s, 0.0) / span, 1.0)
    return round(ceiling * fraction, 2)


class ProgressDriver:
    """Cancellable periodic task that paces one item's progress."""

    def __init__(
        self,
        estimated_seconds: float,
        on_progress: Callable[[float], bool],
        tick_s: Optional[float] = None,
        ceiling: float = PROGRESS_CEILING,
    ) -> None:
        self._estimated = estimated_seconds
        self._on_progress = on_progress
        self._tick_s = tick_s if tick_s is not None else PROGRESS_TICK_S
        self._ceiling = ceiling
        self._task: Optional[asyncio.Task] = None
        self._stopped = False
        self.last_reported = 0.0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start ticking on the running event loop."""
        if self._task is not None:
            raise RuntimeError("ProgressDriver already started")
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        self._stopped = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        while not self._stopped:
            await asyncio.sleep(self._tick_s)
            if self._stopped:
                return
            value = paced_progress(loop.time() - started, self._estimated, self._ceiling)
            if value <= self.last_reported:
                continue
            self.last_reported = value
            try:
                keep_going = self._on_progress(value)
            except Exception:
                logger.exception("Progress callback failed; stopping driver")
                return
            if not keep_going:
                return
