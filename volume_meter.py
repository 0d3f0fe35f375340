"""Free-running volume sampler for lip-sync and level meters.

Reads the analysis tap once per display frame while the agent is speaking
and publishes a 0..1 level. It never writes session state.
"""

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)

SAMPLE_INTERVAL = 1 / 60


class VolumeMeter:
    """Publishes ``tap.volume()`` while ``is_speaking()`` holds, else 0."""

    def __init__(self, tap, is_speaking: Callable[[], bool],
                 on_volume: Callable[[float], None], interval: float = SAMPLE_INTERVAL):
        self._tap = tap
        self._is_speaking = is_speaking
        self._on_volume = on_volume
        self._interval = interval
        self._task: asyncio.Task | None = None
        self.level = 0.0

    def sample(self) -> float:
        level = self._tap.volume() if self._is_speaking() else 0.0
        if level != self.level or level:
            self.level = level
            try:
                self._on_volume(level)
            except Exception as e:
                logger.error("Volume callback error: %s", e)
        return level

    async def _run(self):
        while True:
            self.sample()
            await asyncio.sleep(self._interval)

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run(), name="volume-meter")

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self.level:
            self.level = 0.0
            self._on_volume(0.0)
