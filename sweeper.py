import asyncio
from typing import Callable, Optional

from logging_config import get_logger

logger = get_logger(__name__)


class PeriodicSweep:
    """Runs a synchronous sweep callable every interval on the running event loop.

    start() schedules the task; stop() cancels it and waits for it to finish, so
    shutdown and tests can end it deterministically.
    """

    def __init__(self, name: str, interval_seconds: float, sweep: Callable[[], object]):
        self.name = name
        self.interval_seconds = interval_seconds
        self._sweep = sweep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Started {self.name} sweep every {self.interval_seconds}s")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Stopped {self.name} sweep")

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                self._sweep()
            except Exception as e:
                logger.error(f"Error in {self.name} sweep: {e}", exc_info=True)
