import asyncio
import logging
from typing import Awaitable, Callable, Optional

log = logging.getLogger("localflags")


class Poller:
    """
    Runs `execute` forever on the running event loop, sleeping `interval()`
    seconds before each run. The interval is read again every cycle.
    """

    def __init__(
        self,
        interval: Callable[[], float],
        execute: Callable[[], Awaitable[None]],
    ):
        self.interval = interval
        self.execute = execute
        self._task: Optional[asyncio.Task] = None

    def start(self):
        if self.is_alive():
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def is_alive(self) -> bool:
        return self._task is not None and not self._task.done()

    async def stop(self):
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval())
            try:
                await self.execute()
            except Exception:
                log.exception("[FEATURE FLAGS] Error while polling for flag definitions")
