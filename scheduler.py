import asyncio
import logging
from typing import Awaitable, Callable, Optional

POLL_PERIOD = 60 * 2  # alle 2 min
INITIAL_DELAY = 2


class PollScheduler:
    """
    One delayed fetch shortly after start, then one fetch per period.

    The periodic loop stops for good the first time it finds the routing key
    empty. A trigger that fires while a cycle is still running is skipped.
    """

    def __init__(self, cycle: Callable[[], Awaitable[None]],
                 routing_key: Callable[[], str],
                 period: float = POLL_PERIOD,
                 initial_delay: float = INITIAL_DELAY,
                 sleep=asyncio.sleep,
                 logger: Optional[logging.Logger] = None):
        self.cycle = cycle
        self.routing_key = routing_key
        self.period = period
        self.initial_delay = initial_delay
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)
        self.in_flight = False
        self.skipped = 0
        self.stopped_for_key = False
        self._initial_task = None
        self._periodic_task = None
        self._cycle_tasks = set()

    def start(self):
        if self._periodic_task is not None:
            return
        self._initial_task = asyncio.ensure_future(self._run_initial())
        self._periodic_task = asyncio.ensure_future(self._run_periodic())

    @property
    def running(self):
        return self._periodic_task is not None and not self._periodic_task.done()

    async def _run_initial(self):
        await self.sleep(self.initial_delay)
        if not self.routing_key():
            self.logger.error("City code not set - please check instance configuration")
            return
        await self.trigger()

    async def _run_periodic(self):
        while True:
            await self.sleep(self.period)
            if not self.routing_key():
                self.logger.warning("City code cleared - periodic polling stopped until restart")
                self.stopped_for_key = True
                return
            # cadence does not wait on the cycle
            task = asyncio.ensure_future(self.trigger())
            self._cycle_tasks.add(task)
            task.add_done_callback(self._cycle_tasks.discard)

    async def trigger(self):
        if self.in_flight:
            self.skipped += 1
            self.logger.warning("previous fetch cycle still running, skipping this one")
            return
        self.in_flight = True
        try:
            await self.cycle()
        finally:
            self.in_flight = False

    async def stop(self):
        tasks = [t for t in (self._initial_task, self._periodic_task) if t is not None]
        tasks.extend(self._cycle_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._cycle_tasks.clear()
