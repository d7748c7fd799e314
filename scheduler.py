import asyncio
import logging
from datetime import datetime, timezone

UTC = timezone.utc
logger = logging.getLogger(__name__)


class Scheduler:
    """
    Minimal in-process scheduler for housekeeping (stale job reaper, key purge).
    Usage:
        sched = Scheduler()
        sched.every(60, coro, arg1, arg2=...)
        await sched.run_forever()
    A run is skipped while the previous run of the same entry is still going.
    """
    def __init__(self, tick_seconds: float = 1):
        self.jobs = []  # list[[seconds, coro, args, kwargs, last_run, task]]
        self.tick_seconds = tick_seconds
        self._running = False

    def every(self, seconds: float, coro, *args, **kwargs):
        self.jobs.append([seconds, coro, args, kwargs, None, None])

    async def _run(self, coro, args, kwargs):
        name = getattr(coro, "__name__", repr(coro))
        try:
            result = await coro(*args, **kwargs)
            if result:
                logger.info("[scheduler] %s -> %s", name, result)
        except Exception:
            logger.exception("[scheduler] %s failed", name)

    def tick(self, now: datetime = None):
        now = now or datetime.now(tz=UTC)
        for job in self.jobs:
            seconds, coro, args, kwargs, last_run, task = job
            if task is not None and not task.done():
                continue
            if last_run is None or (now - last_run).total_seconds() >= seconds:
                job[5] = asyncio.create_task(self._run(coro, args, kwargs))
                job[4] = now

    async def run_forever(self):
        self._running = True
        while self._running:
            self.tick()
            await asyncio.sleep(self.tick_seconds)

    def stop(self):
        self._running = False
