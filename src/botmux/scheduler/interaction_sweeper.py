"""APScheduler job that ends interactions nobody finished."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config.settings import settings
from botmux.platforms.base import PlatformAdapter

logger = logging.getLogger(__name__)


class InteractionSweeper:
    def __init__(
        self,
        adapters: list[PlatformAdapter],
        idle_timeout_minutes: int | None = None,
        interval_seconds: int | None = None,
    ) -> None:
        self.adapters = adapters
        self.idle_timeout_minutes = (
            settings.interaction_idle_timeout_minutes
            if idle_timeout_minutes is None
            else idle_timeout_minutes
        )
        self.interval_seconds = (
            settings.interaction_sweep_interval_seconds
            if interval_seconds is None
            else interval_seconds
        )
        self._scheduler: AsyncIOScheduler | None = None

    async def start(self) -> None:
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.sweep,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id="interaction_sweep",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            "Interaction sweeper started (%ds interval, %d min idle timeout)",
            self.interval_seconds,
            self.idle_timeout_minutes,
        )

    async def stop(self) -> None:
        if self._scheduler:
            self._scheduler.shutdown(wait=False)

    async def sweep(self) -> int:
        """End idle interactions on every adapter. Returns how many were ended."""
        ended = 0
        for adapter in self.adapters:
            try:
                ended += await adapter.engine.expire_idle(self.idle_timeout_minutes * 60)
            except Exception:
                logger.exception("Interaction sweep failed for %s", adapter.name)
        if ended:
            logger.info("Ended %d idle interactions", ended)
        return ended
