"""Periodic refresh of still-running runs in a runs view.

A running run's duration grows without any event saying so. While a runs
view is live, an APScheduler interval job re-fetches its running runs by
id and merges the result.
"""

import logging
from typing import TYPE_CHECKING, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

if TYPE_CHECKING:
    from services.synchronizer import RunsSynchronizer

logger = logging.getLogger(__name__)


class RunPoller:
    """Scheduler-driven poll bound to one RunsSynchronizer's lifetime."""

    def __init__(self, synchronizer: "RunsSynchronizer", interval_seconds: int):
        self.synchronizer = synchronizer
        self.interval_seconds = interval_seconds
        self.scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self.scheduler is not None

    def start(self) -> None:
        """Start polling. Must be called from inside the running event loop."""
        if self.scheduler is not None:
            return
        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.synchronizer.poll_running,
            IntervalTrigger(seconds=self.interval_seconds),
            id="poll_running_runs",
            name=f"Poll running runs of {self.synchronizer.resource}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.debug(f"Polling running runs of {self.synchronizer.resource} every {self.interval_seconds}s")

    def stop(self) -> None:
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
            logger.debug(f"Stopped polling {self.synchronizer.resource}")
