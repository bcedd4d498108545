"""Visibility-scoped ownership of the active synchronizer.

While the dashboard is visible, exactly one synchronizer is active for the
current view. Hiding the dashboard tears it down completely (subscription
closed, in-flight fetches cancelled). Showing it again builds a brand-new
synchronizer that starts from a fresh snapshot, so an event gap never has
to be reconciled.
"""

import logging
from typing import Callable, Optional

from errors import DashboardError, RequestCancelled
from services.event_channel import EventChannel
from services.job_service_client import JobServiceClient
from services.navigation import JobsView, LogView, RunsView, ViewState
from services.synchronizer import (
    JobsSynchronizer, LiveSynchronizer, RunSynchronizer, RunsSynchronizer, SyncState,
)

logger = logging.getLogger(__name__)

SynchronizerFactory = Callable[[ViewState], LiveSynchronizer]


class SessionManager:
    """Starts and stops synchronizers as the view and its visibility change."""

    def __init__(
        self,
        client: JobServiceClient,
        channel: EventChannel,
        factory: Optional[SynchronizerFactory] = None,
    ):
        self.client = client
        self.channel = channel
        self.factory = factory or self.default_factory
        self.view: Optional[ViewState] = None
        self.visible = True
        self.synchronizer: Optional[LiveSynchronizer] = None

    def default_factory(self, view: ViewState) -> LiveSynchronizer:
        if isinstance(view, JobsView):
            return JobsSynchronizer(self.client, self.channel)
        if isinstance(view, RunsView):
            return RunsSynchronizer(self.client, self.channel, view.job)
        if isinstance(view, LogView):
            return RunSynchronizer(self.client, self.channel, view.job, view.run_id, view.run_url)
        raise ValueError(f"No synchronizer for view {view!r}")

    async def activate(self, view: ViewState) -> Optional[LiveSynchronizer]:
        """Make `view` the active resource, tearing down the previous one."""
        await self._teardown()
        self.view = view
        if not self.visible:
            return None
        return await self._start()

    async def deactivate(self) -> None:
        await self._teardown()
        self.view = None

    async def set_visible(self, visible: bool) -> Optional[LiveSynchronizer]:
        """Foreground/background notification from the presentation layer."""
        if visible == self.visible:
            return self.synchronizer
        self.visible = visible
        if not visible:
            logger.info("Dashboard hidden; tearing down session")
            await self._teardown()
            return None
        if self.view is None:
            return None
        logger.info("Dashboard visible again; starting fresh session")
        return await self._start()

    async def retry(self) -> Optional[LiveSynchronizer]:
        """User-initiated reactivation of a failed or closed session."""
        if self.view is None or not self.visible:
            return None
        if self.synchronizer is not None and self.synchronizer.state is not SyncState.CLOSED:
            return self.synchronizer
        await self._teardown()
        return await self._start()

    async def _start(self) -> LiveSynchronizer:
        synchronizer = self.factory(self.view)
        self.synchronizer = synchronizer
        try:
            await synchronizer.activate()
        except RequestCancelled:
            logger.debug(f"Activation of {synchronizer.resource} superseded")
        except DashboardError as e:
            # Left in place, Closed with `error` set, so the failure is visible
            logger.warning(f"Could not activate {synchronizer.resource}: {e}")
        return synchronizer

    async def _teardown(self) -> None:
        synchronizer, self.synchronizer = self.synchronizer, None
        if synchronizer is not None:
            await synchronizer.deactivate()
