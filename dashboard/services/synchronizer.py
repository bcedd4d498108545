"""Live resource synchronizers.

A synchronizer keeps a local model of one resource (the job list, one
job's runs, or a single run) consistent with the job service. It takes a
snapshot, subscribes to the resource's topics, and then applies change
events strictly in arrival order.

Lifecycle: Idle -> Snapshotting -> Live -> Closed. There is no way back
from Closed; reactivation means building a new synchronizer, which takes
a fresh snapshot. Deactivation cancels the synchronizer's CancelScope, so
responses still in flight at that point are never applied.

Error policy:
- TransportError while snapshotting: recorded in `error`, state Closed,
  raised to the caller.
- TransportError from a poll, a log expand, load_more_runs or a catch-up
  fetch: recorded in `last_error`, the session stays Live.
- An update for an unknown id is dropped with a warning.
- RequestCancelled is dropped silently.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, List, Optional, Tuple

from config import settings
from errors import DashboardError, RequestCancelled, SessionClosedError, TransportError
from models.events import (
    Event, JobCreate, JobDelete, JobUpdate, RunCreate, RunDelete, RunLogAppend,
    RunUpdate, RunUpdateLogLen, RunUpdateProgress,
)
from models.job import Job, Run, merge
from models.log_window import Gap
from services.cancellation import CancelScope
from services.event_channel import EventChannel, Subscription
from services.job_service_client import JobServiceClient
from services.log_store import WindowedLogStore
from services.run_poller import RunPoller


class SyncState(str, Enum):
    IDLE = "idle"
    SNAPSHOTTING = "snapshotting"
    LIVE = "live"
    CLOSED = "closed"


class LiveSynchronizer(ABC):
    """Snapshot + event stream reconciliation for one resource.

    Subclasses must implement:
    - resource: name used in logs and errors
    - topics: topic filters to subscribe to
    - _load_snapshot: fetch the snapshot and replace the model with it
    - _apply: apply one event to the model
    """

    def __init__(self, client: JobServiceClient, channel: EventChannel):
        self.client = client
        self.channel = channel
        self.state = SyncState.IDLE
        self.scope = CancelScope(self.resource)
        self.error: Optional[DashboardError] = None
        self.last_error: Optional[DashboardError] = None
        self.events_applied = 0
        self._subscription: Optional[Subscription] = None
        self._pump: Optional[asyncio.Task] = None
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    @abstractmethod
    def resource(self) -> str:
        ...

    @property
    @abstractmethod
    def topics(self) -> List[str]:
        ...

    @abstractmethod
    async def _load_snapshot(self) -> None:
        ...

    @abstractmethod
    async def _apply(self, event: Event) -> None:
        ...

    async def _catch_up(self) -> None:
        """Hook run once subscribed, before any event is applied."""

    async def _on_live(self) -> None:
        """Hook run once the synchronizer goes live."""

    def _on_close(self) -> None:
        """Hook run once the synchronizer closes."""

    @property
    def is_live(self) -> bool:
        return self.state is SyncState.LIVE

    async def activate(self) -> None:
        """Snapshot, subscribe, then start applying events.

        Returns once the synchronizer is Live. Raises TransportError (after
        moving to Closed) if the snapshot or subscription fails, and
        RequestCancelled if deactivate() was called meanwhile.
        """
        if self.state is not SyncState.IDLE:
            raise SessionClosedError(f"{self.resource} cannot be activated from {self.state.value}", resource=self.resource)

        self.logger.info(f"Activating {self.resource}")
        self.state = SyncState.SNAPSHOTTING
        try:
            await self._load_snapshot()
            self._subscription = await self.channel.subscribe(self.topics, scope=self.scope)
            await self._catch_up()
        except RequestCancelled:
            self.logger.debug(f"Activation of {self.resource} cancelled")
            await self.deactivate()
            raise
        except DashboardError as e:
            self.error = e
            self.logger.error(f"Snapshot of {self.resource} failed: {e}")
            await self.deactivate()
            raise

        if self.scope.cancelled:
            await self.deactivate()
            raise RequestCancelled(self.resource)

        self.state = SyncState.LIVE
        self._pump = asyncio.create_task(self._pump_events())
        await self._on_live()
        self.logger.info(f"{self.resource} is live")

    async def deactivate(self) -> None:
        """Close the subscription and cancel everything in flight."""
        if self.state is SyncState.CLOSED:
            return
        was = self.state
        self.state = SyncState.CLOSED
        self.scope.cancel()
        self._on_close()

        pump = self._pump
        if pump is not None and pump is not asyncio.current_task() and not pump.done():
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass
        if self._subscription is not None:
            await self._subscription.close()
        if was is not SyncState.IDLE:
            self.logger.info(f"Deactivated {self.resource}")

    async def _pump_events(self) -> None:
        try:
            async for event in self._subscription:
                if self.state is not SyncState.LIVE:
                    return
                await self.apply(event)
        except Exception as e:
            self.last_error = e if isinstance(e, DashboardError) else TransportError(str(e), retryable=True)
            self.logger.error(f"Event stream for {self.resource} failed: {e}")
            await self.deactivate()
            return
        if self.state is SyncState.LIVE:
            # Reconnecting means a fresh snapshot, which is the session manager's call
            self.last_error = TransportError(f"Event stream for {self.resource} ended", retryable=True)
            self.logger.warning(f"Event stream for {self.resource} ended")
            await self.deactivate()

    async def apply(self, event: Event) -> None:
        """Apply one event. Events must be applied in arrival order."""
        self.logger.debug(f"{self.resource} <- {event.kind} on {event.topic}")
        try:
            await self._apply(event)
        except RequestCancelled:
            return
        except DashboardError as e:
            self.last_error = e
            self.logger.warning(f"Failed to apply {event.kind} to {self.resource}: {e}")
        self.events_applied += 1

    def _drop(self, event: Event, target: str) -> None:
        self.logger.warning(f"Dropping {event.kind} for unknown {target} in {self.resource}")

    def _require_live(self) -> None:
        if self.state is not SyncState.LIVE:
            raise SessionClosedError(resource=self.resource)


class JobsSynchronizer(LiveSynchronizer):
    """All jobs, each with its latest run."""

    def __init__(self, client: JobServiceClient, channel: EventChannel):
        super().__init__(client, channel)
        self._jobs: Dict[Tuple[str, str], Job] = {}

    @property
    def resource(self) -> str:
        return "jobs"

    @property
    def topics(self) -> List[str]:
        return ["job", "job/+/+", "job/+/+/run", "job/+/+/run/+"]

    @property
    def jobs(self) -> List[Job]:
        return sorted(self._jobs.values(), key=lambda job: (job.user, job.name))

    def job(self, user: str, job_id: str) -> Optional[Job]:
        return self._jobs.get((user, job_id))

    async def _load_snapshot(self) -> None:
        jobs = await self.client.get_jobs(scope=self.scope)
        self._jobs = {job.key: job for job in jobs}

    async def _apply(self, event: Event) -> None:
        payload = event.payload
        if isinstance(payload, JobCreate):
            self._jobs[payload.job.key] = payload.job
            return
        if isinstance(payload, JobUpdate):
            job = self._jobs.get(payload.job.key)
            if job is None:
                return self._drop(event, f"job {payload.job.user}/{payload.job.id}")
            merge(job, payload.job)
            return

        path = event.path
        job = self._jobs.get((path.user, path.job_id))
        if isinstance(payload, JobDelete):
            self._jobs.pop((path.user, path.job_id), None)
            return
        if job is None:
            return self._drop(event, f"job {path.user}/{path.job_id}")

        if isinstance(payload, RunCreate):
            job.latest_run = payload.run
            return

        # The jobs view only tracks each job's latest run
        latest = job.latest_run
        run_id = payload.run.id if isinstance(payload, RunUpdate) else path.run_id
        if latest is None or latest.id != run_id:
            self.logger.debug(f"Ignoring {event.kind} for non-latest run {run_id} of {job.user}/{job.id}")
            return
        if isinstance(payload, RunUpdate):
            merge(latest, payload.run, exclude={"inline_log"})
        elif isinstance(payload, RunUpdateLogLen):
            latest.log_len = max(latest.log_len, payload.log_len) if latest.is_running else payload.log_len
        elif isinstance(payload, RunUpdateProgress):
            latest.progress = payload.progress
        elif isinstance(payload, RunDelete):
            latest.deleted = payload.reason or "deleted"


class RunsSynchronizer(LiveSynchronizer):
    """One job's runs, newest first, paged on demand."""

    def __init__(
        self,
        client: JobServiceClient,
        channel: EventChannel,
        job: Job,
        page_size: Optional[int] = None,
        poll_interval_seconds: Optional[int] = None,
    ):
        self.job = job
        super().__init__(client, channel)
        self.page_size = page_size or settings.runs_page_size
        self.poll_interval_seconds = (
            settings.poll_interval_seconds if poll_interval_seconds is None else poll_interval_seconds
        )
        self.has_more = True
        self.job_deleted = False
        self.poller: Optional[RunPoller] = None
        self._runs: Dict[str, Run] = {}

    @property
    def resource(self) -> str:
        return f"runs of {self.job.user}/{self.job.id}"

    @property
    def topics(self) -> List[str]:
        base = f"job/{self.job.user}/{self.job.id}"
        return [base, f"{base}/run", f"{base}/run/+"]

    @property
    def runs(self) -> List[Run]:
        return sorted(self._runs.values(), key=lambda run: run.date, reverse=True)

    def run(self, run_id: str) -> Optional[Run]:
        return self._runs.get(run_id)

    @property
    def running_ids(self) -> List[str]:
        return [run.id for run in self.runs if run.is_running and not run.deleted]

    async def _load_snapshot(self) -> None:
        runs = await self.client.get_runs(self.job.runs_url, num=self.page_size, scope=self.scope)
        self._runs = {run.id: run for run in runs}
        self.has_more = len(runs) >= self.page_size

    async def _on_live(self) -> None:
        if self.poll_interval_seconds > 0:
            self.poller = RunPoller(self, self.poll_interval_seconds)
            self.poller.start()

    def _on_close(self) -> None:
        if self.poller:
            self.poller.stop()
            self.poller = None

    async def _apply(self, event: Event) -> None:
        payload = event.payload
        if isinstance(payload, JobUpdate):
            merge(self.job, payload.job, exclude={"latest_run"})
            return
        if isinstance(payload, JobDelete):
            self.job_deleted = True
            return
        if isinstance(payload, RunCreate):
            self._runs[payload.run.id] = payload.run
            return

        run_id = payload.run.id if isinstance(payload, RunUpdate) else event.path.run_id
        run = self._runs.get(run_id)
        if isinstance(payload, RunDelete):
            self._runs.pop(run_id, None)
            return
        if run is None:
            return self._drop(event, f"run {run_id}")

        if isinstance(payload, RunUpdate):
            merge(run, payload.run, exclude={"inline_log"})
        elif isinstance(payload, RunUpdateLogLen):
            run.log_len = max(run.log_len, payload.log_len) if run.is_running else payload.log_len
        elif isinstance(payload, RunUpdateProgress):
            run.progress = payload.progress

    async def load_more_runs(self, count: Optional[int] = None) -> List[Run]:
        """Fetch the next page of older runs. Returns the runs added."""
        self._require_live()
        count = count or self.page_size
        oldest = min(self._runs.values(), key=lambda run: run.date, default=None)
        before = None
        if oldest is not None:
            before = oldest.unique_id if oldest.unique_id is not None else oldest.date
        try:
            page = await self.client.get_runs(self.job.runs_url, num=count, before=before, scope=self.scope)
        except TransportError as e:
            self.last_error = e
            self.logger.warning(f"Loading more runs of {self.job.user}/{self.job.id} failed: {e}")
            raise

        added = [run for run in page if run.id not in self._runs]
        for run in added:
            self._runs[run.id] = run
        self.has_more = len(page) >= count
        self.last_error = None
        return added

    async def poll_running(self) -> int:
        """Re-fetch running runs by id and merge them. Returns runs merged."""
        ids = self.running_ids
        if not self.is_live or not ids:
            return 0
        try:
            fresh = await self.client.get_runs(self.job.runs_url, ids=ids, scope=self.scope)
        except RequestCancelled:
            return 0
        except TransportError as e:
            self.last_error = e
            self.logger.warning(f"Polling running runs of {self.job.user}/{self.job.id} failed: {e}")
            return 0

        merged = 0
        for update in fresh:
            run = self._runs.get(update.id)
            if run is not None:
                log_len = max(run.log_len, update.log_len) if update.is_running else update.log_len
                merge(run, update, exclude={"inline_log"})
                run.log_len = log_len
                merged += 1
        return merged


class RunSynchronizer(LiveSynchronizer):
    """A single run with its windowed log."""

    def __init__(
        self,
        client: JobServiceClient,
        channel: EventChannel,
        job: Job,
        run_id: str,
        run_url: str,
        chunk_size: Optional[int] = None,
    ):
        self.job = job
        self.run_id = run_id
        self.run_url = run_url
        super().__init__(client, channel)
        self.chunk_size = chunk_size or settings.log_chunk_size
        self.run: Optional[Run] = None
        self.store: Optional[WindowedLogStore] = None

    @property
    def resource(self) -> str:
        return f"run {self.job.user}/{self.job.id}/{self.run_id}"

    @property
    def topics(self) -> List[str]:
        base = f"job/{self.job.user}/{self.job.id}/run/{self.run_id}"
        return [base, f"{base}/log"]

    async def _load_snapshot(self) -> None:
        run = await self.client.get_run(self.run_url, scope=self.scope)
        store = WindowedLogStore(self.client, run, chunk_size=self.chunk_size, scope=self.scope)
        await store.load()
        self.run, self.store = run, store

    async def _catch_up(self) -> None:
        """Pick up output and status changes made while the log was loading.

        Events for that stretch went nowhere, so the run is read again and
        the log continued from seek_offset().
        """
        run = self.run
        if not run.is_running:
            return
        fresh = await self.client.get_run(self.run_url, scope=self.scope)
        merge(run, fresh, exclude={"inline_log", "log_len"})
        if run.is_running:
            await self.store.catch_up()
            run.log_len = max(run.log_len, fresh.log_len)
        else:
            await self.store.reconcile(fresh.log_len)

    def _on_close(self) -> None:
        if self.store:
            self.store.close()

    async def _apply(self, event: Event) -> None:
        payload = event.payload
        run = self.run
        if run.deleted:
            self.logger.debug(f"Ignoring {event.kind} for deleted run {run.id}")
            return

        if isinstance(payload, RunLogAppend):
            self._append(payload.chunk)
        elif isinstance(payload, RunUpdate):
            if payload.run.id != run.id:
                return self._drop(event, f"run {payload.run.id}")
            reported = payload.run.log_len if "log_len" in payload.run.model_fields_set else None
            merge(run, payload.run, exclude={"inline_log", "log_len"})
            await self._account(reported)
        elif isinstance(payload, RunUpdateLogLen):
            await self._account(payload.log_len)
        elif isinstance(payload, RunUpdateProgress):
            run.progress = payload.progress
        elif isinstance(payload, RunDelete):
            run.deleted = payload.reason or "deleted"
            self.store.close()
            self.logger.info(f"Run {run.id} deleted: {run.deleted}")

    def _append(self, chunk: str) -> None:
        run = self.run
        size = len(chunk.encode("utf-8"))
        if not run.is_running and self.store.seek_offset() + size > run.log_len:
            # Output that arrived after the final length was settled
            self.logger.debug(f"Dropping late {size} byte append to finished run {run.id}")
            return
        self.store.append(chunk)

    async def _account(self, reported: Optional[int]) -> None:
        """Check the service's log length against the bytes we hold.

        While running the two can disagree briefly; the larger wins. Once
        the run has finished the final length is exact and the window is
        reconciled to it.
        """
        run = self.run
        if run.is_running:
            if reported is not None:
                run.log_len = max(run.log_len, reported)
            return
        await self.store.reconcile(run.log_len if reported is None else reported)

    async def expand(self, gap: Gap, from_end: bool = False, size: Optional[int] = None) -> bool:
        """Load more of the log into `gap`. False if the read went stale or was cancelled."""
        self._require_live()
        try:
            applied = await self.store.expand(gap, from_end=from_end, size=size)
        except RequestCancelled:
            return False
        except TransportError as e:
            self.last_error = e
            self.logger.warning(f"Expanding log of {self.resource} failed: {e}")
            raise
        self.last_error = None
        return applied

    def autoscroll(self, at_bottom: bool) -> bool:
        """Whether the presentation layer should keep the log tail in view."""
        return bool(self.run and self.run.is_running and at_bottom)
