"""Dashboard view state and navigation.

The current view is an explicit value (JobsView, RunsView or LogView)
owned by the DashboardController. Transitions are plain functions that
build the next value, and navigation history is an injected collaborator
rather than anything global.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, NamedTuple, Optional, Union

from models.job import Job, Run

if TYPE_CHECKING:
    from services.session_manager import SessionManager
    from services.synchronizer import LiveSynchronizer


@dataclass(frozen=True)
class JobsView:
    pass


@dataclass(frozen=True)
class RunsView:
    job: Job


@dataclass(frozen=True)
class LogView:
    job: Job
    run_id: str
    run_url: str


ViewState = Union[JobsView, RunsView, LogView]


def show_jobs() -> JobsView:
    return JobsView()


def show_runs(job: Job) -> RunsView:
    if not job.runs_url:
        raise ValueError(f"Job {job.user}/{job.id} has no runs_url")
    return RunsView(job)


def show_log(job: Job, run: Run) -> LogView:
    if not run.url:
        raise ValueError(f"Run {run.id} of {job.user}/{job.id} has no url")
    return LogView(job, run.id, run.url)


def view_path(view: ViewState) -> str:
    """Fragment identifying the view, for bookmarking."""
    if isinstance(view, RunsView):
        return f"#{view.job.user}/{view.job.name}"
    if isinstance(view, LogView):
        return f"#{view.job.user}/{view.job.name}/{view.run_id}"
    return "#"


class Crumb(NamedTuple):
    label: str
    target: Optional[ViewState] = None


def breadcrumbs(view: ViewState) -> List[Crumb]:
    """Breadcrumb trail; the last crumb (the current view) has no target."""
    if isinstance(view, RunsView):
        return [Crumb("Jobs", JobsView()), Crumb(view.job.user), Crumb(view.job.name)]
    if isinstance(view, LogView):
        return [
            Crumb("Jobs", JobsView()),
            Crumb(view.job.user),
            Crumb(view.job.name, RunsView(view.job)),
            Crumb(view.run_id),
        ]
    return [Crumb("Jobs")]


class History(ABC):
    """Navigation history the controller pushes to and pops from."""

    @abstractmethod
    def push(self, view: ViewState) -> None:
        ...

    @abstractmethod
    def pop(self) -> Optional[ViewState]:
        """Drop the current entry and return the previous one, if any."""
        ...


class MemoryHistory(History):
    def __init__(self):
        self.entries: List[ViewState] = []

    def push(self, view: ViewState) -> None:
        self.entries.append(view)

    def pop(self) -> Optional[ViewState]:
        if len(self.entries) < 2:
            return None
        self.entries.pop()
        return self.entries[-1]


class DashboardController:
    """Owns the current view and drives the session manager."""

    def __init__(self, sessions: "SessionManager", history: History, initial: Optional[ViewState] = None):
        self.sessions = sessions
        self.history = history
        self.view: ViewState = initial or JobsView()

    @property
    def synchronizer(self) -> Optional["LiveSynchronizer"]:
        return self.sessions.synchronizer

    async def start(self) -> None:
        self.history.push(self.view)
        await self.sessions.activate(self.view)

    async def navigate(self, view: ViewState) -> None:
        self.history.push(view)
        self.view = view
        await self.sessions.activate(view)

    async def back(self) -> ViewState:
        previous = self.history.pop()
        if previous is not None:
            self.view = previous
            await self.sessions.activate(previous)
        return self.view

    async def set_visible(self, visible: bool) -> None:
        await self.sessions.set_visible(visible)

    async def stop(self) -> None:
        await self.sessions.deactivate()
