"""Dashboard API for the presentation layer.

Exposes read-only snapshots of the active view and the imperative calls
that drive it: navigation, visibility, log expansion and run paging.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from errors import SessionClosedError, TransportError
from models.job import Job, Run
from models.log_window import Gap, LogWindow, Text
from services import ansi
from services.formatting import human_bytes
from services.navigation import (
    DashboardController, LogView, RunsView, ViewState, breadcrumbs, show_jobs, show_log,
    show_runs, view_path,
)
from services.synchronizer import JobsSynchronizer, RunSynchronizer, RunsSynchronizer

router = APIRouter()


# ========== Schemas ==========


class ProgressResponse(BaseModel):
    percent: float
    eta_seconds: float


class RunSummary(BaseModel):
    id: str
    date: int
    duration_ms: int
    outcome: str
    status: str
    log_len: int
    log_size: str
    progress: Optional[ProgressResponse] = None
    deleted: Optional[str] = None


class JobSummary(BaseModel):
    user: str
    id: str
    name: str
    outcome: Optional[str] = None
    latest_run: Optional[RunSummary] = None


class SpanResponse(BaseModel):
    classes: List[str]
    text: str


class LogPartResponse(BaseModel):
    """Either fetched text (offset + styled spans) or a gap (start/end)."""

    kind: str  # "text" or "gap"
    offset: int
    size: int
    spans: Optional[List[SpanResponse]] = None
    start: Optional[int] = None
    end: Optional[int] = None


class RunDetail(RunSummary):
    cmd: str
    env: List[List[str]]
    log: List[LogPartResponse]
    autoscroll: bool


class CrumbResponse(BaseModel):
    label: str
    link: bool


class ViewResponse(BaseModel):
    view: str
    path: str
    breadcrumbs: List[CrumbResponse]
    visible: bool
    state: Optional[str] = None
    error: Optional[str] = None
    last_error: Optional[str] = None
    jobs: Optional[List[JobSummary]] = None
    job: Optional[JobSummary] = None
    runs: Optional[List[RunSummary]] = None
    has_more: Optional[bool] = None
    run: Optional[RunDetail] = None


class JobRef(BaseModel):
    user: str
    id: str


class RunRef(JobRef):
    run_id: str


class VisibilityRequest(BaseModel):
    visible: bool


class ExpandRequest(BaseModel):
    gap_start: int
    gap_end: int
    from_end: bool = False
    size: Optional[int] = None


class ExpandResponse(BaseModel):
    applied: bool
    log: List[LogPartResponse]


class MoreRunsRequest(BaseModel):
    count: Optional[int] = None


class MoreRunsResponse(BaseModel):
    added: int
    has_more: bool


# ========== Rendering ==========


def run_summary(run: Run) -> RunSummary:
    return RunSummary(
        id=run.id,
        date=run.date,
        duration_ms=run.duration_ms,
        outcome=run.outcome.value,
        status=run.status_description,
        log_len=run.log_len,
        log_size=human_bytes(run.log_len),
        progress=ProgressResponse(**run.progress.model_dump()) if run.progress else None,
        deleted=run.deleted,
    )


def job_summary(job: Job) -> JobSummary:
    return JobSummary(
        user=job.user,
        id=job.id,
        name=job.name,
        outcome=job.outcome.value if job.outcome else None,
        latest_run=run_summary(job.latest_run) if job.latest_run else None,
    )


def log_parts(window: LogWindow) -> List[LogPartResponse]:
    """Render the window part by part, each Text segmented into styled spans.

    Adjacent Text parts are merged by the window, so appended output keeps
    the style of what came before it. The Text parts on either side of the
    gap are segmented on their own: the unfetched bytes may change the
    style, so styling restarts after the gap. An escape sequence cut by the
    gap's edge shows up as raw text until the gap is filled.
    """
    parts = []
    for offset, part in window.spans():
        if isinstance(part, Text):
            spans = [SpanResponse(classes=sorted(s.style_classes), text=s.text) for s in ansi.segment(part.text)]
            parts.append(LogPartResponse(kind="text", offset=offset, size=part.size, spans=spans))
        else:
            parts.append(LogPartResponse(kind="gap", offset=offset, size=part.size, start=part.start, end=part.end))
    return parts


def render_view(controller: DashboardController, at_bottom: bool = True) -> ViewResponse:
    view = controller.view
    sync = controller.synchronizer
    response = ViewResponse(
        view="runs" if isinstance(view, RunsView) else "log" if isinstance(view, LogView) else "jobs",
        path=view_path(view),
        breadcrumbs=[CrumbResponse(label=c.label, link=c.target is not None) for c in breadcrumbs(view)],
        visible=controller.sessions.visible,
    )
    if sync is None:
        return response

    response.state = sync.state.value
    response.error = str(sync.error) if sync.error else None
    response.last_error = str(sync.last_error) if sync.last_error else None

    if isinstance(sync, JobsSynchronizer):
        response.jobs = [job_summary(job) for job in sync.jobs]
    elif isinstance(sync, RunsSynchronizer):
        response.job = job_summary(sync.job)
        response.runs = [run_summary(run) for run in sync.runs]
        response.has_more = sync.has_more
    elif isinstance(sync, RunSynchronizer):
        response.job = job_summary(sync.job)
        if sync.run is not None:
            summary = run_summary(sync.run)
            response.run = RunDetail(
                **summary.model_dump(),
                cmd=sync.run.cmd,
                env=[[k, v] for k, v in sync.run.env],
                log=log_parts(sync.run.log_window),
                autoscroll=sync.autoscroll(at_bottom),
            )
    return response


# ========== Dependencies ==========


def get_controller(request: Request) -> DashboardController:
    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        raise HTTPException(status_code=503, detail="Dashboard not started")
    return controller


async def _find_job(controller: DashboardController, user: str, job_id: str) -> Job:
    sync = controller.synchronizer
    if isinstance(sync, JobsSynchronizer) and sync.job(user, job_id) is not None:
        return sync.job(user, job_id)
    if isinstance(sync, (RunsSynchronizer, RunSynchronizer)) and sync.job.key == (user, job_id):
        return sync.job
    try:
        return await controller.sessions.client.get_job(user, job_id)
    except TransportError as e:
        raise HTTPException(status_code=e.status_code if e.status_code == 404 else 502, detail=str(e))


def _run_url(job: Job, run_id: str) -> str:
    return f"{job.runs_url.split('?', 1)[0]}/{run_id}"


# ========== Endpoints ==========


@router.get("/view", response_model=ViewResponse)
async def get_view(
    at_bottom: bool = Query(True, description="Whether the log view is scrolled to the bottom"),
    controller: DashboardController = Depends(get_controller),
):
    """Current view and a read-only snapshot of its state."""
    return render_view(controller, at_bottom)


@router.post("/view/jobs", response_model=ViewResponse)
async def navigate_jobs(controller: DashboardController = Depends(get_controller)):
    await controller.navigate(show_jobs())
    return render_view(controller)


@router.post("/view/runs", response_model=ViewResponse)
async def navigate_runs(ref: JobRef, controller: DashboardController = Depends(get_controller)):
    job = await _find_job(controller, ref.user, ref.id)
    try:
        view: ViewState = show_runs(job)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    await controller.navigate(view)
    return render_view(controller)


@router.post("/view/log", response_model=ViewResponse)
async def navigate_log(ref: RunRef, controller: DashboardController = Depends(get_controller)):
    job = await _find_job(controller, ref.user, ref.id)
    sync = controller.synchronizer
    run = sync.run(ref.run_id) if isinstance(sync, RunsSynchronizer) else None
    if run is None and job.latest_run is not None and job.latest_run.id == ref.run_id:
        run = job.latest_run
    if run is not None and run.url:
        view: ViewState = show_log(job, run)
    elif job.runs_url:
        view = LogView(job, ref.run_id, _run_url(job, ref.run_id))
    else:
        raise HTTPException(status_code=422, detail=f"Job {job.user}/{job.id} has no runs_url")
    await controller.navigate(view)
    return render_view(controller)


@router.post("/view/back", response_model=ViewResponse)
async def navigate_back(controller: DashboardController = Depends(get_controller)):
    await controller.back()
    return render_view(controller)


@router.post("/visibility", response_model=ViewResponse)
async def set_visibility(body: VisibilityRequest, controller: DashboardController = Depends(get_controller)):
    await controller.set_visible(body.visible)
    return render_view(controller)


@router.post("/retry", response_model=ViewResponse)
async def retry(controller: DashboardController = Depends(get_controller)):
    """Reactivate a session whose snapshot failed or whose stream ended."""
    await controller.sessions.retry()
    return render_view(controller)


@router.post("/log/expand", response_model=ExpandResponse)
async def expand_log(body: ExpandRequest, controller: DashboardController = Depends(get_controller)):
    sync = controller.synchronizer
    if not isinstance(sync, RunSynchronizer) or not sync.is_live:
        raise HTTPException(status_code=409, detail="No live log view")
    try:
        gap = Gap(body.gap_start, body.gap_end)
        applied = await sync.expand(gap, from_end=body.from_end, size=body.size)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except SessionClosedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TransportError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return ExpandResponse(applied=applied, log=log_parts(sync.run.log_window))


@router.post("/runs/more", response_model=MoreRunsResponse)
async def load_more_runs(body: MoreRunsRequest, controller: DashboardController = Depends(get_controller)):
    sync = controller.synchronizer
    if not isinstance(sync, RunsSynchronizer) or not sync.is_live:
        raise HTTPException(status_code=409, detail="No live runs view")
    try:
        added = await sync.load_more_runs(body.count)
    except SessionClosedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TransportError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return MoreRunsResponse(added=len(added), has_more=sync.has_more)
