"""Pytest fixtures for test suite."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import httpx
import pytest

# Add dashboard to path for imports
dashboard_path = Path(__file__).parent.parent
sys.path.insert(0, str(dashboard_path))

SERVICE_URL = "http://jobs.test"


def apply_limit(log: bytes, seek: int = 0, limit: Optional[int] = None) -> bytes:
    """Byte range the job service returns for `seek`/`limit`.

    A negative limit means the last |limit| bytes of what follows `seek`.
    """
    data = log[seek:]
    if limit is None:
        return data
    if limit >= 0:
        return data[:limit]
    return data[limit:]


class FakeJobService:
    """In-memory job service behind an httpx.MockTransport.

    Jobs, runs and logs live in plain dicts that tests edit directly.
    Every request is recorded; `fail(path, status)` makes a path return an
    error and `hold(suffix)` makes matching requests wait on an Event.
    """

    def __init__(self, inline_limit: int = 4096):
        self.inline_limit = inline_limit
        self.jobs: Dict[Tuple[str, str], dict] = {}
        self.runs: Dict[Tuple[str, str], List[dict]] = {}
        self.logs: Dict[Tuple[str, str, str], bytes] = {}
        self.settings = {"retention": {"max_age": 30, "max_runs": None, "max_size": None}}
        self.job_settings: Dict[Tuple[str, str], dict] = {}
        self.requests: List[httpx.Request] = []
        self.failures: Dict[str, int] = {}
        self.holds: Dict[str, asyncio.Event] = {}
        self.event_stream = b""

    # ========== Seeding ==========

    def add_job(self, user: str, job_id: str, name: Optional[str] = None) -> dict:
        base = f"/job/{user}/{job_id}"
        job = {
            "user": user,
            "id": job_id,
            "name": name or job_id,
            "url": base,
            "runs_url": f"{base}/runs",
            "settings_url": f"{base}/settings",
            "prune_url": f"{base}/prune",
            "success_url": f"{base}/success",
        }
        self.jobs[(user, job_id)] = job
        self.runs.setdefault((user, job_id), [])
        return job

    def add_run(
        self,
        user: str,
        job_id: str,
        run_id: str,
        log: bytes = b"",
        status=None,
        date: Optional[int] = None,
        unique_id: Optional[int] = None,
    ) -> dict:
        runs = self.runs[(user, job_id)]
        unique_id = unique_id if unique_id is not None else len(runs) + 1
        url = f"/job/{user}/{job_id}/runs/{run_id}"
        run = {
            "id": run_id,
            "unique_id": unique_id,
            "url": url,
            "date": date if date is not None else 1_700_000_000_000 + unique_id * 1000,
            "duration_ms": 1500,
            "status": status,
            "log_len": len(log),
            "log_url": f"{url}/log",
            "cmd": f"/usr/bin/{job_id}",
            "env": [["HOME", f"/home/{user}"]],
        }
        runs.append(run)
        self.logs[(user, job_id, run_id)] = log
        return run

    def set_log(self, user: str, job_id: str, run_id: str, log: bytes) -> None:
        self.logs[(user, job_id, run_id)] = log
        self.find_run(user, job_id, run_id)["log_len"] = len(log)

    def find_run(self, user: str, job_id: str, run_id: str) -> Optional[dict]:
        for run in self.runs.get((user, job_id), []):
            if run["id"] == run_id:
                return run
        return None

    def fail(self, path: str, status: int = 500) -> None:
        self.failures[path] = status

    def hold(self, suffix: str) -> asyncio.Event:
        event = asyncio.Event()
        self.holds[suffix] = event
        return event

    def requests_to(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    # ========== Transport ==========

    def _job_with_latest(self, key: Tuple[str, str]) -> dict:
        job = dict(self.jobs[key])
        runs = self.runs.get(key, [])
        if runs:
            job["latest_run"] = max(runs, key=lambda r: r["date"])
        return job

    def _run_detail(self, key: Tuple[str, str], run: dict) -> dict:
        detail = dict(run)
        log = self.logs[(key[0], key[1], run["id"])]
        if len(log) <= self.inline_limit:
            detail["log"] = log.decode("utf-8", errors="replace")
        return detail

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        params = request.url.params

        for suffix, event in list(self.holds.items()):
            if path.endswith(suffix):
                await event.wait()

        if path in self.failures:
            return httpx.Response(self.failures[path], json={"error": "injected failure"})

        if path == "/events":
            return httpx.Response(200, content=self.event_stream, headers={"content-type": "text/event-stream"})
        if path == "/jobs":
            return httpx.Response(200, json=[self._job_with_latest(key) for key in self.jobs])
        if path == "/settings":
            if request.method == "PUT":
                self.settings = json.loads(request.content)
                return httpx.Response(200, json={})
            return httpx.Response(200, json=self.settings)

        parts = path.strip("/").split("/")
        if len(parts) < 3 or parts[0] != "job" or (parts[1], parts[2]) not in self.jobs:
            return httpx.Response(404, json={"error": "not found"})
        key = (parts[1], parts[2])
        rest = parts[3:]

        if not rest:
            return httpx.Response(200, json=self._job_with_latest(key))
        if rest == ["runs"]:
            return httpx.Response(200, json=self._list_runs(key, params))
        if rest[0] == "runs" and len(rest) >= 2:
            run = self.find_run(key[0], key[1], rest[1])
            if run is None:
                return httpx.Response(404, json={"error": "no such run"})
            if len(rest) == 2:
                return httpx.Response(200, json=self._run_detail(key, run))
            if rest[2:] == ["log"]:
                log = self.logs[(key[0], key[1], run["id"])]
                seek = int(params.get("seek", 0))
                limit = int(params["limit"]) if "limit" in params else None
                return httpx.Response(200, content=apply_limit(log, seek, limit))
        if rest == ["settings"]:
            if request.method == "PUT":
                self.job_settings[key] = json.loads(request.content)
                return httpx.Response(200, json={})
            return httpx.Response(200, json=self.job_settings.get(key, {"retention": "default"}))
        if rest == ["prune"]:
            return httpx.Response(200, json=self._prune(key, dry_run=request.method == "GET"))
        if rest == ["success"]:
            return httpx.Response(200, json=[
                [run["date"], None if run["status"] is None else run["status"] == {"Exited": 0}]
                for run in self.runs[key]
            ])
        return httpx.Response(404, json={"error": "not found"})

    def _list_runs(self, key: Tuple[str, str], params: httpx.QueryParams) -> List[dict]:
        runs = sorted(self.runs[key], key=lambda r: r["date"], reverse=True)
        ids = params.get_list("id")
        if ids:
            return [run for run in runs if run["id"] in ids]
        if "before" in params:
            before = int(params["before"])
            runs = [run for run in runs if run["unique_id"] < before]
        if "num" in params:
            runs = runs[:int(params["num"])]
        return runs

    def _prune(self, key: Tuple[str, str], dry_run: bool) -> dict:
        runs = sorted(self.runs[key], key=lambda r: r["date"])
        pruned, kept = runs[:-1], runs[-1:]
        if not dry_run:
            self.runs[key] = kept
        return {
            "pruned": [{"run_id": r["id"], "size": r["log_len"], "reason": "max_runs"} for r in pruned],
            "stats": {
                "pruned": {"runs": len(pruned), "size": sum(r["log_len"] for r in pruned)},
                "kept": {"runs": len(kept), "size": sum(r["log_len"] for r in kept)},
            },
        }


@pytest.fixture
def fake_service():
    """An empty fake job service."""
    return FakeJobService()


@pytest.fixture
async def job_client(fake_service):
    """JobServiceClient wired to the fake job service."""
    from services.job_service_client import JobServiceClient

    client = JobServiceClient(base_url=SERVICE_URL, transport=httpx.MockTransport(fake_service.handler))
    yield client
    await client.close()


@pytest.fixture
def channel():
    """In-process event channel."""
    from services.event_channel import LocalEventChannel

    return LocalEventChannel()


@pytest.fixture
def wait_for():
    """Poll a predicate until it holds, yielding to the event loop between checks."""

    async def _wait_for(predicate, timeout: float = 2.0):
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("Condition not met in time")
            await asyncio.sleep(0.01)

    return _wait_for


@pytest.fixture
def sample_jobs(fake_service):
    """Two jobs, one with a finished run and one with a running run."""
    fake_service.add_job("dave", "backup", name="Nightly backup")
    fake_service.add_run("dave", "backup", "1", log=b"backing up\n", status={"Exited": 0})
    fake_service.add_run("dave", "backup", "2", log=b"disk full\n", status={"Exited": 1})
    fake_service.add_job("amy", "report")
    fake_service.add_run("amy", "report", "7", log=b"working", status=None)
    return fake_service


@pytest.fixture
async def controller(sample_jobs, job_client, channel):
    """Started dashboard controller over the sample jobs."""
    from services.navigation import DashboardController, MemoryHistory
    from services.session_manager import SessionManager

    controller = DashboardController(SessionManager(job_client, channel), MemoryHistory())
    await controller.start()
    yield controller
    await controller.stop()


@pytest.fixture
async def test_client(controller):
    """Create a test HTTP client for API testing.

    ASGITransport does not run the app lifespan, so the controller is
    installed on app.state directly.
    """
    from main import app

    app.state.controller = controller
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.state.controller = None
