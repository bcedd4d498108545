"""Tests for the dashboard HTTP API."""

import pytest


@pytest.mark.asyncio
async def test_health_endpoint_returns_ok(test_client):
    """Health reports the active session and its state."""
    response = await test_client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "job-dashboard"
    assert data["session"] == {"resource": "jobs", "state": "live"}


@pytest.mark.asyncio
async def test_view_without_controller_is_unavailable():
    from httpx import ASGITransport, AsyncClient
    from main import app

    app.state.controller = None
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/view")

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_jobs_view(test_client):
    response = await test_client.get("/api/view")

    assert response.status_code == 200
    data = response.json()
    assert data["view"] == "jobs"
    assert data["path"] == "#"
    assert data["state"] == "live"
    assert data["breadcrumbs"] == [{"label": "Jobs", "link": False}]
    jobs = {(job["user"], job["id"]): job for job in data["jobs"]}
    assert jobs[("dave", "backup")]["outcome"] == "Failure"
    assert jobs[("amy", "report")]["latest_run"]["status"] == "Running"


@pytest.mark.asyncio
async def test_navigate_runs_and_back(test_client):
    response = await test_client.post("/api/view/runs", json={"user": "dave", "id": "backup"})

    assert response.status_code == 200
    data = response.json()
    assert data["view"] == "runs"
    assert data["path"] == "#dave/Nightly backup"
    assert [run["id"] for run in data["runs"]] == ["2", "1"]
    assert data["has_more"] is False

    response = await test_client.post("/api/view/back")
    assert response.json()["view"] == "jobs"


@pytest.mark.asyncio
async def test_navigate_unknown_job(test_client):
    response = await test_client.post("/api/view/runs", json={"user": "nobody", "id": "nothing"})

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_log_view_renders_ansi_spans(sample_jobs, test_client):
    sample_jobs.add_job("amy", "color")
    sample_jobs.add_run("amy", "color", "1", log=b"a\x1b[31mb\x1b[0mc", status={"Exited": 0})

    response = await test_client.post("/api/view/log", json={"user": "amy", "id": "color", "run_id": "1"})

    assert response.status_code == 200
    data = response.json()
    assert data["view"] == "log"
    assert data["path"] == "#amy/color/1"
    run = data["run"]
    assert run["status"] == "Exited with status 0"
    assert run["outcome"] == "Success"
    assert run["autoscroll"] is False
    assert run["log"] == [{
        "kind": "text",
        "offset": 0,
        "size": 12,
        "spans": [
            {"classes": [], "text": "a"},
            {"classes": ["ansi-31"], "text": "b"},
            {"classes": [], "text": "c"},
        ],
        "start": None,
        "end": None,
    }]


def test_log_parts_styling_across_appends_and_gap():
    """Appended output keeps the open style; the tail after the gap starts plain."""
    from api.dashboard import log_parts
    from models.log_window import LogWindow

    window = LogWindow.head_and_tail(b"\x1b[31mred", b"more", 20)
    window.append(b"\x1b[32mgo")
    window.append(b"on")

    head, gap, tail = log_parts(window)

    assert [(s.classes, s.text) for s in head.spans] == [(["ansi-31"], "red")]
    assert (gap.kind, gap.start, gap.end) == ("gap", 8, 16)
    assert [(s.classes, s.text) for s in tail.spans] == [([], "more"), (["ansi-32"], "goon")]
    assert (tail.offset, tail.size) == (16, 13)


@pytest.mark.asyncio
async def test_log_expand(sample_jobs, test_client, monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "log_chunk_size", 100)
    sample_jobs.add_job("dave", "build")
    sample_jobs.add_run("dave", "build", "1", log=b"x" * 1000, status={"Exited": 1})
    await test_client.post("/api/view/log", json={"user": "dave", "id": "build", "run_id": "1"})

    response = await test_client.post("/api/log/expand", json={"gap_start": 100, "gap_end": 900})
    assert response.status_code == 200
    data = response.json()
    assert data["applied"] is True
    gap = [part for part in data["log"] if part["kind"] == "gap"][0]
    assert (gap["start"], gap["end"]) == (200, 900)

    # Same request again refers to a gap that no longer exists
    response = await test_client.post("/api/log/expand", json={"gap_start": 100, "gap_end": 900})
    assert response.json()["applied"] is False

    response = await test_client.post("/api/log/expand", json={"gap_start": 5, "gap_end": 5})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_log_expand_needs_log_view(test_client):
    response = await test_client.post("/api/log/expand", json={"gap_start": 0, "gap_end": 10})

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_load_more_runs(sample_jobs, test_client):
    for i in range(3, 60):
        sample_jobs.add_run("dave", "backup", str(i), status={"Exited": 0})
    await test_client.post("/api/view/runs", json={"user": "dave", "id": "backup"})

    response = await test_client.post("/api/runs/more", json={"count": 5})

    assert response.status_code == 200
    assert response.json() == {"added": 5, "has_more": True}
    view = (await test_client.get("/api/view")).json()
    assert len(view["runs"]) == 55


@pytest.mark.asyncio
async def test_load_more_runs_needs_runs_view(test_client):
    response = await test_client.post("/api/runs/more", json={})

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_visibility_and_retry(sample_jobs, test_client):
    response = await test_client.post("/api/visibility", json={"visible": False})
    data = response.json()
    assert data["visible"] is False
    assert data["state"] is None

    sample_jobs.fail("/jobs", 503)
    data = (await test_client.post("/api/visibility", json={"visible": True})).json()
    assert data["state"] == "closed"
    assert "503" in data["error"]

    del sample_jobs.failures["/jobs"]
    data = (await test_client.post("/api/retry")).json()
    assert data["state"] == "live"
    assert data["error"] is None
