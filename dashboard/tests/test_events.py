"""Tests for event decoding, topics and subscriptions."""

import json

import pytest


def test_decode_job_create():
    from models.events import JobCreate, decode_event

    event = decode_event(json.dumps({
        "topic": "job",
        "job_create": {"user": "dave", "id": "backup", "name": "Nightly backup"},
    }))

    assert isinstance(event.payload, JobCreate)
    assert event.kind == "job_create"
    assert event.payload.job.key == ("dave", "backup")


def test_decode_single_value_payloads():
    """Single-field kinds accept either a bare value or an object."""
    from models.events import RunLogAppend, RunUpdateLogLen, RunUpdateProgress, decode_event

    bare = decode_event({"topic": "job/dave/backup/run/3", "run_update_log_len": 42})
    wrapped = decode_event({"topic": "job/dave/backup/run/3", "run_update_log_len": {"log_len": 42}})
    assert isinstance(bare.payload, RunUpdateLogLen)
    assert bare.payload.log_len == wrapped.payload.log_len == 42

    progress = decode_event({
        "topic": "job/dave/backup/run/3",
        "run_update_progress": {"percent": 0.5, "eta_seconds": 30},
    })
    assert isinstance(progress.payload, RunUpdateProgress)
    assert progress.payload.progress.percent == 0.5

    cleared = decode_event({"topic": "job/dave/backup/run/3", "run_update_progress": None})
    assert cleared.payload.progress is None

    append = decode_event({"topic": "job/dave/backup/run/3/log", "run_log_append": {"chunk": "hi\n"}})
    assert isinstance(append.payload, RunLogAppend)
    assert append.payload.chunk == "hi\n"


def test_decode_run_update_keeps_only_sent_fields():
    from models.events import decode_event

    event = decode_event({"topic": "job/dave/backup/run", "run_update": {"id": "3", "duration_ms": 900}})

    assert event.payload.run.model_fields_set == {"id", "duration_ms"}


@pytest.mark.parametrize("raw", [
    "not json",
    json.dumps([1, 2]),
    json.dumps({"job_create": {}}),
    json.dumps({"topic": "job"}),
    json.dumps({"topic": "job", "job_explode": {}}),
    json.dumps({"topic": "job", "job_delete": {}, "run_delete": {}}),
    json.dumps({"topic": "job/dave/backup/run/3", "run_update_log_len": "lots"}),
    json.dumps({"topic": "job", "job_create": {"user": "dave"}}),
])
def test_decode_rejects_malformed(raw):
    from errors import DataValidationError
    from models.events import decode_event

    with pytest.raises(DataValidationError):
        decode_event(raw)


def test_encode_matches_wire_form():
    from models.events import decode_event, encode_event

    wire = {"topic": "job/dave/backup/run", "run_update": {"id": "3", "status": {"Signal": 9}}}

    assert encode_event(decode_event(wire)) == wire


def test_topic_path():
    from models.events import topic_path

    assert topic_path("job") == (None, None, None)
    assert topic_path("job/dave/backup") == ("dave", "backup", None)
    assert topic_path("job/dave/backup/run") == ("dave", "backup", None)
    assert topic_path("job/dave/backup/run/7/log") == ("dave", "backup", "7")
    assert topic_path("settings") == (None, None, None)


@pytest.mark.parametrize("pattern,topic,expected", [
    ("sport", "sport", True),
    ("sport", "sport/tennis", False),
    ("sport/tennis", "sport", False),
    ("+", "something", True),
    ("+", "something/else", False),
    ("sport/tennis/+", "sport/tennis/player1", True),
    ("sport/tennis/+", "sport/tennis/player1/ranking", False),
    ("sport/tennis/+", "sport/tennis/", True),
    ("+/+", "/finance", True),
    ("/+", "/finance", True),
    ("+", "/finance", False),
    ("sport/+/player1", "sport/football/player1", True),
    ("sport/+/player1", "sport/football/player2", False),
    ("sport/tennis/player1/#", "sport/tennis/player1", True),
    ("sport/tennis/player1/#", "sport/tennis/player1/score/wimbledon", True),
    ("job/+/+/run/+", "job/dave/backup/run/3", True),
    ("job/+/+/run/+", "job/dave/backup/run/3/log", False),
])
def test_topic_filter_matching(pattern, topic, expected):
    from services.event_channel import TopicFilter

    assert TopicFilter(pattern).matches(topic) is expected


@pytest.mark.parametrize("pattern", [
    "sport+",
    "sp+rts",
    "sp#rt/tennis",
    "sport/tennis#",
    "sport/tennis/#/ranking",
])
def test_topic_filter_invalid(pattern):
    from errors import InvalidTopicFilter
    from services.event_channel import TopicFilter

    with pytest.raises(InvalidTopicFilter):
        TopicFilter(pattern)


@pytest.mark.asyncio
async def test_local_channel_delivers_matching_events(channel):
    """Only subscriptions whose filters match receive an event, in order."""
    runs = await channel.subscribe(["job/dave/backup/run/+"])
    jobs = await channel.subscribe(["job"])

    delivered = channel.publish({"topic": "job/dave/backup/run/1", "run_update_log_len": 5})
    channel.publish({"topic": "job/dave/backup/run/1", "run_update_log_len": 9})

    assert delivered == 1
    first = await runs.__anext__()
    second = await runs.__anext__()
    assert (first.payload.log_len, second.payload.log_len) == (5, 9)

    await jobs.close()
    await runs.close()
    assert channel.subscriber_count == 0
    with pytest.raises(StopAsyncIteration):
        await runs.__anext__()


@pytest.mark.asyncio
async def test_local_channel_respects_cancelled_scope(channel):
    from errors import RequestCancelled
    from services.cancellation import CancelScope

    scope = CancelScope("test")
    scope.cancel()

    with pytest.raises(RequestCancelled):
        await channel.subscribe(["job"], scope=scope)


@pytest.mark.asyncio
async def test_iter_sse_data():
    from services.event_channel import iter_sse_data

    async def lines():
        for line in [": keep-alive", "", "id: 1", "data: one", "", "data: two", "data: lines", "", "data: last"]:
            yield line

    assert [data async for data in iter_sse_data(lines())] == ["one", "two\nlines", "last"]


@pytest.mark.asyncio
async def test_sse_channel_skips_malformed_events(fake_service, job_client):
    """Events come off the stream decoded; garbage in between is skipped."""
    from services.event_channel import SSEEventChannel

    fake_service.event_stream = (
        b'data: {"topic": "job/dave/backup", "job_delete": {}}\n\n'
        b"data: {broken\n\n"
        b'data: {"topic": "job/dave/backup/run/2", "run_delete": {"reason": "pruned"}}\n\n'
    )
    channel = SSEEventChannel(job_client)

    subscription = await channel.subscribe(["job/dave/backup", "job/dave/backup/run/+"])
    events = [event async for event in subscription]

    assert [event.kind for event in events] == ["job_delete", "run_delete"]
    assert events[1].payload.reason == "pruned"
    assert subscription.closed
    request = fake_service.requests_to("/events")[0]
    assert request.url.params.get_list("topic") == ["job/dave/backup", "job/dave/backup/run/+"]
