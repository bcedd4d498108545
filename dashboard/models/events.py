"""Change events pushed by the job service.

On the wire an event is one JSON object whose payload kind is the name of
its single non-topic key:

    {"topic": "job/dave/backup/run/42/log", "run_log_append": {"chunk": "..."}}

decode_event() turns that into an Event holding exactly one of the payload
classes below, so nothing past the subscription boundary ever has to test
for key presence.
"""

import json
from typing import Any, ClassVar, NamedTuple, Optional, Union

from pydantic import BaseModel, ValidationError

from errors import DataValidationError
from models.job import Job, Progress, Run


class JobCreate(BaseModel):
    kind: ClassVar[str] = "job_create"
    job: Job


class JobUpdate(BaseModel):
    kind: ClassVar[str] = "job_update"
    job: Job


class JobDelete(BaseModel):
    kind: ClassVar[str] = "job_delete"


class RunCreate(BaseModel):
    kind: ClassVar[str] = "run_create"
    run: Run


class RunUpdate(BaseModel):
    kind: ClassVar[str] = "run_update"
    run: Run


class RunUpdateLogLen(BaseModel):
    kind: ClassVar[str] = "run_update_log_len"
    log_len: int


class RunUpdateProgress(BaseModel):
    kind: ClassVar[str] = "run_update_progress"
    progress: Optional[Progress] = None


class RunLogAppend(BaseModel):
    kind: ClassVar[str] = "run_log_append"
    chunk: str


class RunDelete(BaseModel):
    kind: ClassVar[str] = "run_delete"
    reason: str = ""


Payload = Union[
    JobCreate, JobUpdate, JobDelete,
    RunCreate, RunUpdate, RunUpdateLogLen, RunUpdateProgress, RunLogAppend, RunDelete,
]

PAYLOAD_TYPES = {
    cls.kind: cls
    for cls in (JobCreate, JobUpdate, JobDelete, RunCreate, RunUpdate,
                RunUpdateLogLen, RunUpdateProgress, RunLogAppend, RunDelete)
}


class TopicPath(NamedTuple):
    """Identity prefix of a topic: job/{user}/{job_id}/run/{run_id}/..."""

    user: Optional[str] = None
    job_id: Optional[str] = None
    run_id: Optional[str] = None


def topic_path(topic: str) -> TopicPath:
    """Extract the identity prefix from a topic. Nothing else is read from it."""
    levels = topic.split("/")
    if not levels or levels[0] != "job":
        return TopicPath()
    user = levels[1] if len(levels) > 2 else None
    job_id = levels[2] if len(levels) > 2 else None
    run_id = levels[4] if len(levels) > 4 and levels[3] == "run" else None
    return TopicPath(user, job_id, run_id)


class Event(BaseModel):
    topic: str
    payload: Payload

    @property
    def kind(self) -> str:
        return self.payload.kind

    @property
    def path(self) -> TopicPath:
        return topic_path(self.topic)


def _payload_fields(kind: str, body: Any) -> dict:
    # Bodies are whole objects for create/update and may be bare values
    # for the single-field kinds.
    if kind in ("job_create", "job_update"):
        return {"job": body}
    if kind in ("run_create", "run_update"):
        return {"run": body}
    if kind == "run_update_log_len" and not isinstance(body, dict):
        return {"log_len": body}
    if kind == "run_update_progress" and not (isinstance(body, dict) and "progress" in body):
        return {"progress": body}
    if kind == "run_log_append" and isinstance(body, str):
        return {"chunk": body}
    if kind == "job_delete":
        return {}
    return body if isinstance(body, dict) else {}


def decode_event(raw: Union[str, bytes, dict]) -> Event:
    """Decode one wire message into an Event.

    Raises DataValidationError for anything that is not a single known
    payload kind with a well-formed body.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise DataValidationError(f"Event is not JSON: {e}", field="data")
    if not isinstance(raw, dict) or not isinstance(raw.get("topic"), str):
        raise DataValidationError("Event has no topic", field="topic", value=raw)

    kinds = [key for key in raw if key != "topic"]
    if len(kinds) != 1 or kinds[0] not in PAYLOAD_TYPES:
        raise DataValidationError("Event has no single known payload", field="payload", value=kinds)
    kind = kinds[0]

    try:
        payload = PAYLOAD_TYPES[kind].model_validate(_payload_fields(kind, raw[kind]))
    except ValidationError as e:
        raise DataValidationError(f"Malformed {kind} payload: {e}", field=kind)
    return Event(topic=raw["topic"], payload=payload)


def encode_event(event: Event) -> dict:
    """Wire form of an event (inverse of decode_event)."""
    body = event.payload.model_dump(mode="json", by_alias=True, exclude_unset=True)
    if isinstance(event.payload, (JobCreate, JobUpdate)):
        body = body["job"]
    elif isinstance(event.payload, (RunCreate, RunUpdate)):
        body = body["run"]
    return {"topic": event.topic, event.kind: body}
