"""Job and Run records as served by the job execution service."""

from typing import Any, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field, PrivateAttr, field_serializer, field_validator

from models.log_window import LogWindow
from models.status import Outcome, Status, classify, describe, parse_status, status_to_wire


class Progress(BaseModel):
    """Self-reported progress of a running job."""

    percent: float = Field(ge=0.0, le=1.0)
    eta_seconds: float = 0


def _env_value(value: Any) -> str:
    # Non UTF-8 values arrive as raw OS strings: {"Unix": [byte, ...]}
    if isinstance(value, dict) and isinstance(value.get("Unix"), list):
        return bytes(value["Unix"]).decode("utf-8", errors="replace")
    return value if isinstance(value, str) else str(value)


class Run(BaseModel):
    """A single execution of a job.

    Identity is `id`, unique within the owning job. The log body itself is
    not part of the wire record beyond the optional inline `log` that the
    service includes for short logs; the loaded portion lives in
    `log_window`, which starts empty and is filled by a WindowedLogStore.
    """

    id: str
    unique_id: Optional[int] = None
    url: Optional[str] = None
    date: int = 0  # epoch milliseconds
    duration_ms: int = 0
    status: Optional[Status] = None
    log_len: int = 0
    progress: Optional[Progress] = None
    cmd: str = ""
    env: List[Tuple[str, str]] = []
    log_url: Optional[str] = None
    inline_log: Optional[str] = Field(default=None, alias="log")
    deleted: Optional[str] = None  # Reason, once tombstoned

    model_config = {"populate_by_name": True}

    _window: LogWindow = PrivateAttr(default_factory=LogWindow)

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, value):
        return parse_status(value)

    @field_validator("env", mode="before")
    @classmethod
    def _parse_env(cls, value):
        if value is None:
            return []
        return [(_env_value(k), _env_value(v)) for k, v in value]

    @field_serializer("status")
    def _serialize_status(self, status):
        return status_to_wire(status)

    @property
    def log_window(self) -> LogWindow:
        return self._window

    @property
    def outcome(self) -> Outcome:
        return classify(self.status, self.log_len)

    @property
    def status_description(self) -> str:
        return describe(self.status)

    @property
    def is_running(self) -> bool:
        return self.status is None


class Job(BaseModel):
    """A named job belonging to a user. Identity is (user, id)."""

    user: str
    id: str
    name: str
    latest_run: Optional[Run] = None
    url: Optional[str] = None
    runs_url: Optional[str] = None
    settings_url: Optional[str] = None
    prune_url: Optional[str] = None
    success_url: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.user, self.id)

    @property
    def outcome(self) -> Optional[Outcome]:
        return self.latest_run.outcome if self.latest_run else None


def merge(target: BaseModel, update: BaseModel, exclude: Iterable[str] = ()) -> BaseModel:
    """Copy every field explicitly present in `update` onto `target`.

    Fields the update did not carry are left alone, so applying the same
    update twice yields the same record as applying it once.
    """
    for name in update.model_fields_set - set(exclude):
        setattr(target, name, getattr(update, name))
    return target
