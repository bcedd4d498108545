"""Run exit status variants and outcome classification.

The job service reports a run's status as one of:

    null                      -> still running
    {"Exited": 0}             -> exited with a code
    {"Signal": 9}             -> killed by a signal
    {"CoreDump": 11}          -> killed by a signal, core dumped
    "ServerTimeout"           -> server stopped receiving heartbeats
    "ClientTimeout"           -> client hit its own time limit

Everything here is pure: no I/O and no hidden state.
"""

from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel


class Outcome(str, Enum):
    """Derived classification of a run."""

    RUNNING = "Running"
    SUCCESS = "Success"
    FAILURE = "Failure"


class Exited(BaseModel):
    code: int

    model_config = {"frozen": True}


class Signal(BaseModel):
    signal: int

    model_config = {"frozen": True}


class CoreDump(BaseModel):
    signal: int

    model_config = {"frozen": True}


class ServerTimeout(BaseModel):
    model_config = {"frozen": True}


class ClientTimeout(BaseModel):
    model_config = {"frozen": True}


class UnknownStatus(BaseModel):
    """A status tag this client does not understand. Kept verbatim."""

    raw: Any = None

    model_config = {"frozen": True}


Status = Union[Exited, Signal, CoreDump, ServerTimeout, ClientTimeout, UnknownStatus]

_STATUS_TYPES = (Exited, Signal, CoreDump, ServerTimeout, ClientTimeout, UnknownStatus)


def parse_status(raw: Any) -> Optional[Status]:
    """Decode the wire form of a status. Never raises."""
    if raw is None or isinstance(raw, _STATUS_TYPES):
        return raw
    if raw == "ServerTimeout":
        return ServerTimeout()
    if raw == "ClientTimeout":
        return ClientTimeout()
    if isinstance(raw, dict) and len(raw) == 1:
        (tag, value), = raw.items()
        if isinstance(value, int) and not isinstance(value, bool):
            if tag == "Exited":
                return Exited(code=value)
            if tag == "Signal":
                return Signal(signal=value)
            if tag == "CoreDump":
                return CoreDump(signal=value)
    return UnknownStatus(raw=raw)


def status_to_wire(status: Optional[Status]) -> Any:
    """Inverse of parse_status."""
    if status is None:
        return None
    if isinstance(status, Exited):
        return {"Exited": status.code}
    if isinstance(status, Signal):
        return {"Signal": status.signal}
    if isinstance(status, CoreDump):
        return {"CoreDump": status.signal}
    if isinstance(status, ServerTimeout):
        return "ServerTimeout"
    if isinstance(status, ClientTimeout):
        return "ClientTimeout"
    return status.raw


def classify(status: Optional[Status], log_len: int) -> Outcome:
    """Classify a run as Running, Success or Failure.

    A finished run that produced no output counts as a success regardless
    of its exit status (cron-style "silence is golden").
    """
    if status is None:
        return Outcome.RUNNING
    if (isinstance(status, Exited) and status.code == 0) or log_len == 0:
        return Outcome.SUCCESS
    return Outcome.FAILURE


def describe(status: Optional[Status]) -> str:
    """Human readable description of a status."""
    if status is None:
        return "Running"
    if isinstance(status, Exited):
        return f"Exited with status {status.code}"
    if isinstance(status, Signal):
        return f"Killed with signal {status.signal}"
    if isinstance(status, CoreDump):
        return f"Dumped core with signal {status.signal}"
    if isinstance(status, ServerTimeout):
        return "Timed out (server lost heartbeat)"
    if isinstance(status, ClientTimeout):
        return "Timed out (client limit reached)"
    return "Unknown status"
