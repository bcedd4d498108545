"""Data models of the job service and the dashboard."""

from .status import Outcome, Status, classify, describe, parse_status
from .log_window import Gap, LogWindow, Text
from .job import Job, Progress, Run
from .events import Event, decode_event, encode_event
from .admin import JobSettings, PruneResult, RetentionSettings, ServiceSettings

__all__ = [
    "Outcome",
    "Status",
    "classify",
    "describe",
    "parse_status",
    "Gap",
    "LogWindow",
    "Text",
    "Job",
    "Progress",
    "Run",
    "Event",
    "decode_event",
    "encode_event",
    "JobSettings",
    "PruneResult",
    "RetentionSettings",
    "ServiceSettings",
]
