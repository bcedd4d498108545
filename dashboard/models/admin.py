"""Retention settings and prune results exchanged with the job service."""

from typing import List, Literal, Optional, Union

from pydantic import BaseModel


class RetentionSettings(BaseModel):
    """Limits applied when pruning old runs. None means unlimited."""

    max_age: Optional[int] = None  # days
    max_runs: Optional[int] = None
    max_size: Optional[int] = None  # bytes


class JobSettings(BaseModel):
    retention: Union[Literal["default"], RetentionSettings] = "default"


class ServiceSettings(BaseModel):
    retention: RetentionSettings = RetentionSettings()


class PrunedRun(BaseModel):
    run_id: str
    size: int = 0
    reason: str = ""


class PruneCounts(BaseModel):
    runs: int = 0
    size: int = 0


class PruneStats(BaseModel):
    pruned: PruneCounts = PruneCounts()
    kept: PruneCounts = PruneCounts()


class PruneResult(BaseModel):
    pruned: List[PrunedRun] = []
    stats: PruneStats = PruneStats()
