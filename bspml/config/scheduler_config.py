# bspml/config/scheduler_config.py
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

PolicyType = Literal[
    "round-robin",
    "least-loaded",
    "resource-aware",
    "affinity-based",
    "adaptive",
]


class SchedulingPolicy(BaseModel):
    """
    SchedulingPolicy

    Weights score a worker as cpu*w_cpu + mem*w_mem + net*w_net (lower wins).
    Heartbeats older than heartbeat_interval * heartbeat_timeout_multiple
    mark a worker failed.
    """

    type: PolicyType = "least-loaded"

    cpu_weight: float = Field(default=0.4, ge=0.0)
    memory_weight: float = Field(default=0.3, ge=0.0)
    network_weight: float = Field(default=0.3, ge=0.0)

    enable_work_stealing: bool = True
    steal_threshold_seconds: float = Field(default=5.0, ge=0.0)

    max_jobs_per_worker: int = Field(default=2, ge=1)
    max_concurrent_jobs: int = Field(default=4, ge=1)

    heartbeat_interval: float = Field(default=1.0, gt=0.0)
    heartbeat_timeout_multiple: float = Field(default=3.0, gt=0.0)

    # adaptive: EMA smoothing of completion times
    adaptive_alpha: float = Field(default=0.3, gt=0.0, le=1.0)

    # affinity: per-worker LRU of resident partition keys
    affinity_cache_size: int = Field(default=32, ge=1)

    @property
    def heartbeat_timeout(self) -> float:
        return self.heartbeat_interval * self.heartbeat_timeout_multiple
