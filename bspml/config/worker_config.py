# bspml/config/worker_config.py
from __future__ import annotations

import os

from pydantic import BaseModel, Field


class WorkerConfig(BaseModel):
    worker_id: int = 0
    rank: int = 0
    host: str = "localhost"
    cores: int = Field(default_factory=lambda: os.cpu_count() or 1, ge=1)

    max_jobs_per_worker: int = Field(default=2, ge=1)

    heartbeat_interval: float = Field(default=1.0, gt=0.0)
    metrics_interval: float = Field(default=1.0, gt=0.0)

    # local BSP group size used when a job does not pin num_ranks
    ranks_per_job: int = Field(default=1, ge=1)

    # seconds to wait for a partition lease before the job fails with a timeout
    lease_timeout: float = Field(default=30.0, gt=0.0)

    # link speed used to turn byte counters into net% (1 Gbit/s)
    network_capacity_bytes: int = Field(default=125_000_000, gt=0)

    # an idle worker asks for queued work at most this often
    steal_interval: float = Field(default=1.0, gt=0.0)
