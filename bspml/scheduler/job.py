# bspml/scheduler/job.py
from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Literal, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field, model_validator

from bspml.algorithms.registry import kernel_params
from bspml.storage.base import PartitionStrategy
from bspml.utils.errors import ProtocolError, ValidationError

JobKind = Literal["linear-regression", "logistic-regression", "k-means", "dbscan"]

# kernels are row-parallel
KERNEL_STRATEGIES = (PartitionStrategy.ROW, PartitionStrategy.ROUND_ROBIN)


class JobDescriptor(BaseModel):
    """
    Job descriptor (wire form: JSON).

    Unknown fields, kinds, strategies and out-of-range values fail
    validation before the job is ever queued.
    """

    model_config = ConfigDict(extra="forbid")

    kind: JobKind
    input_key: str = Field(min_length=1)
    output_key: Optional[str] = None
    partition_strategy: PartitionStrategy = PartitionStrategy.ROW
    num_ranks: Optional[int] = Field(default=None, ge=1)
    access_mode: Literal["exclusive", "shared"] = "shared"

    max_iterations: int = Field(default=100, ge=1)
    tolerance: float = Field(default=1e-6, ge=0.0)
    checkpoint_interval: int = Field(default=0, ge=0)
    seed: int = 42

    # gradient learners
    learning_rate: float = Field(default=0.01, gt=0.0)
    regularization: Literal["none", "l1", "l2"] = "none"
    reg_strength: float = Field(default=0.0, ge=0.0)
    optimizer: Literal["sgd", "momentum", "adam"] = "sgd"
    loss: Literal["mse", "mae"] = "mse"
    clip_max: Optional[float] = Field(default=1.0, gt=0.0)
    warm_start: Optional[list[float]] = None

    # k-means
    k: Optional[int] = Field(default=None, ge=1)
    n_init: int = Field(default=10, ge=1)
    init_method: Literal["random", "k-means++", "farthest-point"] = "k-means++"

    # dbscan
    epsilon: Optional[float] = Field(default=None, gt=0.0)
    min_points: int = Field(default=5, ge=1)
    boundary_mode: Literal["hull", "all-core"] = "hull"
    approximate_neighbors: bool = False

    @model_validator(mode="after")
    def _kind_requirements(self) -> "JobDescriptor":
        if self.partition_strategy not in KERNEL_STRATEGIES:
            raise ValueError(
                f"partition_strategy {self.partition_strategy.value!r} is not supported by "
                f"{self.kind} (use row or round-robin)"
            )
        if self.kind == "k-means" and self.k is None:
            raise ValueError("k-means requires k")
        if self.kind == "dbscan" and self.epsilon is None:
            raise ValueError("dbscan requires epsilon")
        return self

    # ---------------------------------------------------------
    @classmethod
    def parse(cls, raw: dict | str) -> "JobDescriptor":
        """dict / JSON -> descriptor; failures are ValidationError."""
        try:
            if isinstance(raw, str):
                return cls.model_validate_json(raw)
            return cls.model_validate(raw)
        except pydantic.ValidationError as e:
            raise ValidationError(f"invalid job descriptor: {e}") from e

    @classmethod
    def from_wire(cls, raw: str) -> "JobDescriptor":
        """Worker-side decode: anything malformed is a protocol error."""
        try:
            return cls.model_validate_json(raw)
        except pydantic.ValidationError as e:
            raise ProtocolError(f"rejected job descriptor: {e}") from e

    def to_json(self) -> str:
        return self.model_dump_json()

    def kernel_params(self) -> BaseModel:
        if self.kind in ("linear-regression", "logistic-regression"):
            params = {
                "learning_rate": self.learning_rate,
                "max_iterations": self.max_iterations,
                "tolerance": self.tolerance,
                "regularization": self.regularization,
                "reg_strength": self.reg_strength,
                "optimizer": self.optimizer,
                "clip_max": self.clip_max,
                "loss": self.loss,
                "warm_start": self.warm_start,
            }
        elif self.kind == "k-means":
            params = {
                "k": self.k,
                "max_iterations": self.max_iterations,
                "tolerance": self.tolerance,
                "init_method": self.init_method,
                "n_init": self.n_init,
                "seed": self.seed,
            }
        else:
            params = {
                "epsilon": self.epsilon,
                "min_points": self.min_points,
                "boundary_mode": self.boundary_mode,
                "approximate_neighbors": self.approximate_neighbors,
            }
        return kernel_params(self.kind, params)


# ---------------------------------------------------------
# state machine
# ---------------------------------------------------------
class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})

TRANSITIONS: dict[JobState, frozenset] = {
    JobState.PENDING: frozenset({JobState.RUNNING, JobState.CANCELLED, JobState.FAILED}),
    JobState.RUNNING: frozenset({
        JobState.PAUSED, JobState.CANCELLING, JobState.COMPLETED, JobState.FAILED,
    }),
    JobState.PAUSED: frozenset({
        JobState.RUNNING, JobState.CANCELLING, JobState.COMPLETED, JobState.FAILED,
        JobState.CANCELLED,
    }),
    JobState.CANCELLING: frozenset({JobState.CANCELLED, JobState.COMPLETED, JobState.FAILED}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.CANCELLED: frozenset(),
}


def check_transition(job_id: str, current: JobState, new: JobState) -> None:
    if new == current:
        return
    if new not in TRANSITIONS[current]:
        raise ProtocolError(f"illegal transition {current.value} -> {new.value}", job_id=job_id)


@dataclass
class JobStatus:
    job_id: str
    descriptor: JobDescriptor
    state: JobState = JobState.PENDING
    progress: float = 0.0
    current_iteration: int = 0
    worker_ids: list = field(default_factory=list)
    submitted_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    message: Optional[str] = None
    error: Optional[str] = None
    loss: Optional[float] = None
    result: Optional[dict] = None
    checkpoint_key: Optional[str] = None
    checkpoint_iteration: int = 0
    attempts: int = 0

    @property
    def assigned_worker(self) -> Optional[int]:
        return self.worker_ids[-1] if self.worker_ids else None

    @property
    def elapsed(self) -> Optional[float]:
        if self.started_at is None:
            return None
        return (self.finished_at or time.time()) - self.started_at

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["descriptor"] = self.descriptor.model_dump(mode="json")
        out["state"] = self.state.value
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "JobStatus":
        raw = dict(raw)
        raw["descriptor"] = JobDescriptor.parse(raw["descriptor"])
        raw["state"] = JobState(raw["state"])
        return cls(**raw)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)
