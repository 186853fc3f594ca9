# bspml/algorithms/base.py
"""
BSP Kernels (FINAL)

A kernel is one distributed iterative algorithm. Every rank of a job runs
the same kernel object against its own partition; the ranks only meet in
collectives.

Capability set
--------------
setup(ctx, x, y)   bind the partition, validate shapes, initialise state
step()             one BSP superstep; returns True when the run is done
checkpoint()       serialised state (identical bytes on every rank)
restore(state)     inverse of checkpoint()
finalise()         collect the KernelResult

fit() drives the capability set. At every iteration boundary rank 0
decides (pause -> checkpoint + wait, cancel -> stop) and broadcasts the
decision, so all ranks leave the loop at the same superstep.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from bspml.comm.communicator import Communicator
from bspml.tensor import Matrix, Vector
from bspml.utils.errors import JobCancelled, ValidationError
from bspml.utils.logger import logs


def _never() -> bool:
    return False


@dataclass
class KernelContext:
    """
    Hooks the worker hands to a kernel.

    Only rank 0 calls should_cancel / is_paused / wait_resumed /
    save_checkpoint / report; other ranks receive rank 0's decision.
    """

    comm: Communicator
    job_id: str = ""
    checkpoint_interval: int = 0
    should_cancel: Callable[[], bool] = _never
    is_paused: Callable[[], bool] = _never
    wait_resumed: Callable[[], None] = lambda: None
    save_checkpoint: Optional[Callable[[int, bytes], None]] = None
    report: Optional[Callable[[int, float, Optional[float]], None]] = None
    resume_state: Optional[bytes] = None

    @property
    def rank(self) -> int:
        return self.comm.rank()

    def checkpoint_due(self, iteration: int) -> bool:
        return self.checkpoint_interval > 0 and iteration > 0 and iteration % self.checkpoint_interval == 0


@dataclass
class KernelResult:
    kind: str
    iterations: int
    converged: bool
    loss: float
    state: bytes
    accuracy: Optional[float] = None
    labels: Optional[Vector] = None
    summary: dict = field(default_factory=dict)
    history: list = field(default_factory=list)
    # per-row side outputs (e.g. is_core), local to the rank
    extras: dict = field(default_factory=dict)


class Kernel(ABC):
    kind: str = ""

    def __init__(self, params):
        self.params = params
        self.ctx: Optional[KernelContext] = None
        self.iteration = 0
        self.done = False
        self.last_checkpoint: Optional[tuple[int, bytes]] = None

    @property
    def comm(self) -> Communicator:
        return self.ctx.comm

    @property
    def tag(self) -> str:
        return f"[{type(self).__name__}] job={self.ctx.job_id or '-'} rank={self.comm.rank()}"

    # ---------------------------------------------------------
    # capability set
    # ---------------------------------------------------------
    @abstractmethod
    def setup(self, ctx: KernelContext, x: Matrix, y: Optional[Vector]) -> None: ...

    @abstractmethod
    def step(self) -> bool: ...

    @abstractmethod
    def checkpoint(self) -> bytes: ...

    @abstractmethod
    def restore(self, state: bytes) -> None: ...

    @abstractmethod
    def finalise(self) -> KernelResult: ...

    def progress(self) -> float:
        return 0.0

    def current_loss(self) -> Optional[float]:
        return None

    # ---------------------------------------------------------
    # driver
    # ---------------------------------------------------------
    def boundary(self) -> None:
        """Iteration boundary: pause / cancel decided on rank 0."""
        ctx = self.ctx
        decision = None
        if self.comm.is_master():
            paused = bool(ctx.is_paused())
            if paused:
                logs.info(f"{self.tag} paused at iter={self.iteration}")
                self._save(self.checkpoint())
                ctx.wait_resumed()
                logs.info(f"{self.tag} resumed at iter={self.iteration}")
            decision = {"paused": paused, "stop": bool(ctx.should_cancel())}
        decision = self.comm.broadcast(decision, root=0, bounded=False)
        if decision["paused"] and not self.comm.is_master():
            self.last_checkpoint = (self.iteration, self.checkpoint())
        if decision["stop"]:
            raise JobCancelled(f"cancelled at iteration {self.iteration}", job_id=ctx.job_id)

    def _save(self, state: bytes) -> None:
        self.last_checkpoint = (self.iteration, state)
        if self.comm.is_master() and self.ctx.save_checkpoint is not None:
            self.ctx.save_checkpoint(self.iteration, state)

    def fit(self, ctx: KernelContext, x: Matrix, y: Optional[Vector] = None) -> KernelResult:
        self.setup(ctx, x, y)
        if ctx.resume_state is not None:
            self.restore(ctx.resume_state)
            logs.info(f"{self.tag} resumed from checkpoint at iter={self.iteration}")
        self.last_checkpoint = (self.iteration, self.checkpoint())

        while not self.done:
            self.boundary()
            self.done = self.step()
            if ctx.checkpoint_due(self.iteration) and not self.done:
                self._save(self.checkpoint())
            if self.comm.is_master() and ctx.report is not None:
                ctx.report(self.iteration, self.progress(), self.current_loss())

        return self.finalise()


def unpack_state(raw: Any, kind: str) -> dict:
    if not isinstance(raw, dict) or raw.get("kind") != kind:
        found = raw.get("kind") if isinstance(raw, dict) else type(raw).__name__
        raise ValidationError(f"checkpoint state is for {found!r}, expected {kind!r}")
    return raw
