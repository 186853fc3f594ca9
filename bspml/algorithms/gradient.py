# bspml/algorithms/gradient.py
"""
Distributed gradient descent (BSP)

Per superstep, on every rank:
    1) local loss / gradient SUMS over the partition at theta_t
    2) all-reduce SUM of (g_w, g_b, loss) -> divide by the global row count
    3) + regularisation gradient (bias excluded)
    4) clip ||g||_2 to clip_max
    5) optimizer step; rank 0's theta_{t+1} is broadcast
    6) converged when ||theta_{t+1} - theta_t||_inf < tolerance

A non-finite gradient or parameter restores the last checkpoint and the
iteration is retried once; a second failure fails the job.
"""
from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from typing import Optional

import numpy as np

from bspml.algorithms.base import Kernel, KernelContext, KernelResult, unpack_state
from bspml.algorithms.optimizers import build_optimizer
from bspml.algorithms.params import GradientParams
from bspml.comm.communicator import ReduceOp
from bspml.serialization.codec import decode_value, encode_value
from bspml.tensor import Matrix, Vector
from bspml.utils.errors import NumericalInstabilityError, ShapeMismatchError, ValidationError
from bspml.utils.logger import logs


@dataclass(frozen=True)
class TrainingRecord:
    iteration: int
    loss: float
    weight_norm: float
    gradient_norm: float


class GradientLearner(Kernel):
    """
    Base for (w, b) learners. Subclasses supply the per-sample loss and
    gradient sums plus the final evaluation pass.
    """

    max_instability_retries = 1

    def __init__(self, params: GradientParams | None = None):
        super().__init__(params or GradientParams())
        self.theta: Optional[np.ndarray] = None
        self.optimizer = build_optimizer(self.params)
        self.history: list[TrainingRecord] = []
        self.converged = False
        self.n_total = 0
        self._x: Optional[np.ndarray] = None
        self._y: Optional[np.ndarray] = None
        self._instability_retries = 0
        self._unstable_at = 0

    # ---------------------------------------------------------
    # model surface
    # ---------------------------------------------------------
    @property
    def weights(self) -> Vector:
        return Vector(self.theta[:-1])

    @property
    def bias(self) -> float:
        return float(self.theta[-1])

    @abstractmethod
    def _loss_grad(self, x: np.ndarray, y: np.ndarray, w: np.ndarray, b: float) -> tuple[float, np.ndarray, float]:
        """(loss_sum, grad_w_sum, grad_b_sum) over the given rows."""

    @abstractmethod
    def _decision(self, x: np.ndarray) -> np.ndarray: ...

    @abstractmethod
    def _evaluate(self) -> dict:
        """Collective final pass; identical dict on every rank."""

    def _check_labels(self, y: np.ndarray) -> bool:
        return True

    def predict(self, x: Matrix) -> Vector:
        self._require_model()
        if x.cols != self.theta.size - 1:
            raise ShapeMismatchError(f"model has {self.theta.size - 1} features, input has {x.cols}")
        return Vector(self._decision(x.values))

    def regularization_loss(self, w: np.ndarray) -> float:
        p = self.params
        if p.regularization == "l1":
            return p.reg_strength * float(np.abs(w).sum())
        if p.regularization == "l2":
            return p.reg_strength * float(w @ w)
        return 0.0

    def compute_loss(self, x: Matrix, y: Vector) -> float:
        """Mean loss over (x, y) plus the regulariser, on this process only."""
        self._require_model()
        if x.rows != len(y):
            raise ShapeMismatchError(f"{x.rows} rows vs {len(y)} labels")
        if x.rows == 0:
            raise ValidationError("cannot compute loss on an empty dataset")
        w, b = self.theta[:-1], float(self.theta[-1])
        loss_sum, _, _ = self._loss_grad(x.values, y.values, w, b)
        return loss_sum / x.rows + self.regularization_loss(w)

    def load_model(self, state: bytes) -> "GradientLearner":
        raw = unpack_state(decode_value(state), self.kind)
        self.theta = np.concatenate([raw["weights"].values, [raw["bias"]]])
        return self

    def _require_model(self) -> None:
        if self.theta is None:
            raise ValidationError(f"{type(self).__name__} is not fitted")

    # ---------------------------------------------------------
    # capability set
    # ---------------------------------------------------------
    def setup(self, ctx: KernelContext, x: Matrix, y: Optional[Vector]) -> None:
        self.ctx = ctx
        p = self.params
        if y is None:
            raise ValidationError(f"{self.kind} needs labels")

        local_ok = x.rows == len(y) and self._check_labels(y.values)
        shapes = self.comm.all_gather([x.rows, x.cols, bool(local_ok)])
        if not all(s[2] for s in shapes):
            raise ValidationError(f"{self.kind}: rows/labels mismatch or invalid labels on some rank")
        if len({s[1] for s in shapes}) != 1:
            raise ShapeMismatchError(f"ranks disagree on feature count: {[s[1] for s in shapes]}")
        self.n_total = sum(s[0] for s in shapes)
        if self.n_total == 0:
            raise ValidationError(f"{self.kind}: empty dataset")

        d = x.cols
        if p.warm_start is not None and len(p.warm_start) != d + 1:
            raise ValidationError(f"warm_start needs {d + 1} values (weights + bias), got {len(p.warm_start)}")

        self._x, self._y = x.values, y.values
        theta = None
        if self.comm.is_master():
            theta = np.zeros(d + 1) if p.warm_start is None else np.asarray(p.warm_start, dtype=np.float64)
        self.theta = self.comm.broadcast(theta, root=0)
        logs.info(f"{self.tag} setup rows={x.rows} total={self.n_total} d={d} optimizer={p.optimizer}")

    def _iterate(self) -> bool:
        p = self.params
        w, b = self.theta[:-1], float(self.theta[-1])

        loss_sum, gw, gb = self._loss_grad(self._x, self._y, w, b)
        total = self.comm.all_reduce(np.concatenate([gw, [gb, loss_sum]]), ReduceOp.SUM)

        grad = total[:-1] / self.n_total
        loss = float(total[-1]) / self.n_total + self.regularization_loss(w)
        if p.regularization == "l1":
            grad[:-1] += p.reg_strength * np.sign(w)
        elif p.regularization == "l2":
            grad[:-1] += 2.0 * p.reg_strength * w

        if not np.all(np.isfinite(grad)) or not np.isfinite(loss):
            raise NumericalInstabilityError(
                f"non-finite gradient at iteration {self.iteration}", job_id=self.ctx.job_id
            )

        grad_norm = float(np.linalg.norm(grad))
        if p.clip_max is not None and grad_norm > p.clip_max:
            grad = grad * (p.clip_max / grad_norm)

        # every rank advances its optimizer state; rank 0's parameters win
        updated = self.optimizer.step(self.theta, grad)
        updated = self.comm.broadcast(updated if self.comm.is_master() else None, root=0)
        if not np.all(np.isfinite(updated)):
            raise NumericalInstabilityError(
                f"non-finite parameters at iteration {self.iteration}", job_id=self.ctx.job_id
            )

        delta = float(np.max(np.abs(updated - self.theta)))
        self.theta = updated
        self.iteration += 1
        self.history.append(
            TrainingRecord(
                iteration=self.iteration,
                loss=loss,
                weight_norm=float(np.linalg.norm(updated[:-1])),
                gradient_norm=grad_norm,
            )
        )

        self.converged = delta < p.tolerance
        return self.converged or self.iteration >= p.max_iterations

    def step(self) -> bool:
        """
        One iteration. A numerical instability restores the last checkpoint
        and replays up to the failed iteration once; passing it restores
        the retry.
        """
        try:
            done = self._iterate()
        except NumericalInstabilityError as e:
            if self._instability_retries >= self.max_instability_retries:
                logs.error(f"{self.tag} {e.message}; retry budget exhausted")
                raise
            self._instability_retries += 1
            self._unstable_at = self.iteration
            iteration, state = self.last_checkpoint
            logs.warning(f"{self.tag} {e.message}; restoring checkpoint iter={iteration}")
            self.restore(state)
            return False
        if self._instability_retries and self.iteration > self._unstable_at:
            self._instability_retries = 0
        return done

    def checkpoint(self) -> bytes:
        return encode_value({
            "kind": self.kind,
            "iteration": self.iteration,
            "theta": self.theta,
            "optimizer": self.optimizer.state(),
            "history": [
                [r.iteration, r.loss, r.weight_norm, r.gradient_norm] for r in self.history
            ],
        })

    def restore(self, state: bytes) -> None:
        raw = unpack_state(decode_value(state), self.kind)
        theta = np.asarray(raw["theta"], dtype=np.float64)
        if self.theta is not None and theta.shape != self.theta.shape:
            raise ShapeMismatchError(f"checkpoint theta {theta.shape} vs model {self.theta.shape}")
        self.theta = theta
        self.iteration = int(raw["iteration"])
        self.optimizer.load_state(raw["optimizer"])
        self.history = [TrainingRecord(int(r[0]), r[1], r[2], r[3]) for r in raw["history"]]

    def progress(self) -> float:
        return min(1.0, self.iteration / self.params.max_iterations)

    def current_loss(self) -> Optional[float]:
        return self.history[-1].loss if self.history else None

    def finalise(self) -> KernelResult:
        evaluation = self._evaluate()
        state = encode_value({"kind": self.kind, "weights": self.weights, "bias": self.bias})
        logs.info(
            f"{self.tag} finished iter={self.iteration} converged={self.converged} "
            f"loss={evaluation['loss']:.6f}"
        )
        return KernelResult(
            kind=self.kind,
            iterations=self.iteration,
            converged=self.converged,
            loss=evaluation["loss"],
            accuracy=evaluation.get("accuracy"),
            state=state,
            summary={
                "weights": [float(v) for v in self.theta[:-1]],
                "bias": self.bias,
                **evaluation,
            },
            history=list(self.history),
        )
