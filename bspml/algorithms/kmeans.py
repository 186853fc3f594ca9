# bspml/algorithms/kmeans.py
"""
Distributed k-means (Lloyd, BSP)

Per superstep:
    1) assign local rows to the nearest centroid (ties -> lowest index)
    2) local per-cluster sums / counts / inertia
    3) all-reduce SUM
    4) c = S_c / n_c; empty clusters reseeded on rank 0 to the farthest
       gathered candidates, then broadcast
    5) converged when max_c ||c_new - c_old|| < tolerance

n_init runs execute back to back with seeds (seed, run); the run with the
lowest final inertia wins. Initial centroids are chosen on rank 0 from a
gathered row sample and broadcast.
"""
from __future__ import annotations

from typing import Optional

import numpy as np

from bspml.algorithms.base import Kernel, KernelContext, KernelResult, unpack_state
from bspml.algorithms.params import KMeansParams
from bspml.comm.communicator import ReduceOp
from bspml.serialization.codec import decode_value, encode_value
from bspml.tensor import Matrix, Vector
from bspml.utils.errors import ShapeMismatchError, ValidationError
from bspml.utils.logger import logs

_CHUNK = 4096


def squared_distances(x: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """(n, k) squared euclidean distances, computed in row chunks."""
    out = np.empty((x.shape[0], centroids.shape[0]))
    for start in range(0, x.shape[0], _CHUNK):
        block = x[start:start + _CHUNK]
        diff = block[:, None, :] - centroids[None, :, :]
        out[start:start + _CHUNK] = np.einsum("nkd,nkd->nk", diff, diff)
    return out


def assign(x: np.ndarray, centroids: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Labels (argmin, first index wins ties) and squared distance to it."""
    d2 = squared_distances(x, centroids)
    labels = np.argmin(d2, axis=1) if d2.shape[1] else np.zeros(x.shape[0], dtype=np.int64)
    return labels, d2[np.arange(x.shape[0]), labels]


def init_centroids(sample: np.ndarray, k: int, method: str, rng: np.random.Generator) -> np.ndarray:
    n = sample.shape[0]
    if k > n:
        raise ValidationError(f"cannot choose {k} initial centroids from {n} rows")

    if method == "random":
        return sample[rng.choice(n, size=k, replace=False)].copy()

    chosen = [int(rng.integers(n))]
    taken = np.zeros(n, dtype=bool)
    taken[chosen[0]] = True
    d2 = squared_distances(sample, sample[chosen[0]][None, :])[:, 0]
    while len(chosen) < k:
        total = float(d2.sum())
        if total <= 0.0:
            # only duplicates of chosen points remain
            idx = int(rng.choice(np.flatnonzero(~taken)))
        elif method == "k-means++":
            idx = int(rng.choice(n, p=d2 / total))
        else:
            idx = int(np.argmax(d2))
        chosen.append(idx)
        taken[idx] = True
        d2 = np.minimum(d2, squared_distances(sample, sample[idx][None, :])[:, 0])
    return sample[chosen].copy()


class KMeans(Kernel):
    kind = "k-means"

    def __init__(self, params: KMeansParams | None = None):
        super().__init__(params or KMeansParams())
        self.run = 0
        self.run_iteration = 0
        self.centroids: Optional[np.ndarray] = None
        self.inertia_history: list[float] = []
        self.best: Optional[dict] = None
        self.n_total = 0
        self._x: Optional[np.ndarray] = None

    # ---------------------------------------------------------
    # model surface
    # ---------------------------------------------------------
    @property
    def cluster_centers(self) -> Matrix:
        if self.best is None:
            raise ValidationError("KMeans is not fitted")
        return Matrix(self.best["centroids"])

    @property
    def inertia(self) -> float:
        if self.best is None:
            raise ValidationError("KMeans is not fitted")
        return float(self.best["inertia"])

    def predict(self, x: Matrix) -> Vector:
        centers = self.cluster_centers.values
        if x.cols != centers.shape[1]:
            raise ShapeMismatchError(f"model has {centers.shape[1]} features, input has {x.cols}")
        labels, _ = assign(x.values, centers)
        return Vector(labels)

    def load_model(self, state: bytes) -> "KMeans":
        raw = unpack_state(decode_value(state), self.kind)
        centers = raw["centroids"].values
        self.best = {
            "centroids": centers,
            "inertia": raw.get("inertia", 0.0),
            "iterations": raw.get("iterations", 0),
            "converged": raw.get("converged", True),
            "history": [],
            "run": 0,
        }
        return self

    # ---------------------------------------------------------
    # capability set
    # ---------------------------------------------------------
    def setup(self, ctx: KernelContext, x: Matrix, y: Optional[Vector]) -> None:
        self.ctx = ctx
        p = self.params
        shapes = self.comm.all_gather([x.rows, x.cols])
        if len({s[1] for s in shapes if s[0] > 0}) > 1:
            raise ShapeMismatchError(f"ranks disagree on feature count: {[s[1] for s in shapes]}")
        self.n_total = sum(s[0] for s in shapes)
        sampled = sum(min(s[0], p.init_sample_size) for s in shapes)
        if p.k > self.n_total:
            raise ValidationError(f"k={p.k} exceeds the {self.n_total} available rows")
        if p.k > sampled:
            raise ValidationError(f"k={p.k} exceeds the initialisation sample of {sampled} rows")
        self._x = x.values
        logs.info(f"{self.tag} setup rows={x.rows} total={self.n_total} k={p.k} init={p.init_method}")

    def _initialise_run(self) -> np.ndarray:
        p = self.params
        rng = np.random.default_rng([p.seed, self.run, self.comm.rank()])
        n = self._x.shape[0]
        take = min(n, p.init_sample_size)
        rows = self._x[np.sort(rng.choice(n, size=take, replace=False))] if take < n else self._x
        parts = self.comm.gather(rows, root=0)

        centroids = None
        if self.comm.is_master():
            sample = np.vstack([part for part in parts if part.shape[0] > 0])
            centroids = init_centroids(sample, p.k, p.init_method, np.random.default_rng([p.seed, self.run]))
        return self.comm.broadcast(centroids, root=0)

    def _local_pass(self, centroids: np.ndarray) -> np.ndarray:
        """[sums (k*d) | counts (k) | inertia] for the local rows."""
        k, d = centroids.shape
        labels, dist = assign(self._x, centroids)
        sums = np.zeros((k, d))
        np.add.at(sums, labels, self._x)
        counts = np.bincount(labels, minlength=k).astype(np.float64)
        return np.concatenate([sums.reshape(-1), counts, [float(dist.sum())]])

    def _inertia(self, centroids: np.ndarray) -> float:
        _, dist = assign(self._x, centroids)
        return float(self.comm.all_reduce(float(dist.sum()), ReduceOp.SUM))

    def _reseed(self, centroids: np.ndarray, empty: np.ndarray) -> np.ndarray:
        """Move empty clusters onto the globally farthest points."""
        m = int(empty.size)
        live = centroids[~np.isin(np.arange(centroids.shape[0]), empty)]
        candidates = []
        if self._x.shape[0] and live.shape[0]:
            _, dist = assign(self._x, live)
            order = np.argsort(-dist, kind="stable")[:m]
            candidates = [[float(dist[i]), self._x[i]] for i in order]
        gathered = self.comm.gather(candidates, root=0)

        out = None
        if self.comm.is_master():
            out = centroids.copy()
            pool = [
                (-c[0], rank, j, c[1])
                for rank, cands in enumerate(gathered)
                for j, c in enumerate(cands)
            ]
            pool.sort(key=lambda t: t[:3])
            for cluster, cand in zip(empty, pool):
                out[cluster] = cand[3]
            logs.debug(f"{self.tag} reseeded empty clusters {empty.tolist()}")
        return self.comm.broadcast(out, root=0)

    def _finish_run(self, converged: bool) -> None:
        inertia = self._inertia(self.centroids)
        logs.info(
            f"{self.tag} run {self.run + 1}/{self.params.n_init} "
            f"iter={self.run_iteration} converged={converged} inertia={inertia:.6f}"
        )
        if self.best is None or inertia < self.best["inertia"]:
            self.best = {
                "centroids": self.centroids.copy(),
                "inertia": inertia,
                "iterations": self.run_iteration,
                "converged": converged,
                "history": list(self.inertia_history),
                "run": self.run,
            }
        self.run += 1
        self.run_iteration = 0
        self.centroids = None
        self.inertia_history = []

    def step(self) -> bool:
        p = self.params
        if self.centroids is None:
            self.centroids = self._initialise_run()

        k, d = self.centroids.shape
        reduced = self.comm.all_reduce(self._local_pass(self.centroids), ReduceOp.SUM)
        sums = reduced[: k * d].reshape(k, d)
        counts = reduced[k * d: k * d + k]
        self.inertia_history.append(float(reduced[-1]))

        updated = self.centroids.copy()
        filled = counts > 0
        updated[filled] = sums[filled] / counts[filled][:, None]
        empty = np.flatnonzero(~filled)
        if empty.size:
            updated = self._reseed(updated, empty)

        shift = float(np.max(np.linalg.norm(updated - self.centroids, axis=1)))
        self.centroids = updated
        self.run_iteration += 1
        self.iteration += 1

        converged = shift < p.tolerance
        if converged or self.run_iteration >= p.max_iterations:
            self._finish_run(converged)
        return self.run >= p.n_init

    def checkpoint(self) -> bytes:
        best = None
        if self.best is not None:
            best = {**self.best, "centroids": Matrix(self.best["centroids"])}
        return encode_value({
            "kind": self.kind,
            "iteration": self.iteration,
            "run": self.run,
            "run_iteration": self.run_iteration,
            "centroids": None if self.centroids is None else Matrix(self.centroids),
            "history": list(self.inertia_history),
            "best": best,
        })

    def restore(self, state: bytes) -> None:
        raw = unpack_state(decode_value(state), self.kind)
        self.iteration = int(raw["iteration"])
        self.run = int(raw["run"])
        self.run_iteration = int(raw["run_iteration"])
        self.centroids = None if raw["centroids"] is None else raw["centroids"].values
        self.inertia_history = list(raw["history"])
        best = raw["best"]
        if best is not None:
            best = {**best, "centroids": best["centroids"].values}
        self.best = best

    def progress(self) -> float:
        p = self.params
        done = self.run * p.max_iterations + self.run_iteration
        return min(1.0, done / (p.n_init * p.max_iterations))

    def current_loss(self) -> Optional[float]:
        return self.inertia_history[-1] if self.inertia_history else None

    def finalise(self) -> KernelResult:
        best = self.best
        labels, _ = assign(self._x, best["centroids"])
        centers = Matrix(best["centroids"])
        state = encode_value({
            "kind": self.kind,
            "centroids": centers,
            "inertia": best["inertia"],
            "iterations": best["iterations"],
            "converged": best["converged"],
        })
        return KernelResult(
            kind=self.kind,
            iterations=best["iterations"],
            converged=best["converged"],
            loss=best["inertia"],
            state=state,
            labels=Vector(labels),
            summary={
                "centroids": best["centroids"].tolist(),
                "inertia": best["inertia"],
                "best_run": best["run"],
                "n_init": self.params.n_init,
                "total_iterations": self.iteration,
            },
            history=list(best["history"]),
        )
