# bspml/algorithms/dbscan.py
"""
Distributed DBSCAN

One superstep, no convergence loop:
    1) local DBSCAN on the partition (core / border / noise, local ids 0..K_r-1)
    2) bounding boxes are all-gathered; a point is a boundary point when it
       lies within eps of another rank's box
    3) boundary points (mode "hull") or every core point plus the boundary
       points (mode "all-core") are all-gathered with their labels
    4) rank 0 unions (rank, local_id) pairs for every cross-rank pair within
       eps where at least one side is core, walking rank pairs in order;
       remote noise next to a core point becomes a border of its cluster
    5) rank 0 broadcasts the (rank, local_id) -> global id table; every rank
       relabels
"""
from __future__ import annotations

from collections import deque
from itertools import product
from typing import Optional

import numpy as np
from sklearn.neighbors import NearestNeighbors

from bspml.algorithms.base import Kernel, KernelContext, KernelResult, unpack_state
from bspml.algorithms.params import DBSCANParams
from bspml.comm.communicator import ReduceOp
from bspml.serialization.codec import decode_value, encode_value
from bspml.tensor import Matrix, Vector
from bspml.utils.errors import ShapeMismatchError
from bspml.utils.logger import logs

NOISE = -1


# ---------------------------------------------------------
# neighbour queries
# ---------------------------------------------------------
class GridIndex:
    """
    Approximate radius search over grid buckets of side eps.

    Probes the point's own cell and its 2*d axis neighbours (not the 3^d
    diagonal block), so neighbours sitting across a cell corner can be
    missed. Cost grows linearly with dimension.
    """

    def __init__(self, x: np.ndarray, eps: float):
        self.x = x
        self.eps = eps
        self.cells = np.floor(x / eps).astype(np.int64)
        self.buckets: dict[tuple, list[int]] = {}
        for i, cell in enumerate(map(tuple, self.cells)):
            self.buckets.setdefault(cell, []).append(i)
        d = x.shape[1]
        offsets = [np.zeros(d, dtype=np.int64)]
        for axis, sign in product(range(d), (-1, 1)):
            off = np.zeros(d, dtype=np.int64)
            off[axis] = sign
            offsets.append(off)
        self.offsets = offsets

    def query(self, i: int) -> np.ndarray:
        cell = self.cells[i]
        cand = []
        for off in self.offsets:
            cand.extend(self.buckets.get(tuple(cell + off), ()))
        cand = np.asarray(sorted(cand), dtype=np.int64)
        diff = self.x[cand] - self.x[i]
        return cand[np.einsum("nd,nd->n", diff, diff) <= self.eps * self.eps]


def radius_neighbors(x: np.ndarray, eps: float, approximate: bool = False) -> list[np.ndarray]:
    """Neighbour index arrays (self included) for every row of x."""
    n = x.shape[0]
    if n == 0:
        return []
    if approximate:
        index = GridIndex(x, eps)
        return [index.query(i) for i in range(n)]
    nn = NearestNeighbors(radius=eps).fit(x)
    return [np.sort(ix) for ix in nn.radius_neighbors(x, return_distance=False)]


def local_dbscan(x: np.ndarray, eps: float, min_points: int, approximate: bool = False) -> tuple[np.ndarray, np.ndarray]:
    """
    Textbook DBSCAN. Returns (labels, is_core); labels are 0..K-1 or -1.
    A border point belongs to the first cluster that reaches it.
    """
    n = x.shape[0]
    neighbors = radius_neighbors(x, eps, approximate)
    is_core = np.array([len(nb) >= min_points for nb in neighbors], dtype=bool)
    labels = np.full(n, NOISE, dtype=np.int64)

    cluster = 0
    for i in range(n):
        if labels[i] != NOISE or not is_core[i]:
            continue
        labels[i] = cluster
        queue = deque([i])
        while queue:
            j = queue.popleft()
            for q in neighbors[j]:
                if labels[q] == NOISE:
                    labels[q] = cluster
                    if is_core[q]:
                        queue.append(q)
        cluster += 1
    return labels, is_core


def _box_distance(x: np.ndarray, lo: np.ndarray, hi: np.ndarray) -> np.ndarray:
    gap = np.maximum(np.maximum(lo - x, x - hi), 0.0)
    return np.sqrt(np.einsum("nd,nd->n", gap, gap))


# ---------------------------------------------------------
# union-find over flat node ids
# ---------------------------------------------------------
class UnionFind:
    def __init__(self, n: int):
        self.parent = list(range(n))

    def find(self, a: int) -> int:
        root = a
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[a] != root:
            self.parent[a], a = root, self.parent[a]
        return root

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        # lower id stays the representative
        if rb < ra:
            ra, rb = rb, ra
        self.parent[rb] = ra


def merge_boundaries(shipped: list[dict], eps: float) -> dict:
    """
    Coordinator side of the merge. `shipped` is indexed by rank; each entry
    holds points, labels, core flags, local indices and the local cluster
    count. Returns per-rank label maps and noise reclassifications.
    """
    offsets = np.cumsum([0] + [int(s["n_clusters"]) for s in shipped])
    uf = UnionFind(int(offsets[-1]))
    reclass: list[dict[int, int]] = [{} for _ in shipped]

    for r1, r2 in ((a, b) for a in range(len(shipped)) for b in range(a + 1, len(shipped))):
        s1, s2 = shipped[r1], shipped[r2]
        p1, p2 = s1["points"], s2["points"]
        if p1.shape[0] == 0 or p2.shape[0] == 0:
            continue
        nn = NearestNeighbors(radius=eps).fit(p2)
        hits = nn.radius_neighbors(p1, return_distance=False)
        for i, js in enumerate(hits):
            li, ci = int(s1["labels"][i]), bool(s1["core"][i])
            for j in np.sort(js):
                lj, cj = int(s2["labels"][j]), bool(s2["core"][j])
                if not (ci or cj):
                    continue
                if li != NOISE and lj != NOISE:
                    uf.union(int(offsets[r1] + li), int(offsets[r2] + lj))
                elif li != NOISE and ci:
                    reclass[r2].setdefault(int(s2["index"][j]), int(offsets[r1] + li))
                elif lj != NOISE and cj:
                    reclass[r1].setdefault(int(s1["index"][i]), int(offsets[r2] + lj))

    roots = sorted({uf.find(node) for node in range(int(offsets[-1]))})
    global_id = {root: gid for gid, root in enumerate(roots)}
    mapping = [
        [global_id[uf.find(int(offsets[r]) + local)] for local in range(int(s["n_clusters"]))]
        for r, s in enumerate(shipped)
    ]
    moved = [
        [[idx, global_id[uf.find(node)]] for idx, node in sorted(reclass[r].items())]
        for r in range(len(shipped))
    ]
    return {"mapping": mapping, "reclass": moved, "n_clusters": len(roots)}


class DBSCAN(Kernel):
    kind = "dbscan"

    def __init__(self, params: DBSCANParams | None = None):
        super().__init__(params or DBSCANParams())
        self._x: Optional[np.ndarray] = None
        self.labels: Optional[np.ndarray] = None
        self.is_core: Optional[np.ndarray] = None
        self.n_clusters = 0
        self.n_noise = 0

    def setup(self, ctx: KernelContext, x: Matrix, y: Optional[Vector]) -> None:
        self.ctx = ctx
        shapes = self.comm.all_gather([x.rows, x.cols])
        if len({s[1] for s in shapes if s[0] > 0}) > 1:
            raise ShapeMismatchError(f"ranks disagree on feature count: {[s[1] for s in shapes]}")
        self._x = x.values
        p = self.params
        logs.info(
            f"{self.tag} setup rows={x.rows} eps={p.epsilon} min_points={p.min_points} "
            f"mode={p.boundary_mode} approximate={p.approximate_neighbors}"
        )

    def _ship(self, local_labels: np.ndarray, is_core: np.ndarray, boxes: list) -> dict:
        p = self.params
        me = self.comm.rank()
        near = np.zeros(self._x.shape[0], dtype=bool)
        for rank, box in enumerate(boxes):
            if rank == me or box is None or not self._x.shape[0]:
                continue
            near |= _box_distance(self._x, box[0], box[1]) <= p.epsilon
        selected = near | is_core if p.boundary_mode == "all-core" else near
        idx = np.flatnonzero(selected)
        return {
            "points": self._x[idx],
            "labels": local_labels[idx].astype(np.float64),
            "core": is_core[idx].astype(np.float64),
            "index": idx.astype(np.float64),
            "n_clusters": int(local_labels.max() + 1) if local_labels.size else 0,
        }

    def step(self) -> bool:
        p = self.params
        local_labels, is_core = local_dbscan(self._x, p.epsilon, p.min_points, p.approximate_neighbors)
        n_local_clusters = int(local_labels.max() + 1) if local_labels.size else 0
        logs.debug(f"{self.tag} local clusters={n_local_clusters} core={int(is_core.sum())}")

        if self.comm.size() == 1:
            plan = {"mapping": [list(range(n_local_clusters))], "reclass": [[]], "n_clusters": n_local_clusters}
        else:
            box = None
            if self._x.shape[0]:
                box = [self._x.min(axis=0), self._x.max(axis=0)]
            boxes = self.comm.all_gather(box)
            shipped = self.comm.all_gather(self._ship(local_labels, is_core, boxes))
            plan = merge_boundaries(shipped, p.epsilon) if self.comm.is_master() else None
            plan = self.comm.broadcast(plan, root=0)

        mapping = np.asarray(plan["mapping"][self.comm.rank()], dtype=np.int64)
        labels = np.full(local_labels.shape, NOISE, dtype=np.int64)
        assigned = local_labels != NOISE
        labels[assigned] = mapping[local_labels[assigned]]
        for idx, gid in plan["reclass"][self.comm.rank()]:
            labels[int(idx)] = int(gid)

        self.labels = labels
        self.is_core = is_core
        self.n_clusters = int(plan["n_clusters"])
        self.n_noise = int(self.comm.all_reduce(int((labels == NOISE).sum()), ReduceOp.SUM))
        self.iteration += 1
        return True

    def checkpoint(self) -> bytes:
        return encode_value({
            "kind": self.kind,
            "iteration": self.iteration,
            "n_clusters": self.n_clusters,
            "n_noise": self.n_noise,
        })

    def restore(self, state: bytes) -> None:
        raw = unpack_state(decode_value(state), self.kind)
        # labels are not persisted; a resumed job recomputes its single pass
        self.iteration = 0
        self.n_clusters = int(raw.get("n_clusters", 0))
        self.n_noise = int(raw.get("n_noise", 0))

    def progress(self) -> float:
        return 1.0 if self.labels is not None else 0.0

    def finalise(self) -> KernelResult:
        p = self.params
        logs.info(f"{self.tag} clusters={self.n_clusters} noise={self.n_noise}")
        state = encode_value({
            "kind": self.kind,
            "n_clusters": self.n_clusters,
            "n_noise": self.n_noise,
            "epsilon": p.epsilon,
            "min_points": p.min_points,
        })
        return KernelResult(
            kind=self.kind,
            iterations=self.iteration,
            converged=True,
            loss=0.0,
            state=state,
            labels=Vector(self.labels),
            summary={
                "n_clusters": self.n_clusters,
                "n_noise": self.n_noise,
                "boundary_mode": p.boundary_mode,
            },
            extras={"is_core": Vector(self.is_core.astype(np.float64))},
        )
