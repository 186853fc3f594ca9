# bspml/scheduler/policy.py
"""
Worker selection policies.

Every policy sees only workers that are available and below
max_jobs_per_worker, and returns None when nobody qualifies (the job
stays queued).

    round-robin     next worker id after the previous pick
    least-loaded    min cpu*w_cpu + mem*w_mem + net*w_net
    resource-aware  least-loaded among workers meeting (cores, memory)
    affinity-based  most recently resident input key wins, else least-loaded
    adaptive        least-loaded score scaled by the worker's completion-time EMA
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional, Sequence

from bspml.config.scheduler_config import SchedulingPolicy
from bspml.scheduler.job import JobDescriptor
from bspml.scheduler.registry import WorkerRecord
from bspml.utils.errors import ValidationError


@dataclass(frozen=True)
class ResourceEstimate:
    cores: int
    memory_bytes: int


def estimate_job_resources(job: JobDescriptor, data_bytes: int = 0, default_ranks: int = 1) -> ResourceEstimate:
    """
    One core per rank; memory ~ partition bytes plus working copies
    (x2 for gradients / distance blocks, x3 for DBSCAN neighbour lists).
    """
    ranks = job.num_ranks or default_ranks
    factor = 3 if job.kind == "dbscan" else 2
    return ResourceEstimate(cores=ranks, memory_bytes=int(data_bytes * factor))


class WorkerSelector:
    def __init__(self, policy: SchedulingPolicy):
        self.policy = policy
        self._lock = threading.Lock()
        self._last_rr: Optional[int] = None
        self._ema: dict[int, float] = {}

    # ---------------------------------------------------------
    def load_score(self, w: WorkerRecord) -> float:
        p = self.policy
        return w.cpu * p.cpu_weight + w.mem * p.memory_weight + w.net * p.network_weight

    def eligible(self, workers: Sequence[WorkerRecord]) -> list[WorkerRecord]:
        cap = self.policy.max_jobs_per_worker
        return sorted(
            (w for w in workers if w.available and len(w.assigned_jobs) < cap),
            key=lambda w: w.worker_id,
        )

    def record_completion(self, worker_id: int, seconds: float) -> None:
        alpha = self.policy.adaptive_alpha
        with self._lock:
            prev = self._ema.get(worker_id)
            self._ema[worker_id] = seconds if prev is None else alpha * seconds + (1 - alpha) * prev

    def completion_ema(self, worker_id: int) -> Optional[float]:
        with self._lock:
            return self._ema.get(worker_id)

    # ---------------------------------------------------------
    def select(
        self,
        job: JobDescriptor,
        workers: Sequence[WorkerRecord],
        data_bytes: int = 0,
        peek: bool = False,
    ) -> Optional[WorkerRecord]:
        """peek=True leaves the round-robin cursor where it is."""
        candidates = self.eligible(workers)
        if not candidates:
            return None
        kind = self.policy.type
        if kind == "round-robin":
            return self._round_robin(candidates, peek)
        if kind == "least-loaded":
            return self._least_loaded(candidates)
        if kind == "resource-aware":
            return self._resource_aware(job, candidates, data_bytes)
        if kind == "affinity-based":
            return self._affinity(job, candidates)
        if kind == "adaptive":
            return self._adaptive(candidates)
        raise ValidationError(f"unknown scheduling policy {kind!r}")

    def _round_robin(self, candidates: list[WorkerRecord], peek: bool = False) -> WorkerRecord:
        with self._lock:
            pick = candidates[0]
            if self._last_rr is not None:
                after = [w for w in candidates if w.worker_id > self._last_rr]
                if after:
                    pick = after[0]
            if not peek:
                self._last_rr = pick.worker_id
            return pick

    def _least_loaded(self, candidates: list[WorkerRecord]) -> WorkerRecord:
        return min(candidates, key=lambda w: (self.load_score(w), len(w.assigned_jobs), w.worker_id))

    def _resource_aware(self, job, candidates, data_bytes) -> Optional[WorkerRecord]:
        need = estimate_job_resources(job, data_bytes)
        fits = [
            w for w in candidates
            if w.cores >= need.cores
            # 0 = the worker has not reported free memory yet
            and (w.free_memory_bytes == 0 or w.free_memory_bytes >= need.memory_bytes)
        ]
        return self._least_loaded(fits) if fits else None

    def _affinity(self, job: JobDescriptor, candidates) -> WorkerRecord:
        def recency(w: WorkerRecord) -> int:
            keys = list(w.resident)
            hits = [i for i, key in enumerate(keys) if key == job.input_key or key.startswith(job.input_key + "#")]
            return max(hits) if hits else -1

        holders = [w for w in candidates if recency(w) >= 0]
        if holders:
            return min(holders, key=lambda w: (self.load_score(w), -recency(w), w.worker_id))
        return self._least_loaded(candidates)

    def _adaptive(self, candidates) -> WorkerRecord:
        with self._lock:
            known = list(self._ema.values())
        mean = sum(known) / len(known) if known else 0.0

        def score(w: WorkerRecord) -> float:
            ema = self.completion_ema(w.worker_id)
            factor = 1.0 if ema is None or mean <= 0 else ema / mean
            # +1 keeps idle (all-zero load) workers comparable by speed
            return (self.load_score(w) + 1.0) * factor

        return min(candidates, key=lambda w: (score(w), len(w.assigned_jobs), w.worker_id))
