# bspml/scheduler/registry.py
from __future__ import annotations

import copy
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from bspml.scheduler.job import JobState, JobStatus, check_transition
from bspml.utils.errors import NotFoundError
from bspml.utils.logger import logs


@dataclass
class WorkerRecord:
    worker_id: int
    rank: int = 0
    host: str = "localhost"
    available: bool = True
    assigned_jobs: set = field(default_factory=set)
    cpu: float = 0.0
    mem: float = 0.0
    net: float = 0.0
    last_heartbeat: float = field(default_factory=time.monotonic)
    cores: int = 1
    free_memory_bytes: int = 0
    # LRU of resident partition / dataset keys, most recent last
    resident: OrderedDict = field(default_factory=OrderedDict)
    completed_jobs: int = 0

    def to_dict(self) -> dict:
        return {
            "worker_id": self.worker_id,
            "rank": self.rank,
            "host": self.host,
            "available": self.available,
            "assigned_jobs": sorted(self.assigned_jobs),
            "cpu": self.cpu,
            "mem": self.mem,
            "net": self.net,
            "heartbeat_age": round(time.monotonic() - self.last_heartbeat, 3),
            "cores": self.cores,
            "free_memory_bytes": self.free_memory_bytes,
            "resident": list(self.resident),
            "completed_jobs": self.completed_jobs,
        }


class WorkerRegistry:
    """
    Worker records behind one mutex. Readers get deep copies.
    """

    def __init__(self, affinity_cache_size: int = 32):
        self._lock = threading.Lock()
        self._workers: dict[int, WorkerRecord] = {}
        self.affinity_cache_size = affinity_cache_size

    def register(self, worker_id: int, rank: int = 0, host: str = "localhost",
                 cores: int = 1, free_memory_bytes: int = 0) -> WorkerRecord:
        with self._lock:
            rec = self._workers.get(worker_id)
            if rec is None:
                rec = WorkerRecord(worker_id=worker_id)
                self._workers[worker_id] = rec
            rec.rank, rec.host, rec.cores = rank, host, cores
            rec.free_memory_bytes = free_memory_bytes
            rec.available = True
            rec.last_heartbeat = time.monotonic()
            return copy.deepcopy(rec)

    def unregister(self, worker_id: int) -> None:
        with self._lock:
            self._workers.pop(worker_id, None)

    def __contains__(self, worker_id: int) -> bool:
        with self._lock:
            return worker_id in self._workers

    def get(self, worker_id: int) -> WorkerRecord:
        with self._lock:
            rec = self._workers.get(worker_id)
            if rec is None:
                raise NotFoundError(f"unknown worker {worker_id}")
            return copy.deepcopy(rec)

    def list(self) -> list[WorkerRecord]:
        with self._lock:
            return [copy.deepcopy(r) for r in sorted(self._workers.values(), key=lambda r: r.worker_id)]

    def heartbeat(self, worker_id: int, cpu: float, mem: float, net: float,
                  free_memory_bytes: int = 0, resident: Iterable[str] = ()) -> bool:
        """Returns False for a worker that is not registered."""
        with self._lock:
            rec = self._workers.get(worker_id)
            if rec is None:
                return False
            rec.cpu, rec.mem, rec.net = cpu, mem, net
            if free_memory_bytes:
                rec.free_memory_bytes = free_memory_bytes
            rec.last_heartbeat = time.monotonic()
            if not rec.available:
                logs.info(f"[Scheduler] worker {worker_id} is back")
                rec.available = True
            self._touch(rec, resident)
            return True

    def _touch(self, rec: WorkerRecord, keys: Iterable[str]) -> None:
        for key in keys:
            rec.resident.pop(key, None)
            rec.resident[key] = True
        while len(rec.resident) > self.affinity_cache_size:
            rec.resident.popitem(last=False)

    def touch_resident(self, worker_id: int, keys: Iterable[str]) -> None:
        with self._lock:
            rec = self._workers.get(worker_id)
            if rec is not None:
                self._touch(rec, keys)

    def assign(self, worker_id: int, job_id: str) -> None:
        with self._lock:
            self._workers[worker_id].assigned_jobs.add(job_id)

    def unassign(self, worker_id: int, job_id: str, completed: bool = False) -> None:
        with self._lock:
            rec = self._workers.get(worker_id)
            if rec is None:
                return
            rec.assigned_jobs.discard(job_id)
            if completed:
                rec.completed_jobs += 1

    def mark_failed(self, worker_id: int) -> set:
        """Mark unavailable; returns (and clears) its assigned jobs."""
        with self._lock:
            rec = self._workers.get(worker_id)
            if rec is None:
                return set()
            rec.available = False
            jobs, rec.assigned_jobs = rec.assigned_jobs, set()
            return jobs

    def expired(self, timeout: float, now: Optional[float] = None) -> list[int]:
        now = time.monotonic() if now is None else now
        with self._lock:
            return [
                r.worker_id for r in self._workers.values()
                if r.available and now - r.last_heartbeat > timeout
            ]


Listener = Callable[[JobStatus], None]


class JobTable:
    """
    Job status table.

    - one re-entrant mutex guards every record
    - transitions are validated against the state machine
    - listeners run under the mutex, so every listener observes a job's
      transitions in order; they must be short and must not call back in
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._jobs: dict[str, JobStatus] = {}
        self._listeners: list[Listener] = []

    def add(self, status: JobStatus) -> None:
        with self._lock:
            self._jobs[status.job_id] = status
            self._notify(copy.deepcopy(status))

    def get(self, job_id: str) -> JobStatus:
        with self._lock:
            status = self._jobs.get(job_id)
            if status is None:
                raise NotFoundError(f"unknown job {job_id}", job_id=job_id)
            return copy.deepcopy(status)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def list(self) -> list[JobStatus]:
        """
        Return all jobs (read-only copies).
        """
        with self._lock:
            return [copy.deepcopy(s) for s in self._jobs.values()]

    def clear(self) -> None:
        with self._lock:
            self._jobs.clear()

    def add_listener(self, fn: Listener) -> None:
        with self._lock:
            self._listeners.append(fn)

    def update(self, job_id: str, state: JobState | None = None, **fields) -> JobStatus:
        """Apply a (validated) transition plus field updates; returns a copy."""
        with self._lock:
            status = self._jobs.get(job_id)
            if status is None:
                raise NotFoundError(f"unknown job {job_id}", job_id=job_id)
            changed = False
            if state is not None and state != status.state:
                check_transition(job_id, status.state, state)
                status.state = state
                changed = True
                if state == JobState.RUNNING and status.started_at is None:
                    status.started_at = time.time()
                if state.terminal:
                    status.finished_at = time.time()
            if "progress" in fields and not changed:
                # progress never goes backwards within a state
                fields["progress"] = max(status.progress, fields["progress"])
            for key, value in fields.items():
                setattr(status, key, value)
            snapshot = copy.deepcopy(status)
            self._notify(snapshot)
            return snapshot

    def _notify(self, status: JobStatus) -> None:
        for fn in list(self._listeners):
            try:
                fn(status)
            except Exception:
                logs.exception(f"[Scheduler] status listener failed for job={status.job_id}")
