# bspml/scheduler/scheduler.py
"""
Job Scheduler (FINAL)

Two threads:
    scheduler loop   : drains CLI control requests, places the FIFO head
                       whenever running < max_concurrent_jobs
    heartbeat monitor: marks silent workers failed and redistributes their
                       jobs (requeued at the front, resumed from the last
                       reported checkpoint when there is one)

Workers report through on_job_status / on_result / on_checkpoint /
on_heartbeat / on_node_failure, either by direct call (LocalWorkerLink) or
through the message handlers in bspml.scheduler.messaging.

Job states only move forward; reports that would move a job backwards,
or that come from a worker that no longer owns the job, are logged and
dropped.
"""
from __future__ import annotations

import threading
import time
import uuid
from collections import deque
from typing import Callable, Optional

from bspml.config.scheduler_config import SchedulingPolicy
from bspml.observability.metrics import MetricRecorder
from bspml.scheduler.job import JobDescriptor, JobState, JobStatus
from bspml.scheduler.links import WorkerLink
from bspml.scheduler.policy import WorkerSelector
from bspml.scheduler.registry import JobTable, WorkerRegistry
from bspml.scheduler.store import JobStore
from bspml.serialization.control import (
    CheckpointPayload,
    ComputationResultPayload,
    HeartbeatPayload,
    JobStatusPayload,
)
from bspml.utils.errors import (
    BSPError,
    NotFoundError,
    OperationTimeoutError,
    ProtocolError,
    StorageError,
    TransportError,
)
from bspml.utils.logger import logs
from bspml.utils.retry import Retry

# placements per job before it is failed
MAX_ATTEMPTS = 3

# minimum gap between two progress-only store writes of the same job
_STORE_THROTTLE = 0.5

_REPORTED_STATES = {
    "running": JobState.RUNNING,
    "paused": JobState.PAUSED,
    "completed": JobState.COMPLETED,
    "failed": JobState.FAILED,
    "cancelled": JobState.CANCELLED,
}


class JobScheduler:
    def __init__(
        self,
        policy: SchedulingPolicy | None = None,
        store: JobStore | None = None,
        storage=None,
    ):
        self.policy = policy or SchedulingPolicy()
        self.store = store
        self.storage = storage

        self.jobs = JobTable()
        self.workers = WorkerRegistry(self.policy.affinity_cache_size)
        self.selector = WorkerSelector(self.policy)
        self.metrics = MetricRecorder()

        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._queued_at: dict[str, float] = {}
        self._resume_from: dict[str, str] = {}
        self._active: set[str] = set()
        self._links: dict[int, WorkerLink] = {}
        self._done: dict[str, threading.Event] = {}
        self._sizes: dict[str, int] = {}
        self._last_store_write: dict[str, tuple[JobState, float]] = {}
        self._dirty: set[str] = set()
        self._dirty_lock = threading.Lock()
        self._flush_lock = threading.Lock()

        self._stopping = threading.Event()
        self._threads: list[threading.Thread] = []

        self.jobs.add_listener(self._on_change)

    # ---------------------------------------------------------
    # lifecycle
    # ---------------------------------------------------------
    def start(self) -> None:
        if self._threads:
            return
        self._stopping.clear()
        for name, target in (("scheduler", self._loop), ("heartbeat-monitor", self._monitor)):
            t = threading.Thread(target=target, name=name, daemon=True)
            t.start()
            self._threads.append(t)
        logs.info(f"[Scheduler] started policy={self.policy.type}")

    def stop(self) -> None:
        self._stopping.set()
        with self._cond:
            self._cond.notify_all()
        for t in self._threads:
            t.join(timeout=5.0)
        self._threads.clear()
        self._persist_snapshots(force=True)
        logs.info("[Scheduler] stopped")

    def __enter__(self) -> "JobScheduler":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()

    # ---------------------------------------------------------
    # workers
    # ---------------------------------------------------------
    def register_worker(
        self,
        worker_id: int,
        link: WorkerLink,
        rank: int = 0,
        host: str = "localhost",
        cores: int = 1,
        free_memory_bytes: int = 0,
    ) -> None:
        self.workers.register(worker_id, rank=rank, host=host, cores=cores, free_memory_bytes=free_memory_bytes)
        with self._cond:
            self._links[worker_id] = link
            self._cond.notify_all()
        logs.info(f"[Scheduler] registered worker {worker_id} rank={rank} host={host} cores={cores}")

    def unregister_worker(self, worker_id: int) -> None:
        """Graceful leave: running jobs are redistributed like a failure."""
        self._redistribute(worker_id, reason="left")
        self.workers.unregister(worker_id)
        with self._cond:
            self._links.pop(worker_id, None)
        logs.info(f"[Scheduler] unregistered worker {worker_id}")

    # ---------------------------------------------------------
    # submission / queries
    # ---------------------------------------------------------
    def submit(self, descriptor: JobDescriptor | dict | str, job_id: Optional[str] = None) -> str:
        """Validate and enqueue; raises ValidationError before anything is queued."""
        if not isinstance(descriptor, JobDescriptor):
            descriptor = JobDescriptor.parse(descriptor)
        job_id = job_id or uuid.uuid4().hex[:12]
        if job_id in self.jobs:
            raise ProtocolError(f"duplicate job id {job_id}", job_id=job_id)

        self._done[job_id] = threading.Event()
        self.jobs.add(JobStatus(job_id=job_id, descriptor=descriptor, message="queued"))
        with self._cond:
            self._queue.append(job_id)
            self._queued_at[job_id] = time.monotonic()
            self._cond.notify_all()
        self.metrics.increment("submitted")
        logs.info(f"[Scheduler] submitted job={job_id} kind={descriptor.kind} input={descriptor.input_key}")
        return job_id

    def status(self, job_id: str) -> JobStatus:
        return self.jobs.get(job_id)

    def list_jobs(self) -> list[JobStatus]:
        return sorted(self.jobs.list(), key=lambda s: s.submitted_at)

    def add_listener(self, fn: Callable[[JobStatus], None]) -> None:
        self.jobs.add_listener(fn)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> JobStatus:
        """Block until the job is terminal."""
        done = self._done.get(job_id)
        if done is None:
            raise NotFoundError(f"unknown job {job_id}", job_id=job_id)
        if not done.wait(timeout):
            raise OperationTimeoutError(f"job {job_id} not finished after {timeout}s", job_id=job_id)
        return self.jobs.get(job_id)

    def queue(self) -> list[str]:
        with self._cond:
            return list(self._queue)

    # ---------------------------------------------------------
    # control
    # ---------------------------------------------------------
    def cancel(self, job_id: str) -> JobStatus:
        with self._cond:
            st = self.jobs.get(job_id)
            if st.state.terminal:
                raise ProtocolError(f"job {job_id} already {st.state.value}", job_id=job_id)
            if st.state == JobState.CANCELLING:
                return st
            if job_id in self._queue:
                # never reached a worker, or waiting to be re-placed
                self._dequeue(job_id)
                if st.state != JobState.PENDING:
                    self.jobs.update(job_id, JobState.CANCELLING)
                logs.info(f"[Scheduler] cancelled queued job={job_id}")
                self.metrics.increment("cancelled")
                return self.jobs.update(job_id, JobState.CANCELLED, message="cancelled while queued")
            st = self.jobs.update(job_id, JobState.CANCELLING, message="cancel requested")
            link = self._links.get(st.assigned_worker)
        self._control(st, link, "cancel")
        return st

    def pause(self, job_id: str) -> JobStatus:
        return self._transition(job_id, JobState.RUNNING, JobState.PAUSED, "pause")

    def resume(self, job_id: str) -> JobStatus:
        return self._transition(job_id, JobState.PAUSED, JobState.RUNNING, "resume")

    def _transition(self, job_id: str, expected: JobState, new: JobState, action: str) -> JobStatus:
        with self._cond:
            st = self.jobs.get(job_id)
            if st.state != expected:
                raise ProtocolError(f"cannot {action} job {job_id} in state {st.state.value}", job_id=job_id)
            st = self.jobs.update(job_id, new, message=f"{action} requested")
            # a requeued job picks its state up at placement
            link = None if job_id in self._queue else self._links.get(st.assigned_worker)
        self._control(st, link, action)
        return st

    def _control(self, st: JobStatus, link: Optional[WorkerLink], action: str) -> None:
        if link is None:
            return
        wid = st.assigned_worker
        try:
            link.control(st.job_id, action)
        except TransportError as e:
            # the heartbeat monitor settles jobs of unreachable workers
            logs.error(f"[Scheduler] {action} job={st.job_id} could not reach worker {wid}: {e}")

    # ---------------------------------------------------------
    # worker reports
    # ---------------------------------------------------------
    def _owned(self, job_id: str, worker_id: Optional[int]) -> Optional[JobStatus]:
        if job_id not in self.jobs:
            logs.warning(f"[Scheduler] report for unknown job={job_id} dropped")
            return None
        st = self.jobs.get(job_id)
        if worker_id is not None and st.assigned_worker != worker_id:
            logs.warning(
                f"[Scheduler] stale report job={job_id} from worker {worker_id} "
                f"(owner {st.assigned_worker}) dropped"
            )
            return None
        if st.state.terminal:
            logs.debug(f"[Scheduler] report for finished job={job_id} dropped")
            return None
        return st

    def on_job_status(self, payload: JobStatusPayload) -> None:
        st = self._owned(payload.job_id, payload.worker_id)
        if st is None:
            return
        new = _REPORTED_STATES.get(payload.state)
        if new is None:
            logs.warning(f"[Scheduler] job={payload.job_id} unknown reported state {payload.state!r}")
            return

        fields = {
            "progress": payload.progress,
            "current_iteration": payload.iteration,
        }
        if payload.message:
            fields["message"] = payload.message

        if new in (JobState.RUNNING, JobState.PAUSED):
            # progress only; the requested state is owned by the scheduler
            self.jobs.update(payload.job_id, **fields)
            return

        if payload.error:
            fields["error"] = payload.error
        try:
            self.jobs.update(payload.job_id, new, **fields)
        except ProtocolError as e:
            logs.warning(f"[Scheduler] {e}; report dropped")
            return
        self._finished(st, new)

    def on_result(self, payload: ComputationResultPayload) -> None:
        st = self._owned(payload.job_id, payload.worker_id)
        if st is None:
            return
        result = dict(payload.summary)
        if payload.accuracy is not None:
            result.setdefault("accuracy", payload.accuracy)
        try:
            self.jobs.update(
                payload.job_id,
                JobState.COMPLETED,
                progress=1.0,
                current_iteration=payload.iteration,
                loss=payload.loss,
                result=result,
                message=f"completed in {payload.elapsed:.2f}s",
            )
        except ProtocolError as e:
            logs.warning(f"[Scheduler] {e}; result dropped")
            return
        self._finished(st, JobState.COMPLETED, elapsed=payload.elapsed)

    def on_checkpoint(self, payload: CheckpointPayload) -> None:
        if payload.job_id not in self.jobs:
            logs.warning(f"[Scheduler] checkpoint for unknown job={payload.job_id} dropped")
            return
        st = self.jobs.get(payload.job_id)
        if st.state.terminal or payload.iteration < st.checkpoint_iteration:
            return
        self.jobs.update(
            payload.job_id,
            checkpoint_key=payload.checkpoint_key,
            checkpoint_iteration=payload.iteration,
        )
        logs.debug(f"[Scheduler] job={payload.job_id} checkpoint iter={payload.iteration}")

    def on_heartbeat(self, payload: HeartbeatPayload) -> bool:
        known = self.workers.heartbeat(
            payload.worker_id,
            cpu=payload.cpu,
            mem=payload.mem,
            net=payload.net,
            free_memory_bytes=payload.free_memory_bytes,
            resident=payload.resident_partitions,
        )
        if not known:
            logs.debug(f"[Scheduler] heartbeat from unregistered worker {payload.worker_id}")
            return False
        with self._cond:
            self._cond.notify_all()
        return True

    def on_node_failure(self, worker_id: int) -> None:
        logs.warning(f"[Scheduler] worker {worker_id} reported failed")
        self._redistribute(worker_id, reason="failed")

    def _finished(self, st: JobStatus, state: JobState, elapsed: Optional[float] = None) -> None:
        wid = st.assigned_worker
        with self._cond:
            self._active.discard(st.job_id)
            self._cond.notify_all()
        if wid is not None:
            self.workers.unassign(wid, st.job_id, completed=state == JobState.COMPLETED)
        if state == JobState.COMPLETED:
            seconds = elapsed if elapsed is not None else self.jobs.get(st.job_id).elapsed or 0.0
            if wid is not None:
                self.selector.record_completion(wid, seconds)
            self.metrics.observe("completion_time", seconds)
        self.metrics.increment(state.value)
        logs.info(f"[Scheduler] job={st.job_id} {state.value}")

    # ---------------------------------------------------------
    # failure handling
    # ---------------------------------------------------------
    def _redistribute(self, worker_id: int, reason: str) -> None:
        jobs = self.workers.mark_failed(worker_id)
        if jobs:
            self.metrics.increment("worker_failures")
        for job_id in sorted(jobs):
            st = self.jobs.get(job_id)
            with self._cond:
                self._active.discard(job_id)
            if st.state.terminal:
                continue
            if st.state == JobState.CANCELLING:
                self.jobs.update(job_id, JobState.CANCELLED, message=f"worker {worker_id} {reason} while cancelling")
                self.metrics.increment("cancelled")
                continue
            if st.attempts >= MAX_ATTEMPTS:
                self.jobs.update(
                    job_id,
                    JobState.FAILED,
                    error=f"timeout: worker {worker_id} {reason}; gave up after {st.attempts} attempts",
                )
                self.metrics.increment("failed")
                continue
            with self._cond:
                if st.checkpoint_key:
                    self._resume_from[job_id] = st.checkpoint_key
                self._queue.appendleft(job_id)
                self._queued_at[job_id] = time.monotonic()
                self._cond.notify_all()
            how = f"resume from iter {st.checkpoint_iteration}" if st.checkpoint_key else "restart"
            self.jobs.update(job_id, message=f"worker {worker_id} {reason}; requeued ({how})")
            if st.checkpoint_key:
                self.metrics.increment("recoveries")
            logs.warning(f"[Scheduler] job={job_id} requeued after worker {worker_id} {reason} ({how})")

    def _monitor(self) -> None:
        period = max(self.policy.heartbeat_interval / 2, 0.01)
        while not self._stopping.wait(period):
            for wid in self.workers.expired(self.policy.heartbeat_timeout):
                logs.warning(
                    f"[Scheduler] worker {wid} missed heartbeats for > {self.policy.heartbeat_timeout:.2f}s"
                )
                self._redistribute(wid, reason="timed out")
            self._persist_snapshots()

    # ---------------------------------------------------------
    # placement
    # ---------------------------------------------------------
    def _dequeue(self, job_id: str) -> None:
        self._queue.remove(job_id)
        self._queued_at.pop(job_id, None)

    def _placeable(self):
        return [w for w in self.workers.list() if w.worker_id in self._links]

    def _data_bytes(self, key: str) -> int:
        if self.storage is None:
            return 0
        if key not in self._sizes:
            try:
                rows, cols = self.storage.shape_of(key)
                self._sizes[key] = rows * cols * 8
            except (NotFoundError, StorageError) as e:
                logs.debug(f"[Scheduler] no size for {key}: {e}")
                return 0
        return self._sizes[key]

    def schedule_once(self) -> bool:
        """Place the FIFO head if there is capacity and a worker for it."""
        with self._cond:
            if not self._queue or len(self._active) >= self.policy.max_concurrent_jobs:
                return False
            job_id = self._queue[0]
            st = self.jobs.get(job_id)
            if st.state.terminal:
                self._dequeue(job_id)
                return True
            worker = self.selector.select(
                st.descriptor, self._placeable(), self._data_bytes(st.descriptor.input_key)
            )
            if worker is None:
                return False
            claimed = self._claim(st, worker.worker_id)
        self._place(*claimed)
        return True

    def _claim(self, st: JobStatus, worker_id: int) -> tuple:
        """Under self._cond: take the job off the queue and bind it to the worker."""
        job_id = st.job_id
        self._dequeue(job_id)
        self._active.add(job_id)
        resume_from = self._resume_from.pop(job_id, None)
        self.workers.assign(worker_id, job_id)
        st = self.jobs.update(
            job_id,
            JobState.RUNNING if st.state == JobState.PENDING else None,
            worker_ids=st.worker_ids + [worker_id],
            attempts=st.attempts + 1,
            message=f"placed on worker {worker_id}" + (f" (recovery from {resume_from})" if resume_from else ""),
        )
        return st, worker_id, self._links[worker_id], resume_from

    def _place(self, st: JobStatus, worker_id: int, link: WorkerLink, resume_from: Optional[str]) -> None:
        job_id = st.job_id
        try:
            Retry.run(
                link.submit,
                job_id,
                st.descriptor.to_json(),
                resume_from,
                exceptions=(TransportError,),
                max_attempts=3,
                delay=0.05,
            )
            if st.state == JobState.PAUSED:
                link.control(job_id, "pause")
        except BSPError as e:
            self.workers.unassign(worker_id, job_id)
            with self._cond:
                self._active.discard(job_id)
                self._cond.notify_all()
            self.jobs.update(job_id, JobState.FAILED, error=str(e), message=f"could not reach worker {worker_id}")
            self.metrics.increment("failed")
            logs.error(f"[Scheduler] job={job_id} failed to reach worker {worker_id}: {e}")
            return
        self.workers.touch_resident(worker_id, [st.descriptor.input_key])
        logs.info(f"[Scheduler] job={job_id} -> worker {worker_id}" + (f" resume={resume_from}" if resume_from else ""))

    # ---------------------------------------------------------
    # work stealing
    # ---------------------------------------------------------
    def steal(self, worker_id: int) -> Optional[str]:
        """
        Idle worker asks for queued work. Granted when the policy would pick
        this worker anyway or the job has waited past steal_threshold_seconds.
        Paused jobs are never stolen.
        """
        if not self.policy.enable_work_stealing or worker_id not in self.workers:
            return None
        candidates = self._placeable()
        me = next((w for w in self.selector.eligible(candidates) if w.worker_id == worker_id), None)
        if me is None:
            return None

        now = time.monotonic()
        with self._cond:
            if len(self._active) >= self.policy.max_concurrent_jobs:
                return None
            granted = None
            for job_id in list(self._queue):
                st = self.jobs.get(job_id)
                if st.state in (JobState.PAUSED, JobState.CANCELLING) or st.state.terminal:
                    continue
                waited = now - self._queued_at.get(job_id, now)
                choice = self.selector.select(
                    st.descriptor, candidates, self._data_bytes(st.descriptor.input_key), peek=True
                )
                if (choice is not None and choice.worker_id == worker_id) or waited >= self.policy.steal_threshold_seconds:
                    granted = st
                    break
            if granted is None:
                return None
            claimed = self._claim(granted, worker_id)
        self.metrics.increment("steals")
        logs.info(f"[Scheduler] worker {worker_id} stole job={granted.job_id}")
        self._place(*claimed)
        return granted.job_id

    # ---------------------------------------------------------
    # loop + store
    # ---------------------------------------------------------
    def _loop(self) -> None:
        while not self._stopping.is_set():
            self.drain_requests()
            if self.schedule_once():
                continue
            with self._cond:
                self._cond.wait(timeout=min(self.policy.heartbeat_interval / 2, 0.25))

    def drain_requests(self) -> None:
        if self.store is None:
            return
        for req in self.store.drain_requests():
            action, job_id = req.get("action"), req.get("job_id")
            try:
                if action == "submit":
                    self.submit(req.get("descriptor") or {}, job_id=job_id)
                elif action == "cancel":
                    self.cancel(job_id)
                elif action == "pause":
                    self.pause(job_id)
                elif action == "resume":
                    self.resume(job_id)
            except BSPError as e:
                logs.error(f"[Scheduler] control request {action} job={job_id} rejected: {e}")
        self.flush_store()

    def _on_change(self, status: JobStatus) -> None:
        # runs under the job table lock: bookkeeping only, no I/O
        if status.state.terminal:
            done = self._done.get(status.job_id)
            if done is not None:
                done.set()
        if self.store is not None:
            with self._dirty_lock:
                self._dirty.add(status.job_id)

    def flush_store(self, force: bool = False) -> None:
        """
        Write changed job records to the store. Called from the scheduler
        loop, the heartbeat monitor and stop(), never under self._cond.
        Progress-only changes are throttled to one write per job per
        _STORE_THROTTLE seconds unless force is set.
        """
        if self.store is None:
            return
        with self._flush_lock:
            with self._dirty_lock:
                dirty, self._dirty = self._dirty, set()
            now = time.monotonic()
            deferred = set()
            for job_id in sorted(dirty):
                st = self.jobs.get(job_id)
                last = self._last_store_write.get(job_id)
                if not force and last is not None and last[0] == st.state and now - last[1] < _STORE_THROTTLE:
                    deferred.add(job_id)
                    continue
                try:
                    self.store.save(st)
                except (OSError, StorageError) as e:
                    logs.error(f"[Scheduler] could not persist job={job_id}: {e}")
                    continue
                if st.state.terminal:
                    self._last_store_write.pop(job_id, None)
                else:
                    self._last_store_write[job_id] = (st.state, now)
            if deferred:
                with self._dirty_lock:
                    self._dirty |= deferred

    def _persist_snapshots(self, force: bool = False) -> None:
        if self.store is None:
            return
        self.flush_store(force=force)
        try:
            self.store.save_workers([w.to_dict() for w in self.workers.list()])
            self.store.save_metrics(self.get_metrics())
        except (OSError, StorageError) as e:
            logs.error(f"[Scheduler] snapshot write failed: {e}")

    # ---------------------------------------------------------
    # metrics
    # ---------------------------------------------------------
    def get_metrics(self) -> dict:
        snap = self.metrics.snapshot()
        counters, timings = snap["counters"], snap["timings"]
        workers = self.workers.list()
        live = [w for w in workers if w.available]
        completed = counters.get("completion_time", 0)
        slots = len(live) * self.policy.max_jobs_per_worker
        busy = sum(len(w.assigned_jobs) for w in live)
        with self._cond:
            queue_length = len(self._queue)
            running = len(self._active)
        return {
            "queue_length": queue_length,
            "running": running,
            "submitted": counters.get("submitted", 0),
            "completed": counters.get("completed", 0),
            "failed": counters.get("failed", 0),
            "cancelled": counters.get("cancelled", 0),
            "steals": counters.get("steals", 0),
            "recoveries": counters.get("recoveries", 0),
            "worker_failures": counters.get("worker_failures", 0),
            "workers": len(workers),
            "available_workers": len(live),
            "system_load": sum(self.selector.load_score(w) for w in live) / len(live) if live else 0.0,
            "avg_completion_time": timings.get("completion_time", 0.0) / completed if completed else 0.0,
            "worker_utilisation": busy / slots if slots else 0.0,
        }
