# bspml/worker/node.py
"""
Worker Node (FINAL)

Threads:
    worker loop : takes jobs off the queue, runs up to max_jobs_per_worker
                  at once (one pool thread per job, each job a local BSP
                  group of num_ranks thread ranks)
    heartbeat   : HeartbeatPayload every heartbeat_interval
    metrics     : psutil samples (cpu%, mem%, net%)

Per job:
    validate descriptor -> lease partitions -> kernel.fit on every rank
    -> write outputs -> report result

Cancel / pause / resume only flip per-job flags; the kernel observes them
at its next iteration boundary.
"""
from __future__ import annotations

import queue
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, astuple, dataclass, is_dataclass
from typing import Any, Optional

import numpy as np
import psutil

from bspml.algorithms.base import KernelContext, KernelResult
from bspml.algorithms.registry import resolve_kernel
from bspml.comm.communicator import Communicator
from bspml.comm.runtime import run_group
from bspml.config.communicator_config import CommunicatorConfig
from bspml.config.worker_config import WorkerConfig
from bspml.observability.metrics import MetricRecorder
from bspml.observability.timer import Timer
from bspml.scheduler.job import JobDescriptor
from bspml.serialization.control import (
    CheckpointPayload,
    ComputationResultPayload,
    HeartbeatPayload,
    JobStatusPayload,
)
from bspml.storage.base import Checkpoint, Partition, StorageAdapter
from bspml.tensor import Vector
from bspml.utils.errors import BSPError, JobCancelled, TransportError, ValidationError
from bspml.utils.logger import logs

_RESIDENT_LIMIT = 32


def checkpoint_key(job_id: str, iteration: int) -> str:
    return f"checkpoints/{job_id}/iter-{iteration:06d}"


def output_key(job_id: str, descriptor: JobDescriptor) -> str:
    return descriptor.output_key or f"results/{job_id}"


@dataclass
class WorkerMetrics:
    cpu: float = 0.0
    mem: float = 0.0
    net: float = 0.0
    free_memory_bytes: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    jobs_cancelled: int = 0
    compute_time: float = 0.0


class _JobControl:
    def __init__(self):
        self.cancel = threading.Event()
        self.resumed = threading.Event()
        self.resumed.set()

    def paused(self) -> bool:
        return not self.resumed.is_set()


@dataclass
class _QueuedJob:
    job_id: str
    descriptor: JobDescriptor
    resume_from: Optional[str] = None


class WorkerNode:
    def __init__(
        self,
        cfg: WorkerConfig,
        storage: StorageAdapter,
        reporter=None,
        comm_config: CommunicatorConfig | None = None,
    ):
        self.cfg = cfg
        self.worker_id = cfg.worker_id
        self.storage = storage
        self.reporter = reporter
        self.comm_config = comm_config
        self.tag = f"[Worker-{cfg.worker_id}]"

        self.metrics = WorkerMetrics()
        self.recorder = MetricRecorder()
        self.timer = Timer()

        self._queue: queue.Queue[_QueuedJob] = queue.Queue()
        self._lock = threading.Lock()
        self._controls: dict[str, _JobControl] = {}
        self._queued: set[str] = set()
        self._running: set[str] = set()
        self._resident: OrderedDict[str, bool] = OrderedDict()
        self._slots = threading.BoundedSemaphore(cfg.max_jobs_per_worker)
        self._pool: Optional[ThreadPoolExecutor] = None

        self._alive = threading.Event()
        self._alive.set()
        self._stopping = threading.Event()
        self._threads: list[threading.Thread] = []
        self._last_net: Optional[tuple[float, int]] = None
        self._last_steal = 0.0

    # ---------------------------------------------------------
    # lifecycle
    # ---------------------------------------------------------
    def start(self) -> None:
        if self._threads:
            return
        self._stopping.clear()
        self._pool = ThreadPoolExecutor(
            max_workers=self.cfg.max_jobs_per_worker,
            thread_name_prefix=f"worker-{self.worker_id}-job",
        )
        # first cpu_percent() call only primes the counter
        psutil.cpu_percent(interval=None)
        for name, target in (
            ("loop", self._loop),
            ("heartbeat", self._heartbeat_loop),
            ("metrics", self._metrics_loop),
        ):
            t = threading.Thread(target=target, name=f"worker-{self.worker_id}-{name}", daemon=True)
            t.start()
            self._threads.append(t)
        logs.info(f"{self.tag} started cores={self.cfg.cores} slots={self.cfg.max_jobs_per_worker}")

    def stop(self, cancel_running: bool = True) -> None:
        self._stopping.set()
        if cancel_running:
            with self._lock:
                for ctl in self._controls.values():
                    ctl.cancel.set()
                    ctl.resumed.set()
        for t in self._threads:
            t.join(timeout=5.0)
        self._threads.clear()
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
        logs.info(f"{self.tag} stopped")

    def kill(self) -> None:
        """
        Simulated crash: heartbeats and reports stop immediately and running
        jobs are abandoned at their next iteration boundary.
        """
        logs.warning(f"{self.tag} killed")
        self._alive.clear()
        with self._lock:
            for ctl in self._controls.values():
                ctl.cancel.set()
                ctl.resumed.set()

    @property
    def alive(self) -> bool:
        return self._alive.is_set()

    # ---------------------------------------------------------
    # scheduler-facing
    # ---------------------------------------------------------
    def submit(self, job_id: str, descriptor: str, resume_from: Optional[str] = None) -> None:
        if not self.alive:
            raise TransportError(f"worker {self.worker_id} is down")
        desc = JobDescriptor.from_wire(descriptor)
        with self._lock:
            self._controls.setdefault(job_id, _JobControl())
            self._queued.add(job_id)
        self._queue.put(_QueuedJob(job_id, desc, resume_from))
        logs.info(
            f"{self.tag} accepted job={job_id} kind={desc.kind}"
            + (f" resume_from={resume_from}" if resume_from else "")
        )

    def control(self, job_id: str, action: str) -> None:
        if not self.alive:
            raise TransportError(f"worker {self.worker_id} is down")
        with self._lock:
            # a control message may overtake the job it refers to
            ctl = self._controls.setdefault(job_id, _JobControl())
        if action == "cancel":
            ctl.cancel.set()
            ctl.resumed.set()
        elif action == "pause":
            ctl.resumed.clear()
        elif action == "resume":
            ctl.resumed.set()
        else:
            raise ValidationError(f"unknown control action {action!r}")
        logs.info(f"{self.tag} {action} job={job_id}")

    def assigned_jobs(self) -> list[str]:
        with self._lock:
            return sorted(self._queued | self._running)

    def resident_keys(self) -> list[str]:
        with self._lock:
            return list(self._resident)

    # ---------------------------------------------------------
    # reporting
    # ---------------------------------------------------------
    def _report(self, method: str, payload: Any) -> None:
        if self.reporter is None or not self.alive:
            return
        try:
            getattr(self.reporter, method)(payload)
        except TransportError as e:
            logs.error(f"{self.tag} could not deliver {method} report: {e}")

    def _status(self, job_id: str, state: str, **fields) -> None:
        self._report("job_status", JobStatusPayload(job_id=job_id, state=state, worker_id=self.worker_id, **fields))

    # ---------------------------------------------------------
    # loops
    # ---------------------------------------------------------
    def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                job = self._queue.get(timeout=0.1)
            except queue.Empty:
                self._maybe_steal()
                continue
            # blocks while every slot is busy
            while not self._slots.acquire(timeout=0.1):
                if self._stopping.is_set():
                    return
            self._pool.submit(self._run_job, job)

    def _maybe_steal(self) -> None:
        if self.reporter is None or not self.alive:
            return
        now = time.monotonic()
        with self._lock:
            idle = not self._running and not self._queued
        if not idle or now - self._last_steal < self.cfg.steal_interval:
            return
        self._last_steal = now
        try:
            job_id = self.reporter.steal(self.worker_id)
        except TransportError as e:
            logs.warning(f"{self.tag} steal request failed: {e}")
            return
        if job_id:
            logs.info(f"{self.tag} stole job={job_id}")

    def _heartbeat_loop(self) -> None:
        while not self._stopping.wait(self.cfg.heartbeat_interval):
            if self.alive:
                self.heartbeat()

    def heartbeat(self) -> HeartbeatPayload:
        m = self.metrics
        payload = HeartbeatPayload(
            worker_id=self.worker_id,
            cpu=m.cpu,
            mem=m.mem,
            net=m.net,
            assigned_job_ids=self.assigned_jobs(),
            rank=self.cfg.rank,
            host=self.cfg.host,
            cores=self.cfg.cores,
            free_memory_bytes=m.free_memory_bytes,
            resident_partitions=self.resident_keys(),
        )
        self._report("heartbeat", payload)
        return payload

    def _metrics_loop(self) -> None:
        while not self._stopping.wait(self.cfg.metrics_interval):
            self.sample()

    def sample(self) -> WorkerMetrics:
        """One psutil sample: cpu%, mem%, net% of the configured link speed."""
        vm = psutil.virtual_memory()
        self.metrics.cpu = float(psutil.cpu_percent(interval=None))
        self.metrics.mem = float(vm.percent)
        self.metrics.free_memory_bytes = int(vm.available)

        counters = psutil.net_io_counters()
        now = time.monotonic()
        if counters is not None:
            total = counters.bytes_sent + counters.bytes_recv
            if self._last_net is not None:
                dt = max(now - self._last_net[0], 1e-6)
                rate = max(total - self._last_net[1], 0) / dt
                self.metrics.net = min(100.0, 100.0 * rate / self.cfg.network_capacity_bytes)
            self._last_net = (now, total)

        self.recorder.record("cpu", self.metrics.cpu)
        self.recorder.record("mem", self.metrics.mem)
        self.recorder.record("net", self.metrics.net)
        return self.metrics

    def get_metrics(self) -> dict:
        out = asdict(self.metrics)
        out["running_jobs"] = len(self._running)
        out["queued_jobs"] = len(self._queued)
        out["timings"] = self.recorder.snapshot()["timings"]
        return out

    # ---------------------------------------------------------
    # job execution
    # ---------------------------------------------------------
    def _run_job(self, job: _QueuedJob) -> None:
        job_id = job.job_id
        with self._lock:
            ctl = self._controls.setdefault(job_id, _JobControl())
            self._queued.discard(job_id)
            self._running.add(job_id)
        try:
            with self.timer.span(f"job:{job_id}") as elapsed:
                if ctl.cancel.is_set():
                    raise JobCancelled("cancelled before start", job_id=job_id)
                self._status(job_id, "running", message="started")
                result = self._execute(job, ctl)
            seconds = elapsed[0]
            self.recorder.observe("job", seconds)
            self.metrics.compute_time += seconds
            self.metrics.jobs_completed += 1
            self._report(
                "result",
                ComputationResultPayload(
                    job_id=job_id,
                    iteration=result.iterations,
                    state=result.state,
                    loss=float(result.loss),
                    accuracy=result.accuracy,
                    elapsed=seconds,
                    worker_id=self.worker_id,
                    summary=result.summary,
                ),
            )
            logs.info(f"{self.tag} job={job_id} completed in {seconds:.2f}s")
        except JobCancelled as e:
            self.metrics.jobs_cancelled += 1
            if self.alive:
                logs.info(f"{self.tag} job={job_id} cancelled: {e.message}")
                self._status(job_id, "cancelled", message=e.message)
        except BSPError as e:
            self.metrics.jobs_failed += 1
            logs.error(f"{self.tag} job={job_id} failed: {e}")
            self._status(job_id, "failed", error=str(e))
        except Exception as e:
            self.metrics.jobs_failed += 1
            logs.exception(f"{self.tag} job={job_id} crashed")
            self._status(job_id, "failed", error=f"internal: {e}")
        finally:
            with self._lock:
                self._running.discard(job_id)
                self._controls.pop(job_id, None)
            self._slots.release()

    def _resume_checkpoint(self, job: _QueuedJob) -> Optional[Checkpoint]:
        if not job.resume_from:
            return None
        ckpt = self.storage.load_checkpoint(job.resume_from)
        newest = self.storage.latest_checkpoint(f"checkpoints/{job.job_id}")
        if newest is not None and newest.iteration > ckpt.iteration:
            logs.info(
                f"{self.tag} job={job.job_id} checkpoint {job.resume_from} is stale; "
                f"using iter={newest.iteration}"
            )
            ckpt = newest
        return ckpt

    def _touch(self, keys: list[str]) -> None:
        with self._lock:
            for key in keys:
                self._resident.pop(key, None)
                self._resident[key] = True
            while len(self._resident) > _RESIDENT_LIMIT:
                self._resident.popitem(last=False)

    def _execute(self, job: _QueuedJob, ctl: _JobControl) -> KernelResult:
        job_id, desc = job.job_id, job.descriptor
        n_ranks = desc.num_ranks or self.cfg.ranks_per_job
        parts = self.storage.partition(desc.input_key, desc.partition_strategy, n_ranks)
        ckpt = self._resume_checkpoint(job)
        holder = f"{job_id}@worker-{self.worker_id}"
        lease = _Leases(self.storage, parts, holder, desc.access_mode, self.cfg.lease_timeout)

        def save_checkpoint(iteration: int, state: bytes) -> None:
            key = checkpoint_key(job_id, iteration)
            self.storage.save_checkpoint(key, Checkpoint(job_id=job_id, iteration=iteration, state=state, backing_key=key))
            self._report("checkpoint", CheckpointPayload(job_id=job_id, iteration=iteration, checkpoint_key=key))
            logs.debug(f"{self.tag} job={job_id} checkpoint {key}")

        def report(iteration: int, progress: float, loss: Optional[float]) -> None:
            message = None if loss is None else f"loss={loss:.6g}"
            self._status(job_id, "running", progress=progress, iteration=iteration, message=message)

        def wait_resumed() -> None:
            lease.release()
            self._status(job_id, "paused", message="paused; partitions released")
            while not ctl.resumed.wait(0.1):
                if not self.alive:
                    break
            lease.acquire()

        def should_cancel() -> bool:
            return ctl.cancel.is_set() or not self.alive

        def rank_main(comm: Communicator):
            part = parts[comm.rank()]
            x, y = self.storage.read_partition_dataset(part)
            kernel = resolve_kernel(desc.kind, desc.kernel_params())
            ctx = KernelContext(
                comm=comm,
                job_id=job_id,
                checkpoint_interval=desc.checkpoint_interval,
                should_cancel=should_cancel,
                is_paused=ctl.paused,
                wait_resumed=wait_resumed,
                save_checkpoint=save_checkpoint,
                report=report,
                resume_state=ckpt.state if ckpt is not None else None,
            )
            result = kernel.fit(ctx, x, y)
            return _collect_rows(comm, part, result)

        lease.acquire()
        try:
            self._touch([desc.input_key] + [p.residency_key for p in parts])
            result = run_group(n_ranks, rank_main, self.comm_config)[0]
        finally:
            lease.release()

        self._write_outputs(job_id, desc, result)
        return result

    def _write_outputs(self, job_id: str, desc: JobDescriptor, result: KernelResult) -> None:
        key = output_key(job_id, desc)
        result.summary["output_key"] = key
        result.summary.setdefault("iterations", result.iterations)
        result.summary.setdefault("converged", result.converged)
        self.storage.write_value(key, {
            "job_id": job_id,
            "kind": result.kind,
            "iterations": result.iterations,
            "converged": result.converged,
            "loss": float(result.loss),
            "state": result.state,
            "summary": result.summary,
            "history": [list(astuple(r)) if is_dataclass(r) else r for r in result.history],
        })
        if result.labels is not None:
            self.storage.write_vector(f"{key}/labels", result.labels)
        for name, values in result.extras.items():
            self.storage.write_vector(f"{key}/{name}", values)
        logs.info(f"{self.tag} job={job_id} outputs written to {key}")


class _Leases:
    """Partition leases of one job, released while it is paused."""

    def __init__(self, storage: StorageAdapter, parts: list[Partition], holder: str, mode: str, timeout: float):
        self.storage = storage
        self.parts = parts
        self.holder = holder
        self.mode = mode
        self.timeout = timeout
        self.held = False

    def acquire(self) -> None:
        if self.held:
            return
        taken = []
        try:
            for part in self.parts:
                self.storage.acquire_partition(part, self.holder, self.mode, self.timeout)
                taken.append(part)
        except BSPError:
            for part in taken:
                self.storage.release_partition(part, self.holder)
            raise
        self.held = True

    def release(self) -> None:
        if not self.held:
            return
        for part in self.parts:
            self.storage.release_partition(part, self.holder)
        self.held = False


def _collect_rows(comm: Communicator, part: Partition, result: KernelResult) -> Optional[KernelResult]:
    """
    Gather per-row outputs (labels, extras) onto rank 0 and put them back in
    dataset row order. Every rank must call this; only rank 0 gets a result.
    """
    rows = np.asarray(part.row_indices, dtype=np.float64)
    local = {}
    if result.labels is not None:
        local["labels"] = result.labels.values
    for name, values in result.extras.items():
        local[name] = values.values
    gathered = comm.gather({"rows": rows, **local}, root=0)
    if not comm.is_master():
        return None

    index = np.concatenate([g["rows"] for g in gathered]).astype(np.int64)
    total = int(index.max()) + 1 if index.size else 0

    def assemble(name: str) -> Vector:
        out = np.full(total, np.nan)
        out[index] = np.concatenate([np.asarray(g[name], dtype=np.float64) for g in gathered])
        return Vector(out)

    if "labels" in local:
        result.labels = assemble("labels")
    result.extras = {name: assemble(name) for name in result.extras}
    return result
