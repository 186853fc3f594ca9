# bspml/runtime.py
from __future__ import annotations

from pathlib import Path
from typing import Optional

from bspml.config import AppConfig
from bspml.scheduler import JobScheduler, JobStatus, JobStore, LocalReporter, LocalWorkerLink
from bspml.storage import LocalStorage
from bspml.utils.errors import NotFoundError
from bspml.utils.logger import logs
from bspml.worker import WorkerNode


def default_store_root(cfg: AppConfig) -> Path:
    return Path(cfg.storage.root).resolve() / "_jobs"


class LocalRuntime:
    """
    One-process deployment: a scheduler, a job store and N workers sharing
    one LocalStorage.

        with LocalRuntime(cfg) as rt:
            job_id = rt.scheduler.submit({...})
            rt.scheduler.wait(job_id)
    """

    def __init__(
        self,
        cfg: AppConfig | None = None,
        num_workers: Optional[int] = None,
        store_root: str | Path | None = None,
    ):
        self.cfg = cfg or AppConfig()
        self.storage = LocalStorage(self.cfg.storage)
        self.store = JobStore(store_root or default_store_root(self.cfg))
        self.scheduler = JobScheduler(self.cfg.scheduler, store=self.store, storage=self.storage)

        reporter = LocalReporter(self.scheduler)
        self.workers: list[WorkerNode] = []
        for i in range(num_workers or self.cfg.num_workers):
            wcfg = self.cfg.worker.model_copy(update={"worker_id": i, "rank": i + 1})
            self.workers.append(WorkerNode(wcfg, self.storage, reporter, self.cfg.communicator))

    # ---------------------------------------------------------
    def start(self) -> "LocalRuntime":
        self.scheduler.start()
        for node in self.workers:
            node.start()
            sample = node.sample()
            self.scheduler.register_worker(
                node.worker_id,
                LocalWorkerLink(node),
                rank=node.cfg.rank,
                host=node.cfg.host,
                cores=node.cfg.cores,
                free_memory_bytes=sample.free_memory_bytes,
            )
        logs.info(f"[Runtime] started with {len(self.workers)} workers")
        return self

    def stop(self) -> None:
        for node in self.workers:
            node.stop()
        self.scheduler.stop()
        logs.info("[Runtime] stopped")

    def __enter__(self) -> "LocalRuntime":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.stop()

    # ---------------------------------------------------------
    def worker(self, worker_id: int) -> WorkerNode:
        for node in self.workers:
            if node.worker_id == worker_id:
                return node
        raise NotFoundError(f"unknown worker {worker_id}")

    def run(self, descriptor: dict | str, timeout: Optional[float] = None) -> JobStatus:
        """Submit and block until the job is terminal."""
        job_id = self.scheduler.submit(descriptor)
        return self.scheduler.wait(job_id, timeout)
