# bspml/scheduler/store.py
from __future__ import annotations

import json
import time
import uuid
from pathlib import Path
from typing import Any, Optional

from bspml.scheduler.job import JobStatus
from bspml.utils.errors import NotFoundError, StorageError, ValidationError
from bspml.utils.filesystem import FileSystem
from bspml.utils.logger import logs

CONTROL_ACTIONS = ("submit", "cancel", "pause", "resume")


class JobStore:
    """
    JSON side-channel between a running scheduler and the CLI.

    <root>/jobs/<job_id>.json        latest JobStatus snapshot
    <root>/control/<ts>-<id>.json    queued requests, drained by the scheduler
    <root>/workers.json              worker registry snapshot
    <root>/metrics.json              scheduler metrics snapshot
    """

    def __init__(self, root: str | Path):
        self.root = FileSystem.ensure_dir(root)
        self.jobs_dir = FileSystem.ensure_dir(self.root / "jobs")
        self.control_dir = FileSystem.ensure_dir(self.root / "control")

    # ---------------------------------------------------------
    @staticmethod
    def _dump(path: Path, payload: Any) -> None:
        FileSystem.safe_write(path, json.dumps(payload, indent=2, default=str).encode("utf-8"))

    @staticmethod
    def _load(path: Path) -> Any:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise StorageError(f"corrupt store file {path.name}: {e}") from e

    # ---------------------------------------------------------
    # job snapshots
    # ---------------------------------------------------------
    def save(self, status: JobStatus) -> None:
        self._dump(self.jobs_dir / f"{status.job_id}.json", status.to_dict())

    def exists(self, job_id: str) -> bool:
        return (self.jobs_dir / f"{job_id}.json").exists()

    def load(self, job_id: str) -> JobStatus:
        path = self.jobs_dir / f"{job_id}.json"
        if not path.exists():
            raise NotFoundError(f"unknown job {job_id}", job_id=job_id)
        return JobStatus.from_dict(self._load(path))

    def list(self) -> list[JobStatus]:
        out = [JobStatus.from_dict(self._load(p)) for p in FileSystem.list_files(self.jobs_dir, ".json")]
        return sorted(out, key=lambda s: s.submitted_at)

    # ---------------------------------------------------------
    # control requests
    # ---------------------------------------------------------
    def request(self, action: str, job_id: str, descriptor: Optional[dict] = None) -> str:
        if action not in CONTROL_ACTIONS:
            raise ValidationError(f"unknown control action {action!r}")
        request_id = uuid.uuid4().hex[:8]
        name = f"{time.time_ns():020d}-{request_id}.json"
        payload = {"action": action, "job_id": job_id, "descriptor": descriptor, "request_id": request_id}
        self._dump(self.control_dir / name, payload)
        logs.debug(f"[Scheduler] queued control request {action} job={job_id}")
        return request_id

    def drain_requests(self) -> list[dict]:
        """Oldest first; each request is returned exactly once."""
        out = []
        for path in FileSystem.list_files(self.control_dir, ".json"):
            try:
                out.append(self._load(path))
            except StorageError as e:
                logs.error(f"[Scheduler] dropping control request {path.name}: {e}")
            FileSystem.remove(path)
        return out

    # ---------------------------------------------------------
    # snapshots for the CLI
    # ---------------------------------------------------------
    def save_workers(self, workers: list[dict]) -> None:
        self._dump(self.root / "workers.json", workers)

    def load_workers(self) -> list[dict]:
        path = self.root / "workers.json"
        return self._load(path) if path.exists() else []

    def save_metrics(self, metrics: dict) -> None:
        self._dump(self.root / "metrics.json", metrics)

    def load_metrics(self) -> dict:
        path = self.root / "metrics.json"
        return self._load(path) if path.exists() else {}
