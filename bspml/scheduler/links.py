# bspml/scheduler/links.py
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

CONTROL_STATES = {
    "cancel": "cancelling",
    "pause": "paused",
    "resume": "running",
}


class WorkerLink(ABC):
    """
    How the scheduler reaches one worker.

    submit(...) hands over a job (optionally resuming from a checkpoint key);
    control(...) forwards cancel / pause / resume. Both may raise
    TransportError.
    """

    @abstractmethod
    def submit(self, job_id: str, descriptor: str, resume_from: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def control(self, job_id: str, action: str) -> None:
        ...


class LocalWorkerLink(WorkerLink):
    """Direct calls into a WorkerNode living in the same process."""

    def __init__(self, node):
        self.node = node

    def submit(self, job_id: str, descriptor: str, resume_from: Optional[str] = None) -> None:
        self.node.submit(job_id, descriptor, resume_from=resume_from)

    def control(self, job_id: str, action: str) -> None:
        self.node.control(job_id, action)
