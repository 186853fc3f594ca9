from .job import JobDescriptor, JobState, JobStatus, TERMINAL_STATES, check_transition
from .links import LocalWorkerLink, WorkerLink
from .messaging import (
    LocalReporter,
    MessageReporter,
    MessageWorkerLink,
    SchedulerEndpoint,
    WorkerEndpoint,
)
from .policy import ResourceEstimate, WorkerSelector, estimate_job_resources
from .registry import JobTable, WorkerRecord, WorkerRegistry
from .scheduler import JobScheduler
from .store import JobStore

__all__ = [
    "JobDescriptor",
    "JobState",
    "JobStatus",
    "TERMINAL_STATES",
    "check_transition",
    "WorkerLink",
    "LocalWorkerLink",
    "LocalReporter",
    "MessageReporter",
    "MessageWorkerLink",
    "SchedulerEndpoint",
    "WorkerEndpoint",
    "ResourceEstimate",
    "WorkerSelector",
    "estimate_job_resources",
    "JobTable",
    "WorkerRecord",
    "WorkerRegistry",
    "JobScheduler",
    "JobStore",
]
