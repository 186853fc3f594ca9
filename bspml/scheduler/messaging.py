# bspml/scheduler/messaging.py
"""
Scheduler <-> worker plumbing.

Local (one process):
    LocalWorkerLink  scheduler -> WorkerNode, direct calls
    LocalReporter    WorkerNode -> scheduler, direct calls

Message-driven (communicator, scheduler usually on rank 0):
    SchedulerEndpoint  handlers for job-status / computation-result /
                       heartbeat / checkpoint / node-failure / steal requests
    MessageWorkerLink  job-submit, recovery and control (job-status) messages
    WorkerEndpoint     handlers for job-submit / recovery / control on a worker
    MessageReporter    worker reports as control messages

Handlers run on the communicator's message loop and never call collectives.
"""
from __future__ import annotations

from typing import Optional

from bspml.comm.communicator import Communicator
from bspml.scheduler.links import CONTROL_STATES, LocalWorkerLink, WorkerLink
from bspml.serialization.codec import decode_value, encode_value
from bspml.serialization.control import (
    CheckpointPayload,
    ComputationResultPayload,
    ControlPayload,
    HeartbeatPayload,
    JobStatusPayload,
    JobSubmitPayload,
    NodeFailurePayload,
    RecoveryPayload,
    decode_payload,
)
from bspml.serialization.message import Message, MessageKind
from bspml.utils.errors import DecodeError, ProtocolError
from bspml.utils.logger import logs

_ACTIONS = {state: action for action, state in CONTROL_STATES.items()}

__all__ = [
    "LocalWorkerLink",
    "LocalReporter",
    "MessageWorkerLink",
    "MessageReporter",
    "SchedulerEndpoint",
    "WorkerEndpoint",
]


def _send(comm: Communicator, payload: ControlPayload, dest: int) -> None:
    comm.send_payload(payload.KIND, payload.to_bytes(), dest)


# ---------------------------------------------------------
# worker -> scheduler
# ---------------------------------------------------------
class LocalReporter:
    def __init__(self, scheduler):
        self.scheduler = scheduler

    def job_status(self, payload: JobStatusPayload) -> None:
        self.scheduler.on_job_status(payload)

    def result(self, payload: ComputationResultPayload) -> None:
        self.scheduler.on_result(payload)

    def checkpoint(self, payload: CheckpointPayload) -> None:
        self.scheduler.on_checkpoint(payload)

    def heartbeat(self, payload: HeartbeatPayload) -> None:
        self.scheduler.on_heartbeat(payload)

    def node_failure(self, worker_id: int) -> None:
        self.scheduler.on_node_failure(worker_id)

    def steal(self, worker_id: int) -> Optional[str]:
        return self.scheduler.steal(worker_id)


class MessageReporter:
    def __init__(self, comm: Communicator, scheduler_rank: int = 0):
        self.comm = comm
        self.scheduler_rank = scheduler_rank

    def job_status(self, payload: JobStatusPayload) -> None:
        _send(self.comm, payload, self.scheduler_rank)

    def result(self, payload: ComputationResultPayload) -> None:
        _send(self.comm, payload, self.scheduler_rank)

    def checkpoint(self, payload: CheckpointPayload) -> None:
        _send(self.comm, payload, self.scheduler_rank)

    def heartbeat(self, payload: HeartbeatPayload) -> None:
        _send(self.comm, payload, self.scheduler_rank)

    def node_failure(self, worker_id: int) -> None:
        _send(self.comm, NodeFailurePayload(failed_worker_id=worker_id), self.scheduler_rank)

    def steal(self, worker_id: int) -> Optional[str]:
        """Asynchronous: a granted job arrives later as a job-submit message."""
        self.comm.send_payload(
            MessageKind.SYNC_REQUEST, encode_value({"worker_id": worker_id}), self.scheduler_rank
        )
        return None


# ---------------------------------------------------------
# scheduler -> worker
# ---------------------------------------------------------
class MessageWorkerLink(WorkerLink):
    def __init__(self, comm: Communicator, rank: int):
        self.comm = comm
        self.rank = rank

    def submit(self, job_id: str, descriptor: str, resume_from: Optional[str] = None) -> None:
        if resume_from:
            payload = RecoveryPayload(job_id=job_id, checkpoint_key=resume_from, descriptor=descriptor)
        else:
            payload = JobSubmitPayload(job_id=job_id, descriptor=descriptor)
        _send(self.comm, payload, self.rank)

    def control(self, job_id: str, action: str) -> None:
        _send(self.comm, JobStatusPayload(job_id=job_id, state=CONTROL_STATES[action]), self.rank)


class SchedulerEndpoint:
    """Feeds communicator messages into a JobScheduler."""

    def __init__(self, scheduler, comm: Communicator):
        self.scheduler = scheduler
        self.comm = comm
        self._handlers = {
            MessageKind.JOB_STATUS: self._on_status,
            MessageKind.COMPUTATION_RESULT: self._on_result,
            MessageKind.CHECKPOINT: self._on_checkpoint,
            MessageKind.HEARTBEAT: self._on_heartbeat,
            MessageKind.NODE_FAILURE: self._on_failure,
            MessageKind.SYNC_REQUEST: self._on_steal,
        }

    def start(self) -> None:
        for kind, fn in self._handlers.items():
            self.comm.set_handler(kind, fn)
        self.comm.start_loop()
        logs.info(f"[Scheduler] listening on rank {self.comm.rank()}")

    def stop(self) -> None:
        self.comm.stop_loop()
        for kind in self._handlers:
            self.comm.remove_handler(kind)

    # ---------------------------------------------------------
    def _on_status(self, msg: Message) -> None:
        self.scheduler.on_job_status(decode_payload(msg.kind, msg.payload))

    def _on_result(self, msg: Message) -> None:
        self.scheduler.on_result(decode_payload(msg.kind, msg.payload))

    def _on_checkpoint(self, msg: Message) -> None:
        self.scheduler.on_checkpoint(decode_payload(msg.kind, msg.payload))

    def _on_heartbeat(self, msg: Message) -> None:
        hb: HeartbeatPayload = decode_payload(msg.kind, msg.payload)
        if not self.scheduler.on_heartbeat(hb):
            # first heartbeat doubles as registration
            self.scheduler.register_worker(
                hb.worker_id,
                MessageWorkerLink(self.comm, msg.source_rank),
                rank=msg.source_rank,
                host=hb.host or "unknown",
                cores=hb.cores,
                free_memory_bytes=hb.free_memory_bytes,
            )
            self.scheduler.on_heartbeat(hb)

    def _on_failure(self, msg: Message) -> None:
        payload: NodeFailurePayload = decode_payload(msg.kind, msg.payload)
        self.scheduler.on_node_failure(payload.failed_worker_id)

    def _on_steal(self, msg: Message) -> None:
        raw = decode_value(msg.payload)
        if not isinstance(raw, dict) or "worker_id" not in raw:
            raise DecodeError("steal request without worker_id")
        granted = self.scheduler.steal(int(raw["worker_id"]))
        self.comm.send_payload(MessageKind.SYNC_RESPONSE, encode_value({"job_id": granted}), msg.source_rank)


class WorkerEndpoint:
    """Feeds communicator messages into a WorkerNode."""

    def __init__(self, node, comm: Communicator, scheduler_rank: int = 0):
        self.node = node
        self.comm = comm
        self.scheduler_rank = scheduler_rank
        self._handlers = {
            MessageKind.JOB_SUBMIT: self._on_submit,
            MessageKind.RECOVERY: self._on_recovery,
            MessageKind.JOB_STATUS: self._on_control,
            MessageKind.SYNC_RESPONSE: self._on_steal_reply,
        }

    def start(self) -> None:
        for kind, fn in self._handlers.items():
            self.comm.set_handler(kind, fn)
        self.comm.start_loop()

    def stop(self) -> None:
        self.comm.stop_loop()
        for kind in self._handlers:
            self.comm.remove_handler(kind)

    # ---------------------------------------------------------
    def _accept(self, job_id: str, descriptor: str, resume_from: Optional[str]) -> None:
        try:
            self.node.submit(job_id, descriptor, resume_from=resume_from)
        except ProtocolError as e:
            logs.error(f"[Worker-{self.node.worker_id}] rejected job={job_id}: {e}")
            _send(
                self.comm,
                JobStatusPayload(job_id=job_id, state="failed", error=str(e), worker_id=self.node.worker_id),
                self.scheduler_rank,
            )

    def _on_submit(self, msg: Message) -> None:
        p: JobSubmitPayload = decode_payload(msg.kind, msg.payload)
        self._accept(p.job_id, p.descriptor, p.resume_from)

    def _on_recovery(self, msg: Message) -> None:
        p: RecoveryPayload = decode_payload(msg.kind, msg.payload)
        self._accept(p.job_id, p.descriptor, p.checkpoint_key)

    def _on_control(self, msg: Message) -> None:
        p: JobStatusPayload = decode_payload(msg.kind, msg.payload)
        action = _ACTIONS.get(p.state)
        if action is None:
            logs.warning(f"[Worker-{self.node.worker_id}] unknown control state {p.state!r} for job={p.job_id}")
            return
        self.node.control(p.job_id, action)

    def _on_steal_reply(self, msg: Message) -> None:
        raw = decode_value(msg.payload)
        logs.debug(f"[Worker-{self.node.worker_id}] steal reply {raw}")
