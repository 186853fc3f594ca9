# bspml/serialization/control.py
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import ClassVar, Optional

from bspml.serialization.codec import decode_value, encode_value
from bspml.serialization.message import MessageKind
from bspml.utils.errors import DecodeError


class ControlPayload:
    """
    Control message bodies travel as a tagged-value dict keyed by field name.
    """

    KIND: ClassVar[MessageKind]

    def to_bytes(self) -> bytes:
        return encode_value(dataclasses.asdict(self))

    @classmethod
    def from_bytes(cls, data: bytes):
        raw = decode_value(data)
        if not isinstance(raw, dict):
            raise DecodeError(f"{cls.__name__}: payload is not a field map")
        names = {f.name for f in dataclasses.fields(cls)}
        required = {
            f.name for f in dataclasses.fields(cls)
            if f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING
        }
        missing = required - raw.keys()
        if missing:
            raise DecodeError(f"{cls.__name__}: missing fields {sorted(missing)}")
        return cls(**{k: v for k, v in raw.items() if k in names})


@dataclass
class JobSubmitPayload(ControlPayload):
    KIND: ClassVar[MessageKind] = MessageKind.JOB_SUBMIT

    job_id: str
    descriptor: str  # JobDescriptor JSON
    resume_from: Optional[str] = None


@dataclass
class JobStatusPayload(ControlPayload):
    """
    Worker -> scheduler: progress report.
    Scheduler -> worker: requested state (cancelling / paused / running).
    """

    KIND: ClassVar[MessageKind] = MessageKind.JOB_STATUS

    job_id: str
    state: str
    progress: float = 0.0
    iteration: int = 0
    message: Optional[str] = None
    error: Optional[str] = None
    worker_id: Optional[int] = None


@dataclass
class ComputationResultPayload(ControlPayload):
    KIND: ClassVar[MessageKind] = MessageKind.COMPUTATION_RESULT

    job_id: str
    iteration: int
    state: bytes
    loss: float
    accuracy: Optional[float] = None
    elapsed: float = 0.0
    worker_id: Optional[int] = None
    summary: dict = field(default_factory=dict)


@dataclass
class HeartbeatPayload(ControlPayload):
    KIND: ClassVar[MessageKind] = MessageKind.HEARTBEAT

    worker_id: int
    cpu: float
    mem: float
    net: float
    assigned_job_ids: list = field(default_factory=list)
    rank: int = 0
    host: str = ""
    cores: int = 1
    free_memory_bytes: int = 0
    resident_partitions: list = field(default_factory=list)


@dataclass
class CheckpointPayload(ControlPayload):
    KIND: ClassVar[MessageKind] = MessageKind.CHECKPOINT

    job_id: str
    iteration: int
    checkpoint_key: str


@dataclass
class RecoveryPayload(ControlPayload):
    KIND: ClassVar[MessageKind] = MessageKind.RECOVERY

    job_id: str
    checkpoint_key: str
    descriptor: str = ""


@dataclass
class NodeFailurePayload(ControlPayload):
    KIND: ClassVar[MessageKind] = MessageKind.NODE_FAILURE

    failed_worker_id: int


PAYLOAD_TYPES: dict[MessageKind, type] = {
    cls.KIND: cls
    for cls in (
        JobSubmitPayload,
        JobStatusPayload,
        ComputationResultPayload,
        HeartbeatPayload,
        CheckpointPayload,
        RecoveryPayload,
        NodeFailurePayload,
    )
}


def decode_payload(kind: MessageKind, data: bytes) -> ControlPayload:
    try:
        cls = PAYLOAD_TYPES[kind]
    except KeyError:
        raise DecodeError(f"no control payload for kind {kind.name}") from None
    return cls.from_bytes(data)
