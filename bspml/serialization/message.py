# bspml/serialization/message.py
from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

ANY_SOURCE = -1
ANY_TAG = -1


class MessageKind(IntEnum):
    JOB_SUBMIT = 0
    JOB_STATUS = 1
    DATA_PARTITION = 2
    COMPUTATION_RESULT = 3
    SYNC_REQUEST = 4
    SYNC_RESPONSE = 5
    HEARTBEAT = 6
    NODE_FAILURE = 7
    CHECKPOINT = 8
    RECOVERY = 9


@dataclass(frozen=True)
class Message:
    """
    Typed message (kind, source_rank, dest_rank, tag, payload).

    payload is opaque bytes; its layout is owned by the kind
    (see bspml.serialization.control).
    """

    kind: MessageKind
    source_rank: int
    dest_rank: int
    tag: int
    payload: bytes = b""

    @property
    def data_len(self) -> int:
        return len(self.payload)
