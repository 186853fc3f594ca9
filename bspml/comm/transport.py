# bspml/comm/transport.py
from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Optional

from bspml.serialization.message import ANY_SOURCE, ANY_TAG
from bspml.utils.errors import TransportError
from bspml.utils.logger import logs

# Tags at or above this value belong to collectives. Wildcard receives
# (ANY_TAG) never match them, so the async message loop cannot steal
# collective traffic.
COLLECTIVE_TAG_BASE = 30000

Frame = tuple[bytes, int, int]  # (data, source, tag)


class Transport(ABC):
    """
    Minimal frame transport between ranked peers.

    Contract:
    - send() returns once the frame is handed off; it may block until the
      peer accepts it (MPI standard-mode send)
    - recv() returns None on timeout
    - FIFO per (source, dest, tag)
    """

    @property
    @abstractmethod
    def rank(self) -> int:
        raise NotImplementedError

    @property
    @abstractmethod
    def size(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def send(self, data: bytes, dest: int, tag: int) -> None:
        raise NotImplementedError

    @abstractmethod
    def recv(self, source: int, tag: int, timeout: Optional[float]) -> Optional[Frame]:
        raise NotImplementedError

    def close(self) -> None:
        pass


# =============================================================
# In-process group (thread ranks)
# =============================================================
class InProcessGroup:
    """
    Shared mailboxes for `size` ranks living in one process.

    - one mailbox per destination rank, guarded by one condition variable
    - abort(reason) wakes every blocked receiver with a TransportError
    """

    def __init__(self, size: int):
        if size < 1:
            raise ValueError("group size must be >= 1")
        self.size = size
        self._cond = threading.Condition()
        self._mailboxes: list[deque] = [deque() for _ in range(size)]
        self._abort_reason: Optional[BaseException] = None

    def transport(self, rank: int) -> "InProcessTransport":
        if not 0 <= rank < self.size:
            raise ValueError(f"rank {rank} out of range for group of {self.size}")
        return InProcessTransport(self, rank)

    def transports(self) -> list["InProcessTransport"]:
        return [self.transport(r) for r in range(self.size)]

    @property
    def abort_reason(self) -> Optional[BaseException]:
        return self._abort_reason

    @property
    def aborted(self) -> bool:
        return self._abort_reason is not None

    def abort(self, reason: BaseException) -> None:
        with self._cond:
            if self._abort_reason is None:
                self._abort_reason = reason
                logs.warning(f"[InProcessGroup] aborted: {reason!r}")
            self._cond.notify_all()

    # ---------------------------------------------------------
    def post(self, source: int, dest: int, tag: int, data: bytes) -> None:
        if not 0 <= dest < self.size:
            raise TransportError(f"destination rank {dest} out of range (size={self.size})")
        with self._cond:
            if self._abort_reason is not None:
                raise TransportError(f"group aborted: {self._abort_reason!r}")
            self._mailboxes[dest].append((source, tag, bytes(data)))
            self._cond.notify_all()

    @staticmethod
    def _matches(entry: tuple, source: int, tag: int) -> bool:
        src, t, _ = entry
        if source != ANY_SOURCE and src != source:
            return False
        if tag == ANY_TAG:
            return t < COLLECTIVE_TAG_BASE
        return t == tag

    def take(self, dest: int, source: int, tag: int, timeout: Optional[float]) -> Optional[Frame]:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._abort_reason is not None:
                    raise TransportError(f"group aborted: {self._abort_reason!r}")
                box = self._mailboxes[dest]
                for i, entry in enumerate(box):
                    if self._matches(entry, source, tag):
                        del box[i]
                        src, t, data = entry
                        return data, src, t
                if deadline is None:
                    self._cond.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    self._cond.wait(remaining)


class InProcessTransport(Transport):
    def __init__(self, group: InProcessGroup, rank: int):
        self._group = group
        self._rank = rank

    @property
    def rank(self) -> int:
        return self._rank

    @property
    def size(self) -> int:
        return self._group.size

    @property
    def group(self) -> InProcessGroup:
        return self._group

    def send(self, data: bytes, dest: int, tag: int) -> None:
        self._group.post(self._rank, dest, tag, data)

    def recv(self, source: int, tag: int, timeout: Optional[float]) -> Optional[Frame]:
        return self._group.take(self._rank, source, tag, timeout)


# =============================================================
# MPI (mpi4py)
# =============================================================
class MPITransport(Transport):
    """
    Frames over mpi4py. Collective tags travel on a duplicated
    communicator so wildcard receives on the main one never see them.

    send() is a blocking comm.send: small frames are buffered eagerly,
    large ones wait for the receiver to post a matching recv.
    """

    def __init__(self, comm=None, poll_interval: float = 0.001):
        from mpi4py import MPI

        self._MPI = MPI
        self._comm = comm if comm is not None else MPI.COMM_WORLD
        self._coll = self._comm.Dup()
        self._poll_interval = poll_interval

    @property
    def rank(self) -> int:
        return self._comm.Get_rank()

    @property
    def size(self) -> int:
        return self._comm.Get_size()

    def _channel(self, tag: int):
        return self._coll if tag >= COLLECTIVE_TAG_BASE else self._comm

    def send(self, data: bytes, dest: int, tag: int) -> None:
        try:
            self._channel(tag).send(bytes(data), dest=dest, tag=tag)
        except self._MPI.Exception as e:
            raise TransportError(f"MPI send to {dest} tag={tag} failed: {e}") from e

    def recv(self, source: int, tag: int, timeout: Optional[float]) -> Optional[Frame]:
        MPI = self._MPI
        channel = self._channel(tag) if tag != ANY_TAG else self._comm
        src = MPI.ANY_SOURCE if source == ANY_SOURCE else source
        mtag = MPI.ANY_TAG if tag == ANY_TAG else tag
        status = MPI.Status()
        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            while not channel.Iprobe(source=src, tag=mtag, status=status):
                if deadline is not None and time.monotonic() >= deadline:
                    return None
                time.sleep(self._poll_interval)
            data = channel.recv(source=status.Get_source(), tag=status.Get_tag())
        except MPI.Exception as e:
            raise TransportError(f"MPI recv from {source} tag={tag} failed: {e}") from e
        return data, status.Get_source(), status.Get_tag()

    def close(self) -> None:
        self._coll.Free()
