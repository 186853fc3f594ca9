# bspml/comm/communicator.py
from __future__ import annotations

import struct
import threading
import time
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Optional, Sequence

import numpy as np

from bspml.comm.transport import COLLECTIVE_TAG_BASE, Transport
from bspml.config.communicator_config import CommunicatorConfig
from bspml.observability.metrics import MetricRecorder, PerformanceMetrics
from bspml.serialization.codec import decode_message, decode_value, encode_message, encode_value
from bspml.serialization.message import ANY_SOURCE, ANY_TAG, Message, MessageKind
from bspml.tensor import Matrix, Vector
from bspml.utils.errors import (
    DecodeError,
    OperationTimeoutError,
    ProtocolError,
    TransportError,
)
from bspml.utils.logger import logs
from bspml.utils.retry import Retry

_LEN = struct.Struct("<Q")

# each collective owns (tag, tag + 1)
TAG_BROADCAST = COLLECTIVE_TAG_BASE
TAG_GATHER = COLLECTIVE_TAG_BASE + 2
TAG_SCATTER = COLLECTIVE_TAG_BASE + 4
TAG_REDUCE = COLLECTIVE_TAG_BASE + 6


class ReduceOp(str, Enum):
    SUM = "sum"
    MAX = "max"
    MIN = "min"
    PROD = "prod"


_NUMPY_OPS = {
    ReduceOp.SUM: np.add,
    ReduceOp.MAX: np.maximum,
    ReduceOp.MIN: np.minimum,
    ReduceOp.PROD: np.multiply,
}

Handler = Callable[[Message], None]


def combine(a: Any, b: Any, op: ReduceOp) -> Any:
    """
    Elementwise reduction of two buffers of identical structure.

    Supports Matrix, Vector, ndarray, scalars and lists / tuples / dicts
    of those. Any structural or shape mismatch is a ProtocolError.
    """
    fn = _NUMPY_OPS[ReduceOp(op)]
    if isinstance(a, (Matrix, Vector)):
        if type(a) is not type(b) or a.shape != b.shape:
            raise ProtocolError(f"reduce shape mismatch: {_describe(a)} vs {_describe(b)}")
        return type(a)(fn(a.values, b.values))
    if isinstance(a, np.ndarray):
        if not isinstance(b, np.ndarray) or a.shape != b.shape:
            raise ProtocolError(f"reduce shape mismatch: {_describe(a)} vs {_describe(b)}")
        return fn(a, b)
    if isinstance(a, bool) or isinstance(b, bool):
        raise ProtocolError("cannot reduce booleans")
    if isinstance(a, (int, float)):
        if not isinstance(b, (int, float)):
            raise ProtocolError(f"reduce type mismatch: {_describe(a)} vs {_describe(b)}")
        out = fn(a, b)
        return int(out) if isinstance(a, int) and isinstance(b, int) else float(out)
    if isinstance(a, (list, tuple)):
        if not isinstance(b, (list, tuple)) or len(a) != len(b):
            raise ProtocolError(f"reduce length mismatch: {_describe(a)} vs {_describe(b)}")
        return [combine(x, y, op) for x, y in zip(a, b)]
    if isinstance(a, dict):
        if not isinstance(b, dict) or a.keys() != b.keys():
            raise ProtocolError("reduce key mismatch")
        return {k: combine(a[k], b[k], op) for k in a}
    raise ProtocolError(f"cannot reduce value of type {type(a).__name__}")


def _describe(v: Any) -> str:
    shape = getattr(v, "shape", None)
    if shape is not None:
        return f"{type(v).__name__}{tuple(shape)}"
    if isinstance(v, (list, tuple)):
        return f"{type(v).__name__}[{len(v)}]"
    return type(v).__name__


class Communicator:
    """
    Ranked process group: point-to-point, collectives, async message loop.

    Point-to-point framing
        every logical send transmits the payload length (u64) on `tag`
        and then the payload on `tag + 1`; recv does the inverse.

    Collectives
        linear, root-based, on reserved tags (>= COLLECTIVE_TAG_BASE).
        Reductions are folded on the root in rank order and the result
        bytes are broadcast, so every rank decodes identical bytes.
        Calls must be made in the same order on every rank, from one
        thread per rank.

    Message loop
        single consumer; handlers run sequentially on the loop thread.
        A handler must not call a collective (peers may be blocked
        sending to this rank); hand the work to another thread instead.
    """

    def __init__(self, transport: Transport, config: CommunicatorConfig | None = None):
        self._transport = transport
        self.config = config or CommunicatorConfig()

        self._handlers: dict[MessageKind, Handler] = {}
        self._handlers_lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._recv_lock = threading.Lock()
        self._running = threading.Event()
        self._loop_thread: Optional[threading.Thread] = None

        self._metrics = MetricRecorder(enabled=True)
        self._metrics_lock = threading.Lock()
        self._bytes_sent = 0
        self._bytes_received = 0
        self._created = time.perf_counter()

    # ---------------------------------------------------------
    # identity
    # ---------------------------------------------------------
    def rank(self) -> int:
        return self._transport.rank

    def size(self) -> int:
        return self._transport.size

    def is_master(self) -> bool:
        return self.rank() == 0

    @property
    def transport(self) -> Transport:
        return self._transport

    # ---------------------------------------------------------
    # accounting
    # ---------------------------------------------------------
    @contextmanager
    def _timed(self, op: str):
        start = time.perf_counter()
        try:
            yield
        finally:
            self._metrics.observe(op, time.perf_counter() - start)

    def _count_bytes(self, sent: int = 0, received: int = 0) -> None:
        with self._metrics_lock:
            self._bytes_sent += sent
            self._bytes_received += received

    def get_performance_metrics(self) -> PerformanceMetrics:
        snap = self._metrics.snapshot()
        with self._metrics_lock:
            sent, received = self._bytes_sent, self._bytes_received
        timings = snap["timings"]
        calls = snap["counters"]
        return PerformanceMetrics(
            total_time=time.perf_counter() - self._created,
            communication_time=sum(timings.values()),
            num_calls=sum(calls.values()),
            bytes_sent=sent,
            bytes_received=received,
            per_operation_calls=dict(calls),
            per_operation_time=dict(timings),
        )

    def reset_performance_metrics(self) -> None:
        self._metrics.reset()
        with self._metrics_lock:
            self._bytes_sent = 0
            self._bytes_received = 0
        self._created = time.perf_counter()

    # ---------------------------------------------------------
    # frames
    # ---------------------------------------------------------
    def _transport_send(self, data: bytes, dest: int, tag: int) -> None:
        Retry.run(
            self._transport.send,
            data,
            dest,
            tag,
            exceptions=(TransportError,),
            max_attempts=self.config.retry_attempts,
            delay=self.config.retry_delay,
            jitter=False,
        )

    def _send_frame(self, data: bytes, dest: int, tag: int) -> None:
        if tag < 0:
            raise ValueError(f"tag must be >= 0, got {tag}")
        # length and payload frames of one send must stay adjacent
        with self._send_lock:
            self._transport_send(_LEN.pack(len(data)), dest, tag)
            self._transport_send(data, dest, tag + 1)
        self._count_bytes(sent=len(data) + _LEN.size)

    def _recv_frame(self, source: int, tag: int, timeout: Optional[float]) -> Optional[tuple[bytes, int, int]]:
        """
        Receive one logical frame. The length/payload pair is taken under
        the receive lock; waiting happens in poll_interval slices so other
        receivers on this rank (and stop_loop) are never starved.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        poll = self.config.poll_interval
        while True:
            slice_timeout = poll
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                slice_timeout = min(poll, remaining)

            with self._recv_lock:
                head = self._transport.recv(source, tag, slice_timeout)
                if head is None:
                    continue
                raw_len, src, frame_tag = head
                if len(raw_len) != _LEN.size:
                    raise DecodeError(
                        f"bad length frame from rank {src} tag={frame_tag} ({len(raw_len)} bytes)"
                    )
                (expected,) = _LEN.unpack(raw_len)
                body = self._transport.recv(src, frame_tag + 1, self.config.collective_timeout)
                if body is None:
                    raise OperationTimeoutError(
                        f"payload frame from rank {src} tag={frame_tag + 1} never arrived"
                    )
                data = body[0]
                if len(data) != expected:
                    raise DecodeError(
                        f"payload from rank {src} is {len(data)} bytes, header said {expected}"
                    )
                self._count_bytes(received=len(data) + _LEN.size)
                return data, src, frame_tag

    # ---------------------------------------------------------
    # point-to-point
    # ---------------------------------------------------------
    def send(self, msg: Message, dest: int) -> None:
        if msg.tag >= COLLECTIVE_TAG_BASE - 1:
            raise ValueError(f"tag {msg.tag} is reserved for collectives")
        with self._timed("send"):
            data = encode_message(msg)
            self._send_frame(data, dest, msg.tag)

    def send_payload(self, kind: MessageKind, payload: bytes, dest: int, tag: int = 0) -> None:
        self.send(
            Message(kind=kind, source_rank=self.rank(), dest_rank=dest, tag=tag, payload=payload),
            dest,
        )

    def recv(self, source: int = ANY_SOURCE, tag: int = ANY_TAG, timeout: Optional[float] = None) -> Message:
        with self._timed("recv"):
            frame = self._recv_frame(source, tag, timeout)
            if frame is None:
                raise OperationTimeoutError(
                    f"recv(source={source}, tag={tag}) timed out after {timeout}s"
                )
            return decode_message(frame[0])

    def send_receive(self, msg: Message, dest: int, source: int, tag: int = ANY_TAG,
                     timeout: Optional[float] = None) -> Message:
        self.send(msg, dest)
        return self.recv(source, tag, timeout)

    # ---------------------------------------------------------
    # collectives
    # ---------------------------------------------------------
    def _collective_recv(self, source: int, tag: int, bounded: bool = True) -> bytes:
        frame = self._recv_frame(source, tag, self.config.collective_timeout if bounded else None)
        if frame is None:
            raise OperationTimeoutError(
                f"rank {self.rank()}: collective tag={tag} from rank {source} "
                f"not reached within {self.config.collective_timeout}s"
            )
        return frame[0]

    def _check_root(self, root: int) -> None:
        if not 0 <= root < self.size():
            raise ValueError(f"root {root} out of range (size={self.size()})")

    def _broadcast_bytes(self, data: Optional[bytes], root: int, bounded: bool = True) -> bytes:
        if self.rank() == root:
            for peer in range(self.size()):
                if peer != root:
                    self._send_frame(data, peer, TAG_BROADCAST)
            return data
        return self._collective_recv(root, TAG_BROADCAST, bounded)

    def _gather_bytes(self, data: bytes, root: int) -> Optional[list[bytes]]:
        if self.rank() == root:
            out: list[bytes] = []
            for peer in range(self.size()):
                out.append(data if peer == root else self._collective_recv(peer, TAG_GATHER))
            return out
        self._send_frame(data, root, TAG_GATHER)
        return None

    def broadcast(self, value: Any = None, root: int = 0, bounded: bool = True) -> Any:
        """
        Root's value, decoded from the same bytes on every rank.

        bounded=False ignores collective_timeout, for a root that may hold
        the others back for an unbounded time (a paused job).
        """
        self._check_root(root)
        with self._timed("broadcast"):
            data = encode_value(value) if self.rank() == root else None
            return decode_value(self._broadcast_bytes(data, root, bounded))

    def gather(self, value: Any, root: int = 0) -> Optional[list]:
        self._check_root(root)
        with self._timed("gather"):
            parts = self._gather_bytes(encode_value(value), root)
            if parts is None:
                return None
            return [decode_value(p) for p in parts]

    def all_gather(self, value: Any) -> list:
        with self._timed("all_gather"):
            parts = self._gather_bytes(encode_value(value), 0)
            data = encode_value([decode_value(p) for p in parts]) if parts is not None else None
            return decode_value(self._broadcast_bytes(data, 0))

    def scatter(self, values: Optional[Sequence[Any]], root: int = 0) -> Any:
        self._check_root(root)
        with self._timed("scatter"):
            if self.rank() == root:
                if values is None or len(values) != self.size():
                    raise ValueError(
                        f"scatter needs exactly {self.size()} values on the root"
                    )
                own = None
                for peer, value in enumerate(values):
                    data = encode_value(value)
                    if peer == root:
                        own = data
                    else:
                        self._send_frame(data, peer, TAG_SCATTER)
                return decode_value(own)
            return decode_value(self._collective_recv(root, TAG_SCATTER))

    def _fold(self, parts: list[bytes], op: ReduceOp) -> Any:
        values = [decode_value(p) for p in parts]
        acc = values[0]
        for v in values[1:]:
            acc = combine(acc, v, op)
        return acc

    def reduce(self, value: Any, op: ReduceOp = ReduceOp.SUM, root: int = 0) -> Any:
        """Reduced value on the root, None elsewhere."""
        self._check_root(root)
        op = ReduceOp(op)
        with self._timed("reduce"):
            if self.rank() == root:
                parts = []
                for peer in range(self.size()):
                    parts.append(encode_value(value) if peer == root else self._collective_recv(peer, TAG_REDUCE))
                return decode_value(encode_value(self._fold(parts, op)))
            self._send_frame(encode_value(value), root, TAG_REDUCE)
            return None

    def all_reduce(self, value: Any, op: ReduceOp = ReduceOp.SUM) -> Any:
        """
        Reduce onto rank 0 then broadcast the result bytes.

        A shape mismatch anywhere raises ProtocolError on every rank.
        """
        op = ReduceOp(op)
        with self._timed("all_reduce"):
            parts = self._gather_bytes(encode_value(value), 0)
            envelope = None
            if parts is not None:
                try:
                    envelope = encode_value({"ok": True, "value": self._fold(parts, op)})
                except ProtocolError as e:
                    envelope = encode_value({"ok": False, "error": e.message})
            result = decode_value(self._broadcast_bytes(envelope, 0))
            if not result["ok"]:
                raise ProtocolError(f"all_reduce failed: {result['error']}")
            return result["value"]

    def barrier(self) -> None:
        with self._timed("barrier"):
            self._gather_bytes(b"", 0)
            self._broadcast_bytes(b"" if self.is_master() else None, 0)

    # ---------------------------------------------------------
    # async message loop
    # ---------------------------------------------------------
    def set_handler(self, kind: MessageKind, fn: Handler) -> None:
        with self._handlers_lock:
            self._handlers[MessageKind(kind)] = fn

    def remove_handler(self, kind: MessageKind) -> None:
        with self._handlers_lock:
            self._handlers.pop(MessageKind(kind), None)

    @property
    def loop_running(self) -> bool:
        return self._running.is_set()

    def start_loop(self) -> None:
        if self._running.is_set():
            return
        self._running.set()
        self._loop_thread = threading.Thread(
            target=self._message_loop,
            name=f"comm-loop-{self.rank()}",
            daemon=True,
        )
        self._loop_thread.start()
        logs.debug(f"[Communicator] rank={self.rank()} message loop started")

    def stop_loop(self, timeout: Optional[float] = None) -> None:
        """Eventually effective: the current dispatch finishes first."""
        self._running.clear()
        thread = self._loop_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._loop_thread = None
        logs.debug(f"[Communicator] rank={self.rank()} message loop stopped")

    def _message_loop(self) -> None:
        while self._running.is_set():
            try:
                frame = self._recv_frame(ANY_SOURCE, ANY_TAG, self.config.poll_interval)
                if frame is None:
                    continue
                msg = decode_message(frame[0])
            except DecodeError as e:
                logs.error(f"[Communicator] rank={self.rank()} dropped undecodable message: {e}")
                continue
            except TransportError as e:
                logs.error(f"[Communicator] rank={self.rank()} message loop transport failure: {e}")
                self._running.clear()
                break

            self._metrics.increment(f"dispatch.{msg.kind.name.lower()}")
            with self._handlers_lock:
                handler = self._handlers.get(msg.kind)
            if handler is None:
                logs.warning(
                    f"[Communicator] rank={self.rank()} no handler for {msg.kind.name} "
                    f"from rank {msg.source_rank}; dropped"
                )
                continue
            try:
                handler(msg)
            except Exception:
                logs.exception(
                    f"[Communicator] rank={self.rank()} handler for {msg.kind.name} failed"
                )

    # ---------------------------------------------------------
    def close(self) -> None:
        self.stop_loop()
        self._transport.close()
