# bspml/serialization/codec.py
"""
Binary codec.

All integers and doubles are little-endian.

    message header : kind u32 | source i32 | dest i32 | tag i32 | data_len u64
    matrix         : rows i64 | cols i64 | rows*cols f64 (row-major)
    vector         : encoded as an (n x 1) matrix
    checkpoint     : job_id_len u32 | job_id | iteration i32 | state_len u64
                     | state | timestamp_ms u64

Tagged values (used for collective buffers, model state and control
payloads) prefix one type byte to the payload so any nesting of
matrices, vectors, scalars, strings, lists and string-keyed dicts
round-trips losslessly.
"""
from __future__ import annotations

import math
import struct
from typing import Any

import numpy as np

from bspml.serialization.message import Message, MessageKind
from bspml.tensor import Matrix, Vector
from bspml.utils.errors import DecodeError

HEADER = struct.Struct("<IiiiQ")
MATRIX_SHAPE = struct.Struct("<qq")
_U8 = struct.Struct("<B")
_U32 = struct.Struct("<I")
_I32 = struct.Struct("<i")
_U64 = struct.Struct("<Q")
_I64 = struct.Struct("<q")
_F64 = struct.Struct("<d")

_F64_LE = np.dtype("<f8")


# ---------------------------------------------------------
# reader
# ---------------------------------------------------------
class _Reader:
    __slots__ = ("buf", "pos")

    def __init__(self, buf: bytes):
        self.buf = memoryview(buf)
        self.pos = 0

    def take(self, n: int) -> memoryview:
        if n < 0 or self.pos + n > len(self.buf):
            raise DecodeError(
                f"truncated payload: need {n} bytes at offset {self.pos}, "
                f"have {len(self.buf) - self.pos}"
            )
        out = self.buf[self.pos:self.pos + n]
        self.pos += n
        return out

    def unpack(self, fmt: struct.Struct) -> tuple:
        return fmt.unpack(self.take(fmt.size))

    def remaining(self) -> int:
        return len(self.buf) - self.pos

    def expect_end(self, what: str) -> None:
        if self.remaining():
            raise DecodeError(f"{what}: {self.remaining()} trailing bytes")


# ---------------------------------------------------------
# messages
# ---------------------------------------------------------
def encode_message(msg: Message) -> bytes:
    return HEADER.pack(
        int(msg.kind), msg.source_rank, msg.dest_rank, msg.tag, len(msg.payload)
    ) + bytes(msg.payload)


def decode_message(data: bytes) -> Message:
    r = _Reader(data)
    kind, source, dest, tag, data_len = r.unpack(HEADER)
    try:
        kind = MessageKind(kind)
    except ValueError:
        raise DecodeError(f"unknown message kind {kind}") from None
    payload = bytes(r.take(data_len))
    r.expect_end("message")
    return Message(kind=kind, source_rank=source, dest_rank=dest, tag=tag, payload=payload)


# ---------------------------------------------------------
# matrices / vectors
# ---------------------------------------------------------
def encode_matrix(m: Matrix) -> bytes:
    return MATRIX_SHAPE.pack(m.rows, m.cols) + m.values.astype(_F64_LE, copy=False).tobytes()


def _read_matrix(r: _Reader) -> Matrix:
    rows, cols = r.unpack(MATRIX_SHAPE)
    if rows < 0 or cols < 0:
        raise DecodeError(f"negative matrix shape ({rows}, {cols})")
    raw = r.take(rows * cols * 8)
    arr = np.frombuffer(raw, dtype=_F64_LE).reshape(rows, cols)
    return Matrix(arr)


def decode_matrix(data: bytes) -> Matrix:
    r = _Reader(data)
    m = _read_matrix(r)
    r.expect_end("matrix")
    return m


def encode_vector(v: Vector) -> bytes:
    return MATRIX_SHAPE.pack(v.rows, 1) + v.values.astype(_F64_LE, copy=False).tobytes()


def _read_vector(r: _Reader) -> Vector:
    m = _read_matrix(r)
    if m.cols != 1 and m.rows != 0:
        raise DecodeError(f"vector payload has {m.cols} columns")
    return Vector(m.values.reshape(-1))


def decode_vector(data: bytes) -> Vector:
    r = _Reader(data)
    v = _read_vector(r)
    r.expect_end("vector")
    return v


# ---------------------------------------------------------
# tagged values
# ---------------------------------------------------------
_T_NONE = 0
_T_BOOL = 1
_T_INT = 2
_T_FLOAT = 3
_T_STR = 4
_T_BYTES = 5
_T_MATRIX = 6
_T_VECTOR = 7
_T_LIST = 8
_T_DICT = 9
_T_NDARRAY = 10


def _write_value(out: list, value: Any) -> None:
    if value is None:
        out.append(_U8.pack(_T_NONE))
    elif isinstance(value, (bool, np.bool_)):
        out.append(_U8.pack(_T_BOOL) + _U8.pack(1 if value else 0))
    elif isinstance(value, (int, np.integer)):
        out.append(_U8.pack(_T_INT) + _I64.pack(int(value)))
    elif isinstance(value, (float, np.floating)):
        out.append(_U8.pack(_T_FLOAT) + _F64.pack(float(value)))
    elif isinstance(value, str):
        raw = value.encode("utf-8")
        out.append(_U8.pack(_T_STR) + _U32.pack(len(raw)) + raw)
    elif isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        out.append(_U8.pack(_T_BYTES) + _U64.pack(len(raw)) + raw)
    elif isinstance(value, Vector):
        out.append(_U8.pack(_T_VECTOR) + encode_vector(value))
    elif isinstance(value, Matrix):
        out.append(_U8.pack(_T_MATRIX) + encode_matrix(value))
    elif isinstance(value, np.ndarray):
        arr = np.ascontiguousarray(value, dtype=_F64_LE)
        out.append(_U8.pack(_T_NDARRAY) + _U32.pack(arr.ndim))
        out.append(b"".join(_I64.pack(d) for d in arr.shape))
        out.append(arr.tobytes())
    elif isinstance(value, (list, tuple)):
        out.append(_U8.pack(_T_LIST) + _U32.pack(len(value)))
        for item in value:
            _write_value(out, item)
    elif isinstance(value, dict):
        out.append(_U8.pack(_T_DICT) + _U32.pack(len(value)))
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"dict keys must be str, got {type(key).__name__}")
            raw = key.encode("utf-8")
            out.append(_U32.pack(len(raw)) + raw)
            _write_value(out, item)
    else:
        raise TypeError(f"cannot encode value of type {type(value).__name__}")


def _read_value(r: _Reader) -> Any:
    (tag,) = r.unpack(_U8)
    if tag == _T_NONE:
        return None
    if tag == _T_BOOL:
        return bool(r.unpack(_U8)[0])
    if tag == _T_INT:
        return r.unpack(_I64)[0]
    if tag == _T_FLOAT:
        return r.unpack(_F64)[0]
    if tag == _T_STR:
        (n,) = r.unpack(_U32)
        try:
            return bytes(r.take(n)).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"invalid utf-8 string: {e}") from None
    if tag == _T_BYTES:
        (n,) = r.unpack(_U64)
        return bytes(r.take(n))
    if tag == _T_MATRIX:
        return _read_matrix(r)
    if tag == _T_VECTOR:
        return _read_vector(r)
    if tag == _T_NDARRAY:
        (ndim,) = r.unpack(_U32)
        shape = tuple(r.unpack(_I64)[0] for _ in range(ndim))
        if any(d < 0 for d in shape):
            raise DecodeError(f"negative array shape {shape}")
        count = math.prod(shape)
        if count * 8 > r.remaining():
            raise DecodeError(f"array shape {shape} exceeds the {r.remaining()} bytes left")
        raw = r.take(count * 8)
        return np.frombuffer(raw, dtype=_F64_LE).reshape(shape).astype(np.float64)
    if tag == _T_LIST:
        (n,) = r.unpack(_U32)
        return [_read_value(r) for _ in range(n)]
    if tag == _T_DICT:
        (n,) = r.unpack(_U32)
        out = {}
        for _ in range(n):
            (klen,) = r.unpack(_U32)
            try:
                key = bytes(r.take(klen)).decode("utf-8")
            except UnicodeDecodeError as e:
                raise DecodeError(f"invalid utf-8 key: {e}") from None
            out[key] = _read_value(r)
        return out
    raise DecodeError(f"unknown value tag {tag}")


def encode_value(value: Any) -> bytes:
    out: list = []
    _write_value(out, value)
    return b"".join(out)


def decode_value(data: bytes) -> Any:
    r = _Reader(data)
    value = _read_value(r)
    r.expect_end("value")
    return value


# ---------------------------------------------------------
# checkpoint envelope
# ---------------------------------------------------------
def encode_checkpoint_envelope(job_id: str, iteration: int, state: bytes, timestamp_ms: int) -> bytes:
    raw_id = job_id.encode("utf-8")
    return b"".join((
        _U32.pack(len(raw_id)),
        raw_id,
        _I32.pack(iteration),
        _U64.pack(len(state)),
        bytes(state),
        _U64.pack(timestamp_ms),
    ))


def decode_checkpoint_envelope(data: bytes) -> tuple[str, int, bytes, int]:
    r = _Reader(data)
    (id_len,) = r.unpack(_U32)
    try:
        job_id = bytes(r.take(id_len)).decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecodeError(f"checkpoint job_id is not utf-8: {e}") from None
    (iteration,) = r.unpack(_I32)
    (state_len,) = r.unpack(_U64)
    state = bytes(r.take(state_len))
    (timestamp_ms,) = r.unpack(_U64)
    r.expect_end("checkpoint")
    return job_id, iteration, state, timestamp_ms
