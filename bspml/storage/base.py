# bspml/storage/base.py
from __future__ import annotations

import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Optional

from bspml.tensor import Matrix, Vector
from bspml.utils.errors import NotFoundError, OperationTimeoutError, ValidationError

AccessMode = Literal["exclusive", "shared"]


class PartitionStrategy(str, Enum):
    ROW = "row"
    COLUMN = "column"
    BLOCK = "block"
    ROUND_ROBIN = "round-robin"


@dataclass
class Partition:
    """
    One rank's share of a stored matrix / dataset.

    Rows are selected by range(row_start, row_stop, row_step) and columns
    by range(col_start, col_stop); round-robin uses row_step == N.
    """

    partition_id: int
    owner_rank: int
    backing_key: str
    rows: int
    cols: int
    bytes: int
    strategy: PartitionStrategy = PartitionStrategy.ROW
    row_start: int = 0
    row_stop: int = 0
    row_step: int = 1
    col_start: int = 0
    col_stop: int = 0
    is_resident: bool = False

    @property
    def row_indices(self) -> range:
        return range(self.row_start, self.row_stop, self.row_step)

    @property
    def col_indices(self) -> range:
        return range(self.col_start, self.col_stop)

    @property
    def residency_key(self) -> str:
        return f"{self.backing_key}#{self.strategy.value}:{self.partition_id}"


@dataclass
class Checkpoint:
    job_id: str
    iteration: int
    state: bytes
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))
    backing_key: str = ""


# ---------------------------------------------------------
# partition planning
# ---------------------------------------------------------
def _slabs(total: int, n: int) -> list[tuple[int, int]]:
    """Equal contiguous slabs; the last one absorbs the remainder."""
    base = total // n
    out = []
    for i in range(n):
        start = i * base
        stop = total if i == n - 1 else start + base
        out.append((start, stop))
    return out


def plan_partitions(
    key: str,
    rows: int,
    cols: int,
    strategy: PartitionStrategy | str,
    n: int,
) -> list[Partition]:
    strategy = PartitionStrategy(strategy)
    if n < 1:
        raise ValidationError(f"partition count must be >= 1, got {n}")

    def make(pid, r0, r1, step, c0, c1) -> Partition:
        nrows = len(range(r0, r1, step))
        return Partition(
            partition_id=pid,
            owner_rank=pid,
            backing_key=key,
            rows=nrows,
            cols=c1 - c0,
            bytes=nrows * (c1 - c0) * 8,
            strategy=strategy,
            row_start=r0,
            row_stop=r1,
            row_step=step,
            col_start=c0,
            col_stop=c1,
        )

    if strategy is PartitionStrategy.ROW:
        return [make(i, r0, r1, 1, 0, cols) for i, (r0, r1) in enumerate(_slabs(rows, n))]

    if strategy is PartitionStrategy.COLUMN:
        return [make(i, 0, rows, 1, c0, c1) for i, (c0, c1) in enumerate(_slabs(cols, n))]

    if strategy is PartitionStrategy.ROUND_ROBIN:
        return [make(i, i, rows, n, 0, cols) for i in range(n)]

    k = math.isqrt(n)
    if k * k != n:
        raise ValidationError(f"block partitioning needs a perfect-square count, got {n}")
    out = []
    for bi, (r0, r1) in enumerate(_slabs(rows, k)):
        for bj, (c0, c1) in enumerate(_slabs(cols, k)):
            out.append(make(bi * k + bj, r0, r1, 1, c0, c1))
    return out


def slice_partition(features: Matrix, part: Partition) -> Matrix:
    data = features.values[part.row_start:part.row_stop:part.row_step, part.col_start:part.col_stop]
    return Matrix(data.copy())


# ---------------------------------------------------------
# access modes
# ---------------------------------------------------------
class PartitionLocks:
    """
    Read/write style leases keyed by Partition.residency_key.

    - any number of shared holders, or exactly one exclusive holder
    - acquire() blocks up to `timeout` seconds, then OperationTimeoutError
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._exclusive: dict[str, str] = {}
        self._shared: dict[str, set[str]] = {}

    def acquire(self, part: Partition, holder: str, mode: AccessMode = "exclusive",
                timeout: Optional[float] = None) -> None:
        key = part.residency_key
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._available(key, holder, mode):
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise OperationTimeoutError(
                        f"partition {key} not available for {mode} access by {holder}"
                    )
                self._cond.wait(remaining)
            if mode == "exclusive":
                self._exclusive[key] = holder
            else:
                self._shared.setdefault(key, set()).add(holder)

    def _available(self, key: str, holder: str, mode: AccessMode) -> bool:
        owner = self._exclusive.get(key)
        if owner is not None and owner != holder:
            return False
        if mode == "exclusive":
            readers = self._shared.get(key, set()) - {holder}
            return not readers
        return True

    def release(self, part: Partition, holder: str) -> None:
        key = part.residency_key
        with self._cond:
            if self._exclusive.get(key) == holder:
                del self._exclusive[key]
            readers = self._shared.get(key)
            if readers is not None:
                readers.discard(holder)
                if not readers:
                    del self._shared[key]
            self._cond.notify_all()

    def holders(self, part: Partition) -> tuple[Optional[str], set[str]]:
        key = part.residency_key
        with self._cond:
            return self._exclusive.get(key), set(self._shared.get(key, set()))


# ---------------------------------------------------------
# adapter contract
# ---------------------------------------------------------
class StorageAdapter(ABC):
    """
    Storage contract consumed by the core.

    The adapter owns durability and integrity of bytes; callers own the
    semantic meaning. Keys are opaque path-like strings.
    """

    def __init__(self):
        self.locks = PartitionLocks()

    @abstractmethod
    def exists(self, key: str) -> bool: ...

    @abstractmethod
    def read_matrix(self, key: str) -> Matrix: ...

    @abstractmethod
    def write_matrix(self, key: str, m: Matrix) -> None: ...

    @abstractmethod
    def read_vector(self, key: str) -> Vector: ...

    @abstractmethod
    def write_vector(self, key: str, v: Vector) -> None: ...

    @abstractmethod
    def read_dataset(self, key: str) -> tuple[Matrix, Optional[Vector]]: ...

    @abstractmethod
    def write_dataset(self, key: str, features: Matrix, labels: Optional[Vector] = None) -> None: ...

    @abstractmethod
    def list(self, prefix: str = "") -> list[str]: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...

    @abstractmethod
    def save_checkpoint(self, key: str, ckpt: Checkpoint) -> None: ...

    @abstractmethod
    def load_checkpoint(self, key: str) -> Checkpoint: ...

    @abstractmethod
    def read_value(self, key: str) -> Any: ...

    @abstractmethod
    def write_value(self, key: str, value: Any) -> None: ...

    def latest_checkpoint(self, prefix: str) -> Optional[Checkpoint]:
        """Newest checkpoint under prefix (highest iteration, then timestamp)."""
        best: Optional[Checkpoint] = None
        for key in self.list(prefix):
            try:
                ckpt = self.load_checkpoint(key)
            except NotFoundError:
                continue
            if best is None or (ckpt.iteration, ckpt.timestamp) > (best.iteration, best.timestamp):
                best = ckpt
        return best

    # ---------------------------------------------------------
    # partitions
    # ---------------------------------------------------------
    def shape_of(self, key: str) -> tuple[int, int]:
        return self.read_dataset(key)[0].shape

    def partition(self, key: str, strategy: PartitionStrategy | str, n: int) -> list[Partition]:
        rows, cols = self.shape_of(key)
        return plan_partitions(key, rows, cols, strategy, n)

    def read_partition(self, part: Partition) -> Matrix:
        features, _ = self.read_dataset(part.backing_key)
        part.is_resident = True
        return slice_partition(features, part)

    def read_partition_dataset(self, part: Partition) -> tuple[Matrix, Optional[Vector]]:
        """Features of the partition plus the labels of its rows (if any)."""
        features, labels = self.read_dataset(part.backing_key)
        part.is_resident = True
        x = slice_partition(features, part)
        if labels is None:
            return x, None
        return x, Vector(labels.values[part.row_start:part.row_stop:part.row_step].copy())

    def acquire_partition(self, part: Partition, holder: str, mode: AccessMode = "exclusive",
                          timeout: Optional[float] = None) -> None:
        self.locks.acquire(part, holder, mode, timeout)

    def release_partition(self, part: Partition, holder: str) -> None:
        self.locks.release(part, holder)
