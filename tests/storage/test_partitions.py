#!filepath: tests/storage/test_partitions.py
import threading
import time

import numpy as np
import pytest

from bspml.storage import PartitionLocks, PartitionStrategy, plan_partitions
from bspml.tensor import Matrix, Vector
from bspml.utils.errors import OperationTimeoutError, ValidationError


def test_row_partitions_last_takes_remainder():
    parts = plan_partitions("ds", rows=10, cols=3, strategy="row", n=3)

    assert [p.rows for p in parts] == [3, 3, 4]
    assert [p.row_start for p in parts] == [0, 3, 6]
    assert all(p.cols == 3 for p in parts)
    assert parts[2].bytes == 4 * 3 * 8


def test_column_partitions():
    parts = plan_partitions("ds", rows=4, cols=5, strategy=PartitionStrategy.COLUMN, n=2)

    assert [(p.col_start, p.col_stop) for p in parts] == [(0, 2), (2, 5)]
    assert all(p.rows == 4 for p in parts)


def test_round_robin_partitions():
    parts = plan_partitions("ds", rows=7, cols=1, strategy="round-robin", n=3)

    assert [list(p.row_indices) for p in parts] == [[0, 3, 6], [1, 4], [2, 5]]


def test_block_needs_square_count():
    parts = plan_partitions("ds", rows=4, cols=4, strategy="block", n=4)

    assert len(parts) == 4
    assert (parts[3].row_start, parts[3].col_start) == (2, 2)
    with pytest.raises(ValidationError):
        plan_partitions("ds", rows=4, cols=4, strategy="block", n=3)


def test_more_partitions_than_rows():
    parts = plan_partitions("ds", rows=2, cols=1, strategy="row", n=4)

    assert sum(p.rows for p in parts) == 2
    assert [p.rows for p in parts] == [0, 0, 0, 2]


def test_partitions_cover_every_row_once():
    for strategy in ("row", "round-robin"):
        parts = plan_partitions("ds", rows=23, cols=2, strategy=strategy, n=4)
        rows = sorted(i for p in parts for i in p.row_indices)
        assert rows == list(range(23))


def test_zero_partitions_rejected():
    with pytest.raises(ValidationError):
        plan_partitions("ds", rows=2, cols=1, strategy="row", n=0)


def test_read_partition_dataset(storage):
    x = Matrix(np.arange(20).reshape(10, 2))
    y = Vector(np.arange(10))
    storage.write_dataset("ds", x, y)

    parts = storage.partition("ds", "round-robin", 2)
    px, py = storage.read_partition_dataset(parts[1])

    assert px.shape == (5, 2)
    assert py == Vector([1, 3, 5, 7, 9])
    assert parts[1].is_resident
    assert parts[1].residency_key == "ds#round-robin:1"


def test_shared_holders_coexist():
    locks = PartitionLocks()
    part = plan_partitions("ds", 4, 1, "row", 1)[0]

    locks.acquire(part, "a", "shared")
    locks.acquire(part, "b", "shared", timeout=0.1)

    assert locks.holders(part) == (None, {"a", "b"})


def test_exclusive_blocks_until_release():
    locks = PartitionLocks()
    part = plan_partitions("ds", 4, 1, "row", 1)[0]
    locks.acquire(part, "a", "exclusive")

    with pytest.raises(OperationTimeoutError):
        locks.acquire(part, "b", "shared", timeout=0.05)

    acquired = threading.Event()

    def waiter():
        locks.acquire(part, "b", "exclusive", timeout=5.0)
        acquired.set()

    t = threading.Thread(target=waiter)
    t.start()
    time.sleep(0.05)
    assert not acquired.is_set()
    locks.release(part, "a")
    t.join(5.0)

    assert acquired.is_set()
    assert locks.holders(part) == ("b", set())


def test_exclusive_waits_for_readers():
    locks = PartitionLocks()
    part = plan_partitions("ds", 4, 1, "row", 1)[0]
    locks.acquire(part, "reader", "shared")

    with pytest.raises(OperationTimeoutError):
        locks.acquire(part, "writer", "exclusive", timeout=0.05)

    # a holder may upgrade its own lease
    locks.acquire(part, "reader", "exclusive", timeout=0.05)
