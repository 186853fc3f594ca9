#!filepath: tests/algorithms/conftest.py
from __future__ import annotations

import numpy as np
import pytest

from bspml.algorithms import KernelContext
from bspml.comm import run_group
from bspml.storage import plan_partitions
from bspml.tensor import Matrix, Vector


def fit_group(make_kernel, x: Matrix, y: Vector | None, ranks: int = 2, strategy: str = "row", **ctx_kwargs):
    """
    Fit one kernel per rank over row partitions of (x, y).

    Returns [(kernel, result), ...] in rank order.
    """
    parts = plan_partitions("mem", x.rows, x.cols, strategy, ranks)

    def body(comm):
        part = parts[comm.rank()]
        rows = list(part.row_indices)
        xs = Matrix(x.values[rows].reshape(len(rows), x.cols))
        ys = None if y is None else Vector(y.values[rows])
        kernel = make_kernel()
        result = kernel.fit(KernelContext(comm=comm, **ctx_kwargs), xs, ys)
        return kernel, result

    return run_group(ranks, body)


@pytest.fixture(name="fit_group")
def fit_group_fixture():
    return fit_group


@pytest.fixture
def classification_data():
    rng = np.random.default_rng(11)
    x = rng.normal(size=(300, 2))
    y = (x[:, 0] + x[:, 1] > 0).astype(np.float64)
    return Matrix(x), Vector(y)
