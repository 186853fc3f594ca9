# tests/conftest.py
from __future__ import annotations

import time
from pathlib import Path

import numpy as np
import pytest
from loguru import logger

from bspml.config import AppConfig, SchedulingPolicy, StorageConfig, WorkerConfig
from bspml.storage import LocalStorage
from bspml.tensor import Matrix, Vector


@pytest.fixture(autouse=True)
def disable_file_logger():
    logger.remove()
    logger.add(lambda msg: None)  # or sys.stderr
    yield


@pytest.fixture
def storage(tmp_path: Path) -> LocalStorage:
    return LocalStorage(StorageConfig(root=str(tmp_path / "data"), retry_delay=0.0))


@pytest.fixture
def fast_policy() -> SchedulingPolicy:
    """
    Short heartbeat windows so failure handling runs in well under a second.
    """
    return SchedulingPolicy(
        type="least-loaded",
        heartbeat_interval=0.1,
        heartbeat_timeout_multiple=5.0,
        steal_threshold_seconds=0.2,
        max_jobs_per_worker=2,
        max_concurrent_jobs=4,
    )


@pytest.fixture
def fast_worker_config() -> WorkerConfig:
    return WorkerConfig(
        worker_id=0,
        rank=1,
        cores=4,
        max_jobs_per_worker=2,
        heartbeat_interval=0.05,
        metrics_interval=0.05,
        ranks_per_job=2,
        lease_timeout=5.0,
        steal_interval=0.1,
    )


@pytest.fixture
def app_config(tmp_path: Path, fast_policy, fast_worker_config) -> AppConfig:
    return AppConfig(
        storage=StorageConfig(root=str(tmp_path / "data"), retry_delay=0.0),
        scheduler=fast_policy,
        worker=fast_worker_config,
        num_workers=2,
    )


@pytest.fixture
def regression_data():
    """y = 2 x0 - x1 + 0.5, noise free."""
    rng = np.random.default_rng(7)
    x = rng.normal(size=(200, 2))
    y = x @ np.array([2.0, -1.0]) + 0.5
    return Matrix(x), Vector(y)


@pytest.fixture
def write_regression(storage, regression_data):
    def _write(key: str = "datasets/linear") -> str:
        x, y = regression_data
        storage.write_dataset(key, x, y)
        return key

    return _write


def wait_until(predicate, timeout: float = 10.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture(name="wait_until")
def wait_until_fixture():
    return wait_until
