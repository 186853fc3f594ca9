#!filepath: tests/test_cli.py
import json

import numpy as np
import pandas as pd
import pytest
import yaml
from typer.testing import CliRunner

from bspml.cli import app
from bspml.config import AppConfig
from bspml.runtime import default_store_root
from bspml.scheduler import JobDescriptor, JobState, JobStatus, JobStore
from bspml.storage import LocalStorage

runner = CliRunner()


@pytest.fixture
def cfg_path(tmp_path):
    path = tmp_path / "bspml.yml"
    path.write_text(yaml.safe_dump({
        "log": {"level": "WARNING"},
        "storage": {"root": str(tmp_path / "data"), "retry_delay": 0.0},
        "scheduler": {"heartbeat_interval": 0.1},
        "worker": {"heartbeat_interval": 0.05, "metrics_interval": 0.05},
        "num_workers": 1,
    }))
    return path


@pytest.fixture
def store(cfg_path):
    return JobStore(default_store_root(AppConfig.load(str(cfg_path))))


@pytest.fixture
def table_csv(tmp_path):
    rng = np.random.default_rng(3)
    x = rng.normal(size=(60, 2))
    df = pd.DataFrame({"a": x[:, 0], "b": x[:, 1], "y": 3.0 * x[:, 0] + 1.0})
    path = tmp_path / "table.csv"
    df.to_csv(path, index=False)
    return path


def invoke(cfg_path, *args):
    return runner.invoke(app, ["--config", str(cfg_path), *args])


def test_import_then_run_locally(cfg_path, table_csv, tmp_path):
    res = invoke(cfg_path, "import", "datasets/table", str(table_csv), "--label", "y")
    assert res.exit_code == 0, res.output
    assert "60 x 2" in res.output

    job = tmp_path / "job.yml"
    job.write_text(yaml.safe_dump({
        "kind": "linear-regression",
        "input_key": "datasets/table",
        "max_iterations": 50,
    }))
    res = invoke(cfg_path, "submit", str(job), "--local", "--timeout", "60")

    assert res.exit_code == 0, res.output
    assert "completed" in res.output
    storage = LocalStorage(AppConfig.load(str(cfg_path)).storage)
    assert any(k.startswith("results/") for k in storage.list("results"))


def test_submit_queues_a_request(cfg_path, store, tmp_path):
    job = tmp_path / "job.json"
    job.write_text(json.dumps({"kind": "k-means", "input_key": "datasets/x", "k": 3}))

    res = invoke(cfg_path, "submit", str(job))

    assert res.exit_code == 0, res.output
    requests = store.drain_requests()
    assert [r["action"] for r in requests] == ["submit"]
    assert requests[0]["job_id"] == res.output.strip().splitlines()[-1]
    assert requests[0]["descriptor"]["k"] == 3


def test_bad_descriptor_exit_codes(cfg_path, tmp_path):
    job = tmp_path / "job.yml"
    job.write_text(yaml.safe_dump({"kind": "dbscan", "input_key": "datasets/x"}))

    assert invoke(cfg_path, "submit", str(job)).exit_code == 2
    assert invoke(cfg_path, "submit", str(tmp_path / "none.yml")).exit_code == 3


def test_status_and_control(cfg_path, store):
    d = JobDescriptor.parse({"kind": "linear-regression", "input_key": "ds"})
    store.save(JobStatus(job_id="run", descriptor=d, state=JobState.RUNNING, progress=0.5))
    store.save(JobStatus(job_id="done", descriptor=d, state=JobState.COMPLETED))

    res = invoke(cfg_path, "status", "run")
    assert res.exit_code == 0
    assert "running" in res.output

    assert invoke(cfg_path, "status", "missing").exit_code == 3
    assert invoke(cfg_path, "pause", "run").exit_code == 0
    assert invoke(cfg_path, "cancel", "done").exit_code == 2
    assert [(r["action"], r["job_id"]) for r in store.drain_requests()] == [("pause", "run")]


def test_listing_commands(cfg_path, store):
    d = JobDescriptor.parse({"kind": "dbscan", "input_key": "ds", "epsilon": 0.3})
    store.save(JobStatus(job_id="abc", descriptor=d))
    store.save_workers([{
        "worker_id": 0, "host": "h", "available": True, "assigned_jobs": ["abc"],
        "cpu": 1.0, "mem": 2.0, "net": 0.0, "heartbeat_age": 0.3,
    }])
    store.save_metrics({"submitted": 1, "system_load": 0.25})

    jobs = invoke(cfg_path, "jobs")
    assert jobs.exit_code == 0
    assert "abc" in jobs.output
    assert invoke(cfg_path, "workers").exit_code == 0
    metrics = invoke(cfg_path, "metrics")
    assert metrics.exit_code == 0
    assert "0.250" in metrics.output
