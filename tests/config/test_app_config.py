#!filepath: tests/config/test_app_config.py
from pathlib import Path

import pydantic
import pytest
import yaml

from bspml.config import AppConfig, SchedulingPolicy
from bspml.config.app_config import default_config_path


def test_packaged_defaults_load():
    cfg = AppConfig.load()

    assert default_config_path().exists()
    assert cfg.scheduler.type == "least-loaded"
    assert cfg.worker.ranks_per_job == 2
    assert cfg.communicator.backend == "inprocess"
    assert cfg.num_workers == 2


def test_yaml_overrides(tmp_path: Path):
    path = tmp_path / "cfg.yml"
    path.write_text(yaml.safe_dump({
        "scheduler": {"type": "round-robin", "max_concurrent_jobs": 8},
        "num_workers": 3,
    }))

    cfg = AppConfig.load(str(path))

    assert cfg.scheduler.type == "round-robin"
    assert cfg.scheduler.max_concurrent_jobs == 8
    assert cfg.num_workers == 3
    # untouched sections keep their defaults
    assert cfg.storage.retry_attempts == 3


def test_env_overrides(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("BSPML_STORAGE_ROOT", str(tmp_path / "store"))
    monkeypatch.setenv("BSPML_SCHEDULING_POLICY", "adaptive")

    cfg = AppConfig.load()

    assert cfg.storage.root == str(tmp_path / "store")
    assert cfg.scheduler.type == "adaptive"


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        AppConfig.load("/nonexistent/bspml.yml")


def test_unknown_policy_rejected():
    with pytest.raises(pydantic.ValidationError):
        SchedulingPolicy(type="fastest")


def test_heartbeat_timeout():
    p = SchedulingPolicy(heartbeat_interval=0.5, heartbeat_timeout_multiple=4)

    assert p.heartbeat_timeout == pytest.approx(2.0)
