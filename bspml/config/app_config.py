#!filepath: bspml/config/app_config.py
import os
from pathlib import Path

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .log_config import LogConfig
from .communicator_config import CommunicatorConfig
from .storage_config import StorageConfig
from .scheduler_config import SchedulingPolicy
from .worker_config import WorkerConfig


def default_config_path() -> Path:
    """
    Packaged defaults: bspml/config/base.yml
    """
    return Path(__file__).resolve().parent / "base.yml"


# env var -> (section, field)
_ENV_OVERRIDES = {
    "BSPML_LOG_LEVEL": ("log", "level"),
    "BSPML_LOG_DIR": ("log", "dir"),
    "BSPML_STORAGE_ROOT": ("storage", "root"),
    "BSPML_SCHEDULING_POLICY": ("scheduler", "type"),
}


class AppConfig(BaseModel):
    log: LogConfig = Field(default_factory=LogConfig)
    communicator: CommunicatorConfig = Field(default_factory=CommunicatorConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    scheduler: SchedulingPolicy = Field(default_factory=SchedulingPolicy)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    num_workers: int = Field(default=2, ge=1)

    @classmethod
    def load(cls, path: str | None = None) -> "AppConfig":
        """
        Load YAML config + .env
        - default: packaged base.yml
        - .env is read from the working directory (never overrides real env)
        - BSPML_* variables override YAML values
        """
        load_dotenv(Path.cwd() / ".env", override=False)

        cfg_path = Path(path) if path is not None else default_config_path()
        if not cfg_path.exists():
            raise FileNotFoundError(f"Config file not found: {cfg_path}")

        with open(cfg_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

        for env_name, (section, key) in _ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if value:
                raw.setdefault(section, {})[key] = value

        return cls(**raw)
