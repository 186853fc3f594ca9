from .app_config import AppConfig
from .log_config import LogConfig
from .communicator_config import CommunicatorConfig
from .storage_config import StorageConfig
from .scheduler_config import SchedulingPolicy
from .worker_config import WorkerConfig

__all__ = [
    "AppConfig",
    "LogConfig",
    "CommunicatorConfig",
    "StorageConfig",
    "SchedulingPolicy",
    "WorkerConfig",
]
