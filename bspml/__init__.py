#!filepath: bspml/__init__.py

from .utils.logger import Logging, logs
from .utils.retry import Retry
from .utils.filesystem import FileSystem
from .config.app_config import AppConfig

__version__ = "0.1.0"

# alias
retry = Retry
fs = FileSystem

__all__ = [
    "logs", "Logging",
    "retry",
    "fs",
    "AppConfig",
]
