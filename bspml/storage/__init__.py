from .base import (
    Checkpoint,
    Partition,
    PartitionLocks,
    PartitionStrategy,
    StorageAdapter,
    plan_partitions,
)
from .local import LocalStorage

__all__ = [
    "Checkpoint",
    "Partition",
    "PartitionLocks",
    "PartitionStrategy",
    "StorageAdapter",
    "plan_partitions",
    "LocalStorage",
]
