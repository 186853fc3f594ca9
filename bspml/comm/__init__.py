from .communicator import Communicator, ReduceOp, combine
from .runtime import finalize, get_communicator, initialize, run_group
from .transport import (
    COLLECTIVE_TAG_BASE,
    InProcessGroup,
    InProcessTransport,
    MPITransport,
    Transport,
)

__all__ = [
    "Communicator",
    "ReduceOp",
    "combine",
    "initialize",
    "finalize",
    "get_communicator",
    "run_group",
    "COLLECTIVE_TAG_BASE",
    "Transport",
    "InProcessGroup",
    "InProcessTransport",
    "MPITransport",
]
