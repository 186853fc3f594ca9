# bspml/comm/runtime.py
from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Optional

from bspml.comm.communicator import Communicator
from bspml.comm.transport import InProcessGroup, Transport
from bspml.config.communicator_config import CommunicatorConfig
from bspml.utils.errors import ProtocolError
from bspml.utils.logger import logs

# ---------------------------------------------------------
# process-wide singleton
# ---------------------------------------------------------
_lock = threading.Lock()
_world: Optional[Communicator] = None
_finalized = False


def initialize(config: CommunicatorConfig | None = None, transport: Transport | None = None) -> Communicator:
    """
    Create the process-wide communicator.

    - backend "mpi"       : MPITransport over COMM_WORLD
    - backend "inprocess" : a world of one rank
    Calling again before finalize() returns the existing instance.
    Re-initialisation after finalize() is not supported.
    """
    global _world
    config = config or CommunicatorConfig()
    with _lock:
        if _finalized:
            raise ProtocolError("communicator was finalized; re-initialisation is not supported")
        if _world is not None:
            return _world
        if transport is None:
            if config.backend == "mpi":
                from bspml.comm.transport import MPITransport

                transport = MPITransport(poll_interval=min(config.poll_interval, 0.001))
            else:
                transport = InProcessGroup(1).transport(0)
        _world = Communicator(transport, config)
        logs.info(
            f"[Communicator] initialized backend={config.backend} "
            f"rank={_world.rank()} size={_world.size()}"
        )
        return _world


def get_communicator() -> Communicator:
    with _lock:
        if _world is None:
            raise ProtocolError("communicator not initialized")
        return _world


def finalize() -> None:
    global _world, _finalized
    with _lock:
        if _world is None:
            return
        _world.close()
        logs.info(f"[Communicator] finalized rank={_world.rank()}")
        _world = None
        _finalized = True


# ---------------------------------------------------------
# local thread groups
# ---------------------------------------------------------
def run_group(
    world_size: int,
    fn: Callable[[Communicator], Any],
    config: CommunicatorConfig | None = None,
) -> list[Any]:
    """
    Run fn(comm) on `world_size` thread ranks of a fresh in-process group.

    Returns per-rank results in rank order. The first rank to fail aborts
    the group (peers blocked in a collective wake up with TransportError)
    and its exception is re-raised here.
    """
    if world_size < 1:
        raise ValueError("world_size must be >= 1")

    group = InProcessGroup(world_size)
    comms = [Communicator(t, config) for t in group.transports()]

    if world_size == 1:
        try:
            return [fn(comms[0])]
        finally:
            comms[0].close()

    results: list[Any] = [None] * world_size
    first_error: list[BaseException] = []

    def _rank_main(rank: int):
        try:
            return fn(comms[rank])
        except BaseException as e:
            if not group.aborted:
                first_error.append(e)
                group.abort(e)
            raise

    with ThreadPoolExecutor(max_workers=world_size, thread_name_prefix="rank") as pool:
        futures = {pool.submit(_rank_main, r): r for r in range(world_size)}
        for fut in as_completed(futures):
            # failed ranks are reported through first_error
            if fut.exception() is None:
                results[futures[fut]] = fut.result()

    for comm in comms:
        comm.close()

    if first_error:
        raise first_error[0]
    return results
