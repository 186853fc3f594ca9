#!filepath: tests/comm/test_mpi_transport.py
import pytest

MPI = pytest.importorskip("mpi4py.MPI")

from bspml.comm import COLLECTIVE_TAG_BASE  # noqa: E402
from bspml.comm.transport import MPITransport  # noqa: E402
from bspml.utils.errors import TransportError  # noqa: E402


class RecordingComm:
    def __init__(self, name="world", fail=False):
        self.name = name
        self.fail = fail
        self.sent = []
        self.dup = None

    def Dup(self):
        self.dup = RecordingComm("collectives", self.fail)
        return self.dup

    def send(self, obj, dest, tag):
        if self.fail:
            raise MPI.Exception(MPI.ERR_OTHER)
        self.sent.append((obj, dest, tag))


def test_send_is_a_blocking_send_on_the_matching_channel():
    world = RecordingComm()
    transport = MPITransport(world)

    transport.send(bytearray(b"ab"), 1, 5)
    transport.send(b"cd", 2, COLLECTIVE_TAG_BASE + 1)

    assert world.sent == [(b"ab", 1, 5)]
    assert world.dup.sent == [(b"cd", 2, COLLECTIVE_TAG_BASE + 1)]


def test_mpi_failure_becomes_transport_error():
    transport = MPITransport(RecordingComm(fail=True))

    with pytest.raises(TransportError):
        transport.send(b"x", 1, 0)
