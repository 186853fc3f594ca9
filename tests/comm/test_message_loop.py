#!filepath: tests/comm/test_message_loop.py
import threading

from bspml.comm import Communicator, InProcessGroup
from bspml.config import CommunicatorConfig
from bspml.serialization import MessageKind


def _pair():
    group = InProcessGroup(2)
    cfg = CommunicatorConfig(poll_interval=0.01)
    return [Communicator(t, cfg) for t in group.transports()]


def test_handlers_receive_in_send_order():
    sender, receiver = _pair()
    got = []
    done = threading.Event()

    def on_heartbeat(msg):
        got.append(msg.payload)
        if len(got) == 5:
            done.set()

    receiver.set_handler(MessageKind.HEARTBEAT, on_heartbeat)
    receiver.start_loop()
    try:
        for i in range(5):
            sender.send_payload(MessageKind.HEARTBEAT, bytes([i]), dest=1)
        assert done.wait(5.0)
    finally:
        receiver.stop_loop(timeout=2.0)

    assert got == [bytes([i]) for i in range(5)]
    assert not receiver.loop_running


def test_unhandled_kind_is_dropped_and_loop_survives():
    sender, receiver = _pair()
    seen = threading.Event()

    receiver.set_handler(MessageKind.CHECKPOINT, lambda msg: seen.set())
    receiver.start_loop()
    try:
        sender.send_payload(MessageKind.RECOVERY, b"nobody listens", dest=1)
        sender.send_payload(MessageKind.CHECKPOINT, b"", dest=1)
        assert seen.wait(5.0)
    finally:
        receiver.stop_loop(timeout=2.0)


def test_handler_exception_does_not_stop_loop():
    sender, receiver = _pair()
    calls = []
    second = threading.Event()

    def flaky(msg):
        calls.append(msg.payload)
        if msg.payload == b"bad":
            raise RuntimeError("handler failed")
        second.set()

    receiver.set_handler(MessageKind.JOB_STATUS, flaky)
    receiver.start_loop()
    try:
        sender.send_payload(MessageKind.JOB_STATUS, b"bad", dest=1)
        sender.send_payload(MessageKind.JOB_STATUS, b"good", dest=1)
        assert second.wait(5.0)
    finally:
        receiver.stop_loop(timeout=2.0)

    assert calls == [b"bad", b"good"]


def test_concurrent_senders_keep_frames_paired():
    sender, receiver = _pair()
    got = []
    done = threading.Event()

    def on_status(msg):
        got.append(msg.payload)
        if len(got) == 200:
            done.set()

    receiver.set_handler(MessageKind.JOB_STATUS, on_status)
    receiver.start_loop()

    def blast(prefix):
        for i in range(100):
            sender.send_payload(MessageKind.JOB_STATUS, f"{prefix}-{i}".encode() * (i + 1), dest=1)

    threads = [threading.Thread(target=blast, args=(p,)) for p in ("a", "b")]
    try:
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert done.wait(10.0)
    finally:
        receiver.stop_loop(timeout=2.0)

    assert len(got) == 200
