#!filepath: tests/scheduler/test_registry_table.py
import threading

import pytest

from bspml.scheduler import JobDescriptor, JobState, JobStatus, JobTable, WorkerRegistry
from bspml.utils.errors import NotFoundError, ProtocolError


def _status(job_id="j1") -> JobStatus:
    return JobStatus(job_id=job_id, descriptor=JobDescriptor.parse({"kind": "linear-regression", "input_key": "ds"}))


# ---------------------------------------------------------
# JobTable
# ---------------------------------------------------------
def test_update_validates_and_stamps_times():
    table = JobTable()
    table.add(_status())

    running = table.update("j1", JobState.RUNNING, progress=0.1)
    done = table.update("j1", JobState.COMPLETED, progress=1.0)

    assert running.started_at is not None
    assert done.finished_at is not None
    with pytest.raises(ProtocolError):
        table.update("j1", JobState.RUNNING)
    with pytest.raises(NotFoundError):
        table.update("nope", progress=0.5)


def test_progress_is_monotone_within_a_state():
    table = JobTable()
    table.add(_status())
    table.update("j1", JobState.RUNNING)

    table.update("j1", progress=0.6)
    st = table.update("j1", progress=0.4)

    assert st.progress == 0.6


def test_readers_get_copies():
    table = JobTable()
    table.add(_status())

    copy = table.get("j1")
    copy.worker_ids.append(9)

    assert table.get("j1").worker_ids == []


def test_listener_sees_transitions_in_order_and_failures_are_contained():
    table = JobTable()
    seen = []
    table.add_listener(lambda st: seen.append(st.state))
    table.add_listener(lambda st: 1 / 0)
    table.add(_status())

    table.update("j1", JobState.RUNNING)
    table.update("j1", JobState.PAUSED)
    table.update("j1", JobState.RUNNING)
    table.update("j1", JobState.COMPLETED)

    assert seen == [
        JobState.PENDING, JobState.RUNNING, JobState.PAUSED, JobState.RUNNING, JobState.COMPLETED,
    ]


def test_concurrent_updates_keep_a_consistent_record():
    table = JobTable()
    table.add(_status())
    table.update("j1", JobState.RUNNING)

    def bump(offset):
        for i in range(200):
            table.update("j1", progress=(offset + i) / 1000.0, current_iteration=i)

    threads = [threading.Thread(target=bump, args=(o,)) for o in (0, 500)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert table.get("j1").progress == pytest.approx(0.699)


# ---------------------------------------------------------
# WorkerRegistry
# ---------------------------------------------------------
def test_register_heartbeat_and_expiry():
    reg = WorkerRegistry()
    reg.register(1, rank=2, host="h", cores=8)

    assert reg.heartbeat(1, cpu=0.5, mem=0.2, net=0.1, free_memory_bytes=1024)
    assert not reg.heartbeat(7, cpu=0.0, mem=0.0, net=0.0)

    rec = reg.get(1)
    assert (rec.rank, rec.cores, rec.cpu, rec.free_memory_bytes) == (2, 8, 0.5, 1024)
    assert reg.expired(timeout=10.0) == []
    assert reg.expired(timeout=0.0, now=rec.last_heartbeat + 1.0) == [1]


def test_mark_failed_returns_jobs_and_recovers_on_heartbeat():
    reg = WorkerRegistry()
    reg.register(1)
    reg.assign(1, "a")
    reg.assign(1, "b")

    assert reg.mark_failed(1) == {"a", "b"}
    assert not reg.get(1).available
    assert reg.get(1).assigned_jobs == set()
    # failed workers are not reported as expired again
    assert reg.expired(timeout=-1.0) == []

    reg.heartbeat(1, cpu=0.0, mem=0.0, net=0.0)
    assert reg.get(1).available


def test_unassign_counts_completions():
    reg = WorkerRegistry()
    reg.register(1)
    reg.assign(1, "a")

    reg.unassign(1, "a", completed=True)
    reg.unassign(99, "a")

    assert reg.get(1).completed_jobs == 1
    assert reg.get(1).assigned_jobs == set()


def test_resident_keys_are_an_lru():
    reg = WorkerRegistry(affinity_cache_size=2)
    reg.register(1)

    reg.touch_resident(1, ["a", "b"])
    reg.touch_resident(1, ["a"])
    reg.heartbeat(1, cpu=0.0, mem=0.0, net=0.0, resident=["c"])

    assert list(reg.get(1).resident) == ["a", "c"]
    assert reg.get(1).to_dict()["resident"] == ["a", "c"]


def test_unknown_worker():
    reg = WorkerRegistry()

    with pytest.raises(NotFoundError):
        reg.get(3)
    assert 3 not in reg
    assert reg.mark_failed(3) == set()
