#!filepath: tests/scheduler/test_job_scheduler.py
import re
import threading
import time

import pytest

from bspml.config import SchedulingPolicy
from bspml.scheduler import JobScheduler, JobState, JobStore, WorkerLink
from bspml.scheduler.scheduler import MAX_ATTEMPTS
from bspml.serialization.control import (
    CheckpointPayload,
    ComputationResultPayload,
    HeartbeatPayload,
    JobStatusPayload,
)
from bspml.utils.errors import (
    NotFoundError,
    OperationTimeoutError,
    ProtocolError,
    TransportError,
    ValidationError,
)

LINEAR = {"kind": "linear-regression", "input_key": "datasets/linear"}


class FakeLink(WorkerLink):
    def __init__(self, fail_submits: int = 0):
        self.submits = []
        self.controls = []
        self.fail_submits = fail_submits

    def submit(self, job_id, descriptor, resume_from=None):
        if self.fail_submits:
            self.fail_submits -= 1
            raise TransportError("link down")
        self.submits.append((job_id, resume_from))

    def control(self, job_id, action):
        self.controls.append((job_id, action))


@pytest.fixture
def scheduler(fast_policy):
    return JobScheduler(fast_policy)


def placed(scheduler, wid=1, link=None):
    link = link or FakeLink()
    scheduler.register_worker(wid, link)
    job_id = scheduler.submit(LINEAR)
    assert scheduler.schedule_once()
    return job_id, link


def result(job_id, worker_id, loss=0.25, **summary):
    return ComputationResultPayload(
        job_id=job_id, iteration=10, state=b"", loss=loss, elapsed=1.5,
        worker_id=worker_id, summary=summary,
    )


# ---------------------------------------------------------
# submission
# ---------------------------------------------------------
def test_submit_queues_pending_job(scheduler):
    job_id = scheduler.submit(LINEAR)

    assert re.fullmatch(r"[0-9a-f]{12}", job_id)
    assert scheduler.status(job_id).state == JobState.PENDING
    assert scheduler.queue() == [job_id]
    assert scheduler.get_metrics()["submitted"] == 1


def test_invalid_submit_queues_nothing(scheduler):
    with pytest.raises(ValidationError):
        scheduler.submit({"kind": "k-means", "input_key": "ds"})

    assert scheduler.queue() == []
    assert scheduler.list_jobs() == []


def test_duplicate_job_id(scheduler):
    scheduler.submit(LINEAR, job_id="same")

    with pytest.raises(ProtocolError):
        scheduler.submit(LINEAR, job_id="same")


def test_unknown_job(scheduler):
    with pytest.raises(NotFoundError):
        scheduler.status("nope")
    with pytest.raises(NotFoundError):
        scheduler.wait("nope")


# ---------------------------------------------------------
# placement
# ---------------------------------------------------------
def test_job_waits_for_a_worker(scheduler):
    job_id = scheduler.submit(LINEAR)

    assert not scheduler.schedule_once()

    link = FakeLink()
    scheduler.register_worker(1, link)
    assert scheduler.schedule_once()

    st = scheduler.status(job_id)
    assert st.state == JobState.RUNNING
    assert st.assigned_worker == 1
    assert st.attempts == 1
    assert st.started_at is not None
    assert link.submits == [(job_id, None)]
    assert scheduler.workers.get(1).assigned_jobs == {job_id}


def test_fifo_order_and_concurrency_cap():
    sched = JobScheduler(SchedulingPolicy(max_concurrent_jobs=1))
    link = FakeLink()
    sched.register_worker(1, link)
    first = sched.submit(LINEAR)
    second = sched.submit(LINEAR)

    assert sched.schedule_once()
    assert not sched.schedule_once()
    assert sched.queue() == [second]

    sched.on_result(result(first, 1))
    assert sched.schedule_once()
    assert [j for j, _ in link.submits] == [first, second]


def test_per_worker_cap(scheduler):
    link = FakeLink()
    scheduler.register_worker(1, link)
    jobs = [scheduler.submit(LINEAR) for _ in range(3)]

    while scheduler.schedule_once():
        pass

    assert [j for j, _ in link.submits] == jobs[:2]
    assert scheduler.queue() == jobs[2:]


def test_unreachable_worker_fails_the_job(scheduler):
    job_id, link = placed(scheduler, link=FakeLink(fail_submits=5))

    st = scheduler.status(job_id)
    assert st.state == JobState.FAILED
    assert "link down" in st.error
    assert scheduler.workers.get(1).assigned_jobs == set()
    assert scheduler.get_metrics()["running"] == 0


def test_transient_link_error_is_retried(scheduler):
    job_id, link = placed(scheduler, link=FakeLink(fail_submits=2))

    assert scheduler.status(job_id).state == JobState.RUNNING
    assert link.submits == [(job_id, None)]


# ---------------------------------------------------------
# reports
# ---------------------------------------------------------
def test_progress_then_result(scheduler):
    job_id, _ = placed(scheduler)

    scheduler.on_job_status(JobStatusPayload(job_id=job_id, state="running", progress=0.4, iteration=4, worker_id=1))
    assert scheduler.status(job_id).progress == 0.4

    scheduler.on_result(result(job_id, 1, r2=0.99))

    st = scheduler.wait(job_id, timeout=1.0)
    assert st.state == JobState.COMPLETED
    assert st.progress == 1.0
    assert st.loss == 0.25
    assert st.result == {"r2": 0.99}
    assert scheduler.workers.get(1).completed_jobs == 1
    metrics = scheduler.get_metrics()
    assert metrics["completed"] == 1
    assert metrics["avg_completion_time"] == pytest.approx(1.5)
    assert scheduler.selector.completion_ema(1) == pytest.approx(1.5)


def test_stale_and_backward_reports_are_dropped(scheduler):
    job_id, _ = placed(scheduler)

    scheduler.on_job_status(JobStatusPayload(job_id=job_id, state="completed", worker_id=7))
    assert scheduler.status(job_id).state == JobState.RUNNING

    scheduler.on_result(result(job_id, 1))
    scheduler.on_job_status(JobStatusPayload(job_id=job_id, state="running", progress=0.1, worker_id=1))
    scheduler.on_job_status(JobStatusPayload(job_id="ghost", state="running"))

    st = scheduler.status(job_id)
    assert st.state == JobState.COMPLETED
    assert st.progress == 1.0


def test_failure_report(scheduler):
    job_id, _ = placed(scheduler)

    scheduler.on_job_status(
        JobStatusPayload(job_id=job_id, state="failed", error="numerical-instability: boom", worker_id=1)
    )

    st = scheduler.wait(job_id, timeout=1.0)
    assert st.state == JobState.FAILED
    assert st.error.startswith("numerical-instability")
    assert scheduler.get_metrics()["failed"] == 1


def test_newest_checkpoint_wins(scheduler):
    job_id, _ = placed(scheduler)

    scheduler.on_checkpoint(CheckpointPayload(job_id=job_id, iteration=10, checkpoint_key="ck/10"))
    scheduler.on_checkpoint(CheckpointPayload(job_id=job_id, iteration=5, checkpoint_key="ck/5"))

    st = scheduler.status(job_id)
    assert (st.checkpoint_key, st.checkpoint_iteration) == ("ck/10", 10)


def test_heartbeat_from_unknown_worker(scheduler):
    hb = HeartbeatPayload(worker_id=5, cpu=0.1, mem=0.1, net=0.0)

    assert not scheduler.on_heartbeat(hb)
    scheduler.register_worker(5, FakeLink())
    assert scheduler.on_heartbeat(hb)
    assert scheduler.workers.get(5).cpu == 0.1


# ---------------------------------------------------------
# control
# ---------------------------------------------------------
def test_cancel_queued_job(scheduler):
    job_id = scheduler.submit(LINEAR)

    st = scheduler.cancel(job_id)

    assert st.state == JobState.CANCELLED
    assert scheduler.queue() == []
    assert scheduler.get_metrics()["cancelled"] == 1
    with pytest.raises(ProtocolError):
        scheduler.cancel(job_id)


def test_cancel_running_job_goes_through_cancelling(scheduler):
    job_id, link = placed(scheduler)

    assert scheduler.cancel(job_id).state == JobState.CANCELLING
    assert scheduler.cancel(job_id).state == JobState.CANCELLING
    assert link.controls == [(job_id, "cancel")]

    scheduler.on_job_status(JobStatusPayload(job_id=job_id, state="cancelled", worker_id=1))
    assert scheduler.wait(job_id, timeout=1.0).state == JobState.CANCELLED


def test_pause_and_resume(scheduler):
    job_id, link = placed(scheduler)

    assert scheduler.pause(job_id).state == JobState.PAUSED
    with pytest.raises(ProtocolError):
        scheduler.pause(job_id)
    # progress reports do not override the requested state
    scheduler.on_job_status(JobStatusPayload(job_id=job_id, state="running", progress=0.5, worker_id=1))
    assert scheduler.status(job_id).state == JobState.PAUSED

    assert scheduler.resume(job_id).state == JobState.RUNNING
    assert link.controls == [(job_id, "pause"), (job_id, "resume")]


def test_pause_requires_running(scheduler):
    job_id = scheduler.submit(LINEAR)

    with pytest.raises(ProtocolError):
        scheduler.pause(job_id)
    with pytest.raises(ProtocolError):
        scheduler.resume(job_id)


def test_paused_job_may_complete(scheduler):
    job_id, _ = placed(scheduler)
    scheduler.pause(job_id)

    scheduler.on_result(result(job_id, 1))

    assert scheduler.status(job_id).state == JobState.COMPLETED


# ---------------------------------------------------------
# failures
# ---------------------------------------------------------
def test_failed_worker_jobs_resume_elsewhere_from_checkpoint(scheduler):
    job_id, first = placed(scheduler)
    scheduler.on_checkpoint(CheckpointPayload(job_id=job_id, iteration=20, checkpoint_key="checkpoints/x/iter-000020"))
    second = FakeLink()
    scheduler.register_worker(2, second)

    scheduler.on_node_failure(1)

    assert scheduler.queue() == [job_id]
    assert scheduler.status(job_id).state == JobState.RUNNING
    assert not scheduler.workers.get(1).available

    assert scheduler.schedule_once()
    st = scheduler.status(job_id)
    assert st.worker_ids == [1, 2]
    assert st.attempts == 2
    assert second.submits == [(job_id, "checkpoints/x/iter-000020")]
    metrics = scheduler.get_metrics()
    assert metrics["recoveries"] == 1
    assert metrics["worker_failures"] == 1

    # the old owner can no longer report
    scheduler.on_result(result(job_id, 1))
    assert scheduler.status(job_id).state == JobState.RUNNING


def test_requeued_job_goes_to_the_front(scheduler):
    job_id, _ = placed(scheduler)
    waiting = scheduler.submit(LINEAR)

    # `waiting` was never placed
    scheduler.on_node_failure(1)

    assert scheduler.queue() == [job_id, waiting]


def test_gives_up_after_max_attempts(scheduler):
    job_id, _ = placed(scheduler)
    for wid in range(2, MAX_ATTEMPTS + 1):
        scheduler.on_node_failure(wid - 1)
        scheduler.register_worker(wid, FakeLink())
        assert scheduler.schedule_once()

    scheduler.on_node_failure(MAX_ATTEMPTS)

    st = scheduler.status(job_id)
    assert st.state == JobState.FAILED
    assert st.attempts == MAX_ATTEMPTS
    assert "gave up" in st.error


def test_cancelling_job_on_failed_worker_is_cancelled(scheduler):
    job_id, _ = placed(scheduler)
    scheduler.cancel(job_id)

    scheduler.on_node_failure(1)

    assert scheduler.status(job_id).state == JobState.CANCELLED
    assert scheduler.queue() == []


def test_requeued_paused_job_is_paused_again_on_placement(scheduler):
    job_id, _ = placed(scheduler)
    scheduler.pause(job_id)
    second = FakeLink()
    scheduler.register_worker(2, second)
    scheduler.on_node_failure(1)

    assert scheduler.schedule_once()

    assert scheduler.status(job_id).state == JobState.PAUSED
    assert second.submits == [(job_id, None)]
    assert second.controls == [(job_id, "pause")]


def test_unregister_redistributes(scheduler):
    job_id, _ = placed(scheduler)

    scheduler.unregister_worker(1)

    assert 1 not in scheduler.workers
    assert scheduler.queue() == [job_id]


def test_heartbeat_monitor_detects_silent_worker(fast_policy, wait_until):
    sched = JobScheduler(fast_policy)
    silent, alive = FakeLink(), FakeLink()
    sched.register_worker(1, silent)
    job_id = sched.submit(LINEAR)
    assert sched.schedule_once()
    sched.register_worker(2, alive)

    stop = threading.Event()

    def beat():
        while not stop.wait(0.05):
            sched.on_heartbeat(HeartbeatPayload(worker_id=2, cpu=0.0, mem=0.0, net=0.0))

    beater = threading.Thread(target=beat, daemon=True)
    beater.start()
    sched.start()
    try:
        assert wait_until(lambda: alive.submits, timeout=5.0)
    finally:
        stop.set()
        beater.join()
        sched.stop()

    assert alive.submits == [(job_id, None)]
    assert not sched.workers.get(1).available


# ---------------------------------------------------------
# stealing
# ---------------------------------------------------------
def test_steal_after_threshold(fast_policy):
    policy = fast_policy.model_copy(update={"type": "round-robin"})
    sched = JobScheduler(policy)
    sched.register_worker(1, FakeLink())
    thief = FakeLink()
    sched.register_worker(2, thief)
    # round-robin would hand the first job to worker 1
    job_id = sched.submit(LINEAR)

    assert sched.steal(2) is None
    time.sleep(0.3)
    assert sched.steal(2) == job_id

    assert thief.submits == [(job_id, None)]
    assert sched.status(job_id).assigned_worker == 2
    assert sched.get_metrics()["steals"] == 1


def test_policy_choice_may_steal_immediately(scheduler):
    scheduler.register_worker(1, FakeLink())
    job_id = scheduler.submit(LINEAR)

    assert scheduler.steal(1) == job_id


def test_paused_jobs_are_never_stolen(scheduler):
    job_id, _ = placed(scheduler)
    scheduler.pause(job_id)
    scheduler.register_worker(2, FakeLink())
    scheduler.on_node_failure(1)
    time.sleep(0.25)

    assert scheduler.steal(2) is None
    assert scheduler.queue() == [job_id]


def test_stealing_disabled(fast_policy):
    sched = JobScheduler(fast_policy.model_copy(update={"enable_work_stealing": False}))
    sched.register_worker(1, FakeLink())
    sched.submit(LINEAR)

    assert sched.steal(1) is None
    assert sched.steal(99) is None


# ---------------------------------------------------------
# control files
# ---------------------------------------------------------
def test_requests_from_store_are_applied(tmp_path, fast_policy):
    store = JobStore(tmp_path / "_jobs")
    sched = JobScheduler(fast_policy, store=store)
    store.request("submit", "from-cli", LINEAR)
    store.request("pause", "from-cli")  # rejected: still pending
    store.request("cancel", "from-cli")

    sched.drain_requests()

    assert sched.status("from-cli").state == JobState.CANCELLED
    assert store.load("from-cli").state == JobState.CANCELLED


def test_snapshots_are_persisted_on_stop(tmp_path, fast_policy):
    store = JobStore(tmp_path / "_jobs")
    sched = JobScheduler(fast_policy, store=store)
    sched.register_worker(1, FakeLink())
    sched.submit(LINEAR)

    sched.start()
    sched.stop()

    assert store.load_workers()[0]["worker_id"] == 1
    assert store.load_metrics()["submitted"] == 1


class _GatedStore(JobStore):
    """Job writes block until the gate opens."""

    def __init__(self, root):
        super().__init__(root)
        self.entered = threading.Event()
        self.gate = threading.Event()

    def save(self, status):
        self.entered.set()
        assert self.gate.wait(10.0)
        super().save(status)


def test_slow_store_does_not_hold_up_placement(tmp_path, fast_policy):
    store = _GatedStore(tmp_path / "_jobs")
    sched = JobScheduler(fast_policy, store=store)
    sched.register_worker(1, FakeLink())
    first = sched.submit(LINEAR)
    writer = threading.Thread(target=sched.flush_store)
    writer.start()
    assert store.entered.wait(5.0)

    t0 = time.monotonic()
    second = sched.submit(LINEAR)
    assert sched.schedule_once()
    elapsed = time.monotonic() - t0

    store.gate.set()
    writer.join(5.0)
    sched.flush_store(force=True)

    assert elapsed < 1.0
    assert sched.status(first).state == JobState.RUNNING
    assert store.load(first).state == JobState.RUNNING
    assert store.load(second).state == JobState.PENDING


def test_finished_jobs_leave_no_write_bookkeeping(tmp_path, fast_policy):
    store = JobStore(tmp_path / "_jobs")
    sched = JobScheduler(fast_policy, store=store)
    job_id, _ = placed(sched)
    sched.flush_store()
    assert job_id in sched._last_store_write

    sched.on_result(result(job_id, 1))
    sched.flush_store()

    assert store.load(job_id).state == JobState.COMPLETED
    assert sched._last_store_write == {}


def test_wait_times_out(scheduler):
    job_id = scheduler.submit(LINEAR)

    with pytest.raises(OperationTimeoutError):
        scheduler.wait(job_id, timeout=0.01)
