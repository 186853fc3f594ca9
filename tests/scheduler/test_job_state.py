#!filepath: tests/scheduler/test_job_state.py
import json

import pytest

from bspml.algorithms import GradientParams, KMeansParams
from bspml.scheduler import JobDescriptor, JobState, JobStatus, check_transition
from bspml.utils.errors import ProtocolError, ValidationError


def test_parse_defaults():
    d = JobDescriptor.parse({"kind": "linear-regression", "input_key": "ds"})

    assert d.partition_strategy.value == "row"
    assert d.access_mode == "shared"
    assert d.num_ranks is None
    assert d.max_iterations == 100


def test_parse_json_string():
    d = JobDescriptor.parse('{"kind": "k-means", "input_key": "ds", "k": 3}')

    assert d.k == 3


@pytest.mark.parametrize("raw", [
    {"kind": "svm", "input_key": "ds"},
    {"kind": "linear-regression"},
    {"kind": "linear-regression", "input_key": ""},
    {"kind": "linear-regression", "input_key": "ds", "surprise": 1},
    {"kind": "linear-regression", "input_key": "ds", "learning_rate": 0},
    {"kind": "k-means", "input_key": "ds"},
    {"kind": "dbscan", "input_key": "ds"},
    {"kind": "linear-regression", "input_key": "ds", "partition_strategy": "column"},
    {"kind": "k-means", "input_key": "ds", "k": 2, "partition_strategy": "block"},
    "{not json",
])
def test_invalid_descriptors(raw):
    with pytest.raises(ValidationError):
        JobDescriptor.parse(raw)


def test_wire_decode_is_protocol_error():
    with pytest.raises(ProtocolError):
        JobDescriptor.from_wire('{"kind": "k-means", "input_key": "ds"}')

    d = JobDescriptor.parse({"kind": "dbscan", "input_key": "ds", "epsilon": 0.3})
    assert JobDescriptor.from_wire(d.to_json()) == d


def test_kernel_params_projection():
    lin = JobDescriptor.parse({
        "kind": "linear-regression", "input_key": "ds",
        "learning_rate": 0.2, "optimizer": "adam", "max_iterations": 7,
    }).kernel_params()
    km = JobDescriptor.parse({"kind": "k-means", "input_key": "ds", "k": 4, "seed": 3}).kernel_params()

    assert isinstance(lin, GradientParams)
    assert (lin.learning_rate, lin.optimizer, lin.max_iterations) == (0.2, "adam", 7)
    assert isinstance(km, KMeansParams)
    assert (km.k, km.seed) == (4, 3)


@pytest.mark.parametrize("current, new", [
    (JobState.PENDING, JobState.RUNNING),
    (JobState.PENDING, JobState.CANCELLED),
    (JobState.RUNNING, JobState.PAUSED),
    (JobState.RUNNING, JobState.CANCELLING),
    (JobState.PAUSED, JobState.RUNNING),
    (JobState.PAUSED, JobState.COMPLETED),
    (JobState.CANCELLING, JobState.CANCELLED),
    (JobState.CANCELLING, JobState.COMPLETED),
    (JobState.RUNNING, JobState.RUNNING),
])
def test_legal_transitions(current, new):
    check_transition("j", current, new)


@pytest.mark.parametrize("current, new", [
    (JobState.COMPLETED, JobState.RUNNING),
    (JobState.FAILED, JobState.PENDING),
    (JobState.CANCELLED, JobState.RUNNING),
    (JobState.RUNNING, JobState.PENDING),
    (JobState.RUNNING, JobState.CANCELLED),
    (JobState.PENDING, JobState.PAUSED),
])
def test_illegal_transitions(current, new):
    with pytest.raises(ProtocolError):
        check_transition("j", current, new)


def test_terminal_flags():
    assert {s for s in JobState if s.terminal} == {JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED}


def test_status_dict_round_trip():
    d = JobDescriptor.parse({"kind": "k-means", "input_key": "ds", "k": 2})
    st = JobStatus(job_id="abc", descriptor=d, state=JobState.RUNNING, worker_ids=[1, 3], attempts=2)

    raw = json.loads(st.to_json())
    back = JobStatus.from_dict(raw)

    assert raw["state"] == "running"
    assert back.descriptor == d
    assert back.assigned_worker == 3
    assert back.attempts == 2
    assert back.elapsed is None
