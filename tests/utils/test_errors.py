#!filepath: tests/utils/test_errors.py
import pytest

from bspml.utils.errors import (
    BSPError,
    DecodeError,
    JobCancelled,
    NotFoundError,
    OperationTimeoutError,
    ProtocolError,
    TransportError,
    ValidationError,
    exit_code_for,
)


def test_str_carries_kind():
    e = ValidationError("k must be >= 1")

    assert str(e) == "validation: k must be >= 1"
    assert e.message == "k must be >= 1"


def test_job_id_is_kept():
    e = ProtocolError("illegal transition", job_id="abc")

    assert e.job_id == "abc"
    assert e.kind == "protocol"


@pytest.mark.parametrize(
    "exc, code",
    [
        (ValidationError(), 2),
        (NotFoundError(), 3),
        (TransportError(), 4),
        (OperationTimeoutError(), 5),
        (DecodeError(), 1),
        (RuntimeError("boom"), 1),
    ],
)
def test_exit_codes(exc, code):
    assert exit_code_for(exc) == code


def test_taxonomy_roots_at_bsp_error():
    for cls in (ValidationError, TransportError, DecodeError, JobCancelled, NotFoundError):
        assert issubclass(cls, BSPError)
