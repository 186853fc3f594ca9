#!filepath: tests/algorithms/test_kernel_registry.py
import pytest

from bspml.algorithms import (
    DBSCAN,
    GradientParams,
    KMeans,
    LinearRegression,
    LogisticRegression,
    available_kernels,
    kernel_params,
    resolve_kernel,
)
from bspml.utils.errors import ValidationError


def test_all_kinds_registered():
    assert available_kernels() == ["linear-regression", "logistic-regression", "k-means", "dbscan"]


@pytest.mark.parametrize("kind, cls", [
    ("linear-regression", LinearRegression),
    ("logistic-regression", LogisticRegression),
    ("k-means", KMeans),
    ("dbscan", DBSCAN),
])
def test_resolve_builds_the_kernel(kind, cls):
    kernel = resolve_kernel(kind, {})

    assert isinstance(kernel, cls)
    assert kernel.kind == kind


def test_params_are_validated():
    params = kernel_params("k-means", {"k": 4, "init_method": "random"})
    assert params.k == 4

    with pytest.raises(ValidationError):
        kernel_params("k-means", {"k": 0})
    with pytest.raises(ValidationError):
        kernel_params("dbscan", {"epsilon": -1.0})
    with pytest.raises(ValidationError):
        kernel_params("linear-regression", {"optimizer": "rmsprop"})


def test_unknown_kind():
    with pytest.raises(ValidationError, match="Available"):
        resolve_kernel("svm", {})
    with pytest.raises(ValidationError):
        resolve_kernel("svm", GradientParams())


def test_resolve_accepts_model_instances():
    kernel = resolve_kernel("linear-regression", GradientParams(learning_rate=0.5))

    assert kernel.params.learning_rate == 0.5
