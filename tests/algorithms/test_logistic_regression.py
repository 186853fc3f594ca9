#!filepath: tests/algorithms/test_logistic_regression.py
import numpy as np
import pytest

from bspml.algorithms import GradientParams, LogisticRegression
from bspml.algorithms.logistic_regression import sigmoid
from bspml.tensor import Matrix, Vector
from bspml.utils.errors import ValidationError


def test_separates_linear_boundary(fit_group, classification_data):
    x, y = classification_data
    params = GradientParams(learning_rate=0.5, max_iterations=300, clip_max=None)

    out = fit_group(lambda: LogisticRegression(params), x, y, ranks=3)

    kernel, result = out[0]
    assert result.accuracy >= 0.9
    assert result.summary["accuracy"] == result.accuracy
    assert result.loss < np.log(2.0)
    # both weights push the same way
    w = kernel.weights.values
    assert w[0] > 0 and w[1] > 0


def test_non_binary_labels_rejected(fit_group, classification_data):
    x, y = classification_data
    bad = Vector(np.where(y.values == 1.0, 2.0, 0.0))

    with pytest.raises(ValidationError):
        fit_group(lambda: LogisticRegression(), x, bad, ranks=2)


def test_predict_proba_and_threshold(fit_group, classification_data):
    x, y = classification_data
    params = GradientParams(learning_rate=0.5, max_iterations=200, clip_max=None)
    [(kernel, _)] = fit_group(lambda: LogisticRegression(params), x, y, ranks=1)

    proba = kernel.predict_proba(x).values
    labels = kernel.predict(x).values

    assert np.all((proba >= 0.0) & (proba <= 1.0))
    assert np.array_equal(labels, (proba >= 0.5).astype(np.float64))
    assert kernel.score(x, y) >= 0.9


def test_sigmoid_is_stable_for_large_inputs():
    out = sigmoid(np.array([-1000.0, 0.0, 1000.0]))

    assert np.all(np.isfinite(out))
    assert out.tolist() == [0.0, 0.5, 1.0]


def test_loss_stays_finite_with_confident_model():
    model = LogisticRegression()
    model.theta = np.array([500.0, 0.0])

    loss = model.compute_loss(Matrix([[1.0], [-1.0]]), Vector([0.0, 1.0]))

    assert np.isfinite(loss)
    assert loss == pytest.approx(500.0)
