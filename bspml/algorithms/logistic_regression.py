# bspml/algorithms/logistic_regression.py
from __future__ import annotations

import numpy as np

from bspml.algorithms import metrics
from bspml.algorithms.gradient import GradientLearner
from bspml.comm.communicator import ReduceOp
from bspml.tensor import Matrix, Vector


def sigmoid(z: np.ndarray) -> np.ndarray:
    # tanh form never overflows
    return 0.5 * (1.0 + np.tanh(0.5 * z))


class LogisticRegression(GradientLearner):
    """
    p = sigmoid(x.w + b), binary labels in {0, 1}

    l = -[y log p + (1 - y) log(1 - p)]   dl/dw = (p - y) x
    """

    kind = "logistic-regression"
    threshold = 0.5

    def _check_labels(self, y: np.ndarray) -> bool:
        return bool(np.all((y == 0.0) | (y == 1.0)))

    def _decision(self, x: np.ndarray) -> np.ndarray:
        return (self._proba(x) >= self.threshold).astype(np.float64)

    def _proba(self, x: np.ndarray) -> np.ndarray:
        return sigmoid(x @ self.theta[:-1] + self.theta[-1])

    def _loss_grad(self, x, y, w, b):
        z = x @ w + b
        p = sigmoid(z)
        # log(1 + e^z) - y z
        loss = float((np.logaddexp(0.0, z) - y * z).sum())
        err = p - y
        return loss, x.T @ err, float(err.sum())

    def predict_proba(self, x: Matrix) -> Vector:
        self._require_model()
        return Vector(self._proba(x.values))

    def _evaluate(self) -> dict:
        w, b = self.theta[:-1], float(self.theta[-1])
        loss_sum, _, _ = self._loss_grad(self._x, self._y, w, b)
        correct = float((self._decision(self._x) == self._y).sum())
        loss_sum, correct = self.comm.all_reduce(np.array([loss_sum, correct]), ReduceOp.SUM)
        return {
            "loss": float(loss_sum / self.n_total + self.regularization_loss(w)),
            "accuracy": float(correct / self.n_total),
        }

    def score(self, x: Matrix, y: Vector) -> float:
        """Accuracy on (x, y)."""
        return metrics.accuracy(y, self.predict(x))
