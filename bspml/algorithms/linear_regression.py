# bspml/algorithms/linear_regression.py
from __future__ import annotations

import numpy as np

from bspml.algorithms import metrics
from bspml.algorithms.gradient import GradientLearner
from bspml.comm.communicator import ReduceOp
from bspml.tensor import Matrix, Vector


class LinearRegression(GradientLearner):
    """
    y_hat = x.w + b

    mse : l = 1/2 (y_hat - y)^2   dl/dw = (y_hat - y) x
    mae : l = |y_hat - y|         dl/dw = sign(y_hat - y) x
    """

    kind = "linear-regression"

    def _decision(self, x: np.ndarray) -> np.ndarray:
        return x @ self.theta[:-1] + self.theta[-1]

    def _loss_grad(self, x, y, w, b):
        residual = x @ w + b - y
        if self.params.loss == "mae":
            signs = np.sign(residual)
            return float(np.abs(residual).sum()), x.T @ signs, float(signs.sum())
        return float(0.5 * residual @ residual), x.T @ residual, float(residual.sum())

    def _evaluate(self) -> dict:
        w, b = self.theta[:-1], float(self.theta[-1])
        loss_sum, _, _ = self._loss_grad(self._x, self._y, w, b)
        residual = self._x @ w + b - self._y
        local = np.array([
            loss_sum,
            float(residual @ residual),
            float(self._y.sum()),
            float(self._y @ self._y),
        ])
        loss_sum, sse, sum_y, sum_y2 = self.comm.all_reduce(local, ReduceOp.SUM)
        n = self.n_total
        sst = sum_y2 - sum_y * sum_y / n
        r2 = 1.0 - sse / sst if sst > 0 else 0.0
        return {
            "loss": float(loss_sum / n + self.regularization_loss(w)),
            "mse": float(sse / n),
            "r2": float(r2),
        }

    def score(self, x: Matrix, y: Vector) -> float:
        """R^2 on (x, y)."""
        return metrics.r2(y, self.predict(x))
