# bspml/algorithms/optimizers.py
from __future__ import annotations

from typing import Callable, Dict

import numpy as np

from bspml.utils.errors import ValidationError


class Optimizer:
    """
    Parameter update rule over a flat parameter vector theta = (w, b).

    State is plain numpy arrays so it can ride inside a checkpoint.
    """

    name = "sgd"

    def __init__(self, learning_rate: float):
        self.learning_rate = learning_rate

    def step(self, theta: np.ndarray, grad: np.ndarray) -> np.ndarray:
        return theta - self.learning_rate * grad

    def state(self) -> dict:
        return {"name": self.name}

    def load_state(self, state: dict) -> None:
        if state.get("name") != self.name:
            raise ValidationError(
                f"optimizer state is for {state.get('name')!r}, expected {self.name!r}"
            )


class Momentum(Optimizer):
    name = "momentum"

    def __init__(self, learning_rate: float, momentum: float = 0.9):
        super().__init__(learning_rate)
        self.momentum = momentum
        self.velocity: np.ndarray | None = None

    def step(self, theta, grad):
        if self.velocity is None:
            self.velocity = np.zeros_like(theta)
        self.velocity = self.momentum * self.velocity - self.learning_rate * grad
        return theta + self.velocity

    def state(self) -> dict:
        return {"name": self.name, "velocity": self.velocity}

    def load_state(self, state: dict) -> None:
        super().load_state(state)
        self.velocity = state.get("velocity")


class Adam(Optimizer):
    name = "adam"

    def __init__(self, learning_rate: float, beta1: float = 0.9, beta2: float = 0.999, epsilon: float = 1e-8):
        super().__init__(learning_rate)
        self.beta1 = beta1
        self.beta2 = beta2
        self.epsilon = epsilon
        self.m: np.ndarray | None = None
        self.v: np.ndarray | None = None
        self.t = 0

    def step(self, theta, grad):
        if self.m is None:
            self.m = np.zeros_like(theta)
            self.v = np.zeros_like(theta)
        self.t += 1
        self.m = self.beta1 * self.m + (1.0 - self.beta1) * grad
        self.v = self.beta2 * self.v + (1.0 - self.beta2) * grad * grad
        m_hat = self.m / (1.0 - self.beta1 ** self.t)
        v_hat = self.v / (1.0 - self.beta2 ** self.t)
        return theta - self.learning_rate * m_hat / (np.sqrt(v_hat) + self.epsilon)

    def state(self) -> dict:
        return {"name": self.name, "m": self.m, "v": self.v, "t": self.t}

    def load_state(self, state: dict) -> None:
        super().load_state(state)
        self.m = state.get("m")
        self.v = state.get("v")
        self.t = int(state.get("t", 0))


_OPTIMIZERS: Dict[str, Callable[..., Optimizer]] = {
    "sgd": lambda p: Optimizer(p.learning_rate),
    "momentum": lambda p: Momentum(p.learning_rate, p.momentum),
    "adam": lambda p: Adam(p.learning_rate, p.beta1, p.beta2, p.epsilon),
}


def build_optimizer(params) -> Optimizer:
    if params.optimizer not in _OPTIMIZERS:
        raise ValidationError(
            f"unknown optimizer {params.optimizer!r}. Available: {', '.join(_OPTIMIZERS)}"
        )
    return _OPTIMIZERS[params.optimizer](params)
