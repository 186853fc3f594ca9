# bspml/algorithms/params.py
from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class GradientParams(BaseModel):
    """
    Gradient learner hyper-parameters.

    clip_max bounds the L2 norm of the full gradient (w, b); None disables it.
    warm_start is (w_1 .. w_d, b).
    """

    learning_rate: float = Field(default=0.01, gt=0.0)
    max_iterations: int = Field(default=100, ge=1)
    tolerance: float = Field(default=1e-6, ge=0.0)

    regularization: Literal["none", "l1", "l2"] = "none"
    reg_strength: float = Field(default=0.0, ge=0.0)

    optimizer: Literal["sgd", "momentum", "adam"] = "sgd"
    momentum: float = Field(default=0.9, ge=0.0, lt=1.0)
    beta1: float = Field(default=0.9, ge=0.0, lt=1.0)
    beta2: float = Field(default=0.999, ge=0.0, lt=1.0)
    epsilon: float = Field(default=1e-8, gt=0.0)

    clip_max: Optional[float] = Field(default=1.0, gt=0.0)
    loss: Literal["mse", "mae"] = "mse"
    warm_start: Optional[list[float]] = None


class KMeansParams(BaseModel):
    k: int = Field(default=3, ge=1)
    max_iterations: int = Field(default=300, ge=1)
    tolerance: float = Field(default=1e-4, ge=0.0)
    init_method: Literal["random", "k-means++", "farthest-point"] = "k-means++"
    n_init: int = Field(default=10, ge=1)
    seed: int = 42
    # rows each rank contributes to the rank-0 initialisation sample
    init_sample_size: int = Field(default=10000, ge=1)


class DBSCANParams(BaseModel):
    epsilon: float = Field(default=0.5, gt=0.0)
    min_points: int = Field(default=5, ge=1)
    boundary_mode: Literal["hull", "all-core"] = "hull"
    approximate_neighbors: bool = False
