# bspml/algorithms/registry.py
from __future__ import annotations

from typing import Callable, Dict, Tuple, Type

import pydantic
from pydantic import BaseModel

from bspml.algorithms.base import Kernel
from bspml.algorithms.dbscan import DBSCAN
from bspml.algorithms.kmeans import KMeans
from bspml.algorithms.linear_regression import LinearRegression
from bspml.algorithms.logistic_regression import LogisticRegression
from bspml.algorithms.params import DBSCANParams, GradientParams, KMeansParams
from bspml.utils.errors import ValidationError

# kind -> (params model, factory)
_KERNEL_REGISTRY: Dict[str, Tuple[Type[BaseModel], Callable[[BaseModel], Kernel]]] = {
    "linear-regression": (GradientParams, lambda p: LinearRegression(p)),
    "logistic-regression": (GradientParams, lambda p: LogisticRegression(p)),
    "k-means": (KMeansParams, lambda p: KMeans(p)),
    "dbscan": (DBSCANParams, lambda p: DBSCAN(p)),
}


def available_kernels() -> list[str]:
    return list(_KERNEL_REGISTRY)


def kernel_params(kind: str, params: dict | None = None) -> BaseModel:
    if kind not in _KERNEL_REGISTRY:
        raise ValidationError(
            f"No kernel for {kind!r}. Available: {', '.join(_KERNEL_REGISTRY)}"
        )
    model, _ = _KERNEL_REGISTRY[kind]
    try:
        return model(**(params or {}))
    except pydantic.ValidationError as e:
        raise ValidationError(f"invalid {kind} parameters: {e}") from e


def resolve_kernel(kind: str, params: dict | BaseModel | None = None) -> Kernel:
    if not isinstance(params, BaseModel):
        params = kernel_params(kind, params)
    elif kind not in _KERNEL_REGISTRY:
        raise ValidationError(f"No kernel for {kind!r}. Available: {', '.join(_KERNEL_REGISTRY)}")
    _, factory = _KERNEL_REGISTRY[kind]
    return factory(params)
