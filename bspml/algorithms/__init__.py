from .base import Kernel, KernelContext, KernelResult
from .dbscan import DBSCAN
from .gradient import GradientLearner, TrainingRecord
from .kmeans import KMeans
from .linear_regression import LinearRegression
from .logistic_regression import LogisticRegression
from .params import DBSCANParams, GradientParams, KMeansParams
from .registry import available_kernels, kernel_params, resolve_kernel

__all__ = [
    "Kernel",
    "KernelContext",
    "KernelResult",
    "GradientLearner",
    "TrainingRecord",
    "LinearRegression",
    "LogisticRegression",
    "KMeans",
    "DBSCAN",
    "GradientParams",
    "KMeansParams",
    "DBSCANParams",
    "available_kernels",
    "kernel_params",
    "resolve_kernel",
]
