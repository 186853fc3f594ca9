# bspml/algorithms/metrics.py
"""
Evaluation metrics (single process, scikit-learn backed).

Inputs may be Vector / Matrix / ndarray / sequences.
"""
from __future__ import annotations

from typing import Dict

import numpy as np
from sklearn.metrics import (
    accuracy_score,
    adjusted_rand_score,
    f1_score,
    mean_absolute_error,
    mean_squared_error,
    precision_score,
    recall_score,
    r2_score,
    roc_auc_score,
    silhouette_score,
)

from bspml.utils.errors import ShapeMismatchError, ValidationError


def _arr(v) -> np.ndarray:
    return np.asarray(v, dtype=np.float64).reshape(-1)


def _pair(y_true, y_pred) -> tuple[np.ndarray, np.ndarray]:
    a, b = _arr(y_true), _arr(y_pred)
    if a.shape != b.shape:
        raise ShapeMismatchError(f"{a.size} targets vs {b.size} predictions")
    if a.size == 0:
        raise ValidationError("metrics need at least one sample")
    return a, b


# ---------------------------------------------------------
# regression
# ---------------------------------------------------------
def mse(y_true, y_pred) -> float:
    return float(mean_squared_error(*_pair(y_true, y_pred)))


def mae(y_true, y_pred) -> float:
    return float(mean_absolute_error(*_pair(y_true, y_pred)))


def rmse(y_true, y_pred) -> float:
    return float(np.sqrt(mse(y_true, y_pred)))


def r2(y_true, y_pred) -> float:
    return float(r2_score(*_pair(y_true, y_pred)))


# ---------------------------------------------------------
# classification
# ---------------------------------------------------------
def accuracy(y_true, y_pred) -> float:
    return float(accuracy_score(*_pair(y_true, y_pred)))


def precision(y_true, y_pred) -> float:
    return float(precision_score(*_pair(y_true, y_pred), zero_division=0))


def recall(y_true, y_pred) -> float:
    return float(recall_score(*_pair(y_true, y_pred), zero_division=0))


def f1(y_true, y_pred) -> float:
    return float(f1_score(*_pair(y_true, y_pred), zero_division=0))


def roc_auc(y_true, y_score) -> float:
    a, b = _pair(y_true, y_score)
    if np.unique(a).size < 2:
        raise ValidationError("ROC-AUC needs both classes present")
    return float(roc_auc_score(a, b))


def classification_report(y_true, y_pred, y_score=None) -> Dict[str, float]:
    out = {
        "accuracy": accuracy(y_true, y_pred),
        "precision": precision(y_true, y_pred),
        "recall": recall(y_true, y_pred),
        "f1": f1(y_true, y_pred),
    }
    if y_score is not None:
        out["auc"] = roc_auc(y_true, y_score)
    return out


# ---------------------------------------------------------
# clustering
# ---------------------------------------------------------
def adjusted_rand(labels_true, labels_pred) -> float:
    a, b = _pair(labels_true, labels_pred)
    return float(adjusted_rand_score(a.astype(np.int64), b.astype(np.int64)))


def silhouette(x, labels) -> float:
    data = np.asarray(x, dtype=np.float64)
    lab = _arr(labels).astype(np.int64)
    if data.shape[0] != lab.size:
        raise ShapeMismatchError(f"{data.shape[0]} points vs {lab.size} labels")
    if np.unique(lab).size < 2:
        raise ValidationError("silhouette needs at least two clusters")
    return float(silhouette_score(data, lab))


def inertia(x, centroids, labels) -> float:
    """Sum of squared distances of each point to its assigned centroid."""
    data = np.asarray(x, dtype=np.float64)
    cents = np.asarray(centroids, dtype=np.float64)
    lab = _arr(labels).astype(np.int64)
    if data.shape[0] != lab.size:
        raise ShapeMismatchError(f"{data.shape[0]} points vs {lab.size} labels")
    diff = data - cents[lab]
    return float((diff * diff).sum())
