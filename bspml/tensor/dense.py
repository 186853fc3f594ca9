# bspml/tensor/dense.py
from __future__ import annotations

from numbers import Real
from typing import Iterable, Sequence

import numpy as np

from bspml.utils.errors import ShapeMismatchError


class _Dense:
    """
    Shared value semantics for Matrix / Vector.

    - storage is a private float64, C-contiguous ndarray
    - constructors copy; operators return new objects
    - elementwise operands must have identical shapes (scalars broadcast)
    """

    __slots__ = ("_data",)

    def __init__(self, data):
        self._data = data

    # ---------------------------------------------------------
    # raw access
    # ---------------------------------------------------------
    @property
    def values(self) -> np.ndarray:
        """Underlying array. Mutating it mutates this object."""
        return self._data

    @property
    def size(self) -> int:
        return int(self._data.size)

    def __array__(self, dtype=None, copy=None):
        if dtype is None:
            return self._data
        return self._data.astype(dtype)

    def copy(self):
        return type(self)(self._data.copy())

    def to_numpy(self) -> np.ndarray:
        return self._data.copy()

    # ---------------------------------------------------------
    # elementwise arithmetic
    # ---------------------------------------------------------
    def _operand(self, other, op: str):
        if isinstance(other, _Dense):
            if other._data.shape != self._data.shape:
                raise ShapeMismatchError(
                    f"{op}: {self.shape} vs {other.shape}"
                )
            return other._data
        if isinstance(other, Real):
            return float(other)
        return NotImplemented

    def _binary(self, other, op: str, fn):
        rhs = self._operand(other, op)
        if rhs is NotImplemented:
            return NotImplemented
        return type(self)(fn(self._data, rhs))

    def __add__(self, other):
        return self._binary(other, "add", np.add)

    def __radd__(self, other):
        return self.__add__(other)

    def __sub__(self, other):
        return self._binary(other, "sub", np.subtract)

    def __rsub__(self, other):
        if isinstance(other, Real):
            return type(self)(float(other) - self._data)
        return NotImplemented

    def __mul__(self, other):
        if isinstance(other, _Dense):
            raise TypeError("use hadamard() for elementwise products")
        return self._binary(other, "mul", np.multiply)

    def __rmul__(self, other):
        return self.__mul__(other)

    def __truediv__(self, other):
        return self._binary(other, "div", np.divide)

    def __neg__(self):
        return type(self)(-self._data)

    def hadamard(self, other):
        if not isinstance(other, _Dense):
            raise TypeError("hadamard() expects a Matrix or Vector")
        return self._binary(other, "hadamard", np.multiply)

    # ---------------------------------------------------------
    # comparisons / reductions
    # ---------------------------------------------------------
    def __eq__(self, other) -> bool:
        if not isinstance(other, _Dense) or type(other) is not type(self):
            return NotImplemented
        return other._data.shape == self._data.shape and bool(
            np.array_equal(self._data, other._data)
        )

    __hash__ = None

    def allclose(self, other, rtol: float = 1e-9, atol: float = 0.0) -> bool:
        if other.shape != self.shape:
            return False
        return bool(np.allclose(self._data, other._data, rtol=rtol, atol=atol))

    def is_finite(self) -> bool:
        return bool(np.all(np.isfinite(self._data)))

    def sum(self) -> float:
        return float(self._data.sum())

    def mean(self) -> float:
        return float(self._data.mean()) if self._data.size else 0.0

    def min(self) -> float:
        return float(self._data.min())

    def max(self) -> float:
        return float(self._data.max())


class Matrix(_Dense):
    """
    Dense row-major double matrix M(rows, cols).

    Invariant: values.size == rows * cols.
    """

    __slots__ = ()

    def __init__(self, data, rows: int | None = None, cols: int | None = None):
        arr = np.array(data, dtype=np.float64, order="C", copy=True)
        if rows is not None or cols is not None:
            if rows is None or cols is None:
                raise ValueError("rows and cols must be given together")
            if arr.size != rows * cols:
                raise ShapeMismatchError(
                    f"{arr.size} values cannot fill a {rows}x{cols} matrix"
                )
            arr = arr.reshape(rows, cols)
        if arr.ndim == 1:
            arr = arr.reshape(1, -1) if arr.size else arr.reshape(0, 0)
        if arr.ndim != 2:
            raise ShapeMismatchError(f"Matrix needs 2-D data, got ndim={arr.ndim}")
        super().__init__(arr)

    # ---------------------------------------------------------
    # constructors
    # ---------------------------------------------------------
    @classmethod
    def zeros(cls, rows: int, cols: int) -> "Matrix":
        return cls(np.zeros((rows, cols)))

    @classmethod
    def ones(cls, rows: int, cols: int) -> "Matrix":
        return cls(np.ones((rows, cols)))

    @classmethod
    def identity(cls, n: int) -> "Matrix":
        return cls(np.eye(n))

    @classmethod
    def random(
        cls,
        rows: int,
        cols: int,
        seed: int,
        low: float = 0.0,
        high: float = 1.0,
    ) -> "Matrix":
        rng = np.random.default_rng(seed)
        return cls(rng.uniform(low, high, size=(rows, cols)))

    @classmethod
    def normal(
        cls,
        rows: int,
        cols: int,
        seed: int,
        mean: float = 0.0,
        std: float = 1.0,
    ) -> "Matrix":
        rng = np.random.default_rng(seed)
        return cls(rng.normal(mean, std, size=(rows, cols)))

    @classmethod
    def vstack(cls, parts: Sequence["Matrix"]) -> "Matrix":
        parts = [p for p in parts if p.rows]
        if not parts:
            return cls(np.zeros((0, 0)))
        widths = {p.cols for p in parts}
        if len(widths) != 1:
            raise ShapeMismatchError(f"vstack: column counts differ {sorted(widths)}")
        return cls(np.vstack([p.values for p in parts]))

    @classmethod
    def hstack(cls, parts: Sequence["Matrix"]) -> "Matrix":
        heights = {p.rows for p in parts}
        if len(heights) != 1:
            raise ShapeMismatchError(f"hstack: row counts differ {sorted(heights)}")
        return cls(np.hstack([p.values for p in parts]))

    # ---------------------------------------------------------
    # shape / access
    # ---------------------------------------------------------
    @property
    def rows(self) -> int:
        return int(self._data.shape[0])

    @property
    def cols(self) -> int:
        return int(self._data.shape[1])

    @property
    def shape(self) -> tuple[int, int]:
        return (self.rows, self.cols)

    def _check_index(self, i: int, j: int) -> None:
        if not (0 <= i < self.rows and 0 <= j < self.cols):
            raise IndexError(f"({i}, {j}) out of range for {self.rows}x{self.cols}")

    def __getitem__(self, idx: tuple[int, int]) -> float:
        i, j = idx
        self._check_index(i, j)
        return float(self._data[i, j])

    def __setitem__(self, idx: tuple[int, int], value: float) -> None:
        i, j = idx
        self._check_index(i, j)
        self._data[i, j] = value

    def row(self, i: int) -> "Vector":
        if not 0 <= i < self.rows:
            raise IndexError(f"row {i} out of range for {self.rows} rows")
        return Vector(self._data[i])

    def column(self, j: int) -> "Vector":
        if not 0 <= j < self.cols:
            raise IndexError(f"column {j} out of range for {self.cols} cols")
        return Vector(self._data[:, j])

    def slice_rows(self, start: int, stop: int) -> "Matrix":
        return Matrix(self._data[start:stop])

    def slice_cols(self, start: int, stop: int) -> "Matrix":
        return Matrix(self._data[:, start:stop])

    def take_rows(self, indices: Iterable[int]) -> "Matrix":
        idx = np.asarray(list(indices), dtype=np.int64)
        return Matrix(self._data[idx].reshape(len(idx), self.cols))

    # ---------------------------------------------------------
    # linear algebra
    # ---------------------------------------------------------
    @property
    def T(self) -> "Matrix":
        return Matrix(self._data.T)

    def transpose(self) -> "Matrix":
        return self.T

    def __matmul__(self, other):
        if isinstance(other, Vector):
            if self.cols != other.size:
                raise ShapeMismatchError(f"matvec: {self.shape} @ ({other.size},)")
            return Vector(self._data @ other.values)
        if isinstance(other, Matrix):
            if self.cols != other.rows:
                raise ShapeMismatchError(f"matmul: {self.shape} @ {other.shape}")
            return Matrix(self._data @ other.values)
        return NotImplemented

    def column_mean(self) -> "Vector":
        if self.rows == 0:
            return Vector.zeros(self.cols)
        return Vector(self._data.mean(axis=0))

    def column_std(self) -> "Vector":
        if self.rows == 0:
            return Vector.zeros(self.cols)
        return Vector(self._data.std(axis=0))

    def frobenius_norm(self) -> float:
        return float(np.linalg.norm(self._data, "fro"))

    def l2_norm(self) -> float:
        """Spectral norm (largest singular value)."""
        if self._data.size == 0:
            return 0.0
        return float(np.linalg.norm(self._data, 2))

    def __repr__(self) -> str:
        return f"Matrix({self.rows}x{self.cols})"


class Vector(_Dense):
    """
    Dense double vector V(n); logically an n x 1 matrix.
    """

    __slots__ = ()

    def __init__(self, data):
        arr = np.array(data, dtype=np.float64, copy=True).reshape(-1)
        super().__init__(np.ascontiguousarray(arr))

    @classmethod
    def zeros(cls, n: int) -> "Vector":
        return cls(np.zeros(n))

    @classmethod
    def ones(cls, n: int) -> "Vector":
        return cls(np.ones(n))

    @classmethod
    def random(cls, n: int, seed: int, low: float = 0.0, high: float = 1.0) -> "Vector":
        rng = np.random.default_rng(seed)
        return cls(rng.uniform(low, high, size=n))

    @property
    def rows(self) -> int:
        return int(self._data.shape[0])

    @property
    def cols(self) -> int:
        return 1

    @property
    def shape(self) -> tuple[int, int]:
        return (self.rows, 1)

    def __len__(self) -> int:
        return self.rows

    def __getitem__(self, i: int) -> float:
        if not 0 <= i < self.rows:
            raise IndexError(f"{i} out of range for vector of length {self.rows}")
        return float(self._data[i])

    def __setitem__(self, i: int, value: float) -> None:
        if not 0 <= i < self.rows:
            raise IndexError(f"{i} out of range for vector of length {self.rows}")
        self._data[i] = value

    def __iter__(self):
        return (float(v) for v in self._data)

    def dot(self, other: "Vector") -> float:
        if other.size != self.size:
            raise ShapeMismatchError(f"dot: ({self.size},) . ({other.size},)")
        return float(self._data @ other.values)

    def l2_norm(self) -> float:
        return float(np.linalg.norm(self._data))

    def linf_norm(self) -> float:
        return float(np.max(np.abs(self._data))) if self._data.size else 0.0

    def slice(self, start: int, stop: int) -> "Vector":
        return Vector(self._data[start:stop])

    def take(self, indices: Iterable[int]) -> "Vector":
        idx = np.asarray(list(indices), dtype=np.int64)
        return Vector(self._data[idx])

    def as_matrix(self) -> Matrix:
        return Matrix(self._data.reshape(-1, 1))

    @classmethod
    def concat(cls, parts: Sequence["Vector"]) -> "Vector":
        if not parts:
            return cls(np.zeros(0))
        return cls(np.concatenate([p.values for p in parts]))

    def __repr__(self) -> str:
        return f"Vector({self.rows})"
