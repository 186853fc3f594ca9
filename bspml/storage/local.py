# bspml/storage/local.py
from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import Any, Optional

import numpy as np
import pandas as pd
import pyarrow.parquet as pq

from bspml.config.storage_config import StorageConfig
from bspml.serialization.codec import (
    decode_checkpoint_envelope,
    decode_matrix,
    decode_value,
    decode_vector,
    encode_checkpoint_envelope,
    encode_matrix,
    encode_value,
    encode_vector,
)
from bspml.storage.base import Checkpoint, StorageAdapter
from bspml.tensor import Matrix, Vector
from bspml.utils.errors import DecodeError, NotFoundError, StorageError, ValidationError
from bspml.utils.filesystem import FileSystem
from bspml.utils.logger import logs
from bspml.utils.retry import Retry

# one file per (key, artefact type)
SUFFIXES = {
    "matrix": ".mat",
    "vector": ".vec",
    "dataset": ".ds",
    "checkpoint": ".ckpt",
    "value": ".val",
}


class LocalStorage(StorageAdapter):
    """
    Filesystem storage adapter.

    Layout:
        <root>/<key>.mat   encode_matrix
        <root>/<key>.vec   encode_vector
        <root>/<key>.ds    tagged value {"features": M, "labels": V | None}
        <root>/<key>.ckpt  checkpoint envelope
        <root>/<key>.val   tagged value (model results)

    Every write is atomic (temp + rename). I/O errors are retried with
    exponential backoff and surface as StorageError.
    """

    def __init__(self, cfg: StorageConfig | None = None):
        super().__init__()
        self.cfg = cfg or StorageConfig()
        self.root = FileSystem.ensure_dir(Path(self.cfg.root).resolve())

    # ---------------------------------------------------------
    # paths / io
    # ---------------------------------------------------------
    def _path(self, key: str, kind: str) -> Path:
        if not key or key.startswith("/") or "\\" in key:
            raise ValidationError(f"invalid storage key {key!r}")
        parts = PurePosixPath(key).parts
        if any(p in ("..", ".") for p in parts):
            raise ValidationError(f"invalid storage key {key!r}")
        return self.root.joinpath(*parts[:-1], parts[-1] + SUFFIXES[kind])

    def _io(self, func, *args):
        try:
            return Retry.run(
                func,
                *args,
                exceptions=(OSError,),
                max_attempts=self.cfg.retry_attempts,
                delay=self.cfg.retry_delay,
                backoff=self.cfg.retry_backoff,
            )
        except OSError as e:
            raise StorageError(f"{func.__name__} failed: {e}") from e

    def _write(self, key: str, kind: str, data: bytes) -> None:
        path = self._path(key, kind)
        self._io(FileSystem.safe_write, path, data)
        logs.debug(f"[Storage] wrote {kind} {key} ({len(data)} bytes)")

    def _read(self, key: str, kind: str) -> bytes:
        path = self._path(key, kind)
        if not path.exists():
            raise NotFoundError(f"no {kind} stored at {key!r}")
        return self._io(FileSystem.read_bytes, path)

    def _decode(self, key: str, fn, data: bytes):
        try:
            return fn(data)
        except DecodeError as e:
            raise StorageError(f"corrupt artefact {key!r}: {e.message}") from e

    # ---------------------------------------------------------
    # contract
    # ---------------------------------------------------------
    def exists(self, key: str) -> bool:
        return any(self._path(key, kind).exists() for kind in SUFFIXES)

    def read_matrix(self, key: str) -> Matrix:
        if not self._path(key, "matrix").exists() and self._path(key, "dataset").exists():
            return self.read_dataset(key)[0]
        return self._decode(key, decode_matrix, self._read(key, "matrix"))

    def write_matrix(self, key: str, m: Matrix) -> None:
        self._write(key, "matrix", encode_matrix(m))

    def read_vector(self, key: str) -> Vector:
        return self._decode(key, decode_vector, self._read(key, "vector"))

    def write_vector(self, key: str, v: Vector) -> None:
        self._write(key, "vector", encode_vector(v))

    def read_dataset(self, key: str) -> tuple[Matrix, Optional[Vector]]:
        if not self._path(key, "dataset").exists() and self._path(key, "matrix").exists():
            return self.read_matrix(key), None
        raw = self._decode(key, decode_value, self._read(key, "dataset"))
        if not isinstance(raw, dict) or not isinstance(raw.get("features"), Matrix):
            raise StorageError(f"dataset {key!r} has no feature matrix")
        labels = raw.get("labels")
        if labels is not None and len(labels) != raw["features"].rows:
            raise StorageError(
                f"dataset {key!r}: {len(labels)} labels for {raw['features'].rows} rows"
            )
        return raw["features"], labels

    def write_dataset(self, key: str, features: Matrix, labels: Optional[Vector] = None) -> None:
        if labels is not None and len(labels) != features.rows:
            raise ValidationError(f"{len(labels)} labels for {features.rows} rows")
        self._write(key, "dataset", encode_value({"features": features, "labels": labels}))

    def read_value(self, key: str) -> Any:
        return self._decode(key, decode_value, self._read(key, "value"))

    def write_value(self, key: str, value: Any) -> None:
        self._write(key, "value", encode_value(value))

    def list(self, prefix: str = "") -> list[str]:
        keys = set()
        suffixes = tuple(SUFFIXES.values())
        for path in FileSystem.list_files(self.root):
            if not path.name.endswith(suffixes):
                continue
            rel = path.relative_to(self.root).as_posix()
            key = rel[: rel.rfind(".")]
            if key.startswith(prefix):
                keys.add(key)
        return sorted(keys)

    def delete(self, key: str) -> None:
        for kind in SUFFIXES:
            path = self._path(key, kind)
            if path.exists():
                self._io(FileSystem.remove, path)
        logs.debug(f"[Storage] deleted {key}")

    def shape_of(self, key: str) -> tuple[int, int]:
        return self.read_matrix(key).shape

    # ---------------------------------------------------------
    # checkpoints
    # ---------------------------------------------------------
    def save_checkpoint(self, key: str, ckpt: Checkpoint) -> None:
        data = encode_checkpoint_envelope(ckpt.job_id, ckpt.iteration, ckpt.state, ckpt.timestamp)
        self._write(key, "checkpoint", data)
        ckpt.backing_key = key
        logs.info(f"[Storage] checkpoint job={ckpt.job_id} iter={ckpt.iteration} -> {key}")

    def load_checkpoint(self, key: str) -> Checkpoint:
        data = self._read(key, "checkpoint")
        job_id, iteration, state, ts = self._decode(key, decode_checkpoint_envelope, data)
        return Checkpoint(job_id=job_id, iteration=iteration, state=state, timestamp=ts, backing_key=key)

    def latest_checkpoint(self, prefix: str) -> Optional[Checkpoint]:
        """Newest checkpoint under prefix (highest iteration, then timestamp)."""
        best: Optional[Checkpoint] = None
        for key in self.list(prefix):
            if not self._path(key, "checkpoint").exists():
                continue
            ckpt = self.load_checkpoint(key)
            if best is None or (ckpt.iteration, ckpt.timestamp) > (best.iteration, best.timestamp):
                best = ckpt
        return best

    # ---------------------------------------------------------
    # tabular import
    # ---------------------------------------------------------
    @logs.catch(msg="table import failed")
    def import_table(self, key: str, path: str | Path, label_column: Optional[str] = None) -> tuple[int, int]:
        """
        Load a CSV or Parquet file into a dataset.

        Non-numeric feature columns are rejected. Returns (rows, cols).
        """
        path = Path(path)
        if not path.exists():
            raise NotFoundError(f"input file not found: {path}")
        if path.suffix == ".parquet":
            df = pq.read_table(path).to_pandas()
        elif path.suffix in (".csv", ".txt"):
            df = pd.read_csv(path)
        else:
            raise ValidationError(f"unsupported table format {path.suffix!r}")

        labels = None
        if label_column is not None:
            if label_column not in df.columns:
                raise ValidationError(f"label column {label_column!r} not in {list(df.columns)}")
            labels = Vector(df.pop(label_column).to_numpy(dtype=np.float64))

        non_numeric = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
        if non_numeric:
            raise ValidationError(f"non-numeric feature columns: {non_numeric}")

        features = Matrix(df.to_numpy(dtype=np.float64))
        self.write_dataset(key, features, labels)
        logs.info(f"[Storage] imported {path.name} -> {key} shape={features.shape}")
        return features.shape
