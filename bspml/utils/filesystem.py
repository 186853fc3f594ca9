#!filepath: bspml/utils/filesystem.py
import os
import shutil
import uuid
from pathlib import Path
from typing import List

from bspml.utils.logger import logs


class FileSystem:
    """
    Filesystem helpers
    - create directories on demand
    - atomic write (temp file -> rename)
    - delete file / directory
    - scan directory
    """

    @staticmethod
    def ensure_dir(path: str | Path) -> Path:
        p = Path(path)
        if not p.exists():
            p.mkdir(parents=True, exist_ok=True)
            logs.debug(f"[FS] mkdir {p}")
        return p

    @staticmethod
    def safe_write(path: str | Path, data: bytes) -> None:
        """
        Atomic write: readers see either the old file or the new one,
        never a half-written file.
            1) write <name>.<uuid>.tmp next to the target
            2) fsync
            3) rename over the target
        """
        path = Path(path)
        FileSystem.ensure_dir(path.parent)

        tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex[:8]}.tmp")

        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

        tmp_path.replace(path)
        logs.debug(f"[FS] atomic write {path} ({len(data)} bytes)")

    @staticmethod
    def read_bytes(path: str | Path) -> bytes:
        return Path(path).read_bytes()

    @staticmethod
    def remove(path: str | Path) -> None:
        p = Path(path)
        if not p.exists():
            return
        if p.is_dir():
            shutil.rmtree(p)
        else:
            p.unlink()
        logs.debug(f"[FS] removed {p}")

    @staticmethod
    def list_files(root: str | Path, suffix: str = "") -> List[Path]:
        """
        Recursive scan, sorted, temp files excluded.
        """
        root = Path(root)
        if not root.exists():
            return []
        return sorted(
            p for p in root.rglob(f"*{suffix}")
            if p.is_file() and not p.name.endswith(".tmp")
        )
