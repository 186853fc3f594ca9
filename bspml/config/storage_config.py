# bspml/config/storage_config.py
from __future__ import annotations

from pydantic import BaseModel, Field


class StorageConfig(BaseModel):
    root: str = "data"
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=0.1, ge=0.0)
    retry_backoff: float = Field(default=2.0, ge=1.0)
