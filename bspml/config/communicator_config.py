# bspml/config/communicator_config.py
from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class CommunicatorConfig(BaseModel):
    """
    Communicator tuning.

    - retry_*            : transport-error retry policy for point-to-point sends
    - poll_interval      : receive wake-up period; bounds stop_loop() latency
    - collective_timeout : seconds a collective may wait for a peer (None = forever);
                           the iteration-boundary broadcast is exempt so a long
                           pause does not time out the non-root ranks
    """

    backend: Literal["inprocess", "mpi"] = "inprocess"
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=0.05, ge=0.0)
    poll_interval: float = Field(default=0.05, gt=0.0)
    collective_timeout: Optional[float] = Field(default=None, gt=0.0)
