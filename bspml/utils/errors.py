# bspml/utils/errors.py
from __future__ import annotations


class BSPError(RuntimeError):
    """
    Root of the runtime error taxonomy.

    `kind` is the stable, language-independent name of the failure class;
    it is what gets written into JobStatus.error and mapped to exit codes.
    """

    kind: str = "internal"

    def __init__(self, message: str = "", *, job_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.job_id = job_id

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class ValidationError(BSPError):
    """Malformed descriptor, unknown kind, out-of-range parameter."""

    kind = "validation"


class TransportError(BSPError):
    """send / recv / collective failed."""

    kind = "transport"


class DecodeError(BSPError):
    """Corrupt header or truncated payload."""

    kind = "decode"


class ShapeMismatchError(BSPError):
    kind = "shape-mismatch"


class NumericalInstabilityError(BSPError):
    kind = "numerical-instability"


class StorageError(BSPError):
    kind = "storage"


class OperationTimeoutError(BSPError):
    """Heartbeat missing, collective not reached, control request not honoured."""

    kind = "timeout"


class ProtocolError(BSPError):
    """Unexpected state transition or message for an unknown job."""

    kind = "protocol"


class NotFoundError(BSPError):
    kind = "not-found"


class JobCancelled(BSPError):
    """
    Raised inside a kernel when it observes a cancel request at an
    iteration boundary. Control flow only, never reported as a failure.
    """

    kind = "cancelled"


EXIT_CODES: dict[str, int] = {
    "validation": 2,
    "not-found": 3,
    "transport": 4,
    "timeout": 5,
}


def exit_code_for(exc: BaseException) -> int:
    kind = getattr(exc, "kind", None)
    return EXIT_CODES.get(kind, 1)
