"""Exception types raised by node executors and the workflow runner."""
from .cancellation import CancelReason


class ExecutionError(Exception):
    """Base class for failures that put a node into the error state."""


class NodeValidationError(ExecutionError):
    """Required input missing or node settings invalid. Raised before any I/O."""


class GenerationError(ExecutionError):
    """The generation service failed, rejected the request or was unreachable."""


class MediaProcessingError(ExecutionError):
    """Local decode/encode failure or timeout."""


class WorkflowBusyError(ExecutionError):
    """A workflow run is already in progress."""


class ExecutionCancelled(Exception):
    """The in-flight work was aborted through a cancellation token.

    Not an ExecutionError: cancellation is a stop, not a failure.
    """

    def __init__(self, reason: CancelReason, message: str | None = None):
        self.reason = reason
        super().__init__(message or f"Execution cancelled ({reason.value})")

    @property
    def user_initiated(self) -> bool:
        return self.reason == CancelReason.USER_CANCELLED
