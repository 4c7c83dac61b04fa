"""Exception taxonomy shared by the queue, the model client and the executor."""

from __future__ import annotations

from tabtin.llm.failure_classifier import FailureClass, is_retryable


class TabtinError(Exception):
    """Base class for pipeline errors."""


class TransientError(TabtinError):
    """Failure that is expected to go away on retry."""


class ModelCallError(TransientError):
    """Model endpoint returned a non-success response or could not be reached."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str = "",
        failure_class: FailureClass = FailureClass.UNKNOWN,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.failure_class = failure_class

    @property
    def retryable(self) -> bool:
        """Whether the executor should schedule another attempt."""

        return is_retryable(self.failure_class)


class MalformedReplyError(TabtinError):
    """Model reply could not be parsed or matched none of the configured columns."""


class JobContractError(TabtinError):
    """Job payload or stored state violates the expected contract. Never retried."""


class ResourceGoneError(TabtinError):
    """Batch, row or tenant disappeared while the job was in flight."""
