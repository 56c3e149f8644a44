"""Error types surfaced to the host UI."""
from __future__ import annotations


class TrainerError(RuntimeError):
    """Base class for user-facing trainer failures."""


class ServiceError(TrainerError):
    """An external service call failed; the message comes from the service when available."""

    def __init__(self, message: str, *, function: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.function = function
        self.status_code = status_code


class SubmissionRejected(TrainerError):
    """Training submission failed a local precondition before any network call."""


class WorkflowError(TrainerError):
    """The requested operation is not valid in the current workflow state."""


class ConfigError(ValueError):
    pass


__all__ = ["ConfigError", "ServiceError", "SubmissionRejected", "TrainerError", "WorkflowError"]
